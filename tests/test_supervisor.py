import asyncio
import logging

import pytest

from huebridgectl.application.ports import HandshakeOutcome
from huebridgectl.application.supervisor import ConnectionSupervisor
from huebridgectl.domain.errors import (
    ConnectionErrorKind,
    DiscoveryError,
    DiscoveryErrorKind,
    InvalidTransitionError,
)
from huebridgectl.domain.models import ConfirmedDevice, ConnectionState, CredentialRecord
from huebridgectl.domain.policy import RetryPolicy

CONNECTED = HandshakeOutcome.CONNECTED
FAILED = HandshakeOutcome.FAILED
AUTH = HandshakeOutcome.AUTH_REQUIRED


class FakeGateway:
    def __init__(self, outcomes=None, health=None):
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.health = list(health or [])
        self.handshakes: list[str] = []
        self.health_calls = 0
        self.release: asyncio.Event | None = None

    async def handshake_async(self, device, secret_key):
        self.handshakes.append(device.address)
        if self.release is not None and len(self.handshakes) > 1:
            await self.release.wait()
        queue = self.outcomes.get(device.address, [FAILED])
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        return outcome, device

    async def health_check_async(self, device):
        self.health_calls += 1
        if self.health:
            return self.health.pop(0)
        return True


class FakeDiscovery:
    def __init__(self, devices=(), error=None):
        self.devices = list(devices)
        self.error = error
        self.calls: list[str | None] = []
        self.cancelled = 0

    def discover(self, specific_identifier=None):
        self.calls.append(specific_identifier)
        if self.error is not None:
            raise self.error
        return list(self.devices)

    def cancel(self):
        self.cancelled += 1


class FakeCredentials:
    def __init__(self, record=None):
        self.record = record
        self.saved: list[CredentialRecord] = []

    def get(self):
        return self.record

    def set(self, record):
        self.saved.append(record)
        self.record = record

    def clear(self):
        self.record = None


class RecordingSink:
    def __init__(self):
        self.updates = []

    def publish(self, update):
        self.updates.append(update)

    @property
    def states(self):
        return [u.connection_state for u in self.updates if u.connection_state is not None]


def _record(address="192.168.1.23"):
    return CredentialRecord(device_id="ABC123", last_known_address=address, secret_key="secret")


def _supervisor(gateway, discovery=None, credentials=None, sink=None, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(base_delay_s=0.01, max_delay_s=0.02, max_attempts=1))
    kwargs.setdefault("health_interval_s", 0.01)
    return ConnectionSupervisor(
        gateway=gateway,
        discovery=discovery or FakeDiscovery(),
        credentials=credentials or FakeCredentials(_record()),
        status_sink=sink,
        **kwargs,
    )


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def test_scenario_bridge_moves_to_new_address_after_health_failures() -> None:
    moved = ConfirmedDevice.from_raw("ABC123", address="192.168.1.40")
    gateway = FakeGateway(
        outcomes={
            "192.168.1.23": [CONNECTED, FAILED, FAILED],
            "192.168.1.40": [CONNECTED],
        },
        health=[False, False, False],
    )
    discovery = FakeDiscovery([moved])
    credentials = FakeCredentials(_record())
    sink = RecordingSink()
    sup = _supervisor(gateway, discovery, credentials, sink)

    async def run():
        assert await sup.start() == ConnectionState.CONNECTED
        await _wait_for(
            lambda: sup.state == ConnectionState.CONNECTED
            and sup.device.address == "192.168.1.40"
        )
        await sup.disconnect()

    asyncio.run(run())

    assert gateway.handshakes == ["192.168.1.23"] * 3 + ["192.168.1.40"]
    assert discovery.calls == ["ABC123"]
    assert credentials.record.last_known_address == "192.168.1.40"
    assert credentials.record.secret_key == "secret"
    assert sup.retry_attempt == 0
    assert sink.states[:5] == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
    ]


def test_single_health_failure_does_not_reconnect() -> None:
    gateway = FakeGateway(outcomes={"192.168.1.23": [CONNECTED]}, health=[False, True, False])
    sup = _supervisor(gateway)

    async def run():
        await sup.start()
        await _wait_for(lambda: gateway.health_calls >= 5)
        assert sup.state == ConnectionState.CONNECTED
        await sup.disconnect()

    asyncio.run(run())
    assert gateway.handshakes == ["192.168.1.23"]


def test_only_one_reconnect_sequence_runs_at_a_time() -> None:
    gateway = FakeGateway(outcomes={"192.168.1.23": [CONNECTED]})
    sup = _supervisor(gateway, health_interval_s=60.0)

    async def run():
        gateway.release = asyncio.Event()
        await sup.start()
        results = await asyncio.gather(
            sup.request_reconnect("health_probe"), sup.request_reconnect("network_reachable")
        )
        await sup.handle_reachability(False)
        await sup.handle_reachability(True)
        assert sorted(results) == [False, True]
        assert sup.state == ConnectionState.RECONNECTING
        await _wait_for(lambda: len(gateway.handshakes) == 2)
        gateway.release.set()
        await _wait_for(lambda: sup.state == ConnectionState.CONNECTED)
        await sup.disconnect()

    asyncio.run(run())
    assert gateway.handshakes == ["192.168.1.23", "192.168.1.23"]


def test_network_loss_suspends_reconnect_until_reachable() -> None:
    gateway = FakeGateway(outcomes={"192.168.1.23": [CONNECTED]})
    sink = RecordingSink()
    sup = _supervisor(gateway, sink=sink, health_interval_s=60.0)

    async def run():
        await sup.start()
        await sup.handle_reachability(False)
        assert sup.state == ConnectionState.RECONNECTING
        await asyncio.sleep(0.05)
        assert gateway.handshakes == ["192.168.1.23"]
        assert sup.retry_attempt == 0
        await sup.handle_reachability(True)
        await _wait_for(lambda: sup.state == ConnectionState.CONNECTED)
        await sup.disconnect()

    asyncio.run(run())
    assert gateway.handshakes == ["192.168.1.23", "192.168.1.23"]
    assert any(u.error == ConnectionErrorKind.NETWORK_UNAVAILABLE.value for u in sink.updates)


def test_reachability_from_another_thread_is_marshalled_to_loop() -> None:
    gateway = FakeGateway(outcomes={"192.168.1.23": [CONNECTED, FAILED]})
    sup = _supervisor(gateway, health_interval_s=60.0)

    async def run():
        await sup.start()
        await asyncio.to_thread(sup.notify_reachability, False)
        await _wait_for(lambda: sup.state == ConnectionState.RECONNECTING)
        await sup.disconnect()

    asyncio.run(run())
    assert sup.state == ConnectionState.DISCONNECTED


def test_exhausted_retries_require_setup_and_reachability_retriggers() -> None:
    gateway = FakeGateway(outcomes={"192.168.1.23": [CONNECTED, FAILED, FAILED, CONNECTED]})
    discovery = FakeDiscovery(error=DiscoveryError(DiscoveryErrorKind.NOT_FOUND, "ABC123"))
    sink = RecordingSink()
    sup = _supervisor(gateway, discovery, sink=sink, health_interval_s=60.0)

    async def run():
        await sup.start()
        assert await sup.request_reconnect("health_probe") is True
        await _wait_for(lambda: sup.state == ConnectionState.DISCONNECTED)
        last = sink.updates[-1]
        assert last.setup_required is True
        assert last.error == ConnectionErrorKind.RETRIES_EXHAUSTED.value

        await sup.handle_reachability(True)
        await _wait_for(lambda: sup.state == ConnectionState.CONNECTED)
        await sup.disconnect()

    asyncio.run(run())
    assert discovery.calls == ["ABC123"]
    assert len(gateway.handshakes) == 4


def test_handshake_requiring_key_moves_to_needs_authentication() -> None:
    device = ConfirmedDevice.from_raw("ABC123", address="192.168.1.23")
    gateway = FakeGateway(outcomes={"192.168.1.23": [AUTH, CONNECTED]})
    credentials = FakeCredentials()
    sup = _supervisor(gateway, credentials=credentials, health_interval_s=60.0)

    async def run():
        assert await sup.select(device) == ConnectionState.NEEDS_AUTHENTICATION
        assert credentials.saved == []
        assert await sup.select(device, "new-key") == ConnectionState.CONNECTED
        await sup.disconnect()

    asyncio.run(run())
    assert credentials.record.secret_key == "new-key"
    assert credentials.record.device_id == "ABC123"


def test_failed_handshake_returns_to_disconnected() -> None:
    device = ConfirmedDevice.from_raw("ABC123", address="192.168.1.23")
    sink = RecordingSink()
    sup = _supervisor(FakeGateway(), sink=sink)
    assert asyncio.run(sup.select(device, "secret")) == ConnectionState.DISCONNECTED
    assert sink.updates[-1].error == ConnectionErrorKind.HANDSHAKE_FAILED.value


def test_start_without_credentials_reports_setup_required() -> None:
    sink = RecordingSink()
    sup = _supervisor(FakeGateway(), credentials=FakeCredentials(), sink=sink)
    assert asyncio.run(sup.start()) == ConnectionState.DISCONNECTED
    assert sink.updates[-1].setup_required is True


def test_connect_by_discovery_selects_single_device() -> None:
    device = ConfirmedDevice.from_raw("ABC123", address="192.168.1.23")
    gateway = FakeGateway(outcomes={"192.168.1.23": [CONNECTED]})
    sink = RecordingSink()
    sup = _supervisor(gateway, FakeDiscovery([device]), FakeCredentials(), sink, health_interval_s=60.0)

    async def run():
        found = await sup.connect_by_discovery(secret_key="secret")
        assert found == [device]
        await sup.disconnect()

    asyncio.run(run())
    assert sink.states[:3] == [
        ConnectionState.SEARCHING,
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
    ]


def test_connect_by_discovery_leaves_choice_to_caller_for_several_devices() -> None:
    devices = [
        ConfirmedDevice.from_raw("AAA", address="10.0.0.2"),
        ConfirmedDevice.from_raw("BBB", address="10.0.0.3"),
    ]
    gateway = FakeGateway()
    sup = _supervisor(gateway, FakeDiscovery(devices), FakeCredentials())
    assert asyncio.run(sup.connect_by_discovery()) == devices
    assert sup.state == ConnectionState.DISCONNECTED
    assert gateway.handshakes == []


def test_connect_by_discovery_permission_denied_fails_with_setup_required() -> None:
    sink = RecordingSink()
    sup = _supervisor(
        FakeGateway(),
        FakeDiscovery(error=DiscoveryError(DiscoveryErrorKind.PERMISSION_DENIED)),
        FakeCredentials(),
        sink,
    )
    with pytest.raises(DiscoveryError):
        asyncio.run(sup.connect_by_discovery())
    assert sup.state == ConnectionState.FAILED
    assert sink.updates[-1].setup_required is True


def test_disconnect_tears_down_reachability_subscription() -> None:
    class FakeMonitor:
        def __init__(self):
            self.callback = None
            self.unsubscribed = False

        def subscribe(self, callback):
            self.callback = callback

            def _unsubscribe():
                self.unsubscribed = True

            return _unsubscribe

    gateway = FakeGateway(outcomes={"192.168.1.23": [CONNECTED]})
    monitor = FakeMonitor()
    sup = _supervisor(gateway)

    async def run():
        await sup.start()
        sup.attach_reachability(monitor)
        await sup.disconnect()
        calls = gateway.health_calls
        await asyncio.sleep(0.05)
        assert gateway.health_calls == calls

    asyncio.run(run())
    assert monitor.callback == sup.notify_reachability
    assert monitor.unsubscribed is True
    assert sup.state == ConnectionState.DISCONNECTED


def test_illegal_transition_raises() -> None:
    sup = _supervisor(FakeGateway())
    with pytest.raises(InvalidTransitionError):
        sup._transition(ConnectionState.CONNECTED)


class SequencedDiscovery(FakeDiscovery):
    """Answers each ``discover`` call with the next queued result or error."""

    def __init__(self, results):
        super().__init__()
        self.results = list(results)

    def discover(self, specific_identifier=None):
        self.calls.append(specific_identifier)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return list(result)


def test_start_recovers_stored_bridge_that_moved_while_offline() -> None:
    moved = ConfirmedDevice.from_raw("ABC123", address="192.168.1.40")
    gateway = FakeGateway(outcomes={"192.168.1.23": [FAILED], "192.168.1.40": [CONNECTED]})
    discovery = FakeDiscovery([moved])
    credentials = FakeCredentials(_record())
    sink = RecordingSink()
    sup = _supervisor(gateway, discovery, credentials, sink, health_interval_s=60.0)

    async def run():
        assert await sup.start() == ConnectionState.CONNECTED
        await sup.disconnect()

    asyncio.run(run())
    assert discovery.calls == ["ABC123"]
    assert gateway.handshakes == ["192.168.1.23"] * 3 + ["192.168.1.40"]
    assert credentials.record.last_known_address == "192.168.1.40"
    assert credentials.record.secret_key == "secret"
    assert sink.states[:4] == [
        ConnectionState.CONNECTING,
        ConnectionState.DISCONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.CONNECTED,
    ]


def test_start_reports_setup_required_when_stored_bridge_is_gone() -> None:
    gateway = FakeGateway(outcomes={"192.168.1.23": [FAILED]})
    discovery = FakeDiscovery(error=DiscoveryError(DiscoveryErrorKind.NOT_FOUND, "ABC123"))
    sink = RecordingSink()
    sup = _supervisor(gateway, discovery, sink=sink)

    assert asyncio.run(sup.start()) == ConnectionState.DISCONNECTED
    assert discovery.calls == ["ABC123"]
    assert sink.updates[-1].setup_required is True
    assert sink.updates[-1].error == ConnectionErrorKind.RETRIES_EXHAUSTED.value


def test_rediscovery_without_network_waits_for_reachability() -> None:
    moved = ConfirmedDevice.from_raw("ABC123", address="192.168.1.40")
    gateway = FakeGateway(
        outcomes={"192.168.1.23": [CONNECTED, FAILED], "192.168.1.40": [CONNECTED]}
    )
    discovery = SequencedDiscovery(
        [DiscoveryError(DiscoveryErrorKind.NETWORK_UNAVAILABLE, "ABC123"), [moved]]
    )
    sink = RecordingSink()
    sup = _supervisor(
        gateway,
        discovery,
        sink=sink,
        retry_policy=RetryPolicy(base_delay_s=0.01, max_delay_s=30.0, max_attempts=1),
        health_interval_s=60.0,
    )

    async def run():
        await sup.start()
        await sup.request_reconnect("health_probe")
        await _wait_for(lambda: len(discovery.calls) == 1)
        await asyncio.sleep(0.05)
        assert sup.state == ConnectionState.RECONNECTING
        assert len(discovery.calls) == 1
        await sup.handle_reachability(True)
        await _wait_for(lambda: sup.state == ConnectionState.CONNECTED)
        await sup.disconnect()

    asyncio.run(run())
    assert discovery.calls == ["ABC123", "ABC123"]
    assert sup.device.address == "192.168.1.40"
    assert any(u.error == ConnectionErrorKind.NETWORK_UNAVAILABLE.value for u in sink.updates)
    assert not any(u.setup_required for u in sink.updates)


def test_reachability_handler_failure_is_logged(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="huebridgectl.application.supervisor")
    sup = _supervisor(FakeGateway(), credentials=FakeCredentials())

    async def failing(reachable):
        raise InvalidTransitionError("disconnected -> connected")

    async def run():
        await sup.start()
        sup.handle_reachability = failing
        sup.notify_reachability(True)
        await asyncio.to_thread(sup.notify_reachability, False)
        await asyncio.sleep(0.05)

    asyncio.run(run())
    failures = [r for r in caplog.records if "reachability handling failed" in r.getMessage()]
    assert len(failures) == 2
    assert all(r.levelno == logging.WARNING for r in failures)
