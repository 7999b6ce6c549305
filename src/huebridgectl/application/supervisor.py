import asyncio
import logging
from typing import Callable

from huebridgectl.application.ports import (
    BridgeGateway,
    CredentialStore,
    DiscoveryPort,
    HandshakeOutcome,
    NullStatusSink,
    ReachabilityPort,
    StatusSink,
)
from huebridgectl.domain.errors import (
    ConnectionErrorKind,
    DiscoveryError,
    DiscoveryErrorKind,
    InvalidTransitionError,
)
from huebridgectl.domain.models import (
    ConfirmedDevice,
    ConnectionState,
    CredentialRecord,
    StatusUpdate,
)
from huebridgectl.domain.policy import RetryPolicy

LOG = logging.getLogger(__name__)

S = ConnectionState
_ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    S.DISCONNECTED: frozenset({S.SEARCHING, S.CONNECTING, S.RECONNECTING}),
    S.SEARCHING: frozenset({S.CONNECTING, S.DISCONNECTED, S.FAILED}),
    S.CONNECTING: frozenset({S.CONNECTED, S.NEEDS_AUTHENTICATION, S.DISCONNECTED, S.FAILED}),
    S.CONNECTED: frozenset({S.RECONNECTING, S.DISCONNECTED}),
    S.RECONNECTING: frozenset({S.CONNECTED, S.NEEDS_AUTHENTICATION, S.DISCONNECTED}),
    S.NEEDS_AUTHENTICATION: frozenset({S.CONNECTING, S.DISCONNECTED}),
    S.FAILED: frozenset({S.DISCONNECTED, S.SEARCHING, S.CONNECTING}),
}
_SELECTABLE_FROM = frozenset({S.DISCONNECTED, S.SEARCHING, S.NEEDS_AUTHENTICATION, S.FAILED})


class ConnectionSupervisor:
    """Owns the life cycle of the active bridge connection.

    State, retry counter and background tasks are only mutated while holding
    ``_lock``; at most one reconnect sequence runs at a time.
    """

    def __init__(
        self,
        gateway: BridgeGateway,
        discovery: DiscoveryPort,
        credentials: CredentialStore,
        status_sink: StatusSink | None = None,
        retry_policy: RetryPolicy | None = None,
        health_interval_s: float = 10.0,
        health_failure_threshold: int = 3,
    ) -> None:
        self.health_interval_s = health_interval_s
        self.health_failure_threshold = max(1, int(health_failure_threshold))
        self._gateway = gateway
        self._discovery = discovery
        self._credentials = credentials
        self._sink = status_sink or NullStatusSink()
        self._retry = retry_policy or RetryPolicy()
        self._state = ConnectionState.DISCONNECTED
        self._device: ConfirmedDevice | None = None
        self._secret_key: str | None = None
        self._auto_reconnect = False
        self._lock = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self._wake = asyncio.Event()
        self._network_available = asyncio.Event()
        self._network_available.set()
        self._health_task: asyncio.Task | None = None
        self._health_stop: asyncio.Event | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def device(self) -> ConfirmedDevice | None:
        return self._device

    @property
    def retry_attempt(self) -> int:
        return self._retry.attempt

    @property
    def reconnect_in_flight(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # ---- public operations ----

    async def start(self, secret_key: str | None = None) -> ConnectionState:
        """Connect to the stored bridge, recovering it if it no longer answers.

        A failed first handshake runs the reconnect sequence (known address,
        backoff, rediscovery by identifier) before the final state is returned.
        """
        self._loop = asyncio.get_running_loop()
        record = self._credentials.get()
        if record is None:
            LOG.info("no stored bridge credentials; setup required")
            self._sink.publish(
                StatusUpdate(connection_state=self._state, setup_required=True)
            )
            return self._state
        LOG.info(
            "seeding connection from stored credentials id=%s addr=%s",
            record.device_id,
            record.last_known_address,
        )
        state = await self.select(record.to_device(), secret_key or record.secret_key)
        if state != S.DISCONNECTED:
            return state
        async with self._lock:
            if not (self._auto_reconnect and self._begin_reconnect_locked("startup")):
                return self._state
            task = self._reconnect_task
        await asyncio.wait({task})
        return self._state

    async def select(
        self, device: ConfirmedDevice, secret_key: str | None = None
    ) -> ConnectionState:
        self._loop = asyncio.get_running_loop()
        await self._stop_background()
        async with self._lock:
            if self._state not in _SELECTABLE_FROM:
                self._transition(S.DISCONNECTED)
            self._device = device
            if secret_key is not None:
                self._secret_key = secret_key
            self._auto_reconnect = True
            self._transition(S.CONNECTING)

        outcome, refreshed = await self._gateway.handshake_async(device, self._secret_key)

        async with self._lock:
            if self._state != S.CONNECTING:
                return self._state
            if outcome == HandshakeOutcome.CONNECTED:
                self._on_connected(refreshed)
            elif outcome == HandshakeOutcome.AUTH_REQUIRED:
                self._device = refreshed
                self._transition(
                    S.NEEDS_AUTHENTICATION,
                    error=ConnectionErrorKind.AUTHENTICATION_REQUIRED.value,
                )
            else:
                self._transition(
                    S.DISCONNECTED, error=ConnectionErrorKind.HANDSHAKE_FAILED.value
                )
            return self._state

    async def connect_by_discovery(
        self, identifier: str | None = None, secret_key: str | None = None
    ) -> list[ConfirmedDevice]:
        """Discover and auto-select when exactly one bridge answers.

        Several devices are returned unselected for the caller to choose from.
        """
        self._loop = asyncio.get_running_loop()
        await self._stop_background()
        async with self._lock:
            if self._state not in _SELECTABLE_FROM:
                self._transition(S.DISCONNECTED)
            self._transition(S.SEARCHING)
        try:
            devices = await asyncio.to_thread(self._discovery.discover, identifier)
        except DiscoveryError as exc:
            async with self._lock:
                if exc.kind == DiscoveryErrorKind.PERMISSION_DENIED:
                    self._transition(S.FAILED, error=exc.kind.value, setup_required=True)
                else:
                    self._transition(S.DISCONNECTED, error=exc.kind.value)
            raise

        if len(devices) == 1:
            await self.select(devices[0], secret_key)
        else:
            async with self._lock:
                if self._state == S.SEARCHING:
                    self._transition(S.DISCONNECTED)
        return devices

    async def disconnect(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._stop_background()
        async with self._lock:
            self._auto_reconnect = False
            if self._state != S.DISCONNECTED:
                self._transition(S.DISCONNECTED)

    async def request_reconnect(self, reason: str = "manual") -> bool:
        async with self._lock:
            return self._begin_reconnect_locked(reason)

    def attach_reachability(self, monitor: ReachabilityPort) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            pass
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = monitor.subscribe(self.notify_reachability)

    def notify_reachability(self, reachable: bool) -> None:
        """Thread-safe entry point for OS reachability callbacks."""
        loop = self._loop
        if loop is None or loop.is_closed():
            LOG.debug("reachability event ignored (supervisor not started)")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            future = loop.create_task(self.handle_reachability(reachable))
        else:
            future = asyncio.run_coroutine_threadsafe(self.handle_reachability(reachable), loop)
        future.add_done_callback(_log_reachability_failure)

    async def handle_reachability(self, reachable: bool) -> None:
        async with self._lock:
            if not reachable:
                self._network_available.clear()
                LOG.info("network became unreachable state=%s", self._state.value)
                if self._state == S.CONNECTED:
                    self._begin_reconnect_locked("network_unreachable")
                return

            self._network_available.set()
            LOG.info("network became reachable state=%s", self._state.value)
            if not self._auto_reconnect or self._device is None:
                return
            if self._state == S.RECONNECTING and self.reconnect_in_flight:
                self._wake.set()
            elif self._state in (S.DISCONNECTED, S.RECONNECTING):
                self._begin_reconnect_locked("network_reachable")

    # ---- state machine ----

    def _transition(
        self,
        new_state: ConnectionState,
        error: str | None = None,
        setup_required: bool = False,
    ) -> None:
        old_state = self._state
        if new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransitionError(f"{old_state.value} -> {new_state.value}")
        self._state = new_state
        LOG.info("connection %s -> %s", old_state.value, new_state.value)
        self._sink.publish(
            StatusUpdate(
                connection_state=new_state,
                error=error,
                setup_required=setup_required,
            )
        )

    def _on_connected(self, device: ConfirmedDevice) -> None:
        self._device = device
        self._retry.reset()
        self._transition(S.CONNECTED)
        self._checkpoint(device)
        self._start_health_locked()

    def _checkpoint(self, device: ConfirmedDevice) -> None:
        self._credentials.set(
            CredentialRecord(
                device_id=device.normalized_id,
                last_known_address=device.address,
                secret_key=self._secret_key,
                port=device.port,
                display_name=device.display_name,
            )
        )

    def _begin_reconnect_locked(self, reason: str) -> bool:
        if self.reconnect_in_flight:
            LOG.debug("reconnect already in flight; ignoring trigger=%s", reason)
            return False
        if self._device is None or self._state not in (
            S.CONNECTED,
            S.DISCONNECTED,
            S.RECONNECTING,
        ):
            LOG.debug("reconnect not applicable state=%s trigger=%s", self._state.value, reason)
            return False
        if self._state != S.RECONNECTING:
            self._transition(S.RECONNECTING, error=ConnectionErrorKind.UNREACHABLE.value)
        self._stop_health_locked()
        self._retry.reset()
        self._wake.clear()
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_sequence(reason)
        )
        return True

    # ---- health probing ----

    def _start_health_locked(self) -> None:
        self._stop_health_locked()
        stop = asyncio.Event()
        self._health_stop = stop
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop(stop))

    def _stop_health_locked(self) -> None:
        if self._health_stop is not None:
            self._health_stop.set()
        self._health_stop = None
        self._health_task = None

    async def _health_loop(self, stop: asyncio.Event) -> None:
        failures = 0
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.health_interval_s)
                return
            except asyncio.TimeoutError:
                pass
            device = self._device
            if device is None or stop.is_set():
                return
            alive = await self._gateway.health_check_async(device)
            if stop.is_set():
                return
            if alive:
                failures = 0
                continue
            failures += 1
            LOG.debug(
                "health probe failed addr=%s consecutive=%d threshold=%d",
                device.address,
                failures,
                self.health_failure_threshold,
            )
            if failures >= self.health_failure_threshold:
                LOG.info("bridge at %s stopped answering; reconnecting", device.address)
                async with self._lock:
                    if not stop.is_set() and self._state == S.CONNECTED:
                        self._begin_reconnect_locked("health_probe")
                return

    # ---- reconnection ----

    async def _reconnect_sequence(self, reason: str) -> None:
        LOG.info("reconnect sequence start trigger=%s", reason)
        if await self._attempt_known_address():
            return
        while True:
            if not await self._wait_for_network():
                return
            async with self._lock:
                if self._retry.exhausted:
                    break
                delay = self._retry.next_delay()
                attempt = self._retry.attempt
            LOG.info(
                "reconnect attempt=%d/%d in %.1fs",
                attempt,
                self._retry.max_attempts,
                delay,
            )
            if not await self._wait_backoff(delay):
                return
            if await self._attempt_known_address():
                return

        if await self._rediscover():
            return
        if self._shutdown.is_set():
            return
        async with self._lock:
            if self._state == S.RECONNECTING:
                self._transition(
                    S.DISCONNECTED,
                    error=ConnectionErrorKind.RETRIES_EXHAUSTED.value,
                    setup_required=True,
                )

    async def _attempt_known_address(self) -> bool:
        """One handshake against the current address; True ends the sequence."""
        if not await self._wait_for_network():
            return True
        device = self._device
        if device is None:
            return True
        outcome, refreshed = await self._gateway.handshake_async(device, self._secret_key)
        return await self._apply_reconnect_outcome(outcome, refreshed)

    async def _rediscover(self) -> bool:
        device = self._device
        if device is None or not device.normalized_id:
            LOG.info("no stored identifier; cannot rediscover")
            return False
        while True:
            if not await self._wait_for_network():
                return True
            LOG.info("rediscovering bridge id=%s", device.normalized_id)
            try:
                devices = await asyncio.to_thread(self._discovery.discover, device.normalized_id)
                break
            except DiscoveryError as exc:
                LOG.info("rediscovery failed kind=%s", exc.kind.value)
                if exc.kind != DiscoveryErrorKind.NETWORK_UNAVAILABLE:
                    return False
            # No route: suspend until the path returns or the backoff ceiling
            # passes, without spending retry attempts.
            self._network_available.clear()
            if not await self._wait_for_network(timeout=self._retry.max_delay_s):
                return True
            self._network_available.set()
        if self._shutdown.is_set():
            return True
        match = next((d for d in devices if d.matches(device.normalized_id)), None)
        if match is None:
            return False
        if match.address != device.address:
            LOG.info("bridge moved %s -> %s", device.address, match.address)
        outcome, refreshed = await self._gateway.handshake_async(match, self._secret_key)
        return await self._apply_reconnect_outcome(outcome, refreshed)

    async def _apply_reconnect_outcome(
        self, outcome: HandshakeOutcome, device: ConfirmedDevice
    ) -> bool:
        if self._shutdown.is_set():
            return True
        if outcome == HandshakeOutcome.FAILED:
            return False
        async with self._lock:
            if self._state != S.RECONNECTING:
                return True
            if outcome == HandshakeOutcome.CONNECTED:
                self._on_connected(device)
            else:
                self._device = device
                self._transition(
                    S.NEEDS_AUTHENTICATION,
                    error=ConnectionErrorKind.AUTHENTICATION_REQUIRED.value,
                )
        return True

    async def _wait_for_network(self, timeout: float | None = None) -> bool:
        if not self._network_available.is_set():
            LOG.info("network unavailable; reconnect suspended until reachable")
            self._sink.publish(
                StatusUpdate(
                    connection_state=self._state,
                    error=ConnectionErrorKind.NETWORK_UNAVAILABLE.value,
                )
            )
            await _wait_any(self._network_available, self._shutdown, timeout=timeout)
        return not self._shutdown.is_set()

    async def _wait_backoff(self, delay: float) -> bool:
        await _wait_any(self._wake, self._shutdown, timeout=delay)
        if self._wake.is_set():
            LOG.debug("backoff cut short by reachability event")
            self._wake.clear()
        return not self._shutdown.is_set()

    async def _stop_background(self) -> None:
        async with self._lock:
            self._stop_health_locked()
            task = self._reconnect_task
            self._reconnect_task = None
        if task is not None and not task.done():
            self._shutdown.set()
            self._discovery.cancel()
            try:
                await task
            finally:
                self._shutdown.clear()


def _log_reachability_failure(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOG.warning("reachability handling failed: %r", exc)


async def _wait_any(*events: asyncio.Event, timeout: float | None = None) -> None:
    waiters = [asyncio.ensure_future(e.wait()) for e in events]
    try:
        await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            if not w.done():
                w.cancel()
