import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from huebridgectl.application.ports import (
    CloudLookupPort,
    NullStatusSink,
    PermissionPort,
    ProbePort,
    ServiceBrowsePort,
    StatusSink,
    SubnetScanPort,
    ValidatorPort,
)
from huebridgectl.domain.dedup import Deduplicator
from huebridgectl.domain.errors import (
    DiscoveryError,
    DiscoveryErrorKind,
    NetworkUnavailableError,
)
from huebridgectl.domain.models import (
    Candidate,
    ConfirmedDevice,
    DiscoveryState,
    StatusUpdate,
)

LOG = logging.getLogger(__name__)


class DiscoverySession:
    """Shared state of one discovery run; every mutation happens under ``cond``."""

    def __init__(self, specific_identifier: str | None = None) -> None:
        self.specific_identifier = specific_identifier
        self.cond = threading.Condition()
        self.strategies_total = 0
        self.strategies_completed = 0
        self.failures: dict[str, BaseException] = {}
        self._cancelled = threading.Event()
        self._accumulated = Deduplicator()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        with self.cond:
            self._cancelled.set()
            self.cond.notify_all()

    def offer(self, device: ConfirmedDevice) -> bool:
        with self.cond:
            if self._cancelled.is_set():
                return False
            if self.specific_identifier and not device.matches(self.specific_identifier):
                LOG.debug(
                    "discovery ignore addr=%s id=%s reason=identifier_mismatch",
                    device.address,
                    device.normalized_id,
                )
                return False
            added = self._accumulated.add(device)
            if added:
                self.cond.notify_all()
            return added

    def strategy_started(self) -> None:
        with self.cond:
            self.strategies_total += 1

    def strategy_finished(self, name: str, error: BaseException | None = None) -> None:
        with self.cond:
            self.strategies_completed += 1
            if error is not None:
                self.failures[name] = error
            self.cond.notify_all()

    def devices(self) -> list[ConfirmedDevice]:
        with self.cond:
            return self._accumulated.devices()

    def found_count(self) -> int:
        with self.cond:
            return len(self._accumulated)

    def all_finished(self) -> bool:
        with self.cond:
            return self.strategies_completed >= self.strategies_total


class DiscoveryOrchestrator:
    def __init__(
        self,
        permission_gate: PermissionPort,
        service_client: ServiceBrowsePort,
        subnet_prober: SubnetScanPort,
        cloud_client: CloudLookupPort | None,
        probe: ProbePort,
        validator: ValidatorPort,
        status_sink: StatusSink | None = None,
        overall_timeout_s: float = 15.0,
        cloud_fallback_delay_s: float | None = 5.0,
        settle_s: float = 0.5,
        ssdp_client: ServiceBrowsePort | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.overall_timeout_s = overall_timeout_s
        self.cloud_fallback_delay_s = cloud_fallback_delay_s
        self.settle_s = max(0.0, settle_s)
        self._permission_gate = permission_gate
        self._service_client = service_client
        self._subnet_prober = subnet_prober
        self._ssdp_client = ssdp_client
        self._cloud_client = cloud_client
        self._probe = probe
        self._validator = validator
        self._sink = status_sink or NullStatusSink()
        self._clock = clock
        self._lock = threading.Lock()
        self._active: DiscoverySession | None = None
        self.state = DiscoveryState.IDLE

    def cancel(self) -> None:
        with self._lock:
            session = self._active
        if session is not None:
            LOG.debug("discovery cancel requested")
            session.cancel()

    def discover(self, specific_identifier: str | None = None) -> list[ConfirmedDevice]:
        session = DiscoverySession(specific_identifier)
        with self._lock:
            previous, self._active = self._active, session
        if previous is not None:
            LOG.info("cancelling in-flight discovery")
            previous.cancel()
        try:
            return self._run(session)
        finally:
            session.cancel()
            with self._lock:
                if self._active is session:
                    self._active = None
                    self.state = DiscoveryState.IDLE

    def _run(self, session: DiscoverySession) -> list[ConfirmedDevice]:
        identifier = session.specific_identifier
        self._publish(DiscoveryState.CHECKING_PERMISSION)
        try:
            allowed = self._permission_gate.check_or_request_permission()
        except NetworkUnavailableError as exc:
            LOG.info("discovery aborted: network unavailable (%s)", exc)
            self._publish(DiscoveryState.FAILED, error=DiscoveryErrorKind.NETWORK_UNAVAILABLE.value)
            raise DiscoveryError(DiscoveryErrorKind.NETWORK_UNAVAILABLE, identifier) from exc
        if not allowed:
            self._publish(DiscoveryState.FAILED, error=DiscoveryErrorKind.PERMISSION_DENIED.value)
            raise DiscoveryError(DiscoveryErrorKind.PERMISSION_DENIED, identifier)
        if session.is_cancelled():
            LOG.debug("discovery superseded before strategies started")
            return []

        self._publish(DiscoveryState.RUNNING)
        strategies: list[tuple[str, Callable[[DiscoverySession], None]]] = [
            ("service", self._run_service),
            ("subnet", self._run_subnet),
        ]
        if self._ssdp_client is not None:
            strategies.append(("ssdp", self._run_ssdp))
        if identifier and self._cloud_client is not None:
            strategies.append(("cloud", self._run_cloud))

        LOG.debug(
            "discovery begin id=%s strategies=%s timeout_s=%.1f",
            identifier,
            ",".join(name for name, _ in strategies),
            self.overall_timeout_s,
        )
        pool = ThreadPoolExecutor(max_workers=len(strategies) + 1, thread_name_prefix="discovery")
        try:
            for name, fn in strategies:
                self._launch(pool, session, name, fn)
            reason = self._await_completion(session, pool)
        finally:
            session.cancel()
            # Workers notice the cancelled session at their next checkpoint.
            pool.shutdown(wait=False, cancel_futures=True)

        devices = session.devices()
        LOG.info("discovery finished reason=%s found=%d", reason, len(devices))
        if reason == "cancelled":
            return devices
        if devices:
            self._publish(DiscoveryState.COMPLETED, candidates=tuple(devices))
            return devices

        kind = self._empty_result_kind(session)
        self._publish(DiscoveryState.FAILED, error=kind.value)
        raise DiscoveryError(
            kind,
            identifier,
            strategies_completed=session.strategies_completed,
            strategies_total=session.strategies_total,
        )

    def _launch(
        self,
        pool: ThreadPoolExecutor,
        session: DiscoverySession,
        name: str,
        fn: Callable[[DiscoverySession], None],
    ) -> None:
        session.strategy_started()
        pool.submit(self._run_strategy, session, name, fn)

    def _await_completion(self, session: DiscoverySession, pool: ThreadPoolExecutor) -> str:
        start = self._clock()
        deadline = start + self.overall_timeout_s
        cloud_at = None
        if (
            session.specific_identifier is None
            and self._cloud_client is not None
            and self.cloud_fallback_delay_s is not None
        ):
            cloud_at = start + self.cloud_fallback_delay_s

        # A lone result is held for ``settle_s`` so a second bridge answering
        # right behind it still turns the run into a multi-device one.
        settle_at = None
        with session.cond:
            while True:
                if session.is_cancelled():
                    return "cancelled"
                found = session.found_count()
                if session.all_finished():
                    return "exhausted"
                now = self._clock()
                if found == 1:
                    if settle_at is None:
                        settle_at = now + self.settle_s
                    if now >= settle_at:
                        return "single_result"
                if now >= deadline:
                    return "timeout"
                if cloud_at is not None and now >= cloud_at:
                    cloud_at = None
                    if found == 0:
                        LOG.debug("no local result yet; starting cloud fallback")
                        self._launch(pool, session, "cloud", self._run_cloud)
                        continue
                wake_at = deadline if cloud_at is None else min(deadline, cloud_at)
                if found == 1:
                    wake_at = min(wake_at, settle_at)
                session.cond.wait(timeout=max(0.0, wake_at - now))

    def _run_strategy(
        self,
        session: DiscoverySession,
        name: str,
        fn: Callable[[DiscoverySession], None],
    ) -> None:
        try:
            fn(session)
        except NetworkUnavailableError as exc:
            LOG.debug("discovery strategy=%s network unavailable: %s", name, exc)
            session.strategy_finished(name, exc)
        except Exception as exc:
            LOG.warning("discovery strategy=%s failed: %s", name, exc)
            session.strategy_finished(name, exc)
        else:
            LOG.debug("discovery strategy=%s finished", name)
            session.strategy_finished(name)

    def _run_service(self, session: DiscoverySession) -> None:
        self._service_client.browse(session.is_cancelled, lambda d: self._offer(session, d))

    def _run_subnet(self, session: DiscoverySession) -> None:
        self._subnet_prober.scan(session.is_cancelled, on_found=lambda d: self._offer(session, d))

    def _run_ssdp(self, session: DiscoverySession) -> None:
        if self._ssdp_client is None:
            return
        self._ssdp_client.browse(session.is_cancelled, lambda d: self._offer(session, d))

    def _run_cloud(self, session: DiscoverySession) -> None:
        if self._cloud_client is None:
            return
        identifier = session.specific_identifier
        if identifier:
            candidates = self._cloud_client.lookup_by_identifier(identifier)
        else:
            candidates = self._cloud_client.lookup_all_known_devices()
        confirmed: list[ConfirmedDevice] = []
        for candidate in candidates:
            if session.is_cancelled():
                return
            device = self._confirm_candidate(candidate)
            if device is not None:
                confirmed.append(device)
        # The registry lists the whole household; hand it over as one batch.
        self._offer(session, *confirmed)

    def _confirm_candidate(self, candidate: Candidate) -> ConfirmedDevice | None:
        device = self._probe.probe(candidate.address)
        if device is None:
            LOG.debug(
                "cloud candidate unreachable locally addr=%s id=%s",
                candidate.address,
                candidate.raw_identifier,
            )
            return None
        if not self._validator.validate(device):
            return None
        return device

    def _offer(self, session: DiscoverySession, *devices: ConfirmedDevice) -> None:
        # Publishing under the session lock keeps progress updates ordered
        # before the final COMPLETED update.
        with session.cond:
            accepted = [d for d in devices if session.offer(d)]
            if not accepted:
                return
            for device in accepted:
                LOG.debug("discovery accepted addr=%s id=%s", device.address, device.normalized_id)
            self._publish(DiscoveryState.RUNNING, candidates=tuple(session.devices()))

    def _empty_result_kind(self, session: DiscoverySession) -> DiscoveryErrorKind:
        with session.cond:
            failures = list(session.failures.values())
            finished = session.strategies_completed >= session.strategies_total
        if (
            finished
            and failures
            and len(failures) == session.strategies_total
            and all(isinstance(f, NetworkUnavailableError) for f in failures)
        ):
            return DiscoveryErrorKind.NETWORK_UNAVAILABLE
        return DiscoveryErrorKind.NOT_FOUND

    def _publish(
        self,
        state: DiscoveryState,
        candidates: tuple[ConfirmedDevice, ...] = (),
        error: str | None = None,
    ) -> None:
        with self._lock:
            self.state = state
        self._sink.publish(StatusUpdate(discovery_state=state, candidates=candidates, error=error))
