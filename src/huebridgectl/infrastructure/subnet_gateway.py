import ipaddress
import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable

from huebridgectl.application.ports import (
    DeviceCallback,
    ProbePort,
    StopSignal,
    ValidatorPort,
)
from huebridgectl.domain.errors import NetworkUnavailableError
from huebridgectl.domain.models import ConfirmedDevice

LOG = logging.getLogger(__name__)

# Low octets DHCP servers and users hand out most often.
PRIORITY_OCTETS: tuple[int, ...] = (
    *range(2, 11),
    *range(20, 26),
    *range(50, 56),
    *range(100, 106),
    *range(200, 206),
)
_ROUTE_PROBE_ADDR = ("10.255.255.255", 1)


def local_ipv4_address() -> str | None:
    """Address of the interface holding the default route, or None when offline."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            # connect() on UDP only selects a route; nothing is sent.
            sock.connect(_ROUTE_PROBE_ADDR)
            address = sock.getsockname()[0]
    except OSError as exc:
        LOG.debug("local address lookup failed err=%s", exc)
        return None
    if not address or address == "0.0.0.0" or address.startswith("127."):
        return None
    return address


def candidate_addresses(local_address: str) -> tuple[list[str], list[str]]:
    """Split the /24 around ``local_address`` into (priority, remaining) probe lists."""
    network = ipaddress.ip_interface(f"{local_address}/24").network
    base = network.network_address
    ordered = [str(base + 1)] + [str(base + octet) for octet in PRIORITY_OCTETS]
    priority = [a for a in dict.fromkeys(ordered) if a != local_address]
    skip = set(priority)
    skip.add(local_address)
    remaining = [str(h) for h in network.hosts() if str(h) not in skip]
    return priority, remaining


class SubnetProber:
    def __init__(
        self,
        probe: ProbePort,
        validator: ValidatorPort,
        max_workers: int = 8,
        priority_attempts: int = 2,
        retry_delay_s: float = 0.5,
        local_address: Callable[[], str | None] = local_ipv4_address,
    ) -> None:
        self.max_workers = max(1, int(max_workers))
        self.priority_attempts = max(1, int(priority_attempts))
        self.retry_delay_s = retry_delay_s
        self._probe = probe
        self._validator = validator
        self._local_address = local_address

    def scan(
        self, should_stop: StopSignal, on_found: DeviceCallback | None = None
    ) -> set[ConfirmedDevice]:
        local = self._local_address()
        if local is None:
            raise NetworkUnavailableError("no active IPv4 interface for subnet scan")
        priority, remaining = candidate_addresses(local)
        LOG.debug(
            "subnet scan begin local=%s priority=%d remaining=%d workers=%d",
            local,
            len(priority),
            len(remaining),
            self.max_workers,
        )

        found: set[ConfirmedDevice] = set()
        found_lock = threading.Lock()
        self._run_pass(priority, self.priority_attempts, should_stop, on_found, found, found_lock)
        if not found and not should_stop():
            LOG.debug("subnet scan priority pass empty; scanning full range")
            self._run_pass(remaining, 1, should_stop, on_found, found, found_lock)

        with found_lock:
            result = set(found)
        LOG.debug("subnet scan done found=%d stopped=%s", len(result), should_stop())
        return result

    def _run_pass(
        self,
        addresses: Iterable[str],
        attempts: int,
        should_stop: StopSignal,
        on_found: DeviceCallback | None,
        found: set[ConfirmedDevice],
        found_lock: threading.Lock,
    ) -> None:
        pending = iter(addresses)
        pending_lock = threading.Lock()

        def worker() -> None:
            while not should_stop():
                with pending_lock:
                    address = next(pending, None)
                if address is None:
                    return
                device = self._probe_address(address, attempts, should_stop)
                if device is None:
                    continue
                with found_lock:
                    if should_stop():
                        LOG.debug("subnet scan drop late result addr=%s", address)
                        return
                    found.add(device)
                LOG.debug("subnet scan hit addr=%s id=%s", address, device.normalized_id)
                if on_found is not None:
                    on_found(device)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(worker) for _ in range(self.max_workers)]
            for future in futures:
                future.result()

    def _probe_address(
        self, address: str, attempts: int, should_stop: StopSignal
    ) -> ConfirmedDevice | None:
        for attempt in range(attempts):
            if attempt:
                time.sleep(self.retry_delay_s)
                if should_stop():
                    return None
            device = self._probe.probe(address)
            if device is None:
                continue
            if self._validator.validate(device):
                return device
            LOG.debug("subnet scan reject addr=%s reason=validation_failed", address)
            return None
        return None
