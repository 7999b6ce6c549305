import errno
import logging
import socket
import time
from typing import Iterable
from urllib.parse import urlparse

from huebridgectl.application.ports import (
    DeviceCallback,
    ProbePort,
    StopSignal,
    ValidatorPort,
)
from huebridgectl.domain.errors import NetworkUnavailableError
from huebridgectl.domain.models import ConfirmedDevice

_SSDP_ADDR = ("239.255.255.250", 1900)
SSDP_SEARCH_TARGETS = (
    "urn:schemas-upnp-org:device:basic:1",
    "upnp:rootdevice",
    "urn:schemas-upnp-org:device:IpBridge:1",
)
_BRIDGE_MARKERS = ("ipbridge", "hue-bridgeid")
_UNAVAILABLE_ERRNOS = {errno.ENETUNREACH, errno.ENETDOWN, errno.EADDRNOTAVAIL}
LOG = logging.getLogger(__name__)


def _parse_ssdp_headers(payload: bytes) -> dict[str, str]:
    text = payload.decode("utf-8", errors="ignore")
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    return headers


def _looks_like_bridge(headers: dict[str, str]) -> bool:
    if "hue-bridgeid" in headers:
        return True
    haystack = " ".join((headers.get("server", ""), headers.get("st", ""))).lower()
    return any(marker in haystack for marker in _BRIDGE_MARKERS)


def _search_message(target: str) -> bytes:
    return "\r\n".join(
        [
            "M-SEARCH * HTTP/1.1",
            "HOST: 239.255.255.250:1900",
            'MAN: "ssdp:discover"',
            "MX: 3",
            f"ST: {target}",
            "",
            "",
        ]
    ).encode("ascii")


def _iter_ssdp_responses(lifetime_s: float, should_stop: StopSignal) -> Iterable[dict[str, str]]:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP) as sock:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        try:
            for target in SSDP_SEARCH_TARGETS:
                sock.sendto(_search_message(target), _SSDP_ADDR)
        except OSError as exc:
            if exc.errno in _UNAVAILABLE_ERRNOS:
                raise NetworkUnavailableError(f"SSDP search not sent: {exc}") from exc
            raise
        LOG.debug("SSDP M-SEARCH sent targets=%d lifetime_s=%.2f", len(SSDP_SEARCH_TARGETS), lifetime_s)

        deadline = time.monotonic() + max(0.1, lifetime_s)
        while not should_stop():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LOG.debug("SSDP search finished (lifetime reached)")
                return
            sock.settimeout(max(0.05, min(remaining, 0.5)))
            try:
                payload, _ = sock.recvfrom(8192)
            except TimeoutError:
                continue
            except OSError as exc:
                LOG.debug("SSDP receive aborted err=%s", exc)
                return
            headers = _parse_ssdp_headers(payload)
            if headers:
                LOG.debug(
                    "SSDP response location=%s server=%s bridgeid=%s",
                    headers.get("location", ""),
                    headers.get("server", ""),
                    headers.get("hue-bridgeid", ""),
                )
                yield headers


class SsdpDiscoveryClient:
    """SSDP M-SEARCH strategy; every bridge that answers is confirmed and reported."""

    def __init__(self, probe: ProbePort, validator: ValidatorPort, lifetime_s: float = 6.0) -> None:
        self.lifetime_s = lifetime_s
        self._probe = probe
        self._validator = validator

    def browse(self, should_stop: StopSignal, on_found: DeviceCallback) -> None:
        seen: set[str] = set()
        for headers in _iter_ssdp_responses(self.lifetime_s, should_stop):
            if not _looks_like_bridge(headers):
                continue
            location = headers.get("location", "")
            host = urlparse(location).hostname
            if not host:
                LOG.debug("SSDP response ignored (missing host in location): %s", location)
                continue
            if host in seen:
                continue
            seen.add(host)
            device = self._confirm(host, headers.get("hue-bridgeid"))
            if device is None or should_stop():
                continue
            LOG.debug("SSDP bridge accepted addr=%s id=%s", host, device.normalized_id)
            on_found(device)

    def _confirm(self, host: str, bridge_id: str | None) -> ConfirmedDevice | None:
        device = self._probe.probe(host)
        if device is None and bridge_id:
            device = ConfirmedDevice.from_raw(bridge_id, address=host)
        if device is None:
            LOG.debug("SSDP reject addr=%s reason=probe_miss", host)
            return None
        if not self._validator.validate(device):
            LOG.debug("SSDP reject addr=%s reason=validation_failed", host)
            return None
        return device
