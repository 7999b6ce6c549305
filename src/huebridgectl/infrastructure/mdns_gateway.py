import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Dict

from zeroconf import ServiceBrowser, ServiceListener, Zeroconf

from huebridgectl.application.ports import (
    DeviceCallback,
    ProbePort,
    StopSignal,
    ValidatorPort,
)
from huebridgectl.domain.models import ConfirmedDevice

LOG = logging.getLogger(__name__)

HUE_SERVICE_TYPE = "_hue._tcp.local."
_RESOLVE_TIMEOUT_MS = 2000


@dataclass(frozen=True)
class MdnsAnnouncement:
    name: str
    address: str
    port: int
    bridge_id: str | None = None


def _instance_name(name: str, service_type: str) -> str:
    suffix = "." + service_type
    return name[: -len(suffix)] if name.endswith(suffix) else name


class _Listener(ServiceListener):
    def __init__(self, should_stop: StopSignal) -> None:
        self._should_stop = should_stop
        self.announcements: "queue.Queue[MdnsAnnouncement]" = queue.Queue()

    def add_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        LOG.debug("mDNS add_service type=%s name=%s", service_type, name)
        if self._should_stop():
            LOG.debug("mDNS ignore service name=%s reason=stopped", name)
            return
        info = zeroconf.get_service_info(service_type, name, timeout=_RESOLVE_TIMEOUT_MS)
        if not info or not info.addresses:
            LOG.debug("mDNS ignore service name=%s reason=no_info_or_addresses", name)
            return

        addr = None
        for a in info.addresses:
            if len(a) == 4:
                addr = ".".join(str(b) for b in a)
                break
        if addr is None:
            LOG.debug("mDNS ignore service name=%s reason=no_ipv4_address", name)
            return

        props: Dict[str, str] = {}
        for k, v in (info.properties or {}).items():
            if k is None or v is None:
                continue
            try:
                props[k.decode("utf-8").lower()] = v.decode("utf-8")
            except UnicodeDecodeError:
                LOG.debug("mDNS skip undecodable TXT key name=%s", name)

        announcement = MdnsAnnouncement(
            name=_instance_name(name, service_type),
            address=addr,
            port=info.port or 443,
            bridge_id=props.get("bridgeid"),
        )
        LOG.debug(
            "mDNS resolved name=%s addr=%s port=%s bridgeid=%s",
            name,
            addr,
            announcement.port,
            announcement.bridge_id,
        )
        self.announcements.put(announcement)

    def update_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        return None

    def remove_service(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        return None


class _OnceDelivery:
    def __init__(self, callback: DeviceCallback, should_stop: StopSignal) -> None:
        self._callback = callback
        self._should_stop = should_stop
        self._lock = threading.Lock()
        self.delivered = False

    def __call__(self, device: ConfirmedDevice) -> bool:
        with self._lock:
            if self.delivered or self._should_stop():
                return False
            self.delivered = True
        self._callback(device)
        return True


class ServiceDiscoveryClient:
    def __init__(
        self,
        probe: ProbePort,
        validator: ValidatorPort,
        service_type: str = HUE_SERVICE_TYPE,
        lifetime_s: float = 6.0,
        poll_interval_s: float = 0.25,
    ) -> None:
        self.service_type = service_type
        self.lifetime_s = lifetime_s
        self.poll_interval_s = poll_interval_s
        self._probe = probe
        self._validator = validator

    def browse(self, should_stop: StopSignal, on_found: DeviceCallback) -> None:
        LOG.debug(
            "mDNS browse begin service_type=%s lifetime_s=%.2f",
            self.service_type,
            self.lifetime_s,
        )
        deliver = _OnceDelivery(on_found, should_stop)
        zc = Zeroconf()
        browser = None
        try:
            listener = _Listener(should_stop)
            browser = ServiceBrowser(zc, self.service_type, listener)
            deadline = time.monotonic() + self.lifetime_s
            while not should_stop():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    LOG.debug("mDNS browse finished (lifetime reached)")
                    return
                try:
                    announcement = listener.announcements.get(
                        timeout=max(0.01, min(self.poll_interval_s, remaining))
                    )
                except queue.Empty:
                    continue
                if should_stop():
                    break
                device = self._confirm(announcement)
                if device is not None and deliver(device):
                    LOG.debug("mDNS browse done addr=%s id=%s", device.address, device.normalized_id)
                    return
            LOG.debug("mDNS browse stopped by caller")
        finally:
            if browser is not None:
                cancel = getattr(browser, "cancel", None)
                if callable(cancel):
                    cancel()
            zc.close()

    def _confirm(self, announcement: MdnsAnnouncement) -> ConfirmedDevice | None:
        device = self._probe.probe(announcement.address)
        if device is None and announcement.bridge_id:
            device = ConfirmedDevice.from_raw(
                announcement.bridge_id,
                address=announcement.address,
                display_name=announcement.name,
            )
        if device is None:
            LOG.debug("mDNS reject addr=%s reason=probe_miss", announcement.address)
            return None
        if not self._validator.validate(device):
            LOG.debug("mDNS reject addr=%s reason=validation_failed", announcement.address)
            return None
        return device
