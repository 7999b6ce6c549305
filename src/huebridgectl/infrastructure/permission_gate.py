import errno
import logging
import socket
import time
import uuid
from typing import Callable

from zeroconf import ServiceInfo, Zeroconf

from huebridgectl.domain.errors import NetworkUnavailableError
from huebridgectl.infrastructure.subnet_gateway import local_ipv4_address

LOG = logging.getLogger(__name__)

PROBE_SERVICE_TYPE = "_hbctl-probe._tcp.local."
_DENIED_ERRNOS = {errno.EACCES, errno.EPERM}
_UNAVAILABLE_ERRNOS = {errno.ENETUNREACH, errno.ENETDOWN, errno.EADDRNOTAVAIL}


class PermissionGate:
    """One-shot local-network access check.

    Advertises a throwaway service over mDNS and resolves it back. A resolved
    record means multicast works; a permission error means the platform refused.
    """

    def __init__(
        self,
        timeout_s: float = 30.0,
        resolve_interval_ms: int = 3000,
        local_address: Callable[[], str | None] = local_ipv4_address,
    ) -> None:
        self.timeout_s = timeout_s
        self.resolve_interval_ms = resolve_interval_ms
        self._local_address = local_address

    def check_or_request_permission(self) -> bool:
        address = self._local_address()
        if address is None:
            raise NetworkUnavailableError("no active network interface")

        name = f"probe-{uuid.uuid4().hex[:8]}.{PROBE_SERVICE_TYPE}"
        info = ServiceInfo(
            PROBE_SERVICE_TYPE,
            name,
            addresses=[socket.inet_aton(address)],
            port=9,
            properties={"purpose": "permission-check"},
        )
        deadline = time.monotonic() + self.timeout_s
        zc = None
        registered = False
        try:
            zc = Zeroconf()
            zc.register_service(info)
            registered = True
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    LOG.debug("permission check timed out; treating as denied")
                    return False
                timeout_ms = int(min(self.resolve_interval_ms, remaining * 1000))
                resolved = zc.get_service_info(PROBE_SERVICE_TYPE, name, timeout=max(1, timeout_ms))
                if resolved is not None:
                    LOG.debug("permission check granted service=%s", name)
                    return True
        except OSError as exc:
            if exc.errno in _DENIED_ERRNOS:
                LOG.info("local network access denied: %s", exc)
                return False
            if exc.errno in _UNAVAILABLE_ERRNOS:
                raise NetworkUnavailableError(str(exc)) from exc
            raise
        finally:
            if zc is not None:
                if registered:
                    try:
                        zc.unregister_service(info)
                    except OSError as exc:
                        LOG.debug("permission probe unregister failed err=%s", exc)
                zc.close()
