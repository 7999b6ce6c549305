import logging
import time
from typing import Any, Callable

import httpx

from huebridgectl.domain.models import Candidate, DiscoveryMethod, normalize_identifier

LOG = logging.getLogger(__name__)

DEFAULT_REGISTRY_URL = "https://discovery.meethue.com/"
_RETRYABLE_STATUS = {408}


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in _RETRYABLE_STATUS
    return False


def parse_registry_entries(payload: Any) -> list[Candidate]:
    if not isinstance(payload, list):
        raise ValueError(f"Unexpected registry response: {payload!r}")
    candidates: list[Candidate] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        address = entry.get("internalipaddress") or entry.get("address")
        identifier = entry.get("id") or entry.get("identifier")
        if not isinstance(address, str) or not address:
            LOG.debug("cloud entry ignored reason=no_address entry=%s", entry)
            continue
        port = entry.get("port")
        candidates.append(
            Candidate(
                address=address,
                port=port if isinstance(port, int) and not isinstance(port, bool) else 443,
                discovery_method=DiscoveryMethod.CLOUD,
                raw_identifier=identifier if isinstance(identifier, str) else None,
            )
        )
    return candidates


class CloudFallbackClient:
    def __init__(
        self,
        registry_url: str = DEFAULT_REGISTRY_URL,
        timeout_s: float = 8.0,
        max_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry_url = registry_url
        self.timeout_s = timeout_s
        self.max_attempts = max(1, int(max_attempts))
        self._sleep = sleep

    def lookup_all_known_devices(self) -> list[Candidate]:
        return parse_registry_entries(self._fetch(params=None))

    def lookup_by_identifier(self, identifier: str) -> list[Candidate]:
        wanted = normalize_identifier(identifier)
        entries = parse_registry_entries(self._fetch(params={"id": identifier}))
        matched = [c for c in entries if normalize_identifier(c.raw_identifier) == wanted]
        LOG.debug(
            "cloud lookup id=%s entries=%d matched=%d", wanted, len(entries), len(matched)
        )
        return matched

    def _fetch(self, params: dict[str, str] | None) -> Any:
        attempt = 1
        while True:
            LOG.debug("cloud registry request url=%s attempt=%d", self.registry_url, attempt)
            try:
                with httpx.Client(timeout=self.timeout_s) as client:
                    response = client.get(
                        self.registry_url,
                        params=params,
                        headers={"Accept": "application/json"},
                    )
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as exc:
                if attempt >= self.max_attempts or not _is_retryable(exc):
                    raise
                LOG.debug("cloud registry retry attempt=%d err=%s", attempt, exc)
            self._sleep(float(attempt))
            attempt += 1
