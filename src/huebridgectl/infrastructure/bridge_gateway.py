import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from huebridgectl.application.ports import HandshakeOutcome
from huebridgectl.domain.models import ConfirmedDevice, normalize_identifier

LOG = logging.getLogger(__name__)

_STATUS_PATH = "/api/0/config"
_DESCRIPTION_PATH = "/description.xml"
_MODEL_MARKERS = ("bsb", "hue")
_VENDOR_MARKERS = (
    "philips hue",
    "royal philips",
    "modelname>philips hue bridge",
    "ipbridge",
    "signify",
)
_SERIAL_RE = re.compile(r"<serialNumber>\s*([^<]+?)\s*</serialNumber>", re.IGNORECASE)
_UDN_RE = re.compile(r"<UDN>\s*uuid:([^<]+?)\s*</UDN>", re.IGNORECASE)
_FRIENDLY_NAME_RE = re.compile(r"<friendlyName>\s*([^<]+?)\s*</friendlyName>", re.IGNORECASE)
_DEFAULT_NAME = "Philips Hue Bridge"


def is_known_model(model_id: str | None) -> bool:
    if model_id is None:
        return True
    lowered = model_id.lower()
    return any(marker in lowered for marker in _MODEL_MARKERS)


def is_bridge_description(xml_text: str) -> bool:
    lowered = xml_text.lower()
    return any(marker in lowered for marker in _VENDOR_MARKERS)


def extract_bridge_id(xml_text: str) -> str | None:
    serial = _SERIAL_RE.search(xml_text)
    if serial:
        return serial.group(1)
    udn = _UDN_RE.search(xml_text)
    if udn and len(udn.group(1)) >= 12:
        return udn.group(1)[-12:]
    return None


def device_from_status(address: str, port: int, data: Any) -> ConfirmedDevice | None:
    if not isinstance(data, dict):
        return None
    bridge_id = data.get("bridgeid")
    if not isinstance(bridge_id, str) or not bridge_id.strip():
        return None
    model_id = data.get("modelid")
    if not is_known_model(model_id if isinstance(model_id, str) else None):
        LOG.debug("probe reject addr=%s reason=unknown_model model=%s", address, model_id)
        return None
    name = data.get("name")
    return ConfirmedDevice.from_raw(
        bridge_id,
        address=address,
        port=port,
        display_name=name if isinstance(name, str) and name else _DEFAULT_NAME,
    )


@dataclass
class CandidateProbe:
    timeout_s: float = 2.0
    port: int = 80

    def probe(self, address: str, timeout_s: float | None = None) -> ConfirmedDevice | None:
        timeout = self.timeout_s if timeout_s is None else timeout_s
        url = f"http://{address}:{self.port}{_STATUS_PATH}"
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.get(url, headers={"Accept": "application/json"})
            if response.status_code != 200:
                LOG.debug("probe miss addr=%s status=%s", address, response.status_code)
                return None
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOG.debug("probe miss addr=%s err=%s", address, exc)
            return None
        return device_from_status(address, self.port, data)


@dataclass
class BridgeValidator:
    timeout_s: float = 3.0

    def validate(self, device: ConfirmedDevice) -> bool:
        return self.describe(device) is not None

    def describe(self, device: ConfirmedDevice) -> ConfirmedDevice | None:
        """Fetch description.xml and return the device with gaps filled, or None."""
        url = f"http://{device.address}:{device.port}{_DESCRIPTION_PATH}"
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                response = client.get(url, headers={"Accept": "application/xml"})
            response.raise_for_status()
            xml_text = response.text
        except httpx.HTTPError as exc:
            LOG.debug("validator reject addr=%s err=%s", device.address, exc)
            return None

        if not is_bridge_description(xml_text):
            LOG.debug("validator reject addr=%s reason=vendor_marker_not_found", device.address)
            return None

        normalized_id = device.normalized_id or normalize_identifier(extract_bridge_id(xml_text))
        display_name = device.display_name
        if not display_name:
            friendly = _FRIENDLY_NAME_RE.search(xml_text)
            display_name = friendly.group(1) if friendly else _DEFAULT_NAME
        LOG.debug("validator accept addr=%s id=%s", device.address, normalized_id)
        return ConfirmedDevice(
            normalized_id=normalized_id,
            address=device.address,
            port=device.port,
            display_name=display_name,
        )


@dataclass
class BridgeHttpGateway:
    timeout_s: float = 5.0
    health_timeout_s: float = 5.0

    async def _aget(self, url: str, timeout_s: float, verify: bool = True) -> Any:
        async with httpx.AsyncClient(timeout=timeout_s, verify=verify) as client:
            r = await client.get(url)
        r.raise_for_status()
        return r.json()

    async def handshake_async(
        self, device: ConfirmedDevice, secret_key: str | None
    ) -> tuple[HandshakeOutcome, ConfirmedDevice]:
        if not secret_key:
            return HandshakeOutcome.AUTH_REQUIRED, device
        url = f"https://{device.address}/api/{secret_key}/config"
        try:
            data = await self._aget(url, self.timeout_s, verify=False)
        except (httpx.HTTPError, ValueError) as exc:
            LOG.debug("handshake failed addr=%s err=%s", device.address, exc)
            return HandshakeOutcome.FAILED, device

        if isinstance(data, list):
            if _is_unauthorized(data):
                return HandshakeOutcome.AUTH_REQUIRED, device
            return HandshakeOutcome.FAILED, device
        if not isinstance(data, dict):
            return HandshakeOutcome.FAILED, device

        reported = normalize_identifier(data.get("bridgeid"))
        if device.normalized_id and reported and reported != device.normalized_id:
            LOG.debug(
                "handshake identity mismatch addr=%s expected=%s reported=%s",
                device.address,
                device.normalized_id,
                reported,
            )
            return HandshakeOutcome.FAILED, device

        refreshed = ConfirmedDevice(
            normalized_id=device.normalized_id or reported,
            address=device.address,
            port=device.port,
            display_name=data.get("name") or device.display_name,
        )
        if "ipaddress" not in data and "zigbeechannel" not in data:
            return HandshakeOutcome.AUTH_REQUIRED, refreshed
        return HandshakeOutcome.CONNECTED, refreshed

    async def health_check_async(self, device: ConfirmedDevice) -> bool:
        url = f"http://{device.address}:{device.port}{_STATUS_PATH}"
        try:
            async with httpx.AsyncClient(timeout=self.health_timeout_s) as client:
                await client.get(url)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            LOG.debug("health probe failed addr=%s err=%s", device.address, exc)
            return False
        except httpx.HTTPError as exc:
            LOG.debug("health probe inconclusive addr=%s err=%s", device.address, exc)
        return True


def _is_unauthorized(payload: list) -> bool:
    for item in payload:
        error = item.get("error") if isinstance(item, dict) else None
        if isinstance(error, dict) and error.get("type") == 1:
            return True
    return False
