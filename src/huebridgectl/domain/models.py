import re
import time
from dataclasses import dataclass, field
from enum import Enum

_ID_DELIMITERS = re.compile(r"[\s:\-.]")


def normalize_identifier(value: str | None) -> str:
    return _ID_DELIMITERS.sub("", value or "").upper()


class DiscoveryMethod(str, Enum):
    SERVICE = "service"
    SUBNET_SCAN = "subnetScan"
    CLOUD = "cloud"


class DiscoveryState(str, Enum):
    IDLE = "idle"
    CHECKING_PERMISSION = "checking_permission"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    SEARCHING = "searching"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    NEEDS_AUTHENTICATION = "needsAuthentication"
    FAILED = "failed"


@dataclass(frozen=True)
class Candidate:
    address: str
    port: int
    discovery_method: DiscoveryMethod
    raw_identifier: str | None = None
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ConfirmedDevice:
    normalized_id: str
    address: str
    port: int = 80
    display_name: str | None = None

    @classmethod
    def from_raw(
        cls,
        raw_identifier: str | None,
        address: str,
        port: int = 80,
        display_name: str | None = None,
    ) -> "ConfirmedDevice":
        return cls(
            normalized_id=normalize_identifier(raw_identifier),
            address=address,
            port=port,
            display_name=display_name,
        )

    def matches(self, identifier: str | None) -> bool:
        wanted = normalize_identifier(identifier)
        return bool(wanted) and wanted == self.normalized_id


@dataclass(frozen=True)
class CredentialRecord:
    device_id: str
    last_known_address: str
    secret_key: str | None = None
    port: int = 80
    display_name: str | None = None

    def to_device(self) -> ConfirmedDevice:
        return ConfirmedDevice(
            normalized_id=normalize_identifier(self.device_id),
            address=self.last_known_address,
            port=self.port,
            display_name=self.display_name,
        )


@dataclass(frozen=True)
class StatusUpdate:
    discovery_state: DiscoveryState | None = None
    connection_state: ConnectionState | None = None
    candidates: tuple[ConfirmedDevice, ...] = ()
    error: str | None = None
    setup_required: bool = False
