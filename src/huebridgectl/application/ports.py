from enum import Enum
from typing import Callable, Protocol

from huebridgectl.domain.models import (
    Candidate,
    ConfirmedDevice,
    CredentialRecord,
    StatusUpdate,
)

StopSignal = Callable[[], bool]
DeviceCallback = Callable[[ConfirmedDevice], None]


class HandshakeOutcome(str, Enum):
    CONNECTED = "connected"
    AUTH_REQUIRED = "auth_required"
    FAILED = "failed"


class ProbePort(Protocol):
    def probe(self, address: str, timeout_s: float | None = None) -> ConfirmedDevice | None:
        ...


class ValidatorPort(Protocol):
    def validate(self, device: ConfirmedDevice) -> bool:
        ...


class PermissionPort(Protocol):
    def check_or_request_permission(self) -> bool:
        ...


class SubnetScanPort(Protocol):
    def scan(
        self, should_stop: StopSignal, on_found: DeviceCallback | None = None
    ) -> set[ConfirmedDevice]:
        ...


class ServiceBrowsePort(Protocol):
    def browse(self, should_stop: StopSignal, on_found: DeviceCallback) -> None:
        ...


class CloudLookupPort(Protocol):
    def lookup_by_identifier(self, identifier: str) -> list[Candidate]:
        ...

    def lookup_all_known_devices(self) -> list[Candidate]:
        ...


class DiscoveryPort(Protocol):
    def discover(self, specific_identifier: str | None = None) -> list[ConfirmedDevice]:
        ...

    def cancel(self) -> None:
        ...


class BridgeGateway(Protocol):
    async def handshake_async(
        self, device: ConfirmedDevice, secret_key: str | None
    ) -> tuple[HandshakeOutcome, ConfirmedDevice]:
        ...

    async def health_check_async(self, device: ConfirmedDevice) -> bool:
        ...


class CredentialStore(Protocol):
    def get(self) -> CredentialRecord | None:
        ...

    def set(self, record: CredentialRecord) -> None:
        ...

    def clear(self) -> None:
        ...


class StatusSink(Protocol):
    def publish(self, update: StatusUpdate) -> None:
        ...


class ReachabilityPort(Protocol):
    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        ...


class NullStatusSink:
    def publish(self, update: StatusUpdate) -> None:
        return None
