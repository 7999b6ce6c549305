from enum import Enum


class DiscoveryErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    NETWORK_UNAVAILABLE = "network_unavailable"


class ConnectionErrorKind(str, Enum):
    HANDSHAKE_FAILED = "handshake_failed"
    AUTHENTICATION_REQUIRED = "authentication_required"
    UNREACHABLE = "unreachable"
    NETWORK_UNAVAILABLE = "network_unavailable"
    RETRIES_EXHAUSTED = "retries_exhausted"


class DiscoveryError(Exception):
    def __init__(
        self,
        kind: DiscoveryErrorKind,
        identifier: str | None = None,
        strategies_completed: int = 0,
        strategies_total: int = 0,
    ) -> None:
        self.kind = kind
        self.identifier = identifier
        self.strategies_completed = strategies_completed
        self.strategies_total = strategies_total
        super().__init__(self._describe())

    @property
    def retryable(self) -> bool:
        return self.kind != DiscoveryErrorKind.PERMISSION_DENIED

    def _describe(self) -> str:
        if self.kind == DiscoveryErrorKind.PERMISSION_DENIED:
            return "Local network access was denied; open settings to allow it."
        if self.kind == DiscoveryErrorKind.NETWORK_UNAVAILABLE:
            return "No active network interface."
        target = f" with id {self.identifier}" if self.identifier else ""
        return (
            f"No bridge{target} found "
            f"({self.strategies_completed}/{self.strategies_total} strategies completed)."
        )


class ConnectionFailure(Exception):
    def __init__(self, kind: ConnectionErrorKind, address: str | None = None) -> None:
        self.kind = kind
        self.address = address
        where = f" at {address}" if address else ""
        super().__init__(f"{kind.value}{where}")


class NetworkUnavailableError(OSError):
    """No usable network interface or route."""


class InvalidTransitionError(RuntimeError):
    pass
