from .dedup import Deduplicator, merge
from .errors import (
    ConnectionErrorKind,
    ConnectionFailure,
    DiscoveryError,
    DiscoveryErrorKind,
    InvalidTransitionError,
    NetworkUnavailableError,
)
from .models import (
    Candidate,
    ConfirmedDevice,
    ConnectionState,
    CredentialRecord,
    DiscoveryMethod,
    DiscoveryState,
    StatusUpdate,
    normalize_identifier,
)
from .policy import RetryPolicy

__all__ = [
    "Candidate",
    "ConfirmedDevice",
    "ConnectionErrorKind",
    "ConnectionFailure",
    "ConnectionState",
    "CredentialRecord",
    "Deduplicator",
    "DiscoveryError",
    "DiscoveryErrorKind",
    "DiscoveryMethod",
    "DiscoveryState",
    "InvalidTransitionError",
    "NetworkUnavailableError",
    "RetryPolicy",
    "StatusUpdate",
    "merge",
    "normalize_identifier",
]
