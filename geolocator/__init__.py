from .errors import (
    ConfigurationError,
    KeyRejected,
    LocatorError,
    ProtocolError,
    RequestTimedOut,
    TransportError,
)
from .lifecycle import AttemptStatus, ErrorKind, OutcomeKind, RequestLifecycleManager, RequestOutcome
from .provider import OnlineLocator, build_online_locator
from .scheduler import QueryDecision, QueryScheduler
from .snapshot import CarrierInfo, CellObservation, EnvironmentSnapshot, WifiObservation, build_snapshot

__all__ = [
    "AttemptStatus",
    "CarrierInfo",
    "CellObservation",
    "ConfigurationError",
    "EnvironmentSnapshot",
    "ErrorKind",
    "KeyRejected",
    "LocatorError",
    "OnlineLocator",
    "OutcomeKind",
    "ProtocolError",
    "QueryDecision",
    "QueryScheduler",
    "RequestLifecycleManager",
    "RequestOutcome",
    "RequestTimedOut",
    "TransportError",
    "WifiObservation",
    "build_online_locator",
    "build_snapshot",
]
