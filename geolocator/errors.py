from __future__ import annotations


class LocatorError(RuntimeError):
    """Base class for lookup failures surfaced to callers."""


class ConfigurationError(LocatorError):
    """Raised when the lookup key cannot be loaded."""


class KeyRejected(LocatorError):
    """Raised when the remote service reports the lookup key as invalid."""


class ProtocolError(LocatorError):
    """Raised when a response body does not have the expected shape."""


class TransportError(LocatorError):
    """Raised when the request could not be carried to the service."""


class RequestTimedOut(LocatorError):
    """Raised when no response arrived before the request deadline."""
