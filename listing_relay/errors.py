"""Exception taxonomy shared by the protocol and persistence layers."""

from __future__ import annotations


class ListingRelayError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ListingRelayError):
    """Required start-up material is missing or malformed."""


class TransportError(ListingRelayError):
    """Relay-level connect, publish or subscribe failure."""


class DecryptionError(ListingRelayError):
    """Ciphertext could not be authenticated or decrypted with the given key."""


class ValidationError(ListingRelayError):
    """A required tag or structural element of an event is missing or unparsable."""


class ConstraintError(ListingRelayError):
    """A uniqueness constraint rejected a write; another event claimed the row first."""


class AuthorizationError(ListingRelayError):
    """The event author is not admitted by the policy."""


class MissingSignerError(ListingRelayError):
    """An operation needed local key material and none was configured."""


class UnknownMethodError(ListingRelayError):
    """An RPC request named a method that has no registered handler."""


class RequestTimeout(ListingRelayError, TimeoutError):
    """No correlated RPC response arrived in time."""


__all__ = [
    "AuthorizationError",
    "ConfigError",
    "ConstraintError",
    "DecryptionError",
    "ListingRelayError",
    "MissingSignerError",
    "RequestTimeout",
    "TransportError",
    "UnknownMethodError",
    "ValidationError",
]
