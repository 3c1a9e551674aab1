"""Listing ingestion, tombstones, encrypted RPC and gift-wrapped messages over Nostr relays."""

from .admission import AdmissionPolicy
from .errors import (
    ConfigError,
    DecryptionError,
    ListingRelayError,
    RequestTimeout,
    TransportError,
    ValidationError,
)
from .events import Event, Filter
from .signer import KeySigner

__version__ = "1.0.0"

__all__ = [
    "AdmissionPolicy",
    "ConfigError",
    "DecryptionError",
    "Event",
    "Filter",
    "KeySigner",
    "ListingRelayError",
    "RequestTimeout",
    "TransportError",
    "ValidationError",
]
