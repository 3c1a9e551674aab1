"""Relay transports."""

from .relay import MemoryRelay, RelaySubscription

__all__ = ["MemoryRelay", "RelaySubscription"]
