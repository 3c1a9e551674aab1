"""Publisher whitelist shared by the ingestor and the deletion handler."""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Tuple

from .errors import AuthorizationError


def _normalise(key: str) -> str:
    return key.strip().lower()


@dataclass(frozen=True)
class AdmissionPolicy:
    """Immutable set of trusted publisher keys.

    The policy is built once at start-up from the configured operator keys
    plus the local signer's own key.  Reloading means building a new
    instance and handing it to new consumers.
    """

    trusted: FrozenSet[str] = frozenset()

    @classmethod
    def build(cls, operator_keys: Iterable[str] = (), self_key: Optional[str] = None) -> "AdmissionPolicy":
        keys = {_normalise(key) for key in operator_keys if isinstance(key, str) and key.strip()}
        if self_key:
            keys.add(_normalise(self_key))
        return cls(frozenset(keys))

    @property
    def keys(self) -> Tuple[str, ...]:
        return tuple(sorted(self.trusted))

    def is_trusted(self, pubkey: object) -> bool:
        if not isinstance(pubkey, str):
            return False
        return _normalise(pubkey) in self.trusted

    def authorize(self, pubkey: object) -> None:
        """Raise :class:`AuthorizationError` unless *pubkey* is trusted."""

        if not self.is_trusted(pubkey):
            raise AuthorizationError(f"publisher {pubkey!r} is not admitted")

    def __len__(self) -> int:
        return len(self.trusted)


__all__ = ["AdmissionPolicy"]
