"""Environment-driven settings.

Values come from the process environment (with a ``.env`` file loaded
first) or from an explicit mapping, which is what the tests use.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from .admission import AdmissionPolicy
from .crypto_utils import is_public_key_hex
from .errors import ConfigError
from .signer import KeySigner
from .storage import DEFAULT_DATABASE_URL, ReplacePolicy

LOGGER = logging.getLogger(__name__)

DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 8000


@dataclass(frozen=True)
class Settings:
    signer: Optional[KeySigner]
    relays: Tuple[str, ...] = ()
    whitelist: Tuple[str, ...] = ()
    database_url: str = DEFAULT_DATABASE_URL
    replace_policy: ReplacePolicy = ReplacePolicy.FIRST_SEEN
    log_level: str = "INFO"
    log_file: Optional[str] = None
    api_host: str = DEFAULT_API_HOST
    api_port: int = DEFAULT_API_PORT
    secrets: Tuple[str, ...] = field(default=(), repr=False)

    def admission_policy(self) -> AdmissionPolicy:
        self_key = self.signer.identity() if self.signer else None
        return AdmissionPolicy.build(self.whitelist, self_key)


def _get(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _split(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _load_signer(environ: Mapping[str, str]) -> Tuple[Optional[KeySigner], Tuple[str, ...]]:
    private_hex = _get(environ, "NOSTR_PRIVKEY")
    if private_hex:
        try:
            return KeySigner.from_hex(private_hex), (private_hex,)
        except ValueError as exc:
            raise ConfigError(f"NOSTR_PRIVKEY is invalid: {exc}") from exc

    keystore = _get(environ, "NOSTR_KEYSTORE")
    if keystore:
        password = environ.get("NOSTR_KEYSTORE_PASSWORD")
        if not password:
            raise ConfigError("NOSTR_KEYSTORE_PASSWORD is required with NOSTR_KEYSTORE")
        try:
            signer = KeySigner.load_from_file(keystore, password)
        except ValueError as exc:
            raise ConfigError(f"cannot open keystore {keystore}: {exc}") from exc
        return signer, (password, signer.private_key_hex)

    return None, ()


def load_settings(environ: Optional[Mapping[str, str]] = None, *, require_signer: bool = True) -> Settings:
    """Build :class:`Settings`; raises :class:`ConfigError` on missing or bad values.

    With ``require_signer=False`` the key material and relay list become
    optional, for commands that only touch the database.
    """

    if environ is None:
        load_dotenv()
        environ = os.environ

    signer, secrets = _load_signer(environ)
    if signer is None and require_signer:
        raise ConfigError("no signer configured: set NOSTR_PRIVKEY or NOSTR_KEYSTORE")

    relays = _split(_get(environ, "NOSTR_RELAYS"))
    if not relays and require_signer:
        raise ConfigError("NOSTR_RELAYS must list at least one relay")

    whitelist = tuple(key.lower() for key in _split(_get(environ, "PUBKEY_WHITELIST")))
    for key in whitelist:
        if not is_public_key_hex(key):
            raise ConfigError(f"PUBKEY_WHITELIST entry {key!r} is not a valid public key")

    policy_name = (_get(environ, "REPLACE_POLICY") or ReplacePolicy.FIRST_SEEN.value).lower()
    try:
        replace_policy = ReplacePolicy(policy_name)
    except ValueError as exc:
        raise ConfigError(f"REPLACE_POLICY must be one of first_seen, newest; got {policy_name!r}") from exc

    log_level = (_get(environ, "LOG_LEVEL") or "INFO").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"LOG_LEVEL {log_level!r} is not a logging level")

    port_raw = _get(environ, "API_PORT")
    try:
        api_port = int(port_raw) if port_raw else DEFAULT_API_PORT
    except ValueError as exc:
        raise ConfigError(f"API_PORT must be an integer, got {port_raw!r}") from exc

    settings = Settings(
        signer=signer,
        relays=relays,
        whitelist=whitelist,
        database_url=_get(environ, "DATABASE_URL") or DEFAULT_DATABASE_URL,
        replace_policy=replace_policy,
        log_level=log_level,
        log_file=_get(environ, "LOG_FILE"),
        api_host=_get(environ, "API_HOST") or DEFAULT_API_HOST,
        api_port=api_port,
        secrets=secrets,
    )
    LOGGER.debug("Loaded settings for %d relays and %d whitelisted keys", len(relays), len(whitelist))
    return settings


__all__ = ["Settings", "load_settings"]
