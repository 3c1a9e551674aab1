"""Local key material: identity, event signing and per-peer encryption."""

from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass, replace
from functools import cached_property

from nacl import pwhash, secret, utils
from nacl.exceptions import CryptoError

from . import crypto_utils, nip44
from .events import Event


KEYSTORE_VERSION = 1


def _derive_keystore_key(password: str, salt: bytes, opslimit: int, memlimit: int) -> bytes:
    return pwhash.argon2i.kdf(
        secret.SecretBox.KEY_SIZE,
        password.encode("utf-8"),
        salt,
        opslimit=opslimit,
        memlimit=memlimit,
    )


@dataclass(frozen=True)
class KeySigner:
    """Signer backed by a private key held in memory."""

    private_key: int

    def __post_init__(self) -> None:
        if not crypto_utils.is_valid_scalar(self.private_key):
            raise ValueError("private key must be a scalar in the curve order")

    def __repr__(self) -> str:
        return f"KeySigner(pubkey={self.identity()!r})"

    @classmethod
    def generate(cls) -> "KeySigner":
        private_key, _ = crypto_utils.generate_keypair()
        return cls(private_key)

    @classmethod
    def from_hex(cls, private_key_hex: str) -> "KeySigner":
        try:
            data = bytes.fromhex(private_key_hex.strip())
        except ValueError as exc:
            raise ValueError("private key is not valid hex") from exc
        if len(data) != 32:
            raise ValueError("private key must be 32 bytes")
        return cls(crypto_utils.bytes_to_int(data))

    @property
    def private_key_hex(self) -> str:
        return crypto_utils.int_to_bytes(self.private_key).hex()

    @cached_property
    def public_key(self) -> str:
        return crypto_utils.public_key_hex(self.private_key)

    def identity(self) -> str:
        """Return the x-only public key hex."""

        return self.public_key

    def sign(self, event: Event) -> Event:
        """Return *event* stamped with this signer's pubkey, id and signature."""

        stamped = replace(event, pubkey=self.identity()).with_id()
        signature = crypto_utils.schnorr_sign(bytes.fromhex(stamped.id), self.private_key)
        return replace(stamped, sig=signature.hex())

    def conversation_key(self, peer: str) -> bytes:
        return nip44.get_conversation_key(self.private_key, peer)

    def encrypt(self, peer: str, plaintext: str) -> str:
        """Encrypt *plaintext* so that only *peer* (and this signer) can read it."""

        return nip44.encrypt(plaintext, self.conversation_key(peer))

    def decrypt(self, peer: str, payload: str) -> str:
        """Decrypt a payload exchanged with *peer*; raises ``DecryptionError``."""

        return nip44.decrypt(payload, self.conversation_key(peer))

    def save_to_file(
        self,
        filename: str,
        password: str,
        *,
        opslimit: int = pwhash.argon2i.OPSLIMIT_MODERATE,
        memlimit: int = pwhash.argon2i.MEMLIMIT_MODERATE,
    ) -> None:
        """Encrypt and save the private key to *filename* using *password*."""

        salt = utils.random(pwhash.argon2i.SALTBYTES)
        box = secret.SecretBox(_derive_keystore_key(password, salt, opslimit, memlimit))

        payload = json.dumps({"privkey": self.private_key_hex}).encode("utf-8")
        nonce = utils.random(secret.SecretBox.NONCE_SIZE)
        encrypted = box.encrypt(payload, nonce)

        with open(filename, "w", encoding="utf-8") as f:
            json.dump(
                {
                    "version": KEYSTORE_VERSION,
                    "pubkey": self.identity(),
                    "opslimit": opslimit,
                    "memlimit": memlimit,
                    "salt": base64.b64encode(salt).decode("ascii"),
                    "data": base64.b64encode(encrypted).decode("ascii"),
                },
                f,
            )

    @classmethod
    def load_from_file(cls, filename: str, password: str) -> "KeySigner":
        """Load and decrypt a keystore written by :meth:`save_to_file`."""

        if not os.path.exists(filename):
            raise ValueError("Keystore file not found")

        with open(filename, "r", encoding="utf-8") as f:
            blob = json.load(f)

        try:
            salt = base64.b64decode(blob["salt"])
            encrypted_data = base64.b64decode(blob["data"])
            opslimit = int(blob.get("opslimit", pwhash.argon2i.OPSLIMIT_MODERATE))
            memlimit = int(blob.get("memlimit", pwhash.argon2i.MEMLIMIT_MODERATE))
        except (KeyError, ValueError, binascii.Error) as exc:
            raise ValueError("Malformed keystore file") from exc

        box = secret.SecretBox(_derive_keystore_key(password, salt, opslimit, memlimit))
        try:
            plaintext = box.decrypt(encrypted_data)
            keys = json.loads(plaintext)
            return cls.from_hex(keys["privkey"])
        except (CryptoError, KeyError, ValueError) as exc:
            raise ValueError("Invalid password or corrupt keystore file") from exc


__all__ = ["KeySigner"]
