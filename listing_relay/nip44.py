"""Versioned payload encryption between two secp256k1 keys (NIP-44 v2).

Layout of an encrypted payload before base64::

    version (1 byte, 0x02) | nonce (32) | ciphertext (padded) | mac (32)

The conversation key is derived once per peer pair from the ECDH shared
x coordinate; every message then expands its own ChaCha20 key, ChaCha20
nonce and HMAC key from the conversation key and a random nonce.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import math

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand
from nacl.utils import random as nacl_random

from . import crypto_utils
from .errors import DecryptionError


VERSION = 2
SALT = b"nip44-v2"
NONCE_SIZE = 32
MAC_SIZE = 32
MIN_PLAINTEXT_SIZE = 1
MAX_PLAINTEXT_SIZE = 0xFFFF
# 1 version byte + 32 nonce + 32 padded minimum + 2 length prefix + 32 mac
MIN_PAYLOAD_SIZE = 99
MAX_PAYLOAD_SIZE = 65603


def get_conversation_key(private_key: int, public_key: str) -> bytes:
    """Return the 32-byte conversation key shared by *private_key* and *public_key*."""

    shared_x = crypto_utils.derive_shared_secret(private_key, public_key)
    return hmac.new(SALT, shared_x, hashlib.sha256).digest()


def _message_keys(conversation_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    if len(conversation_key) != 32:
        raise ValueError("conversation key must be 32 bytes")
    if len(nonce) != NONCE_SIZE:
        raise ValueError("nonce must be 32 bytes")
    expanded = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conversation_key)
    return expanded[0:32], expanded[32:44], expanded[44:76]


def calc_padded_len(unpadded_len: int) -> int:
    """Return the padded size for a plaintext of *unpadded_len* bytes."""

    if unpadded_len <= 0:
        raise ValueError("plaintext must not be empty")
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def pad(plaintext: str) -> bytes:
    data = plaintext.encode("utf-8")
    size = len(data)
    if size < MIN_PLAINTEXT_SIZE or size > MAX_PLAINTEXT_SIZE:
        raise ValueError("plaintext size must be between 1 and 65535 bytes")
    padding = calc_padded_len(size) - size
    return size.to_bytes(2, "big") + data + bytes(padding)


def unpad(padded: bytes) -> str:
    size = int.from_bytes(padded[:2], "big")
    data = padded[2 : 2 + size]
    if size == 0 or len(data) != size or len(padded) != 2 + calc_padded_len(size):
        raise DecryptionError("invalid padding")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("plaintext is not valid UTF-8") from exc


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography takes a 16 byte nonce: 4 byte little-endian counter + 12 byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, bytes(4) + nonce), mode=None)
    return cipher.encryptor().update(data)


def _mac(hmac_key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    return hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()


def encrypt(plaintext: str, conversation_key: bytes, nonce: bytes | None = None) -> str:
    """Encrypt *plaintext* and return the base64 payload."""

    if nonce is None:
        nonce = nacl_random(NONCE_SIZE)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, pad(plaintext))
    mac = _mac(hmac_key, nonce, ciphertext)
    return base64.b64encode(bytes([VERSION]) + nonce + ciphertext + mac).decode("ascii")


def _decode_payload(payload: str) -> tuple[bytes, bytes, bytes]:
    if not isinstance(payload, str) or not payload:
        raise DecryptionError("payload must be a non-empty string")
    if payload[0] == "#":
        raise DecryptionError("unsupported encryption version")
    if len(payload) < 132 or len(payload) > 87472:
        raise DecryptionError("invalid payload size")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("payload is not valid base64") from exc
    if len(data) < MIN_PAYLOAD_SIZE or len(data) > MAX_PAYLOAD_SIZE:
        raise DecryptionError("invalid data size")
    if data[0] != VERSION:
        raise DecryptionError(f"unknown encryption version {data[0]}")
    return data[1:33], data[33:-MAC_SIZE], data[-MAC_SIZE:]


def decrypt(payload: str, conversation_key: bytes) -> str:
    """Authenticate and decrypt a base64 *payload*."""

    nonce, ciphertext, mac = _decode_payload(payload)
    chacha_key, chacha_nonce, hmac_key = _message_keys(conversation_key, nonce)
    if not hmac.compare_digest(_mac(hmac_key, nonce, ciphertext), mac):
        raise DecryptionError("invalid MAC")
    return unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))


__all__ = [
    "VERSION",
    "calc_padded_len",
    "decrypt",
    "encrypt",
    "get_conversation_key",
    "pad",
    "unpad",
]
