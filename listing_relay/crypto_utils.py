"""secp256k1 primitives used by the event, signing and encryption layers.

Everything here works on plain integers, ``ecdsa`` curve points and raw
bytes.  Public keys travel in the x-only (32 byte) form used by BIP-340,
so a point is always lifted back with an even ``y`` before use.
"""

from __future__ import annotations

import hashlib
import secrets
from typing import Iterable, Tuple

from ecdsa import SECP256k1
from ecdsa.ellipticcurve import INFINITY, Point, PointJacobi


CURVE = SECP256k1
CURVE_ORDER = CURVE.order
CURVE_FIELD = CURVE.curve.p()
G = CURVE.generator


def random_scalar() -> int:
    """Return a cryptographically secure random scalar for the curve."""

    return secrets.randbelow(CURVE_ORDER - 1) + 1


def is_valid_scalar(value: int) -> bool:
    """Return ``True`` if *value* is a non-zero scalar within the curve order."""

    return isinstance(value, int) and 1 <= value < CURVE_ORDER


def _ensure_bytes(data: object) -> bytes:
    """Normalise *data* to a ``bytes`` instance."""

    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    raise TypeError("message must be bytes-like")


def _affine(point):
    if hasattr(point, "to_affine"):
        return point.to_affine()
    return point


def scalar_mult(scalar: int, point=G):
    """Multiply *point* by *scalar* on the curve."""

    return _affine(scalar * point)


def point_add(p1, p2):
    """Add two curve points."""

    if p1 == INFINITY:
        return _affine(p2)
    if isinstance(p1, Point):
        p1 = PointJacobi.from_affine(p1)
    return _affine(p1 + p2)


def int_to_bytes(value: int) -> bytes:
    """Encode a scalar value as a 32-byte big-endian sequence."""

    return value.to_bytes(32, "big")


def bytes_to_int(data: bytes) -> int:
    """Decode a big-endian byte sequence into an integer."""

    return int.from_bytes(data, "big")


def has_even_y(point: Point) -> bool:
    return point.y() % 2 == 0


def xonly_bytes(point: Point) -> bytes:
    """Return the 32-byte x coordinate of *point*."""

    return int_to_bytes(point.x())


def lift_x(data: bytes) -> Point:
    """Decode an x-only public key into the curve point with even ``y``."""

    if len(data) != 32:
        raise ValueError("x-only public keys must be 32 bytes long")
    x = bytes_to_int(data)
    if x >= CURVE_FIELD:
        raise ValueError("x coordinate is not a field element")
    # y^2 = x^3 + 7 over the secp256k1 field
    rhs = (pow(x, 3, CURVE_FIELD) + 7) % CURVE_FIELD
    y = pow(rhs, (CURVE_FIELD + 1) // 4, CURVE_FIELD)
    if pow(y, 2, CURVE_FIELD) != rhs:
        raise ValueError("x coordinate is not on the curve")
    if y % 2 == 1:
        y = CURVE_FIELD - y
    return Point(CURVE.curve, x, y)


def hash_bytes(*chunks: Iterable[bytes]) -> bytes:
    """Hash the concatenation of *chunks* with SHA-256."""

    digest = hashlib.sha256()
    for chunk in chunks:
        digest.update(bytes(chunk))
    return digest.digest()


def tagged_hash(tag: str, *chunks: bytes) -> bytes:
    """BIP-340 tagged hash: ``sha256(sha256(tag) || sha256(tag) || data)``."""

    tag_digest = hashlib.sha256(tag.encode("utf-8")).digest()
    return hash_bytes(tag_digest, tag_digest, *chunks)


def public_key_hex(private_key: int) -> str:
    """Return the x-only public key of *private_key* as lower-case hex."""

    if not is_valid_scalar(private_key):
        raise ValueError("private key must be a scalar in the curve order")
    return xonly_bytes(scalar_mult(private_key, G)).hex()


def generate_keypair() -> Tuple[int, str]:
    """Generate a fresh private key and its x-only public key hex."""

    private_key = random_scalar()
    return private_key, public_key_hex(private_key)


def is_public_key_hex(value: object) -> bool:
    """Return ``True`` if *value* is a 64 character lower-case hex key on the curve."""

    if not isinstance(value, str) or len(value) != 64:
        return False
    try:
        lift_x(bytes.fromhex(value))
    except ValueError:
        return False
    return value == value.lower()


def derive_shared_secret(private_scalar: int, public_key: str) -> bytes:
    """Compute the ECDH shared x coordinate with an x-only *public_key*.

    The x coordinate of ``d * P`` does not depend on the sign of ``P.y``,
    so both peers arrive at the same 32 bytes from x-only keys.
    """

    if not is_valid_scalar(private_scalar):
        raise ValueError("private key must be a scalar in the curve order")
    shared_point = scalar_mult(private_scalar, lift_x(bytes.fromhex(public_key)))
    return xonly_bytes(shared_point)


def schnorr_sign(message: bytes, private_key: int, aux_rand: bytes | None = None) -> bytes:
    """Return a 64-byte BIP-340 signature over the 32-byte *message*."""

    message_bytes = _ensure_bytes(message)
    if not is_valid_scalar(private_key):
        raise ValueError("private key must be a scalar in the curve order")
    if aux_rand is None:
        aux_rand = secrets.token_bytes(32)
    if len(aux_rand) != 32:
        raise ValueError("aux_rand must be 32 bytes")

    public_point = scalar_mult(private_key, G)
    d = private_key if has_even_y(public_point) else CURVE_ORDER - private_key
    masked = bytes_to_int(tagged_hash("BIP0340/aux", aux_rand)) ^ d
    nonce_seed = tagged_hash(
        "BIP0340/nonce", int_to_bytes(masked), xonly_bytes(public_point), message_bytes
    )
    k0 = bytes_to_int(nonce_seed) % CURVE_ORDER
    if k0 == 0:
        raise ValueError("nonce derivation produced zero, retry with new aux_rand")
    r_point = scalar_mult(k0, G)
    k = k0 if has_even_y(r_point) else CURVE_ORDER - k0
    challenge = bytes_to_int(
        tagged_hash("BIP0340/challenge", xonly_bytes(r_point), xonly_bytes(public_point), message_bytes)
    ) % CURVE_ORDER
    s = (k + challenge * d) % CURVE_ORDER
    return xonly_bytes(r_point) + int_to_bytes(s)


def schnorr_verify(message: bytes, public_key: bytes, signature: bytes) -> bool:
    """Verify a BIP-340 signature produced by :func:`schnorr_sign`."""

    try:
        message_bytes = _ensure_bytes(message)
        signature = _ensure_bytes(signature)
        public_point = lift_x(_ensure_bytes(public_key))
    except (TypeError, ValueError):
        return False

    if len(signature) != 64:
        return False
    r = bytes_to_int(signature[:32])
    s = bytes_to_int(signature[32:])
    if r >= CURVE_FIELD or s >= CURVE_ORDER:
        return False

    challenge = bytes_to_int(
        tagged_hash("BIP0340/challenge", signature[:32], public_key, message_bytes)
    ) % CURVE_ORDER
    left = s * G if s else INFINITY
    right = scalar_mult(CURVE_ORDER - challenge, public_point) if challenge else INFINITY
    r_point = point_add(left, right)
    if r_point == INFINITY:
        return False
    return has_even_y(r_point) and r_point.x() == r


__all__ = [
    "CURVE_ORDER",
    "G",
    "derive_shared_secret",
    "generate_keypair",
    "hash_bytes",
    "is_public_key_hex",
    "is_valid_scalar",
    "lift_x",
    "public_key_hex",
    "random_scalar",
    "schnorr_sign",
    "schnorr_verify",
    "tagged_hash",
]
