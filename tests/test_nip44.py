import base64

import pytest

from listing_relay import nip44
from listing_relay.crypto_utils import public_key_hex
from listing_relay.errors import DecryptionError
from listing_relay.signer import KeySigner


def test_conversation_key_vector():
    key = nip44.get_conversation_key(1, public_key_hex(2))
    assert key.hex() == "c41c775356fd92eadc63ff5a0dc1da211b268cbea22316767095b2871ea1412d"
    assert nip44.get_conversation_key(2, public_key_hex(1)) == key


@pytest.mark.parametrize(
    "size, padded",
    [
        (1, 32), (16, 32), (32, 32), (33, 64), (37, 64), (64, 64), (65, 96), (100, 128),
        (200, 224), (250, 256), (320, 320), (383, 384), (400, 448), (515, 640),
        (900, 1024), (1020, 1024), (65535, 65536),
    ],
)
def test_padded_length(size, padded):
    assert nip44.calc_padded_len(size) == padded


def test_encrypt_decrypt_between_peers():
    alice, bob = KeySigner.generate(), KeySigner.generate()
    payload = alice.encrypt(bob.identity(), "héllo wörld")
    assert bob.decrypt(alice.identity(), payload) == "héllo wörld"
    assert alice.decrypt(bob.identity(), payload) == "héllo wörld"
    assert base64.b64decode(payload)[0] == nip44.VERSION


def test_nonce_makes_payloads_distinct():
    key = nip44.get_conversation_key(5, public_key_hex(7))
    assert nip44.encrypt("same", key) != nip44.encrypt("same", key)
    fixed = bytes(31) + b"\x01"
    assert nip44.encrypt("same", key, nonce=fixed) == nip44.encrypt("same", key, nonce=fixed)


def test_tampered_payload_is_rejected():
    key = nip44.get_conversation_key(5, public_key_hex(7))
    raw = bytearray(base64.b64decode(nip44.encrypt("attack at dawn", key)))
    raw[40] ^= 0x01
    with pytest.raises(DecryptionError):
        nip44.decrypt(base64.b64encode(bytes(raw)).decode(), key)


def test_wrong_key_is_rejected():
    payload = nip44.encrypt("secret", nip44.get_conversation_key(5, public_key_hex(7)))
    with pytest.raises(DecryptionError):
        nip44.decrypt(payload, nip44.get_conversation_key(6, public_key_hex(7)))


@pytest.mark.parametrize("payload", ["", "#unsupported", "not base64!" * 20, "AQ" * 80])
def test_malformed_payloads(payload):
    key = nip44.get_conversation_key(5, public_key_hex(7))
    with pytest.raises(DecryptionError):
        nip44.decrypt(payload, key)


def test_plaintext_size_limits():
    key = nip44.get_conversation_key(5, public_key_hex(7))
    with pytest.raises(ValueError):
        nip44.encrypt("", key)
    with pytest.raises(ValueError):
        nip44.encrypt("x" * 65536, key)
