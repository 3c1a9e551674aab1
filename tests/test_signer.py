import json

import pytest
from nacl import pwhash

from listing_relay.signer import KeySigner

FAST = {"opslimit": pwhash.argon2i.OPSLIMIT_INTERACTIVE, "memlimit": pwhash.argon2i.MEMLIMIT_INTERACTIVE}


def test_keystore_round_trip(tmp_path):
    signer = KeySigner.generate()
    path = tmp_path / "key.json"
    signer.save_to_file(str(path), "correct horse", **FAST)

    blob = json.loads(path.read_text())
    assert blob["pubkey"] == signer.identity()
    assert signer.private_key_hex not in path.read_text()

    loaded = KeySigner.load_from_file(str(path), "correct horse")
    assert loaded.identity() == signer.identity()
    assert loaded.private_key == signer.private_key


def test_keystore_rejects_wrong_password(tmp_path):
    path = tmp_path / "key.json"
    KeySigner.generate().save_to_file(str(path), "right", **FAST)
    with pytest.raises(ValueError):
        KeySigner.load_from_file(str(path), "wrong")


def test_keystore_missing_or_malformed(tmp_path):
    with pytest.raises(ValueError):
        KeySigner.load_from_file(str(tmp_path / "absent.json"), "pw")
    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"version": 1}))
    with pytest.raises(ValueError):
        KeySigner.load_from_file(str(broken), "pw")


def test_from_hex_validation():
    signer = KeySigner.generate()
    assert KeySigner.from_hex(signer.private_key_hex).identity() == signer.identity()
    with pytest.raises(ValueError):
        KeySigner.from_hex("abc")
    with pytest.raises(ValueError):
        KeySigner.from_hex("00" * 32)


def test_repr_hides_private_key():
    signer = KeySigner.generate()
    assert signer.private_key_hex not in repr(signer)
    assert signer.identity() in repr(signer)
