import logging

from listing_relay.cli import RedactingFormatter, build_parser, configure_logging, main
from listing_relay.config import Settings
from listing_relay.crypto_utils import is_public_key_hex


def test_keygen_prints_a_fresh_identity(capsys):
    assert main(["keygen"]) == 0
    out = capsys.readouterr().out
    public = out.split("Public key:")[1].strip()
    assert is_public_key_hex(public)
    assert "Private key:" in out


def test_keygen_keystore_needs_password(tmp_path, capsys):
    assert main(["keygen", "--keystore", str(tmp_path / "k.json")]) == 2
    assert "--password is required" in capsys.readouterr().out
    assert not (tmp_path / "k.json").exists()


def test_parser_knows_serve_outbox():
    args = build_parser().parse_args(["serve-outbox", "--port", "9001"])
    assert args.command == "serve-outbox"
    assert args.port == 9001


def test_redacting_formatter_masks_secrets():
    formatter = RedactingFormatter(["s3cret", ""])
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "key is %s", ("s3cret",), None)
    assert formatter.format(record).endswith("key is ***")


def test_configure_logging_adds_rotating_file(tmp_path):
    log_file = tmp_path / "logs" / "relay.log"
    settings = Settings(signer=None, log_level="DEBUG", log_file=str(log_file), secrets=("hunter2",))
    handlers = configure_logging(settings)
    try:
        logging.getLogger("listing_relay.test").info("password hunter2")
        for handler in handlers:
            handler.flush()
        assert "password ***" in log_file.read_text()
        assert "hunter2" not in log_file.read_text()
    finally:
        root = logging.getLogger()
        for handler in handlers:
            root.removeHandler(handler)
            handler.close()
