"""Command line entry points and logging set-up."""

from __future__ import annotations

import argparse
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import List, Optional, Sequence

from .config import Settings, load_settings
from .errors import ConfigError
from .signer import KeySigner

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class RedactingFormatter(logging.Formatter):
    """Formatter that masks configured secrets in every rendered record."""

    def __init__(self, secrets: Sequence[str], fmt: str = LOG_FORMAT, datefmt: Optional[str] = LOG_DATEFMT) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = sorted({secret for secret in secrets if secret}, key=len, reverse=True)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def configure_logging(settings: Settings) -> List[logging.Handler]:
    """Install console and optional rotating file handlers on the root logger."""

    level = getattr(logging, settings.log_level, logging.INFO)
    formatter = RedactingFormatter(settings.secrets)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers: List[logging.Handler] = [console_handler]

    if settings.log_file:
        directory = os.path.dirname(settings.log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(level)
    logging.basicConfig(level=level, handlers=handlers, force=True)
    return handlers


def _keygen(args: argparse.Namespace) -> int:
    signer = KeySigner.generate()
    if args.keystore:
        if not args.password:
            print("--password is required with --keystore")
            return 2
        signer.save_to_file(args.keystore, args.password)
        print(f"Keystore written to {args.keystore}")
    else:
        print(f"Private key: {signer.private_key_hex}")
    print(f"Public key:  {signer.identity()}")
    return 0


def _serve_outbox(args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app
    from .storage import ListingRepository

    settings = load_settings(require_signer=False)
    configure_logging(settings)
    repository = ListingRepository.from_url(settings.database_url)
    host = args.host or settings.api_host
    port = args.port or settings.api_port
    LOGGER.info("Serving outbox on %s:%d", host, port)
    uvicorn.run(create_app(repository), host=host, port=port, log_level=settings.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="listing-relay", description="Listing ingestion and messaging tools.")
    commands = parser.add_subparsers(dest="command", required=True)

    keygen = commands.add_parser("keygen", help="Generate a new identity key.")
    keygen.add_argument("--keystore", help="Write the key to an encrypted keystore file instead of printing it.")
    keygen.add_argument("--password", help="Password for the keystore file.")
    keygen.set_defaults(func=_keygen)

    serve = commands.add_parser("serve-outbox", help="Serve the outbox HTTP API.")
    serve.add_argument("--host", help="Bind address (defaults to API_HOST).")
    serve.add_argument("--port", type=int, help="Bind port (defaults to API_PORT).")
    serve.set_defaults(func=_serve_outbox)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}")
        return 1


__all__ = ["RedactingFormatter", "build_parser", "configure_logging", "main"]
