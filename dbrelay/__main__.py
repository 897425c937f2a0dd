"""Module entrypoint to run `python -m dbrelay`."""

from __future__ import annotations

import argparse
import logging
import sys

from .config import CONFIG_FILE, AppConfig, load_config
from .crypto import CredentialCodec
from .errors import DbRelayError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: AppConfig) -> None:
    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO), format=LOG_FORMAT)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="dbrelay", description="Secure database access service.")
    sub = parser.add_subparsers(dest="command", required=True)
    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Interface to bind (default from config)")
    serve.add_argument("--port", type=int, help="Port to bind (default from config)")
    encrypt = sub.add_parser("encrypt", help="Encrypt a secret with the master key")
    encrypt.add_argument("value")
    decrypt = sub.add_parser("decrypt", help="Decrypt a stored secret with the master key")
    decrypt.add_argument("value")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    config = load_config()
    configure_logging(config)
    if args.command == "serve":
        import uvicorn

        from .api import create_app

        if not config.encryption_configured:
            logging.getLogger(__name__).warning(
                "No master key configured (env or %s); database routes will fail", CONFIG_FILE
            )
        uvicorn.run(
            create_app(config),
            host=args.host or config.server.host,
            port=args.port or config.server.port,
            log_level=config.log_level.lower(),
        )
        return 0
    try:
        codec = CredentialCodec(config.require_master_key())
        output = codec.encrypt(args.value) if args.command == "encrypt" else codec.decrypt(args.value)
    except DbRelayError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    print(output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
