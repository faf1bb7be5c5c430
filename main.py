#!/usr/bin/env python3
"""
AuthGate -- account registration, login, and credential lifecycle service.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py serve --reload
  python main.py purge-tokens

Environment variables (see core/config.py for the full list):
  SECRET_KEY        Signing/HMAC secret, at least 32 characters. Required unless DEBUG=true.
  DEBUG             true to auto-generate SECRET_KEY for local development.
  DATABASE_URL      SQLAlchemy URL (default: sqlite:///authgate.db).
  BIND_ADDR         host:port for `serve` (default: 127.0.0.1:3000).
  SENDGRID_API_KEY  Mail provider key. Empty means links are logged, not sent.
"""

import argparse
import logging
from datetime import datetime, timezone

from auth.store import CredentialStore
from core.config import get_settings


def _serve(args: argparse.Namespace) -> None:
    import uvicorn

    host, port = get_settings().bind_host_port()
    uvicorn.run(
        "asgi:app",
        host=args.host or host,
        port=args.port or port,
        reload=args.reload,
    )


def _purge_tokens(args: argparse.Namespace) -> None:
    """Delete expired refresh and ephemeral token rows once and report the counts."""
    store = CredentialStore(get_settings().database_url)
    try:
        refresh, ephemeral = store.purge_expired(datetime.now(timezone.utc))
    finally:
        store.close()
    print(f"  Purged {refresh} refresh token(s) and {ephemeral} verification/reset token(s).")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="Account registration, login, and credential lifecycle service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve
  BIND_ADDR=0.0.0.0:8080 python main.py serve
  python main.py serve --port 9000 --reload
  python main.py purge-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default=None, help="Bind host (default: from BIND_ADDR)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: from BIND_ADDR)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    serve.set_defaults(func=_serve)

    purge = sub.add_parser("purge-tokens", help="Delete expired tokens and exit")
    purge.set_defaults(func=_purge_tokens)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args.func(args)


if __name__ == "__main__":
    main()
