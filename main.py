#!/usr/bin/env python3
"""
Bastion -- operator command line.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py serve --reload
  python main.py create-admin --username admin --full-name "Site Admin"
  python main.py create-admin --username admin --full-name "Site Admin" --no-password

Environment variables:
  SECRET_KEY    Token signing key, at least 32 characters. Required unless DEBUG=true.
  DATABASE_URL  SQLAlchemy URL. Defaults to a SQLite file next to the auth package.
"""

import argparse
import getpass
import sys
from typing import Optional

import uvicorn

from auth.credentials import create_principal
from auth.errors import BastionError
from auth.models import ROLE_ADMIN, Principal
from auth.store import PrincipalStore
from core.config import get_settings


def _read_password() -> Optional[str]:
    """Prompt twice for a password. Returns None if the entries differ."""
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def create_admin(username: str, full_name: str, password: Optional[str], store: Optional[PrincipalStore] = None) -> int:
    """Create an administrator account. Returns the exit code.

    With password=None the account is provisioned: the first login accepts
    any credential and forces a password change.
    """
    store = store or PrincipalStore()
    try:
        principal = create_principal(
            store,
            Principal(username=username, full_name=full_name, role=ROLE_ADMIN),
            password,
            creator_id=None,
        )
    except BastionError as exc:
        print(f"  [!] {exc.message}")
        for error in getattr(exc, "errors", []):
            print(f"      - {error}")
        return 1
    finally:
        store.close()
    print(f"  Created administrator {principal.username!r} (id={principal.id}).")
    if not principal.has_password:
        print("  No password set: the first login will ask for a new one.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="bastion",
        description="Authentication and access control service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --port 8080
  python main.py create-admin --username admin --full-name "Site Admin"
        """,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = commands.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")

    admin = commands.add_parser("create-admin", help="Create an administrator account")
    admin.add_argument("--username", required=True, help="Login name, 3-50 characters of [a-zA-Z0-9._-]")
    admin.add_argument("--full-name", required=True, help="Display name")
    admin.add_argument(
        "--no-password",
        action="store_true",
        help="Provision without a password; the first login must set one",
    )

    args = parser.parse_args(argv)

    if args.command == "serve":
        settings = get_settings()
        uvicorn.run(
            "asgi:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            timeout_graceful_shutdown=settings.shutdown_grace_seconds,
        )
        return 0

    if args.command == "create-admin":
        password: Optional[str] = None
        if not args.no_password:
            password = _read_password()
            if password is None:
                return 1
        return create_admin(args.username, args.full_name, password)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
