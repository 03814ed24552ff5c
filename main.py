#!/usr/bin/env python3
"""
AdminGate -- operator commands for the admin auth core.

These run against the configured database directly (DATABASE_URL), without
the HTTP server, for the steps that must happen before anyone can log in.

Usage:
  python main.py hash-password
  python main.py setup-token
  python main.py reset-primary

Commands:
  hash-password   Prompt for a password and print its Argon2id hash. Put the
                  output in ADMIN_PASSWORD.
  setup-token     Create the one-time first-run setup token and print it with
                  the setup URL. Any previous setup token stops working.
  reset-primary   Clear the primary admin's password and API token, then issue
                  a setup token so a new password can be set. The account
                  keeps its id and username. Its rows in the session table
                  are deleted, and sessions still held in a running server
                  stop resolving until setup sets a new password.
"""

import argparse
import sys
from datetime import timedelta
from getpass import getpass
from typing import Optional

from auth.admin_service import AdminService
from auth.passwords import hash_password
from auth.store import AdminStore, SessionStore
from core.config import Settings, get_settings

_SETUP_API_PATH = "/api/v1/admins/setup"


def _admin_service(settings: Settings) -> tuple[AdminStore, AdminService]:
    store = AdminStore(db_url=settings.database_url)
    service = AdminService(store, setup_token_ttl=timedelta(minutes=settings.setup_token_ttl_minutes))
    return store, service


def _print_setup_token(settings: Settings, token: str) -> None:
    print(f"  Setup token: {token}")
    print(f"  Valid for {settings.setup_token_ttl_minutes} minutes, single use.")
    print(f"  POST it with the new credentials to {settings.base_url.rstrip('/')}{_SETUP_API_PATH}\n")


def cmd_hash_password(args: argparse.Namespace) -> int:
    password = getpass("Password: ")
    if not password:
        print("  [!] Password must not be empty.")
        return 1
    if getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return 1
    print(hash_password(password))
    return 0


def cmd_setup_token(args: argparse.Namespace) -> int:
    settings = get_settings()
    store, service = _admin_service(settings)
    try:
        primary = service.get_primary_admin()
        if primary is not None and primary.password_hash:
            print("  [!] A primary admin already exists. Use 'reset-primary' to recover its credentials.")
            return 1
        token = service.create_setup_token()
    finally:
        store.close()
    _print_setup_token(settings, token)
    return 0


def cmd_reset_primary(args: argparse.Namespace) -> int:
    settings = get_settings()
    store, service = _admin_service(settings)
    try:
        primary = service.reset_primary_admin_credentials()
        if primary is None:
            print("  [!] No primary admin exists. Run 'setup-token' to create one.")
            return 1
        token = service.create_setup_token()
    finally:
        store.close()
    sessions = SessionStore(db_url=settings.database_url)
    try:
        dropped = sessions.delete_sessions_for_user(primary.username)
    finally:
        sessions.close()
    print(f"\n  Credentials for primary admin '{primary.username}' have been cleared.")
    if dropped:
        print(f"  {dropped} persisted session(s) were signed out.")
    _print_setup_token(settings, token)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="admingate",
        description="Operator commands for AdminGate administrator authentication.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py hash-password
  python main.py setup-token
  DATABASE_URL=sqlite:////var/lib/admingate/admingate.db python main.py reset-primary
        """,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.add_parser(
        "hash-password",
        help="Print an Argon2id hash for ADMIN_PASSWORD",
    ).set_defaults(func=cmd_hash_password)
    subparsers.add_parser(
        "setup-token",
        help="Create a one-time setup token for the first primary admin",
    ).set_defaults(func=cmd_setup_token)
    subparsers.add_parser(
        "reset-primary",
        help="Clear the primary admin's credentials and issue a setup token",
    ).set_defaults(func=cmd_reset_primary)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
