#!/usr/bin/env python3
"""
AuthGate -- administration CLI for the authentication service.

Usage:
  python main.py create-account admin@example.com --role admin
  python main.py create-account ops@example.com --first-name Ops --password-stdin < pw.txt
  python main.py unlock user@example.com
  python main.py unlock user@example.com --ip 203.0.113.9
  python main.py purge-reset-tokens

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: sqlite file in auth/).
  REDIS_URL     Shared counter store. Needed for `unlock --ip` to reach the
                counters the running API instances use.
  SECRET_KEY / REFRESH_SECRET_KEY  Required unless DEBUG=true.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import AuthError
from auth.policy import password_policy_failures
from auth.service import AuthService
from auth.store import AuthStore
from cache.counters import build_counter_store
from core.config import get_settings


def _read_password(from_stdin: bool) -> Optional[str]:
    """Read a new password from stdin or prompt twice on the terminal."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _build_service() -> AuthService:
    settings = get_settings()
    return AuthService(AuthStore(), build_counter_store(settings), settings=settings)


def _cmd_create_account(service: AuthService, args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if password is None:
        return 1
    failures = password_policy_failures(password)
    if failures:
        print("  [!] Password must contain: " + ", ".join(failures))
        return 1
    account = service.create_account(
        args.email,
        password,
        first_name=args.first_name,
        last_name=args.last_name,
        role=args.role,
        tenant_id=args.tenant,
    )
    print(f"  Created account {account.id} ({account.email}, role={account.role}).")
    return 0


def _cmd_unlock(service: AuthService, args: argparse.Namespace) -> int:
    if not service.unlock(args.email, ip=args.ip):
        print(f"  [!] No account found for {args.email}.")
        return 1
    print(f"  Unlocked {args.email}.")
    return 0


def _cmd_purge_reset_tokens(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.purge_expired()
    print(f"  Purged {removed} expired reset token(s).")
    return 0


_COMMANDS = {
    "create-account": _cmd_create_account,
    "unlock": _cmd_unlock,
    "purge-reset-tokens": _cmd_purge_reset_tokens,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="Administration commands for the AuthGate authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-account admin@example.com --role admin
  python main.py unlock user@example.com --ip 203.0.113.9
  python main.py purge-reset-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-account", help="Create an active account (no verification email)")
    create.add_argument("email", help="Email address of the new account")
    create.add_argument("--role", default="user", help="Role to assign (default: user)")
    create.add_argument("--first-name", default="", metavar="NAME")
    create.add_argument("--last-name", default="", metavar="NAME")
    create.add_argument("--tenant", default=None, metavar="ID", help="Tenant id to attach the account to")
    create.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting",
    )

    unlock = sub.add_parser("unlock", help="Clear an account lockout")
    unlock.add_argument("email", help="Email address of the locked account")
    unlock.add_argument("--ip", default=None, help="Also reset the failure counter for this source ip")

    sub.add_parser("purge-reset-tokens", help="Delete expired password reset tokens")
    return parser


def main(argv: Optional[list[str]] = None, service: Optional[AuthService] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    service = service or _build_service()
    try:
        return _COMMANDS[args.command](service, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
