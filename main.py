#!/usr/bin/env python3
"""
SessionGate -- administration CLI.

Operates directly on the database named by DATABASE_URL (or the default
sessiongate_auth.db next to this file). The HTTP API does not need to run.

Usage:
  python main.py create-user alice alice@example.com
  python main.py create-user svc-bot bot@example.com --directory
  python main.py add-role alice@example.com admin
  python main.py revoke-tokens alice@example.com
  python main.py purge-tokens

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database.
  DEBUG         Set to true to allow running without SECRET_KEY.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.models import User
from auth.store import RefreshTokenStore, UserStore, create_store_engine
from auth.tokens import hash_password
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 8


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return the password from --password or an interactive, confirmed prompt."""
    if given is not None:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _find_user(users: UserStore, who: str) -> Optional[User]:
    """Look a user up by email (when it contains '@') or by username."""
    user = users.find_by_email(who) if "@" in who else users.find_by_username(who)
    if user is None:
        print(f"  [!] No user matches '{who}'.")
    return user


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


def cmd_create_user(args: argparse.Namespace, users: UserStore, tokens: RefreshTokenStore) -> int:
    if users.find_by_username(args.username) or users.find_by_email(args.email):
        print(f"  [!] '{args.username}' or '{args.email}' is already registered.")
        return 1

    hashed: Optional[str] = None
    if not args.directory:
        password = _read_password(args.password)
        if password is None:
            return 1
        if len(password) < _MIN_PASSWORD_LENGTH:
            print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
            return 1
        hashed = hash_password(password)

    uid = users.create_user(User(username=args.username, email=args.email.lower(), hashed_password=hashed))
    for role in args.role or []:
        users.add_role(uid, role)
    kind = "directory" if args.directory else "local"
    print(f"  Created {kind} user {args.username} ({uid}).")
    return 0


def cmd_add_role(args: argparse.Namespace, users: UserStore, tokens: RefreshTokenStore) -> int:
    user = _find_user(users, args.user)
    if user is None:
        return 1
    users.add_role(user.id, args.role)
    print(f"  {user.username} now has role '{args.role}'. New tokens will carry it.")
    return 0


def cmd_revoke_tokens(args: argparse.Namespace, users: UserStore, tokens: RefreshTokenStore) -> int:
    user = _find_user(users, args.user)
    if user is None:
        return 1
    count = tokens.revoke_all_for_user(user.id)
    print(f"  Revoked {count} refresh token(s) for {user.username}.")
    return 0


def cmd_purge_tokens(args: argparse.Namespace, users: UserStore, tokens: RefreshTokenStore) -> int:
    count = tokens.purge_expired()
    print(f"  Purged {count} expired refresh token(s).")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sessiongate",
        description="Manage SessionGate users and refresh tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice alice@example.com --role admin
  python main.py create-user bob bob@example.com --password 'correct horse'
  python main.py revoke-tokens bob
  DATABASE_URL=sqlite:////var/lib/sessiongate/auth.db python main.py purge-tokens
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        help="SQLAlchemy database URL (default: DATABASE_URL from the environment)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a local or directory-backed account")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument(
        "--password",
        help="Password for a local account (prompted for when omitted)",
    )
    create.add_argument(
        "--directory",
        action="store_true",
        help="Account authenticates against the directory service; no local password is stored",
    )
    create.add_argument(
        "--role",
        action="append",
        metavar="ROLE",
        help="Role to grant (repeatable)",
    )
    create.set_defaults(handler=cmd_create_user)

    add_role = sub.add_parser("add-role", help="Grant a role to an existing user")
    add_role.add_argument("user", help="Email address or username")
    add_role.add_argument("role")
    add_role.set_defaults(handler=cmd_add_role)

    revoke = sub.add_parser("revoke-tokens", help="Revoke every outstanding refresh token of a user")
    revoke.add_argument("user", help="Email address or username")
    revoke.set_defaults(handler=cmd_revoke_tokens)

    purge = sub.add_parser("purge-tokens", help="Delete expired refresh-token rows")
    purge.set_defaults(handler=cmd_purge_tokens)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    db_url = args.database_url or get_settings().database_url
    engine = create_store_engine(db_url)
    try:
        return args.handler(args, UserStore(engine=engine), RefreshTokenStore(engine=engine))
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
