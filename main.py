#!/usr/bin/env python3
"""
MemberAuth admin CLI -- seed and maintain member accounts.

Usage:
  python main.py create-member a@example.com Alice --surname Smith
  python main.py expire-password a@example.com
  python main.py purge-sessions

Reads the same settings as the server (DATABASE_URL, SECRET_KEY, DEBUG).
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import StoreUnavailable
from auth.models import Principal
from auth.session import SessionStateStore
from auth.store import IdentityStore
from auth.tokens import hash_password
from core.config import get_settings


def _create_member(store: IdentityStore, args: argparse.Namespace) -> int:
    password: Optional[str] = args.password
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Confirm password: "):
            print("  [!] Passwords do not match.")
            return 1
    if len(password) < get_settings().min_password_length:
        print(f"  [!] Password must be at least {get_settings().min_password_length} characters.")
        return 1
    try:
        member_id = store.create_member(
            Principal(
                identifier=args.email,
                first_name=args.first_name,
                surname=args.surname,
                hashed_password=hash_password(password),
            )
        )
    except IntegrityError:
        print(f"  [!] A member with email '{args.email}' already exists.")
        return 1
    print(f"  Created member {member_id} <{args.email}>.")
    return 0


def _expire_password(store: IdentityStore, args: argparse.Namespace) -> int:
    principal = store.find_by_identifier(args.email)
    if principal is None:
        print(f"  [!] No member with email '{args.email}'.")
        return 1
    store.expire_password(principal.id)
    print(f"  Password for <{principal.identifier}> expires now; it must be changed at next login.")
    return 0


def _purge_sessions(args: argparse.Namespace) -> int:
    store = SessionStateStore(args.database_url)
    try:
        removed = store.purge_stale(args.max_age or get_settings().session_state_ttl_seconds)
    finally:
        store.close()
    print(f"  Removed {removed} stale session entries.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memberauth",
        description="Member account administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy URL of the auth database (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-member", help="Create a member with a local password")
    create.add_argument("email")
    create.add_argument("first_name", metavar="FIRST_NAME")
    create.add_argument("--surname", default="")
    create.add_argument("--password", default=None, help="Prompted for when omitted")

    expire = sub.add_parser("expire-password", help="Force a password change at next login")
    expire.add_argument("email")

    purge = sub.add_parser("purge-sessions", help="Delete stale session workflow state")
    purge.add_argument("--max-age", type=int, default=None, metavar="SECONDS")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "purge-sessions":
            return _purge_sessions(args)
        store = IdentityStore(args.database_url)
        try:
            if args.command == "create-member":
                return _create_member(store, args)
            return _expire_password(store, args)
        finally:
            store.close()
    except StoreUnavailable:
        print("  [!] The auth database is unavailable.")
        return 2


if __name__ == "__main__":
    sys.exit(main())
