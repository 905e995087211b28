#!/usr/bin/env python3
"""
MoveX auth -- management commands.

Self-registration only ever creates "user" accounts. Admin, franchisee and
staff accounts are bootstrapped from here, and any account can be disabled or
given a new password here; both end every session of that account.

Usage:
  python main.py create-user alice --role admin --email alice@example.com
  python main.py create-user bob --role staff --password-stdin < pw.txt
  python main.py set-mfa alice on
  python main.py set-status bob disabled
  python main.py reset-password bob
  python main.py purge-expired

Reads DATABASE_URL (and the rest of the settings) from the environment / .env.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.password_reset import ResetTokenStore
from auth.rbac import ROLES
from auth.schema import create_auth_engine
from auth.sessions import SessionStore
from auth.store import ACCOUNT_STATUSES, UserStore
from auth.tokens import MIN_PASSWORD_LENGTH, hash_password, is_strong_password
from core.config import get_settings


def _read_password(from_stdin: bool) -> str:
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def cmd_create_user(args: argparse.Namespace, store: UserStore) -> int:
    password = _read_password(args.password_stdin)
    if not is_strong_password(password):
        print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters with a letter and a number.")
        return 1
    user = User(
        username=args.username,
        role=args.role,
        email=args.email,
        hashed_password=hash_password(password),
        full_name=args.full_name,
        mfa_enabled=args.mfa,
    )
    try:
        user_id = store.create_user(user)
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    print(f"Created {args.role} '{args.username.strip().lower()}' (id={user_id}).")
    return 0


def cmd_set_mfa(args: argparse.Namespace, store: UserStore) -> int:
    user = store.get_by_username(args.username)
    if user is None:
        print(f"  [!] No such user '{args.username}'.")
        return 1
    store.set_mfa_enabled(user.id, args.state == "on")
    print(f"MFA {args.state} for '{user.username}'.")
    return 0


def cmd_set_status(args: argparse.Namespace, store: UserStore) -> int:
    user = store.get_by_username(args.username)
    if user is None:
        print(f"  [!] No such user '{args.username}'.")
        return 1
    with store.engine.begin() as conn:
        store.set_status(user.id, args.status, conn=conn)
        revoked = SessionStore(store.engine).destroy_for_user(user.id, conn=conn)
    print(f"'{user.username}' is now {args.status}; ended {revoked} session(s).")
    return 0


def cmd_reset_password(args: argparse.Namespace, store: UserStore) -> int:
    user = store.get_by_username(args.username)
    if user is None:
        print(f"  [!] No such user '{args.username}'.")
        return 1
    password = _read_password(args.password_stdin)
    if not is_strong_password(password):
        print(f"  [!] Password must be at least {MIN_PASSWORD_LENGTH} characters with a letter and a number.")
        return 1
    with store.engine.begin() as conn:
        store.update_password(user.id, hash_password(password), conn=conn)
        ResetTokenStore(store.engine).invalidate_for_user(user.id, conn=conn)
        revoked = SessionStore(store.engine).destroy_for_user(user.id, conn=conn)
    print(f"Password reset for '{user.username}'; ended {revoked} session(s).")
    return 0


def cmd_purge_expired(args: argparse.Namespace, store: UserStore) -> int:
    sessions = SessionStore(store.engine).cleanup()
    tokens = ResetTokenStore(store.engine).purge_expired()
    print(f"Removed {sessions} expired session(s) and {tokens} expired reset token(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="movex-auth",
        description="MoveX auth -- account and maintenance commands.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create an account with any role.")
    create.add_argument("username")
    create.add_argument("--role", choices=sorted(ROLES), default="user")
    create.add_argument("--email", default=None)
    create.add_argument("--full-name", default=None)
    create.add_argument("--mfa", action="store_true", help="Require a one-time code at login.")
    create.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting.",
    )
    create.set_defaults(func=cmd_create_user)

    mfa = sub.add_parser("set-mfa", help="Turn the MFA requirement on or off for an account.")
    mfa.add_argument("username")
    mfa.add_argument("state", choices=["on", "off"])
    mfa.set_defaults(func=cmd_set_mfa)

    status = sub.add_parser("set-status", help="Enable or disable an account and end its sessions.")
    status.add_argument("username")
    status.add_argument("status", choices=list(ACCOUNT_STATUSES))
    status.set_defaults(func=cmd_set_status)

    reset = sub.add_parser("reset-password", help="Set a new password for an account and end its sessions.")
    reset.add_argument("username")
    reset.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from the first line of stdin instead of prompting.",
    )
    reset.set_defaults(func=cmd_reset_password)

    purge = sub.add_parser("purge-expired", help="Delete expired sessions and reset tokens now.")
    purge.set_defaults(func=cmd_purge_expired)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    engine = create_auth_engine(get_settings().database_url)
    try:
        return args.func(args, UserStore(engine))
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
