#!/usr/bin/env python3
"""
AuthKeep -- administrative command line.

Operates directly on the credential store named by DATABASE_URL, using the
same services as the HTTP API. Run the API with uvicorn api.main:app.

Usage:
  python main.py create-user alice@example.com
  python main.py create-user alice@example.com --verified
  python main.py lock alice@example.com
  python main.py show alice@example.com
  python main.py sweep-tokens

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: sqlite:///authkeep.db)
  SECRET_KEY    Signing secret, at least 32 characters. Required unless DEBUG=true.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import AuthError
from auth.services import Services, build_services
from core.config import get_settings


def _read_password(given: Optional[str]) -> str:
    """Return --password if given, otherwise prompt twice without echo."""
    if given:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def cmd_create_user(services: Services, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    user, result = services.accounts.register(
        args.email,
        password,
        display_name=args.name,
        send_verification=not args.verified,
    )
    if args.verified:
        services.accounts.mark_verified(user.email)
        print(f"  Created user {user.email} (id={user.id}, verified).")
    else:
        outcome = result.outcome.value if result is not None else "not sent"
        print(f"  Created user {user.email} (id={user.id}, unverified). Verification mail: {outcome}.")
    return 0


def cmd_lock(services: Services, args: argparse.Namespace) -> int:
    step = services.accounts.lock_account(args.email)
    if step.changed:
        print(f"  Locked {args.email} (was {step.previous.value}).")
    else:
        print(f"  {args.email} is already locked.")
    return 0


def cmd_show(services: Services, args: argparse.Namespace) -> int:
    user = services.store.find_user_by_email(args.email.strip().lower())
    if user is None:
        print(f"  [!] No user with email {args.email}.")
        return 1
    print(f"\n  {user.email}  (id={user.id})")
    print("  " + "─" * 40)
    print(f"  State:       {user.state.value}")
    print(f"  Name:        {user.display_name or '-'}")
    print(f"  Created:     {user.created_at.isoformat() if user.created_at else '-'}")
    print(f"  Last login:  {user.last_login.isoformat() if user.last_login else 'never'}")
    tokens = services.store.list_action_tokens(user.id)
    if tokens:
        print("  Action tokens:")
        for token in tokens:
            status = f"consumed {token.consumed_at.isoformat()}" if token.consumed else "active"
            print(f"    {token.purpose.value:<20} expires {token.expires_at.isoformat()}  {status}")
    sessions = services.sessions.list_active(user.id)
    print(f"  Sessions:    {len(sessions)} active")
    for session in sessions:
        where = session.ip_address or "-"
        print(f"    {session.id}  last active {session.last_active_at.isoformat()}  from {where}")
    print()
    return 0


def cmd_sweep_tokens(services: Services, args: argparse.Namespace) -> int:
    removed = services.actions.sweep_expired_tokens()
    dead_sessions = services.sessions.sweep_expired_sessions()
    print(f"  Removed {removed} expired action token(s) and {dead_sessions} expired or revoked session(s).")
    return 0


_COMMANDS = {
    "create-user": cmd_create_user,
    "lock": cmd_lock,
    "show": cmd_show,
    "sweep-tokens": cmd_sweep_tokens,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authkeep",
        description="Administer AuthKeep accounts and action tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice@example.com --name Alice
  python main.py create-user ops@example.com --verified --password 'correct horse 1'
  python main.py lock mallory@example.com
  DATABASE_URL=sqlite:///prod.db python main.py sweep-tokens
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Register an account (sends a verification link)")
    create.add_argument("email", help="Email address of the new account")
    create.add_argument("--name", default=None, help="Optional display name")
    create.add_argument(
        "--password",
        default=None,
        help="Password (prompted without echo if omitted; avoid on shared machines)",
    )
    create.add_argument(
        "--verified",
        action="store_true",
        help="Mark the account verified immediately instead of mailing a link",
    )

    lock = sub.add_parser("lock", help="Lock an account; it can no longer log in and its sessions are revoked")
    lock.add_argument("email")

    show = sub.add_parser("show", help="Print an account's state, action tokens, and active sessions")
    show.add_argument("email")

    sub.add_parser("sweep-tokens", help="Delete expired verification and reset tokens, and dead sessions")
    return parser


def main(argv: Optional[list[str]] = None, services: Optional[Services] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    if services is None:
        services = build_services(get_settings())
    try:
        return _COMMANDS[args.command](services, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
