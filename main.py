#!/usr/bin/env python3
"""
keyward admin CLI -- account maintenance without going through HTTP.

Usage:
  python main.py create-user alice --email alice@example.com --role admin
  python main.py unlock alice
  python main.py reset-password alice
  python main.py set-active alice --inactive
  python main.py purge

Passwords are prompted for (getpass) unless --password is given.
Every mutating command writes an audit entry with resource="cli".

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: sqlite keyward.db)
  SECRET_KEY    Required unless DEBUG=true; see core/config.py
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditRecorder
from auth.database import Database
from auth.errors import AccountNotFound, AuthError
from auth.lockout import LockoutPolicy
from auth.models import AuditEvent, UserAccount
from auth.service import check_password_strength
from auth.sessions import SessionLedger
from auth.store import CredentialStore
from auth.tokens import hash_password
from core.config import Settings, get_settings

ROLES = ["admin", "user", "local", "qa", "uat", "beta", "prod"]


def _read_password(args: argparse.Namespace) -> str:
    if args.password:
        return args.password
    first = getpass.getpass("New password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


class AdminContext:
    """The stores one CLI invocation needs, built from Settings."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.db = Database.from_settings(settings)
        self.credentials = CredentialStore(
            self.db,
            LockoutPolicy.from_settings(settings),
            bcrypt_rounds=settings.bcrypt_rounds,
        )
        self.sessions = SessionLedger(self.db)
        self.audit = AuditRecorder(self.db)

    def record(self, action: str, user_id: Optional[int] = None, **details) -> None:
        self.audit.record(AuditEvent(action=action, user_id=user_id, resource="cli", details=details))

    def close(self) -> None:
        self.db.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_create_user(ctx: AdminContext, args: argparse.Namespace) -> int:
    password = _read_password(args)
    check_password_strength(password, ctx.settings.min_password_length)
    account = UserAccount(
        username=args.username,
        password_hash=hash_password(password, rounds=ctx.settings.bcrypt_rounds),
        role=args.role,
        email=args.email,
        is_active=not args.inactive,
    )
    try:
        user_id = ctx.credentials.create_user(account)
    except IntegrityError:
        print(f"  [!] A user named '{args.username}' (or with that email) already exists.")
        return 1
    ctx.record("user_create", user_id, username=args.username, role=args.role)
    print(f"  Created user '{args.username}' (id {user_id}, role {args.role}).")
    return 0


def cmd_unlock(ctx: AdminContext, args: argparse.Namespace) -> int:
    account = ctx.credentials.lookup_by_username(args.username)
    ctx.credentials.unlock(account.id)
    ctx.record("account_unlock", account.id, username=args.username, failedAttempts=account.failed_attempts)
    print(f"  Unlocked '{args.username}' (cleared {account.failed_attempts} failed attempt(s)).")
    return 0


def cmd_reset_password(ctx: AdminContext, args: argparse.Namespace) -> int:
    account = ctx.credentials.lookup_by_username(args.username)
    password = _read_password(args)
    check_password_strength(password, ctx.settings.min_password_length)
    ctx.credentials.set_password(account.id, password)
    revoked = ctx.sessions.revoke_all_for_user(account.id)
    ctx.record("password_reset", account.id, username=args.username, revokedSessions=revoked)
    print(f"  Password reset for '{args.username}'; {revoked} session(s) revoked.")
    return 0


def cmd_set_active(ctx: AdminContext, args: argparse.Namespace) -> int:
    account = ctx.credentials.lookup_by_username(args.username)
    ctx.credentials.set_active(account.id, args.active)
    revoked = 0
    if not args.active:
        revoked = ctx.sessions.revoke_all_for_user(account.id)
    action = "account_activate" if args.active else "account_deactivate"
    ctx.record(action, account.id, username=args.username, revokedSessions=revoked)
    state = "active" if args.active else "inactive"
    print(f"  '{args.username}' is now {state}; {revoked} session(s) revoked.")
    return 0


def cmd_purge(ctx: AdminContext, args: argparse.Namespace) -> int:
    expired = ctx.sessions.purge_expired()
    revoked = ctx.sessions.purge_revoked_older_than(ctx.settings.session_retention_days)
    audit = ctx.audit.purge_older_than(ctx.settings.audit_retention_days)
    ctx.record("purge", expiredSessions=expired, revokedSessions=revoked, auditEntries=audit)
    print(f"  Purged {expired} expired session(s), {revoked} old revoked session(s), {audit} audit entr(ies).")
    return 0


COMMANDS = {
    "create-user": cmd_create_user,
    "unlock": cmd_unlock,
    "reset-password": cmd_reset_password,
    "set-active": cmd_set_active,
    "purge": cmd_purge,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyward",
        description="Administer keyward accounts, locks and retention.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice --role admin
  python main.py unlock alice
  python main.py reset-password alice
  python main.py set-active alice --inactive
  DATABASE_URL=sqlite:///prod.db python main.py purge
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create a local account")
    create.add_argument("username")
    create.add_argument("--email", default=None, help="Optional unique email address")
    create.add_argument("--role", choices=ROLES, default="user", help="Account role (default: user)")
    create.add_argument("--password", default=None, help="Password (prompted for when omitted)")
    create.add_argument("--inactive", action="store_true", help="Create the account disabled")

    unlock = sub.add_parser("unlock", help="Clear the failed-attempt counter and any lock")
    unlock.add_argument("username")

    reset = sub.add_parser("reset-password", help="Set a new password and revoke every session")
    reset.add_argument("username")
    reset.add_argument("--password", default=None, help="Password (prompted for when omitted)")

    active = sub.add_parser("set-active", help="Enable or disable an account")
    active.add_argument("username")
    flag = active.add_mutually_exclusive_group(required=True)
    flag.add_argument("--active", dest="active", action="store_true", help="Enable the account")
    flag.add_argument("--inactive", dest="active", action="store_false", help="Disable the account and revoke its sessions")

    sub.add_parser("purge", help="Delete expired sessions and audit entries past retention")
    return parser


def main(argv: Optional[list[str]] = None, settings: Optional[Settings] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    ctx = AdminContext(settings or get_settings())
    try:
        return COMMANDS[args.command](ctx, args)
    except AccountNotFound:
        print(f"  [!] No user named '{args.username}'.")
        return 1
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        ctx.close()


if __name__ == "__main__":
    sys.exit(main())
