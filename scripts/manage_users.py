#!/usr/bin/env python3
"""Create users and toggle the account-locked flag.

Usage:
    python scripts/manage_users.py create --email user@example.com --password 'Secure#Pass1' \
        --name "Ada Lovelace"
    python scripts/manage_users.py lock --email user@example.com
    python scripts/manage_users.py unlock --email user@example.com
    python scripts/manage_users.py show --email user@example.com

Environment Variables:
    STATE_FS_ROOT: directory holding the persisted user store (required for
        changes to outlive the command)
    REDIS_URL: optional; the command only touches the user store
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _runtime():
    # Import here so environment defaults are in place before settings load
    from roastauth.service.runtime import get_runtime

    return get_runtime()


def create_user(email: str, password: str, name: Optional[str]) -> int:
    from roastauth.service import validation
    from roastauth.storage.errors import ConstraintViolation

    try:
        normalized = validation.normalize_email(email)
        validation.check_password_strength(password)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    runtime = _runtime()
    try:
        user = runtime.store.create_user(normalized, name=name, auth_method="email")
    except ConstraintViolation as exc:
        print(f"Error: {exc.message}")
        return 1
    runtime.auth.save_password(user.id, password)
    print(f"Created user {normalized} (id: {user.id})")
    return 0


def set_locked(email: str, locked: bool) -> int:
    runtime = _runtime()
    user = runtime.store.get_user_by_email(email.strip().lower())
    if user is None:
        print(f"Error: no user with email {email}")
        return 1
    runtime.store.set_user_locked(user.id, locked)
    print(f"{'Locked' if locked else 'Unlocked'} {user.email} (id: {user.id})")
    return 0


def show_user(email: str) -> int:
    runtime = _runtime()
    users = runtime.store.list_users_by_email(email.strip().lower())
    if not users:
        print(f"Error: no user with email {email}")
        return 1
    for user in users:
        providers = [acct.provider for acct in runtime.store.list_linked_accounts(user.id)]
        print(
            f"{user.id}  {user.email}  auth={user.auth_method}  locked={user.is_locked}  "
            f"failed_attempts={user.failed_login_attempts}  linked={','.join(providers) or '-'}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage roastauth user accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="create an email/password user")
    create.add_argument("--email", required=True)
    create.add_argument(
        "--password",
        default=os.environ.get("ROASTAUTH_USER_PASSWORD"),
        help="Password (or set ROASTAUTH_USER_PASSWORD)",
    )
    create.add_argument("--name", default=None)

    for name, help_text in (
        ("lock", "flag the account as locked"),
        ("unlock", "clear the account-locked flag"),
        ("show", "print every account registered under an email"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--email", required=True)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if not os.environ.get("STATE_FS_ROOT"):
        print("Note: STATE_FS_ROOT is not set; changes will not be persisted")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    if args.command == "create":
        if not args.password:
            print("Error: --password or ROASTAUTH_USER_PASSWORD environment variable required")
            return 1
        return create_user(args.email, args.password, args.name)
    if args.command in ("lock", "unlock"):
        return set_locked(args.email, args.command == "lock")
    return show_user(args.email)


if __name__ == "__main__":
    sys.exit(main())
