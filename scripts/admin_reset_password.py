#!/usr/bin/env python3
"""Operator tool: force-set an account's password, clear its lockout or change its role.

Usage:
    # Set a new password (prompts when --password and RESET_PASSWORD are absent):
    python scripts/admin_reset_password.py --account alice@example.com

    # Only clear a lockout:
    python scripts/admin_reset_password.py --account alice --unlock

    # Promote to admin:
    python scripts/admin_reset_password.py --account alice --role admin

Environment Variables:
    RESET_PASSWORD: New password when --password is not given
    STORE_BACKEND / REDIS_URL / STATE_DIR: select the credential store
"""
from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def admin_reset(
    runtime,
    account_ref: str,
    *,
    password: str | None = None,
    unlock_only: bool = False,
    role: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Apply the requested operator change to one account.

    ``account_ref`` is an email address or a username. Setting a password
    also stamps ``password_changed_at`` so every outstanding token dies, and
    clears any lockout.
    """
    from gatekeep.service.validation import validate_password
    from gatekeep.storage.models import ROLES, utcnow

    store = runtime.store
    if "@" in account_ref:
        account = store.get_account_by_email(account_ref.strip().lower())
    else:
        account = store.get_account_by_username(account_ref.strip())
    if account is None:
        return {"account": account_ref, "status": "not_found"}

    if role is not None and role not in ROLES:
        raise ValueError(f"role must be one of {', '.join(ROLES)}")
    if not unlock_only and password is None and role is None:
        raise ValueError("a new password is required unless --unlock or --role is given")
    if password is not None and not unlock_only:
        validate_password(password, runtime.settings.min_password_length)

    if dry_run:
        return {"account_id": account.id, "status": "dry_run"}

    now = utcnow()
    actions = []
    if unlock_only:
        store.reset_failed_attempts(account.id)
        actions.append("unlocked")
    elif password is not None:
        store.set_password(account.id, runtime.hasher.hash(password), now, clear_lockout=True)
        actions.append("password_set")
    if role is not None and role != account.role:
        store.update_account(account.id, now=now, role=role)
        actions.append(f"role={role}")
    return {"account_id": account.id, "status": "updated", "actions": actions}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Reset a Gatekeep account's password or lockout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--account", required=True, help="Email address or username")
    parser.add_argument(
        "--password",
        default=os.environ.get("RESET_PASSWORD"),
        help="New password (or set RESET_PASSWORD env var)",
    )
    parser.add_argument(
        "--unlock",
        action="store_true",
        help="Only clear failed attempts and any lock",
    )
    parser.add_argument("--role", help="Set the account role (user, admin, trainer)")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    password = args.password
    if not args.unlock and password is None and args.role is None:
        password = getpass.getpass("New password: ")

    from gatekeep.service.runtime import get_runtime

    try:
        result = admin_reset(
            get_runtime(),
            args.account,
            password=password,
            unlock_only=args.unlock,
            role=args.role,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "not_found":
        print(f"No account matches {args.account}")
        return 1
    if result["status"] == "dry_run":
        print(f"[DRY RUN] Would update account {result['account_id']}")
        return 0
    print(f"Updated account {result['account_id']}: {', '.join(result['actions']) or 'no changes'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
