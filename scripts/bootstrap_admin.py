#!/usr/bin/env python3
"""Seed the SuperAdmin account and its farm.

Usage:
    ADMIN_EMAIL=admin@farm.example ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@farm.example --password 'Secure#Pass123'

Environment Variables:
    ADMIN_EMAIL: Email for the SuperAdmin
    ADMIN_USERNAME: Username for the SuperAdmin (defaults to the email)
    ADMIN_PASSWORD: Password for the SuperAdmin
    SHARED_FS_ROOT: Directory holding the persisted store state
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str, username: str, password: str, dry_run: bool = False
) -> dict:
    """Create the SuperAdmin, or grant the role to an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from farmgate.service.runtime import get_runtime
    from farmgate.storage.models import Role

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user and existing_user.has_role(Role.SUPER_ADMIN):
        print(f"User {email} already exists as SuperAdmin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

    if dry_run:
        action = "promote existing user" if existing_user else "create SuperAdmin"
        print(f"[DRY RUN] Would {action}: {email}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "status": "dry_run",
        }

    outcome = await runtime.auth.seed_super_admin(email, username, password)
    if not outcome.ok:
        raise RuntimeError(outcome.message)
    user = outcome.value
    print(f"{outcome.message}: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed the Farmgate SuperAdmin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from farmgate.api.schemas import _validate_password_strength

    try:
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        asyncio.run(
            bootstrap_admin(
                args.email.strip().lower(),
                args.username or args.email.strip().lower(),
                args.password,
                args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
