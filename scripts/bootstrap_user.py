#!/usr/bin/env python3
"""Create a verified password account without the email round trip.

Usage:
    BOOTSTRAP_EMAIL=ops@example.com BOOTSTRAP_PASSWORD=Passw0rd!x python scripts/bootstrap_user.py
    python scripts/bootstrap_user.py --email ops@example.com --password Passw0rd!x
    python scripts/bootstrap_user.py --email ops@example.com --password Passw0rd!x --admin

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the account
    BOOTSTRAP_PASSWORD: Password for the account (8 to 128 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


def _grant_admin(runtime, user_id: str) -> None:
    from authcore.service.errors import ResponseCode
    from authcore.storage.models import RoleType

    granted = asyncio.run(runtime.roles.create_user_role(user_id, RoleType.ADMIN))
    if granted.code == ResponseCode.CONFLICT:
        print("Admin role already granted")
    else:
        granted.unwrap()
        print("Granted admin role")


def bootstrap_user(
    email: str, password: str, dry_run: bool = False, admin: bool = False
) -> dict:
    # Import here so the env defaults below are in place before settings load
    from authcore.service.runtime import get_runtime
    from authcore.storage.models import AuthType

    runtime = get_runtime()
    existing = runtime.users.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        if admin and not dry_run:
            _grant_admin(runtime, existing.id)
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    created = runtime.users.create_user(
        AuthType.PASSWORD,
        email,
        runtime.hasher.hash(password),
        email_verified=True,
    )
    user = created.unwrap()
    print(f"Created user: {email} (id: {user.id})")
    if admin:
        _grant_admin(runtime, user.id)
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a verified AuthCore account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("BOOTSTRAP_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("BOOTSTRAP_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument("--admin", action="store_true", help="Grant the admin role")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)
    if not args.password or not 8 <= len(args.password) <= 128:
        print("Error: password must be 8 to 128 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authcore-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        bootstrap_user(args.email.strip().lower(), args.password, args.dry_run, args.admin)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
