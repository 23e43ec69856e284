#!/usr/bin/env python3
"""Create a verified administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Sup3rSecret python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password Sup3rSecret

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (same policy as registration)
    DATABASE_URL: PostgreSQL connection string (the in-memory store is used when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys


async def bootstrap_admin(
    email: str, password: str, first_name: str, last_name: str, dry_run: bool = False
) -> dict:
    """Create the admin account, or report the one that already exists."""
    # imported late so the env defaults below are in place before settings load
    from accountcore.service.credentials import check_password_strength
    from accountcore.service.runtime import get_runtime
    from accountcore.service.schemas import (
        dump_profile,
        normalize_registration_email,
        parse_profile,
    )
    from accountcore.storage.models import Role

    runtime = get_runtime()
    email = normalize_registration_email(email)
    check_password_strength(password)
    profile = parse_profile(Role.ADMIN, {"firstName": first_name, "lastName": last_name})

    existing = runtime.store.get_account_by_email(email)
    if existing:
        status = "already_admin" if existing.role == Role.ADMIN else "exists_with_other_role"
        return {"account_id": existing.id, "email": email, "status": status}

    if dry_run:
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = runtime.auth.credentials.create_account(
        email, password, Role.ADMIN, dump_profile(profile)
    )
    runtime.store.mark_email_verified(account.id)
    return {"account_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default="Platform")
    parser.add_argument("--last-name", default="Admin")
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

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/accountcore-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_CACHE_FALLBACK", "true")

    from accountcore.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, args.password, args.first_name, args.last_name, args.dry_run
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("Admin account created.")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "dry_run":
        print(f"[DRY RUN] Would create admin account: {result['email']}")
    elif result["status"] == "already_admin":
        print(f"No changes needed: {result['email']} is already an admin ({result['account_id']}).")
    else:
        print(f"Error: {result['email']} is registered with a different role.")
        sys.exit(1)


if __name__ == "__main__":
    main()
