#!/usr/bin/env python3
"""Create a local user, optionally on the VIP tier.

Usage:
    # Using environment variables:
    USER_EMAIL=alice@example.com USER_PASSWORD=s3cret python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --email alice@example.com --password s3cret --vip

An existing user is left alone unless --vip is given, in which case a
STANDARD account is upgraded.

Environment Variables:
    USER_EMAIL: Email for the user
    USER_PASSWORD: Password for the user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(
    email: str,
    password: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    vip: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or upgrade a user.

    Returns:
        dict with user_id, email, and status ('created', 'upgraded',
        'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authsvc.service.runtime import get_runtime
    from authsvc.storage.models import AccountTier

    runtime = get_runtime()
    existing = runtime.store.find_by_email(email)

    if existing:
        if not vip or existing.account_tier == AccountTier.VIP:
            print(f"User {existing.email} already exists (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "exists"}
        if dry_run:
            print(f"[DRY RUN] Would upgrade {existing.email} to VIP")
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        await runtime.auth.upgrade_tier(existing.email, AccountTier.VIP)
        print(f"Upgraded {existing.email} to VIP (id: {existing.id})")
        return {"user_id": existing.id, "email": existing.email, "status": "upgraded"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    session = await runtime.auth.register(email, password, first_name, last_name)
    if vip:
        await runtime.auth.upgrade_tier(session.user.email, AccountTier.VIP)
    print(f"Created user: {session.user.email} (id: {session.user.id})")
    return {
        "user_id": session.user.id,
        "email": session.user.email,
        "status": "created",
        "access_token": session.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a local authsvc user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("USER_EMAIL"),
        help="User email (or set USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="User password (or set USER_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    parser.add_argument("--vip", action="store_true", help="Put the account on the VIP tier")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/authsvc-cli"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            create_user(
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                vip=args.vip,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created" and result.get("access_token"):
        print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
