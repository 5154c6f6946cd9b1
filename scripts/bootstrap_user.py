#!/usr/bin/env python3
"""Create a password account for testing and initial setup.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=alice@example.com BOOTSTRAP_PASSWORD=pw12345678 python scripts/bootstrap_user.py --name Alice

    # Or with command line args:
    python scripts/bootstrap_user.py --email alice@example.com --password pw12345678 --name Alice

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the account
    BOOTSTRAP_PASSWORD: Password for the account (8-128 characters)
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true to try the flow without a database
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


async def bootstrap_user(
    email: str, password: str, name: str, dry_run: bool = False
) -> dict:
    """Register an account unless the email is already taken.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tokenward.service.runtime import close_runtime, get_runtime

    runtime = get_runtime()
    try:
        existing = await asyncio.to_thread(runtime.store.find_by_email, email)
        if existing:
            print(f"User {existing.email} already exists (id: {existing.id})")
            return {"user_id": existing.id, "email": existing.email, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        result = (await runtime.auth.register(email, password, name)).unwrap()
        print(f"Created user: {result.identity.email} (id: {result.identity.id})")
        return {
            "user_id": result.identity.id,
            "email": result.identity.email,
            "status": "created",
            "access_token": result.tokens.access_token,
        }
    finally:
        await close_runtime()


def main():
    parser = argparse.ArgumentParser(
        description="Create a password account for tokenward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="Account email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="Account password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Bootstrap User", help="Display name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)
    if not args.password and not args.dry_run:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    from tokenward.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_user(args.email, args.password or "", args.name, dry_run=args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message} ({exc.error_code})")
        sys.exit(1)
    if result.get("access_token"):
        print(f"Access token: {result['access_token']}")


if __name__ == "__main__":
    main()
