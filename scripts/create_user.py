#!/usr/bin/env python3
"""Create a regular (registered) chat user.

Usage:
    USER_EMAIL=someone@example.com USER_PASSWORD=SecurePassword123! python scripts/create_user.py

    python scripts/create_user.py --email someone@example.com --password SecurePassword123!

Environment Variables:
    USER_EMAIL: Email for the user
    USER_PASSWORD: Password for the user (at least 8 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(email: str, password: str, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from chatrelay.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email.strip().lower())
    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user, session = await runtime.auth.register(email, password)
    await runtime.close()
    return {
        "user_id": user.id,
        "email": email,
        "status": "created",
        "session_id": session.id,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a chatrelay user",
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
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)
    if not args.password or len(args.password) < 8:
        print("Error: a password of at least 8 characters is required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(create_user(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Session: {result['session_id']}")


if __name__ == "__main__":
    main()
