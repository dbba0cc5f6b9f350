#!/usr/bin/env python3
"""Seed the role catalogue and create or promote an admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password SecurePassword123!

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (at least 12 characters)
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


def validate_admin(username: str, email: str, password: str) -> list[str]:
    """Run the signup request validators and return any problems found."""
    from pydantic import ValidationError

    from teachgram.api.schemas import SignupRequest

    try:
        SignupRequest(username=username, email=email, name=username, password=password)
    except ValidationError as exc:
        return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
    if len(password) < 12:
        return ["password: admin passwords must be at least 12 characters"]
    return []


async def bootstrap_admin(
    username: str, email: str, password: str, dry_run: bool = False
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, username, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from teachgram.service.auth import SignupData
    from teachgram.service.runtime import get_runtime
    from teachgram.storage.models import DEFAULT_ROLES, ROLE_ADMIN

    runtime = get_runtime()

    if not dry_run:
        for role in DEFAULT_ROLES:
            runtime.store.create_role(role)

    existing = runtime.store.find_by_username(username) or runtime.store.find_by_email(email)
    if existing:
        if existing.has_role(ROLE_ADMIN):
            print(f"Account {existing.username} is already an admin (id: {existing.id})")
            return {
                "user_id": existing.id,
                "username": existing.username,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {existing.username} to admin")
            return {"user_id": existing.id, "username": existing.username, "status": "dry_run"}

        existing.roles.add(ROLE_ADMIN)
        runtime.store.save(existing)
        print(f"Promoted existing account {existing.username} to admin (id: {existing.id})")
        return {
            "user_id": existing.id,
            "username": existing.username,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    session = await runtime.auth.signup(
        SignupData(username=username, email=email, name=username, password=password)
    )
    account = runtime.store.find_by_id(session.user_id)
    account.roles.add(ROLE_ADMIN)
    runtime.store.save(account)

    print(f"Created admin account: {username} (id: {account.id})")
    return {
        "user_id": account.id,
        "username": username,
        "status": "created",
        "token": session.token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Teachgram",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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

    problems = validate_admin(args.username, args.email, args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/teachgram-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("PERSIST_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email.strip().lower(), args.password, args.dry_run)
        )

        if result["status"] == "created":
            print("\nAdmin account created successfully!")
            print(f"  Username: {result['username']}")
            print(f"  User ID: {result['user_id']}")
            if result.get("token"):
                print(f"  Token: {result['token'][:50]}...")
        elif result["status"] == "promoted":
            print("\nExisting account promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - account is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
