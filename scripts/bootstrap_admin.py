#!/usr/bin/env python3
"""Create the first SUPERADMIN account.

Every other account is created through POST /auth/register by an admin, so a
fresh deployment needs one account seeded out of band.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='S3cure-password' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'S3cure-password' \
        --first-name Admin --last-name Sistema

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (8 characters minimum)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
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

MIN_PASSWORD_LENGTH = 8


async def bootstrap_admin(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    dry_run: bool = False,
) -> dict:
    """Create a SUPERADMIN unless the email is already taken.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from edugate.service.policy import Role
    from edugate.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        print(
            f"User {email} already exists with role {existing_user.role} "
            f"(id: {existing_user.id})"
        )
        return {"user_id": existing_user.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create SUPERADMIN: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        first_name,
        last_name,
        role=Role.SUPERADMIN.value,
    )
    await runtime.auth.save_password(user.id, password)
    print(f"Created SUPERADMIN: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a SUPERADMIN account for Edugate",
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
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="Sistema")
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

    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/edugate-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                args.first_name,
                args.last_name,
                args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSUPERADMIN created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made.")


if __name__ == "__main__":
    main()
