#!/usr/bin/env python3
"""Create or promote an admin user for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_NAME="Site Admin" python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --name "Site Admin"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_NAME: Display name used when the user has to be created
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    TOKEN_SECRET / TOKEN_ISSUER: required to mint the printed access token
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(email: str, name: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from todoauth.service.errors import NotFoundError
    from todoauth.service.runtime import get_runtime
    from todoauth.service.tokens import TokenPayload
    from todoauth.storage.models import CreateUserParams, Role, UpdateUserParams

    runtime = get_runtime()

    try:
        existing_user = await runtime.users.get_user_by_email(email)
    except NotFoundError:
        existing_user = None

    if existing_user:
        if existing_user.role == Role.ADMIN:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        user = await runtime.users.update_user(
            UpdateUserParams(id=existing_user.id, role=Role.ADMIN)
        )
        print(f"Promoted existing user {email} to admin (id: {user.id})")
        status = "promoted"
    else:
        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = await runtime.users.create_user(
            CreateUserParams(name=name, email=email, role=Role.ADMIN)
        )
        print(f"Created admin user: {email} (id: {user.id})")
        status = "created"

    token = runtime.tokens.mint(TokenPayload(user_id=user.id, role=user.role))
    return {
        "user_id": user.id,
        "email": email,
        "status": status,
        "access_token": token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the to-do backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Admin display name (or set ADMIN_NAME env var)",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.name, args.dry_run))

        if result["status"] == "created":
            print("\nAdmin user created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
        elif result["status"] == "promoted":
            print("\nExisting user promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - user is already an admin.")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
