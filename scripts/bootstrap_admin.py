#!/usr/bin/env python3
"""Bootstrap an admin account for testing and initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet the password policy)
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

ADMIN_ROLE = "admin"
ADMIN_PERMISSIONS = (
    ("users", "manage"),
    ("roles", "manage"),
    ("invitations", "manage"),
)


def ensure_admin_role(runtime):
    """Create the admin role and its permissions if missing; return the role."""
    accounts = runtime.accounts
    role = runtime.store.get_role_by_name(ADMIN_ROLE)
    if role is None:
        role = accounts.create_role(ADMIN_ROLE, "Full administrative access")
    for resource, action in ADMIN_PERMISSIONS:
        name = f"{resource}:{action}"
        permission = runtime.store.get_permission_by_name(name)
        if permission is None:
            permission = accounts.create_permission(resource, action)
        accounts.assign_permission_to_role(role.id, permission.id)
    return accounts.get_role(role.id)


async def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin account or grant the admin role to an existing one.

    Returns:
        dict with account_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    existing = runtime.store.get_account_by_email(email.strip().lower())

    if existing:
        if ADMIN_ROLE in existing.role_names:
            print(f"Account {email} already exists as admin (id: {existing.id})")
            return {"account_id": existing.id, "email": existing.email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": existing.email, "status": "dry_run"}

        role = ensure_admin_role(runtime)
        runtime.accounts.assign_role(existing.id, role.id)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    role = ensure_admin_role(runtime)
    account = await runtime.accounts.register(email, password, role_id=role.id)
    tokens = await runtime.tokens.login(email, password, identifier="bootstrap_admin")

    print(f"Created admin account: {account.email} (id: {account.id})")
    return {
        "account_id": account.id,
        "email": account.email,
        "status": "created",
        "access_token": tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for identitycore",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # Import here to avoid loading config before env vars are set
    from identitycore.service.errors import AuthError
    from identitycore.service.runtime import Runtime

    try:
        runtime = Runtime()
        result = asyncio.run(bootstrap_admin(runtime, args.email, args.password, args.dry_run))
    except AuthError as e:
        print(f"Error: {e.message} ({e.error_code})")
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")


if __name__ == "__main__":
    main()
