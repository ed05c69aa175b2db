#!/usr/bin/env python3
"""Provision an admin account for the storefront backend.

Usage:
    # Using environment variables:
    ADMIN_USER=owner ADMIN_PASS='long passphrase' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username owner --password 'long passphrase'

    # Replace the password of an existing admin and sign out all its sessions:
    python scripts/bootstrap_admin.py --username owner --password 'new passphrase' --reset-password

Environment Variables:
    ADMIN_USER: Username for the admin account
    ADMIN_PASS: Password for the admin account
    DATABASE_URL: PostgreSQL connection string
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    username: str, password: str, *, reset_password: bool = False, dry_run: bool = False
) -> dict:
    """Create an admin, or reset the password of an existing one.

    Returns:
        dict with user_id, username, and status
        ('created', 'password_reset', 'exists', or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from vitrine.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_admin_user_by_username(username)

    if existing:
        if not reset_password:
            print(f"Admin {username} already exists (id: {existing.id})")
            return {"user_id": existing.id, "username": username, "status": "exists"}
        if dry_run:
            print(f"[DRY RUN] Would reset the password of {username}")
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        if len(password) < runtime.settings.password_min_length:
            raise ValueError(
                f"password must be at least {runtime.settings.password_min_length} characters"
            )
        runtime.store.update_admin_password(existing.id, runtime.hasher.hash(password))
        revoked = runtime.tokens.revoke_other_sessions(existing.id)
        print(f"Reset password for {username}; signed out {revoked} session(s)")
        return {"user_id": existing.id, "username": username, "status": "password_reset"}

    if dry_run:
        print(f"[DRY RUN] Would create admin: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = runtime.auth.create_admin(username, password)
    print(f"Created admin: {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Provision an admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USER"),
        help="Admin username (or set ADMIN_USER env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASS"),
        help="Admin password (or set ADMIN_PASS env var)",
    )
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Replace the password if the admin already exists",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username:
        print("Error: --username or ADMIN_USER environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASS environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: set DATABASE_URL so the account is persisted")
        sys.exit(1)

    try:
        result = bootstrap_admin(
            args.username,
            args.password,
            reset_password=args.reset_password,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes made; pass --reset-password to replace the password.")


if __name__ == "__main__":
    main()
