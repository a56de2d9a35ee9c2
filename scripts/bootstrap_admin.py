#!/usr/bin/env python3
"""Bootstrap an ADMIN account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure!Pass1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure!Pass1'

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)

Roles are fixed at creation, so an existing non-admin account with the same
email is reported and left untouched.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin account unless it already exists.

    Returns:
        dict with user_id, email, and status
        ('created', 'already_admin', 'conflict' or 'dry_run')
    """
    # Import here so env defaults set in main() apply to settings
    from fixrx.config import get_settings
    from fixrx.service.passwords import PasswordHasher, PasswordPolicy
    from fixrx.storage.memory import MemoryStore
    from fixrx.storage.models import UserRole, UserStatus
    from fixrx.storage.postgres import PostgresStore

    settings = get_settings()
    check = PasswordPolicy().validate(password)
    if not check.valid:
        raise ValueError(check.reason)

    store = (
        MemoryStore(fs_root=settings.shared_fs_root)
        if settings.use_memory_store
        else PostgresStore(settings.database_url)
    )
    email = email.strip().lower()
    existing = store.get_user_by_email(email)
    if existing:
        status = "already_admin" if existing.role == UserRole.ADMIN else "conflict"
        return {"user_id": existing.id, "email": email, "status": status}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    hasher = PasswordHasher(
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
    )
    user = store.create_user(
        email,
        role=UserRole.ADMIN,
        status=UserStatus.ACTIVE,
        password_hash=hasher.hash_sync(password),
        email_verified=True,
    )
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for FixRx",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/fixrx-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "already_admin":
        print(f"\nNo changes needed - {result['email']} is already an admin.")
    elif result["status"] == "conflict":
        print(f"\nError: {result['email']} exists with a non-admin role; roles are fixed at creation.")
        sys.exit(1)
    else:
        print(f"[DRY RUN] Would create admin account: {result['email']}")


if __name__ == "__main__":
    main()
