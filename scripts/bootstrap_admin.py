#!/usr/bin/env python3
"""Bootstrap a storefront admin account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure!Passw0rd' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure!Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet strength rules)
    ADMIN_ROLE: Role name granting admin access (default: admin)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _open_store():
    from marketsphere.storage.memory import MemoryUserStore
    from marketsphere.storage.postgres import PostgresUserStore

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
        return MemoryUserStore()
    return PostgresUserStore(database_url, min_size=1, max_size=2)


def bootstrap_admin(store, email: str, password: str, *, role: str = "admin", dry_run: bool = False) -> dict:
    """Create a verified admin or promote an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    from marketsphere.service.passwords import hash_password, validate_password_strength

    email = email.strip().lower()
    existing_user = store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == role:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        store.update_user_role(existing_user.id, role)
        if not existing_user.is_verified:
            store.mark_verified(existing_user.id)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    validate_password_strength(password)

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = store.create_user(
        email,
        role=role,
        password_hash=hash_password(password),
        is_verified=True,
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the MarketSphere storefront",
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
        "--role",
        default=os.environ.get("ADMIN_ROLE", "admin"),
        help="Role granting admin access (or set ADMIN_ROLE env var)",
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

    from marketsphere.service.errors import ValidationError
    from marketsphere.storage.errors import ConstraintViolation

    store = _open_store()
    try:
        result = bootstrap_admin(
            store, args.email, args.password, role=args.role, dry_run=args.dry_run
        )
    except ValidationError as exc:
        print(f"Error: {exc.message}")
        for problem in exc.detail.get("problems", []):
            print(f"       - {problem}")
        sys.exit(1)
    except ConstraintViolation as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)
    finally:
        store.close()

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
