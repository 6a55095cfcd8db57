#!/usr/bin/env python3
"""Bootstrap an admin user, and optionally a service account, for initial setup.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args, also issuing an API key for a service:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password SecurePassword123! --service billing-worker

Environment Variables:
    ADMIN_USERNAME: Username for the admin user
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    *,
    service_name: Optional[str] = None,
    service_description: str = "",
    dry_run: bool = False,
) -> dict:
    """Create an admin user and optionally a service account.

    Returns:
        dict with user_id, username, status ('created', 'exists' or 'dry_run')
        and, when a service account was requested, its id and plaintext key.
    """
    # Import here to avoid loading config before env vars are set
    from credcore.service.runtime import get_runtime

    runtime = get_runtime()
    result: dict = {"username": username, "email": email}

    existing_user = runtime.store.get_user_by_username(username)
    if existing_user:
        print(f"User {username} already exists with role {existing_user.role} (id: {existing_user.id})")
        result.update(user_id=existing_user.id, status="exists")
    elif dry_run:
        print(f"[DRY RUN] Would create admin user: {username} <{email}>")
        result.update(user_id=None, status="dry_run")
    else:
        runtime.engine.register_user(username, email, password, role="admin")
        user = runtime.store.get_user_by_username(username)
        print(f"Created admin user: {username} (id: {user.id})")
        result.update(user_id=user.id, status="created")

    if service_name:
        existing_account = runtime.api_keys.get_service_account(service_name)
        if existing_account and existing_account.active:
            print(f"Service account {service_name} already active (id: {existing_account.id})")
            result["service_account_id"] = existing_account.id
        elif dry_run:
            print(f"[DRY RUN] Would create service account: {service_name}")
        else:
            account, api_key = runtime.api_keys.create(service_name, service_description)
            result.update(service_account_id=account.id, api_key=api_key)
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for credcore",
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
        "--service",
        default=None,
        help="Also create a service account with this name and print its API key",
    )
    parser.add_argument(
        "--service-description",
        default="",
        help="Description stored with the service account",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/credcore-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(
            args.username,
            args.email,
            args.password,
            service_name=args.service,
            service_description=args.service_description,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo user changes made.")
    if result.get("api_key"):
        print(f"\nService account {args.service} (id: {result['service_account_id']})")
        print(f"  API Key: {result['api_key']}")
        print("  Store this key now; it cannot be shown again.")


if __name__ == "__main__":
    main()
