#!/usr/bin/env python3
"""Seed roles and optionally an admin account.

Usage:
    # Seed the roles named in SEED_ROLES (default ADMIN, ANALYST, VIEWER):
    python scripts/bootstrap_roles.py

    # Also create (or promote) an admin account:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_roles.py

    # Or with command line args:
    python scripts/bootstrap_roles.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
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

ADMIN_ROLE = "ADMIN"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def seed_roles(store, names: list[str], dry_run: bool = False) -> list[str]:
    """Create every missing role; returns the names that were created."""
    created = []
    for name in names:
        if store.get_role_by_name(name) is not None:
            continue
        if dry_run:
            print(f"[DRY RUN] Would create role {name}")
        else:
            store.create_role(name)
            print(f"Created role {name}")
        created.append(name)
    return created


def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    from intelliguard.api.schemas import validate_email

    email = validate_email(email)
    store = runtime.store
    admin_role = store.get_role_by_name(ADMIN_ROLE)
    if admin_role is None and not dry_run:
        raise RuntimeError(f"role {ADMIN_ROLE} is missing; add it to SEED_ROLES")

    existing = store.get_account_by_email(email)
    if existing:
        if existing.role.name == ADMIN_ROLE:
            print(f"Account {email} already exists as admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        existing.role = admin_role
        store.save_account(existing, expected_version=existing.version)
        print(f"Promoted existing account {email} to admin (id: {existing.id})")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    bundle = runtime.auth.register(email, password)
    account = store.get_account(bundle.user.id)
    account.role = admin_role
    # Operators are trusted; skip the e-mail round trip
    account.mark_email_verified(runtime.auth.clock.now())
    store.save_account(account, expected_version=account.version)
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Seed roles and an optional admin account for intelliguard",
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
    args = parser.parse_args(argv)

    if args.email and not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if args.password and not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Import here to avoid loading config before env vars are set
    from intelliguard.logging import set_correlation_id
    from intelliguard.service.errors import ServiceError
    from intelliguard.service.runtime import get_runtime
    from intelliguard.storage.errors import ConstraintViolation

    set_correlation_id()
    try:
        runtime = get_runtime()
        seed_roles(runtime.store, runtime.settings.seed_role_names, args.dry_run)
        if args.email:
            result = bootstrap_admin(runtime, args.email, args.password, args.dry_run)
            if result["status"] == "created":
                print("\nAdmin account created successfully!")
                print(f"  Email: {result['email']}")
                print(f"  Account ID: {result['account_id']}")
            elif result["status"] == "promoted":
                print("\nExisting account promoted to admin!")
            elif result["status"] == "already_admin":
                print("\nNo changes needed - account is already an admin.")
    except (ServiceError, ConstraintViolation, ValueError, RuntimeError) as exc:
        print(f"Error: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
