#!/usr/bin/env python3
"""Seed a user into one role partition for local setup and testing.

Usage:
    # Using environment variables:
    SEED_EMAIL=organizer@example.com SEED_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_user.py --role organizer --name "Org Anizer"

    # Or with command line args:
    python scripts/bootstrap_user.py --role admin --email admin@example.com \
        --name Admin --password SecurePassword123!

Environment Variables:
    SEED_EMAIL: Email for the user
    SEED_PASSWORD: Password for the user (must meet complexity requirements)
    PARTICIPANT_DATABASE_URL / ORGANIZER_DATABASE_URL / ADMIN_DATABASE_URL:
        PostgreSQL connection strings (optional, uses memory store if unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ROLES = ("participant", "organizer", "admin")


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_user(
    runtime, role: str, email: str, name: str, password: str, dry_run: bool = False
) -> dict:
    """Create the user unless it already exists in the partition.

    Returns:
        dict with user_id, email, role and status ('created', 'exists' or 'dry_run')
    """
    existing = runtime.store.get_user_by_email(role, email)
    if existing:
        print(f"User {email} already exists in {role} partition (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "role": role, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = runtime.store.create_user(
        role, email, name, runtime.auth.hash_password(password)
    )
    print(f"Created {role} user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "role": role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed a hackguard user into a role partition",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--role", choices=ROLES, default="participant")
    parser.add_argument(
        "--email",
        default=os.environ.get("SEED_EMAIL"),
        help="User email (or set SEED_EMAIL env var)",
    )
    parser.add_argument("--name", default="Seeded User")
    parser.add_argument(
        "--password",
        default=os.environ.get("SEED_PASSWORD"),
        help="User password (or set SEED_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SEED_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get(f"{args.role.upper()}_DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set *_DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    # Import here to avoid loading config before env vars are set
    from hackguard.service.runtime import get_runtime

    try:
        result = bootstrap_user(
            get_runtime(), args.role, args.email, args.name, args.password, args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Role: {result['role']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
