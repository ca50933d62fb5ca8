#!/usr/bin/env python3
"""Seed the default roles and create the first super admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Passw0rd' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password for the super admin (must pass the strength rules)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    JWT_SECRET: Signing secret; the MFA secret cipher key derives from it
        unless MFA_ENCRYPTION_KEY is set
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Seed roles, then create the super admin if the email is unused.

    Returns:
        dict with account_id, email, roles seeded and status
        ('created', 'already_exists' or 'dry_run')
    """
    # Imported late so the environment is settled before settings load
    from hubauth.service.passwords import validate_password_strength
    from hubauth.service.permissions import seed_default_roles
    from hubauth.service.runtime import get_runtime

    strength = validate_password_strength(password)
    if not strength.valid:
        raise ValueError("; ".join(strength.errors))

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)
    if dry_run:
        print(f"[DRY RUN] Would seed default roles and create super admin {email}")
        return {
            "account_id": existing.id if existing else None,
            "email": email,
            "status": "dry_run",
        }

    roles = seed_default_roles(runtime.store)
    if existing:
        print(f"Account {email} already exists (id: {existing.id})")
        return {
            "account_id": existing.id,
            "email": email,
            "roles": sorted(roles),
            "status": "already_exists",
        }

    account = runtime.store.create_account(
        email,
        runtime.verifier.hash(password),
        name="Super Admin",
        is_super_admin=True,
    )
    runtime.store.assign_role(account.id, roles["super_admin"].id)
    print(f"Created super admin: {account.email} (id: {account.id})")
    return {
        "account_id": account.id,
        "email": account.email,
        "roles": sorted(roles),
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the ShopRewards Hub super admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Super admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Super admin password (or set ADMIN_PASSWORD env var)",
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
    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set; MFA secrets are encrypted with a key derived from it")
        sys.exit(1)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        print(f"  Roles seeded: {', '.join(result['roles'])}")
    elif result["status"] == "already_exists":
        print("\nNo account created; default roles are in place.")


if __name__ == "__main__":
    main()
