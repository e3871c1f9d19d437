#!/usr/bin/env python3
"""Seed the default permissions and system roles, optionally with a Super Admin.

Usage:
    # Seed permissions and roles only (safe to re-run):
    python scripts/bootstrap_rbac.py

    # Also create (or promote) a Super Admin principal:
    SUPER_ADMIN_EMAIL=root@example.com SUPER_ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_rbac.py --with-super-admin

Environment Variables:
    SUPER_ADMIN_EMAIL: Email for the Super Admin principal
    SUPER_ADMIN_PASSWORD: Password for the Super Admin principal
    SUPER_ADMIN_TENANT_ID: Tenant the Super Admin belongs to (optional)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap(
    email: Optional[str],
    password: Optional[str],
    *,
    tenant_id: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    # Import here to avoid loading config before env vars are set
    from accesscore.service.errors import RoleAlreadyAssigned
    from accesscore.service.rbac import SUPER_ADMIN_ROLE
    from accesscore.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        print("[DRY RUN] Would seed default permissions and system roles")
        return {"status": "dry_run"}

    result: dict = dict(await runtime.rbac.seed())
    print(
        "Seeded RBAC: "
        f"{result['permissions_created']} permissions, {result['roles_created']} roles created"
    )
    if not email:
        result["status"] = "seeded"
        return result

    role = runtime.rbac.get_role_by_name(SUPER_ADMIN_ROLE)
    principal = runtime.store.get_principal_by_email(email)
    if principal is None:
        principal = runtime.auth.register(email, password or "", tenant_id=tenant_id)
        result["status"] = "created"
    else:
        result["status"] = "promoted"
    if not principal.is_active:
        principal = runtime.auth.activate(principal.id)
    try:
        await runtime.rbac.assign_role(principal.id, role.id, assigned_by="bootstrap")
    except RoleAlreadyAssigned:
        result["status"] = "already_super_admin"
    result["principal_id"] = principal.id
    result["email"] = principal.email
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Seed RBAC defaults for accesscore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--with-super-admin",
        action="store_true",
        help="Also create or promote a Super Admin principal",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPER_ADMIN_EMAIL"),
        help="Super Admin email (or set SUPER_ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPER_ADMIN_PASSWORD"),
        help="Super Admin password (or set SUPER_ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--tenant-id",
        default=os.environ.get("SUPER_ADMIN_TENANT_ID"),
        help="Tenant for a newly created Super Admin",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    email = None
    if args.with_super_admin:
        if not args.email:
            print("Error: --email or SUPER_ADMIN_EMAIL environment variable required")
            sys.exit(1)
        if not args.password or not validate_password(args.password):
            print("Error: Password must be at least 12 characters with 3+ character classes")
            print("       (uppercase, lowercase, digits, special characters)")
            sys.exit(1)
        email = args.email

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/accesscore-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap(email, args.password, tenant_id=args.tenant_id, dry_run=args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\nSuper Admin created: {result['email']} (id: {result['principal_id']})")
    elif result["status"] == "promoted":
        print(f"\nExisting principal promoted to Super Admin: {result['email']}")
    elif result["status"] == "already_super_admin":
        print("\nNo changes needed - principal is already a Super Admin.")


if __name__ == "__main__":
    main()
