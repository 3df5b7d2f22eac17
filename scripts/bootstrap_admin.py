#!/usr/bin/env python3
"""Bootstrap a tenant admin user for initial setup.

Usage:
    # Using environment variables:
    ADMIN_TENANT=acme ADMIN_EMAIL=admin@acme.test ADMIN_PASSWORD='Secure#Passw0rd' \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --tenant acme --email admin@acme.test --password 'Secure#Passw0rd'

Environment Variables:
    ADMIN_TENANT: Tenant the admin belongs to
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must satisfy the password policy)
    CREDENTIAL_STORE_ROOT: Directory holding the credential snapshot
        (defaults to ./data so the account outlives this process)
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


async def bootstrap_admin(tenant_id: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create an admin in ``tenant_id`` or promote the existing account.

    Returns:
        dict with user_id, tenant_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email, tenant_id)

    if existing_user:
        if existing_user.role == "admin":
            print(f"User {email} is already an admin of {tenant_id} (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "tenant_id": tenant_id,
                "email": email,
                "status": "already_admin",
            }
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to admin in {tenant_id}")
            return {"user_id": existing_user.id, "tenant_id": tenant_id, "email": email, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, "admin")
        print(f"Promoted {email} to admin in {tenant_id} (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "tenant_id": tenant_id,
            "email": email,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create admin user {email} in {tenant_id}")
        return {"user_id": None, "tenant_id": tenant_id, "email": email, "status": "dry_run"}

    user = await runtime.auth.register_user(tenant_id, email, password, role="admin")
    print(f"Created admin user {email} in {tenant_id} (id: {user.id})")
    return {
        "user_id": user.id,
        "tenant_id": tenant_id,
        "email": user.email,
        "status": "created",
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--tenant",
        default=os.environ.get("ADMIN_TENANT"),
        help="Tenant id (or set ADMIN_TENANT env var)",
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

    for name in ("tenant", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            return 1

    from tenantauth.service.passwords import PasswordPolicy

    problems = PasswordPolicy().violations(args.password)
    if problems:
        print("Error: password does not meet policy:")
        for problem in problems:
            print(f"       - {problem}")
        return 1

    # No tokens are issued here, so throwaway signing secrets are enough
    if not os.environ.get("JWT_ACCESS_SECRET") or not os.environ.get("JWT_REFRESH_SECRET"):
        import secrets

        os.environ["JWT_ACCESS_SECRET"] = secrets.token_urlsafe(48)
        os.environ["JWT_REFRESH_SECRET"] = secrets.token_urlsafe(48)

    os.environ.setdefault("CREDENTIAL_STORE_ROOT", str(ROOT / "data"))
    # Only the credential store is touched; no shared cache is needed
    os.environ.setdefault("USE_MEMORY_CACHE", "true")
    os.environ.setdefault("MAINTENANCE_ENABLED", "false")

    try:
        result = asyncio.run(
            bootstrap_admin(args.tenant, args.email.strip().lower(), args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Tenant: {result['tenant_id']}")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
