#!/usr/bin/env python3
"""Create or update an administrator in the account store.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email ops@example.com --password SecurePassword123! \\
        --role auditor --permissions audit_logs,view_analytics

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password (must meet complexity requirements)
    SHARED_FS_ROOT: Directory holding state/accounts.json
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Iterable, Optional

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


def parse_permissions(raw: Optional[str]) -> list:
    from warden.storage.models import AdminPermission

    if not raw or raw.strip() == "all":
        return list(AdminPermission)
    names = [part.strip() for part in raw.split(",") if part.strip()]
    return [AdminPermission(name) for name in names]


def bootstrap_admin(
    email: str,
    password: str,
    *,
    role: str = "super_admin",
    permissions: Iterable = (),
    mfa_secret: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the account, or reset its password and role if it exists.

    Returns:
        dict with admin_id, email, and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from warden.config import get_settings
    from warden.service.credentials import CredentialVerifier
    from warden.storage.memory import MemoryAccountStore
    from warden.storage.models import AdminRole

    settings = get_settings()
    accounts = MemoryAccountStore(
        fs_root=settings.shared_fs_root,
        mfa_encryption_key=settings.mfa_encryption_key or settings.jwt_secret,
        persist=True,
    )
    admin_role = AdminRole(
        name=role,
        permissions=frozenset(permissions),
        description=f"{role} (bootstrap)",
    )
    existing = accounts.find_account_by_email(email)

    if dry_run:
        action = "update" if existing else "create"
        print(f"[DRY RUN] Would {action} admin {email} with role {role}")
        return {"admin_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    credential_hash = CredentialVerifier().hash_password(password)
    if existing:
        changes = {
            "credential_hash": credential_hash,
            "roles": (admin_role,),
            "failed_login_attempts": 0,
            "locked_until": None,
            "is_active": True,
        }
        if mfa_secret:
            changes.update(mfa_secret=mfa_secret, mfa_enabled=True)
        account = accounts.update_account(existing.id, **changes)
        print(f"Updated admin {email} (id: {account.id})")
        return {"admin_id": account.id, "email": email, "status": "updated"}

    account = accounts.create_account(
        email,
        credential_hash,
        (admin_role,),
        mfa_secret=mfa_secret,
        mfa_enabled=bool(mfa_secret),
    )
    print(f"Created admin {email} (id: {account.id})")
    return {"admin_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for Warden",
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
    parser.add_argument("--role", default="super_admin", help="Role name to assign")
    parser.add_argument(
        "--permissions",
        default="all",
        help="Comma-separated permissions for the role, or 'all'",
    )
    parser.add_argument(
        "--mfa-secret",
        default=os.environ.get("ADMIN_MFA_SECRET"),
        help="Base32 TOTP secret; enables MFA for the account",
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

    try:
        permissions = parse_permissions(args.permissions)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    try:
        result = bootstrap_admin(
            args.email.strip().lower(),
            args.password,
            role=args.role,
            permissions=permissions,
            mfa_secret=args.mfa_secret,
            dry_run=args.dry_run,
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] in ("created", "updated"):
        print("\nAdmin ready. Log in with:")
        print("  POST /v1/admin/auth/login")
        print(f'  {{"email": "{args.email}", "password": "<your password>"}}')


if __name__ == "__main__":
    main()
