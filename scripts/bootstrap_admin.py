#!/usr/bin/env python3
"""Create or promote a privileged account (admin or curator).

Privileged accounts cannot be self-registered; this script is the way the
first administrator gets into the archive. On first login the account is
asked to enroll an authenticator app.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=secret123 python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email curator@example.com --password secret123 --role curator

Environment Variables:
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password for the account
    ADMIN_NAME: Display name (letters, digits and underscores, 3 to 20 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


async def bootstrap_account(
    email: str, password: str, name: str, role_name: str, dry_run: bool = False
) -> dict:
    """Create the account with ``role_name`` or promote an existing one.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'unchanged' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from archivum.service.runtime import get_runtime
    from archivum.storage.models import Role

    role = Role.parse(role_name)
    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == role:
            print(f"User {email} already has role {role.name.lower()} (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to {role.name.lower()}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.auth.set_user_role("bootstrap", existing.id, role)
        print(f"Promoted existing user {email} to {role.name.lower()} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role.name.lower()} account: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.auth.create_user("bootstrap", email, password, name, role=role)
    print(f"Created {role.name.lower()} account: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a privileged Archivum account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Account email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Account password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "admin"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--role",
        choices=["admin", "curator"],
        default="admin",
        help="Privileged role to grant",
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

    from archivum.api.schemas import RegisterRequest
    from pydantic import ValidationError

    try:
        request = RegisterRequest(email=args.email, password=args.password, name=args.name)
    except ValidationError as exc:
        for err in exc.errors():
            print(f"Error: {'.'.join(str(p) for p in err['loc'])}: {err['msg']}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/archivum-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_account(
                request.email, request.password, request.name, args.role, args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created. Enroll an authenticator app on first login.")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted.")
    elif result["status"] == "unchanged":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
