#!/usr/bin/env python3
"""Create or promote a staff (admin or agent) account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass123' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email agent@example.com --password 'Secure#Pass123' --role agent

Environment Variables:
    ADMIN_EMAIL: Email for the staff account
    ADMIN_PASSWORD: Password (must meet the signup password rules)
    DATABASE_URL: PostgreSQL connection string (memory store when unset)

The token and cookie secrets (ACCESS_TOKEN, REFRESH_TOKEN, PROTECT_TOKEN,
ACTIVATION_SECRET, CRYPTO_SECRET, COOKIE_SECRET) must be present in the
environment or in .env, exactly as for the API server.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

STAFF_ROLES = ("admin", "agent")


async def bootstrap_staff(email: str, password: str, role: str, dry_run: bool = False) -> dict:
    """Create a verified staff user, or promote an existing account to ``role``.

    Returns:
        dict with user_id, email, role and status
        ('created', 'promoted', 'unchanged' or 'dry_run')
    """
    # Imported late so the environment is settled before settings load
    from parcelhub.service.engine import normalize_email
    from parcelhub.service.runtime import get_runtime
    from parcelhub.storage.models import AuthProvider

    runtime = get_runtime()
    normalized = normalize_email(email)
    existing = runtime.store.find_by_email_or_normalized(email, normalized)

    if existing:
        if existing.role == role:
            print(f"User {email} already has role {role} (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "role": role, "status": "unchanged"}
        if dry_run:
            print(f"[DRY RUN] Would change {email} from {existing.role} to {role}")
            return {"user_id": existing.id, "email": email, "role": role, "status": "dry_run"}
        runtime.store.set_role(existing.id, role)
        updated = runtime.store.get_user(existing.id)
        if updated is not None:
            # live sessions must see the new role without waiting for re-login
            await runtime.sessions.refresh_snapshot(updated)
        print(f"Promoted {email} to {role} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "role": role, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "role": role, "status": "dry_run"}

    user = runtime.store.create_user(
        email,
        normalized,
        password_hash=runtime.auth.hash_password(password),
        verified=True,
        role=role,
        auth=[AuthProvider(provider="jwt")],
    )
    print(f"Created {role} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "role": role, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a ParcelHub staff account",
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
    parser.add_argument("--role", choices=STAFF_ROLES, default="admin")
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

    from parcelhub.service.auth import check_password_strength

    try:
        check_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_staff(args.email, args.password, args.role, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\n{args.role.capitalize()} account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print(f"\nExisting user promoted to {args.role}!")
    elif result["status"] == "unchanged":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
