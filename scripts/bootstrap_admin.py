#!/usr/bin/env python3
"""Create or promote the first admin account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='S3cure!Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'S3cure!Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (checked against the password policy)
    DATABASE_URL / REDIS_URL: stores to write to
    ACCESS_TOKEN_SECRET / REFRESH_TOKEN_SECRET: required by the runtime settings
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "admin"


async def bootstrap_admin(runtime, email: str, password: str, dry_run: bool = False) -> dict:
    """Create ``email`` as an admin, or promote the existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    existing = await asyncio.to_thread(runtime.credentials.get_user_by_email, email)

    if existing:
        if existing.role == ADMIN_ROLE:
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        await runtime.auth.set_user_role(existing.id, ADMIN_ROLE)
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.create_user(email, password, ADMIN_ROLE)
    return {"user_id": user.id, "email": user.email, "status": "created"}


async def _run(email: str, password: str, dry_run: bool) -> dict:
    # Imported late so settings are read after argument handling
    from clinauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await bootstrap_admin(runtime, email, password, dry_run)
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for clinauth",
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
    args = parser.parse_args()

    if not args.email:
        parser.error("--email or ADMIN_EMAIL environment variable required")
    if not args.password:
        parser.error("--password or ADMIN_PASSWORD environment variable required")

    from clinauth.service.errors import ServiceError

    try:
        result = asyncio.run(_run(args.email, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message} ({exc.error_code})", file=sys.stderr)
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created admin user {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted {result['email']} to admin (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"{result['email']} is already an admin (id: {result['user_id']})")
    else:
        print(f"[DRY RUN] no changes made for {result['email']}")


if __name__ == "__main__":
    main()
