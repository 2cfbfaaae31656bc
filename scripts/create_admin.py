#!/usr/bin/env python3
"""Create the default admin user.

Usage:
    DEFAULT_ADMIN_PASSWORD='Adm1n!Passw0rd' python scripts/create_admin.py
    python scripts/create_admin.py --username admin --email admin@mdl.local --password 'Adm1n!Passw0rd'

Running it twice is safe: an existing admin is left alone and an existing
non-admin account with the same username is promoted.

Environment Variables:
    DEFAULT_ADMIN_PASSWORD: password used when --password is not given
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
    SHARED_FS_ROOT: state directory for the memory store
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_USERNAME = "admin"
DEFAULT_EMAIL = "admin@mdl.local"


async def create_admin(
    runtime,
    username: str,
    email: str,
    password: str,
    *,
    dry_run: bool = False,
) -> dict:
    """Create or promote the admin account.

    Returns:
        dict with user_id, username and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    from catalogauth.service.guard import Identity
    from catalogauth.storage.models import Role

    # Bootstrap runs before any admin exists, so it acts as a synthetic one
    system = Identity(
        user_id="system",
        username="system",
        email="",
        role=Role.ADMIN,
        method="system",
    )

    existing = runtime.store.find_user_by_username(username)
    if existing is not None:
        if existing.role == Role.ADMIN:
            return {"user_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        await runtime.auth.update_user(existing.id, actor=system, role=Role.ADMIN)
        return {"user_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = await runtime.auth.admin_create_user(
        system,
        username,
        email,
        password,
        full_name="Administrator",
        role=Role.ADMIN,
    )
    return {"user_id": user.id, "username": username, "status": "created"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Create the default catalogauth admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=DEFAULT_USERNAME)
    parser.add_argument("--email", default=DEFAULT_EMAIL)
    parser.add_argument(
        "--password",
        help="Admin password (defaults to DEFAULT_ADMIN_PASSWORD)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: using the file-backed memory store (set DATABASE_URL for Postgres)")

    from catalogauth.service.errors import ServiceError
    from catalogauth.service.runtime import get_runtime

    runtime = get_runtime()
    password = args.password or runtime.settings.default_admin_password
    if not password:
        runtime.close()
        print("Error: --password or DEFAULT_ADMIN_PASSWORD environment variable required")
        return 1

    try:
        result = asyncio.run(
            create_admin(
                runtime, args.username, args.email, password, dry_run=args.dry_run
            )
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for reason in exc.detail.get("reasons", []):
            print(f"  - {reason}")
        return 1
    finally:
        runtime.close()

    messages = {
        "created": "Admin user created",
        "promoted": "Existing user promoted to admin",
        "already_admin": "No changes needed - user is already an admin",
        "dry_run": "[DRY RUN] No changes made",
    }
    print(f"{messages[result['status']]}: {result['username']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
