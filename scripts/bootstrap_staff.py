#!/usr/bin/env python3
"""Create the first staff account, or reactivate an existing one.

Usage:
    STAFF_EMAIL=admin@example.com STAFF_PASSWORD='SecurePassword123!' \
        python scripts/bootstrap_staff.py --role admin

    python scripts/bootstrap_staff.py --email admin@example.com --password '...' --name "Ops"

Environment Variables:
    STAFF_EMAIL: Email for the staff account
    STAFF_PASSWORD: Password (12+ characters, 3+ character classes)
    DATABASE_URL: PostgreSQL connection string
    REDIS_URL: Redis URL; cached sessions of the account are dropped there
    BCRYPT_SALT_ROUNDS: Password hashing cost (default 12)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from coursegate.config import Settings
from coursegate.service.security import hash_password_async
from coursegate.service.session_cache import STAFF_SESSION_PREFIX, SessionCache
from coursegate.storage.models import STAFF_ROLES, STAFF_TRACK
from coursegate.storage.postgres import PostgresStore
from coursegate.storage.redis_cache import RedisCache


def validate_password(password: str) -> bool:
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_staff(
    store,
    cache: RedisCache,
    email: str,
    password: str,
    *,
    name: str | None = None,
    role: str = "admin",
    hash_cost: int = 12,
    dry_run: bool = False,
) -> dict:
    """Create a staff account or reset the password of an existing one.

    Existing accounts are reactivated; their role is left as it is. A
    password change ends every session the account had, cached or not.
    """
    existing = await store.get_staff_by_email(email)
    if existing:
        if dry_run:
            return {"staff_id": existing.id, "email": existing.email, "status": "dry_run"}
        await store.update_staff_password(
            existing.id, await hash_password_async(password, hash_cost)
        )
        reactivated = not existing.is_active
        if reactivated:
            await store.set_staff_active(existing.id, True)
        revoked = await store.revoke_all_sessions(STAFF_TRACK, existing.id)
        await SessionCache(cache, STAFF_SESSION_PREFIX).invalidate_all_for_principal(
            existing.id
        )
        return {
            "staff_id": existing.id,
            "email": existing.email,
            "status": "reactivated" if reactivated else "updated",
            "sessions_revoked": revoked,
        }

    if dry_run:
        return {"staff_id": None, "email": email, "status": "dry_run"}

    staff = await store.create_staff(
        email, await hash_password_async(password, hash_cost), name=name, role=role
    )
    return {"staff_id": staff.id, "email": staff.email, "status": "created"}


async def _run(args: argparse.Namespace) -> dict:
    settings = Settings.from_env()
    store = PostgresStore(
        settings.database_url,
        min_size=1,
        max_size=2,
        connect_timeout=settings.database_connect_timeout_seconds,
        statement_timeout_ms=settings.database_statement_timeout_ms,
    )
    cache = RedisCache(
        settings.redis_url, socket_timeout=settings.redis_socket_timeout_seconds
    )
    await store.open()
    try:
        return await bootstrap_staff(
            store,
            cache,
            args.email,
            args.password,
            name=args.name,
            role=args.role,
            hash_cost=settings.password_hash_cost,
            dry_run=args.dry_run,
        )
    finally:
        await store.close()
        await cache.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a staff account for Coursegate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("STAFF_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("STAFF_PASSWORD"))
    parser.add_argument("--name", default=None)
    parser.add_argument("--role", default="admin", choices=STAFF_ROLES)
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or STAFF_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or STAFF_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    try:
        result = asyncio.run(_run(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} (id: {result['staff_id']})")


if __name__ == "__main__":
    main()
