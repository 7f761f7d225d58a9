#!/usr/bin/env python3
"""Register an admin identity and optionally mint a first session for it.

Credential verification happens upstream; this script only seeds the
identity directory so the session engine will accept the account.

Usage:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --issue-session

Environment Variables:
    ADMIN_EMAIL: Email for the admin identity
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
import uuid
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, *, issue_session: bool = False, dry_run: bool = False) -> dict:
    """Create or promote an admin identity.

    Returns:
        dict with user_id, email, status ('created', 'promoted', 'already_admin'
        or 'dry_run') and, with ``issue_session``, the session id and access token
    """
    # Import here to avoid loading config before env vars are set
    from admingate.service.fingerprint import RequestMetadata
    from admingate.service.runtime import get_runtime
    from admingate.storage.models import AdminIdentity

    runtime = get_runtime()
    required_role = runtime.settings.required_role
    existing = runtime.store.get_user_by_email(email)

    if existing and existing.is_eligible(required_role):
        print(f"Identity {email} already exists as {required_role} (id: {existing.id})")
        identity = existing
        status = "already_admin"
    elif dry_run:
        action = "promote" if existing else "create"
        print(f"[DRY RUN] Would {action} admin identity: {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}
    elif existing:
        existing.role = required_role
        existing.is_active = True
        existing.is_banned = False
        identity = runtime.store.upsert_user(existing)
        print(f"Promoted existing identity {email} to {required_role} (id: {identity.id})")
        status = "promoted"
    else:
        identity = runtime.store.upsert_user(
            AdminIdentity(id=str(uuid.uuid4()), email=email, role=required_role)
        )
        print(f"Created admin identity: {email} (id: {identity.id})")
        status = "created"

    result = {"user_id": identity.id, "email": email, "status": status}
    if issue_session and not dry_run:
        session = await runtime.sessions.create_session(
            identity, RequestMetadata(headers={"user-agent": "admingate-bootstrap"})
        )
        result["session_id"] = session.id
        result["access_token"] = session.access_token
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin identity for admingate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--issue-session",
        action="store_true",
        help="Mint a session and print its access token",
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

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/admingate-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.email, issue_session=args.issue_session, dry_run=args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin identity created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting identity promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - identity is already an admin.")
    if result.get("access_token"):
        print(f"  Session ID: {result['session_id']}")
        print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
