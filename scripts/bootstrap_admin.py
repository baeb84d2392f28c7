#!/usr/bin/env python3
"""Seed a client app and register an admin account for it.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! \\
        --app-id 1 --app-name console

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
    APP_SECRET: Signing secret for the app when it has to be created (generated if unset)
    STATE_PATH: JSON snapshot for the store; without it nothing outlives the process
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

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


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    app_id: int,
    app_name: str,
    app_secret: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Ensure the app exists, then register the admin account.

    Returns:
        dict with account_id, email, app_id and status
        ('created', 'already_admin', 'exists_not_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from ssoauth.service.runtime import get_runtime
    from ssoauth.storage.models import AccountRole

    runtime = get_runtime()

    app = await runtime.store.app(app_id)
    if app is None:
        if dry_run:
            print(f"[DRY RUN] Would create app {app_name} (id: {app_id})")
        else:
            app = runtime.store.save_app(
                app_name,
                app_secret or secrets.token_urlsafe(48),
                token_ttl=runtime.settings.token_ttl,
                refresh_token_ttl=runtime.settings.refresh_token_ttl,
                app_id=app_id,
            )
            print(f"Created app {app.name} (id: {app.id})")

    existing = await runtime.store.account_by_email(email)
    if existing:
        status = "already_admin" if existing.is_admin else "exists_not_admin"
        print(f"Account {email} already exists (id: {existing.id}, role: {existing.role.value})")
        return {"account_id": existing.id, "email": email, "app_id": app_id, "status": status}

    if dry_run:
        print(f"[DRY RUN] Would register admin account: {email}")
        return {"account_id": None, "email": email, "app_id": app_id, "status": "dry_run"}

    account_id = await runtime.auth.register_new_account(
        email, password, AccountRole.ADMIN, app_id
    )
    print(f"Registered admin account: {email} (id: {account_id})")
    return {"account_id": account_id, "email": email, "app_id": app_id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed an app and an admin account for ssoauth",
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
    parser.add_argument("--app-id", type=int, default=1, help="App the admin belongs to")
    parser.add_argument("--app-name", default="console", help="Name used if the app is created")
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

    if not os.environ.get("STATE_PATH"):
        print("Note: STATE_PATH is not set; the account only lives for this process")

    from ssoauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                app_id=args.app_id,
                app_name=args.app_name,
                app_secret=os.environ.get("APP_SECRET"),
                dry_run=args.dry_run,
            )
        )
    except ServiceError as e:
        print(f"Error [{e.error_code}]: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account registered successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
        print(f"  App ID: {result['app_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")
    elif result["status"] == "exists_not_admin":
        print("\nAccount exists without the admin role; nothing was changed.")
        sys.exit(2)


if __name__ == "__main__":
    main()
