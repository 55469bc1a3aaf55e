#!/usr/bin/env python3
"""Create the initial super administrator.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_USERNAME=admin ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --username admin --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the super administrator
    ADMIN_USERNAME: Username (defaults to the email's local part)
    ADMIN_PASSWORD: Password (must meet complexity requirements)
    STATE_PATH: JSON file backing the store (defaults to /tmp/authshield-bootstrap/state.json)
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
    email: str, username: str, password: str, dry_run: bool = False
) -> dict:
    """Create the super administrator unless one already exists.

    Returns:
        dict with user_id, email, and status ('created', 'already_configured' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authshield.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if not runtime.auth.needs_initial_setup():
            print("A super administrator already exists; nothing to do")
            return {"user_id": None, "email": email, "status": "already_configured"}

        if dry_run:
            print(f"[DRY RUN] Would create super administrator: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = await runtime.auth.create_super_admin(email, username, password, name=username)
        print(f"Created super administrator: {email} (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create the initial AuthShield super administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    for flag, env in (("email", "ADMIN_EMAIL"), ("username", "ADMIN_USERNAME"), ("password", "ADMIN_PASSWORD")):
        parser.add_argument(
            f"--{flag}",
            default=os.environ.get(env),
            help=f"Admin {flag} (or set {env})",
        )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be created without writing anything",
    )
    return parser


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if not args.email:
        parser.error("--email or ADMIN_EMAIL is required")
    if not args.password:
        parser.error("--password or ADMIN_PASSWORD is required")
    if not validate_password(args.password):
        parser.error(
            "password needs 12+ characters from at least 3 classes "
            "(uppercase, lowercase, digits, special characters)"
        )

    username = args.username or args.email.split("@", 1)[0]

    state_path = os.environ.setdefault("STATE_PATH", "/tmp/authshield-bootstrap/state.json")
    print(f"Store file: {state_path}")
    # Nothing in the cache needs to outlive this command
    os.environ.setdefault("USE_MEMORY_CACHE", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, username, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if result["status"] == "created":
        print(f"Super administrator ready: {result['email']} ({result['user_id']})")


if __name__ == "__main__":
    main()
