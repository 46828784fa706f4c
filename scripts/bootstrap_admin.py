#!/usr/bin/env python3
"""Create the first admin account, or promote an existing one.

    python scripts/bootstrap_admin.py --email admin@example.com --password a-long-passphrase

Every flag falls back to an environment variable: ADMIN_EMAIL, ADMIN_PASSWORD
and ADMIN_NAME. Without DATABASE_URL the in-memory store is used, which is
only useful for trying the flow out.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_SUMMARY = {
    "created": "Admin account created.",
    "promoted": "Existing account promoted to admin.",
    "already_admin": "Nothing to do: the account is already an admin.",
    "dry_run": "Dry run: no changes were written.",
}


def _outcome(user_id: Optional[str], email: str, status: str) -> dict:
    return {"user_id": user_id, "email": email, "status": status}


async def bootstrap_admin(
    email: str, password: str, name: str, dry_run: bool = False
) -> dict:
    """Ensure ``email`` belongs to an admin.

    Returns a dict with ``user_id``, ``email`` and ``status``, one of
    ``created``, ``promoted``, ``already_admin`` or ``dry_run``.
    """
    # Settings are read on first use, after main() has adjusted the environment
    from authcore.service.runtime import get_runtime

    auth = get_runtime().auth
    existing = auth.resolver.find_by_email(email)

    if existing is not None and existing.is_admin:
        return _outcome(existing.id, email, "already_admin")
    if dry_run:
        return _outcome(existing.id if existing else None, email, "dry_run")

    if existing is not None:
        await auth.promote_user(existing.id)
        return _outcome(existing.id, email, "promoted")

    registered = await auth.register(email, password, name)
    # Promotion revokes the session register just opened; the admin logs in fresh
    await auth.promote_user(registered.identity.id)
    return _outcome(registered.identity.id, email, "created")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create or promote an authcore admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    env = os.environ.get
    parser.add_argument("--email", default=env("ADMIN_EMAIL"), help="account email [ADMIN_EMAIL]")
    parser.add_argument(
        "--password",
        default=env("ADMIN_PASSWORD"),
        help="password for a new account, 8-128 characters [ADMIN_PASSWORD]",
    )
    parser.add_argument(
        "--name",
        default=env("ADMIN_NAME", "Administrator"),
        help="display name for a new account [ADMIN_NAME]",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="report the action without writing"
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _parser()
    args = parser.parse_args(argv)
    missing = [flag for flag in ("email", "password") if not getattr(args, flag)]
    if missing:
        parser.error("missing " + ", ".join(f"--{flag}" for flag in missing))

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("DATABASE_URL is not set; using the in-memory store", file=sys.stderr)
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        outcome = asyncio.run(
            bootstrap_admin(args.email, args.password, args.name, args.dry_run)
        )
    except Exception as exc:
        print(f"bootstrap failed: {exc}", file=sys.stderr)
        return 1

    print(_SUMMARY[outcome["status"]])
    print(f"  email:   {outcome['email']}")
    print(f"  user id: {outcome['user_id'] or '-'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
