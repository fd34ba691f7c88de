#!/usr/bin/env python3
"""Create an admin account or promote an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secret1!' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secret1!' \
        --name Admin --question pais --answer Chile

Environment Variables:
    ADMIN_EMAIL / ADMIN_PASSWORD / ADMIN_NAME / ADMIN_QUESTION / ADMIN_ANSWER
    DATABASE_URL, ENCRYPTION_KEY, ENCRYPTION_IV: as for the service itself
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str = "Admin",
    question: str = "pais",
    answer: str = "admin",
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Imported late so env defaults set by main() are seen by the settings loader
    from deckexc.api.schemas import RegisterRequest
    from deckexc.service.runtime import get_runtime

    request = RegisterRequest(
        email=email, name=name, password=password, question=question, answer=answer
    )
    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(request.email)

    if existing:
        if existing.has_role("admin"):
            return {"user_id": existing.id, "email": existing.email, "status": "already_admin"}
        if dry_run:
            return {"user_id": existing.id, "email": existing.email, "status": "dry_run"}
        runtime.auth.grant_role(existing.id, "admin")
        return {"user_id": existing.id, "email": existing.email, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": request.email, "status": "dry_run"}

    user = await runtime.auth.register(
        email=request.email,
        name=request.name,
        password=request.password,
        question=request.question,
        answer=request.answer,
    )
    runtime.auth.grant_role(user.id, "admin")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the DeckExc auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Admin"))
    parser.add_argument(
        "--question",
        default=os.environ.get("ADMIN_QUESTION", "pais"),
        choices=["comida", "cantante", "pais"],
    )
    parser.add_argument("--answer", default=os.environ.get("ADMIN_ANSWER"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    missing = [flag for flag in ("email", "password", "answer") if not getattr(args, flag)]
    if missing:
        print(f"Error: missing required values: {', '.join('--' + m for m in missing)}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                name=args.name,
                question=args.question,
                answer=args.answer,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
