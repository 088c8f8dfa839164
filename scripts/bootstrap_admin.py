#!/usr/bin/env python3
"""Create the first administrator, or promote an existing account to admin.

Administrators cannot self-register, so the first one is created here.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Admin#Pass' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Admin#Pass' [--dry-run]

Without DATABASE_URL the in-memory store under SHARED_FS_ROOT is used.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

_OUTCOMES = {
    "created": "Admin account created",
    "promoted": "Existing account promoted to admin",
    "already_admin": "Account is already an admin; nothing changed",
    "dry_run": "Dry run; nothing changed",
}


async def bootstrap_admin(email: str, password: str, dry_run: bool = False, runtime=None) -> dict:
    """Ensure ``email`` belongs to an admin.

    Returns a dict with ``user_id``, ``email`` and ``status``, one of
    created, promoted, already_admin or dry_run.
    """
    # deferred so main() can set env defaults before settings load
    from classgate.logging import set_correlation_id
    from classgate.service.calls import call_store
    from classgate.service.errors import ValidationError
    from classgate.service.runtime import Runtime
    from classgate.storage.common import normalize_email
    from classgate.storage.models import (
        AccountStatus,
        EventCategory,
        RiskLevel,
        Role,
        SecurityEventType,
    )

    set_correlation_id()
    owns_runtime = runtime is None
    runtime = runtime or Runtime()
    email = normalize_email(email)
    store = runtime.store
    try:
        user = await call_store(store.get_user_by_email, email)
        if user is not None and user.role == Role.ADMIN:
            return {"user_id": user.id, "email": email, "status": "already_admin"}
        if dry_run:
            return {"user_id": user.id if user else None, "email": email, "status": "dry_run"}

        if user is not None:
            previous = user.role
            await call_store(store.update_user, user.id, role=Role.ADMIN)
            runtime.permissions.invalidate_user(user.id)
            await runtime.audit.record(
                SecurityEventType.ROLE_CHANGE,
                EventCategory.ADMIN_ACTION,
                f"Promoted from {previous.value} to admin by bootstrap",
                success=True,
                risk_level=RiskLevel.HIGH,
                user_id=user.id,
                metadata={"source": "bootstrap_admin", "old_role": previous.value},
            )
            return {"user_id": user.id, "email": email, "status": "promoted"}

        check = runtime.auth.policy.validate(password, {"email": email})
        if not check.ok:
            raise ValidationError(
                "Password does not meet requirements: " + "; ".join(check.violations),
                detail={"violations": check.violations},
            )
        password_hash, algo = runtime.auth.hasher.hash(password)
        user = await call_store(
            store.create_user,
            email,
            role=Role.ADMIN,
            account_status=AccountStatus.ACTIVE,
            email_verified=True,
        )
        await call_store(store.save_password, user.id, password_hash, algo)
        await runtime.audit.record(
            SecurityEventType.ACCOUNT_CREATION,
            EventCategory.ADMIN_ACTION,
            "Admin account created by bootstrap",
            success=True,
            risk_level=RiskLevel.HIGH,
            user_id=user.id,
            metadata={"source": "bootstrap_admin"},
        )
        return {"user_id": user.id, "email": email, "status": "created"}
    finally:
        if owns_runtime:
            await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL and ADMIN_PASSWORD) are required")

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/classgate-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(f"{_OUTCOMES[result['status']]}: {result['email']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
