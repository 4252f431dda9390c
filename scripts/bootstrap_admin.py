#!/usr/bin/env python3
"""Create the first Credvault admin, or promote an existing account.

Only an admin can change roles through the API, so the first one comes from
here. Flags fall back to ADMIN_EMAIL, ADMIN_USERNAME and ADMIN_PASSWORD.
Without DATABASE_URL the script runs against the in-memory store, which is
only useful for trying it out.

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass123'
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def bootstrap_admin(email: str, username: str, password: str, dry_run: bool = False) -> dict:
    """Return ``{"user_id", "email", "status"}``.

    ``status`` is one of created, promoted, already_admin or dry_run.
    """
    # deferred so main() can adjust the environment before Settings loads
    from credvault.service.passwords import check_password_policy
    from credvault.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()
    user = runtime.store.get_user_by_email(email)

    if user is not None:
        if user.role == "admin":
            status = "already_admin"
        elif dry_run:
            status = "dry_run"
        else:
            runtime.store.update_user_role(user.id, "admin")
            # sessions opened as a plain user end with the promotion
            runtime.ledger.revoke_all(user.id, "role_change")
            status = "promoted"
        return {"user_id": user.id, "email": email, "status": status}

    check_password_policy(password)
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}
    user = runtime.store.create_user(
        email, username, role="admin", login_type="password", is_email_verified=True
    )
    digest, algo = runtime.hasher.hash_with_algo(password)
    runtime.store.save_password(user.id, digest, algo)
    return {"user_id": user.id, "email": email, "status": "created"}


_OUTCOMES = {
    "created": "created admin {email} ({user_id})",
    "promoted": "promoted {email} ({user_id}) to admin; existing sessions were revoked",
    "already_admin": "{email} ({user_id}) is already an admin",
    "dry_run": "dry run: nothing changed for {email}",
}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME", "admin"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true", help="report what would change and stop")
    args = parser.parse_args(argv)

    if not args.email or not args.password:
        parser.error("an email and a password are required (flags or ADMIN_EMAIL/ADMIN_PASSWORD)")

    if not os.environ.get("DATABASE_URL"):
        print("DATABASE_URL is not set; using the in-memory store", file=sys.stderr)
        os.environ["USE_MEMORY_STORE"] = "true"
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/credvault-bootstrap")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from credvault.service.errors import ServiceError
    from credvault.storage.errors import ConstraintViolation

    try:
        result = bootstrap_admin(args.email, args.username, args.password, args.dry_run)
    except (ServiceError, ConstraintViolation) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(_OUTCOMES[result["status"]].format(**result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
