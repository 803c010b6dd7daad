#!/usr/bin/env python3
"""Create the Kebilo schema and seed a demo physician with one staff member."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from kebilo.auth import get_user_by_email, register_user
from kebilo.db import SessionLocal, init_db, session_scope
from kebilo.db.config import get_database_settings
from kebilo.db.models import UserRole

DEFAULT_PHYSICIAN = {
    "email": "physician@exampleclinic.com",
    "password": "Physician123!",
    "first_name": "Avery",
    "last_name": "Stone",
}

DEFAULT_STAFF = {
    "email": "staff@exampleclinic.com",
    "password": "Staff123!",
    "first_name": "Jordan",
    "last_name": "Reyes",
}

USER_ENV_VARS = {
    "physician": ("KEBILO_PHYSICIAN_EMAIL", "KEBILO_PHYSICIAN_PASSWORD"),
    "staff": ("KEBILO_STAFF_EMAIL", "KEBILO_STAFF_PASSWORD"),
}


def _resolve_user_spec(role: str, args: argparse.Namespace) -> Dict[str, str]:
    base = dict(DEFAULT_PHYSICIAN if role == "physician" else DEFAULT_STAFF)
    email_env, password_env = USER_ENV_VARS[role]
    override_email = getattr(args, f"{role}_email") or os.getenv(email_env)
    override_pass = getattr(args, f"{role}_password") or os.getenv(password_env)
    if override_email:
        base["email"] = override_email
    if override_pass:
        base["password"] = override_pass
    return base


def _ensure_user(session, spec: Dict[str, str], role: str, physician_id: Optional[str]) -> Tuple[str, bool]:
    existing = get_user_by_email(session, spec["email"])
    if existing is not None:
        return existing.id, False
    user = register_user(
        session,
        email=spec["email"],
        password=spec["password"],
        first_name=spec["first_name"],
        last_name=spec["last_name"],
        role=role,
        physician_id=physician_id,
    )
    return user.id, True


def seed_default_users(args: argparse.Namespace) -> List[Tuple[str, str, str]]:
    created: List[Tuple[str, str, str]] = []
    with session_scope(SessionLocal) as session:
        physician = _resolve_user_spec("physician", args)
        physician_id, new = _ensure_user(session, physician, UserRole.PHYSICIAN.value, None)
        if new:
            created.append((physician["email"], physician["password"], UserRole.PHYSICIAN.value))
        staff = _resolve_user_spec("staff", args)
        _, new = _ensure_user(session, staff, UserRole.STAFF.value, physician_id)
        if new:
            created.append((staff["email"], staff["password"], UserRole.STAFF.value))
    return created


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the Kebilo tables and seed default accounts.",
    )
    parser.add_argument(
        "--skip-user-seed",
        action="store_true",
        help="Do not create the default physician/staff accounts.",
    )
    parser.add_argument("--physician-email", help="Override the seeded physician e-mail")
    parser.add_argument("--physician-password", help="Override the seeded physician password")
    parser.add_argument("--staff-email", help="Override the seeded staff e-mail")
    parser.add_argument("--staff-password", help="Override the seeded staff password")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    init_db()
    settings = get_database_settings()
    print(f"Database initialised at {settings.url}")

    if args.skip_user_seed:
        print("User seeding skipped.")
        return 0

    created_users = seed_default_users(args)
    if created_users:
        print("Created the following default accounts (update credentials before production use):")
        for email, password, role in created_users:
            print(f"  - {role}: {email} / {password}")
    else:
        print("Default accounts already present; no changes made.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
