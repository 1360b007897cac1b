#!/usr/bin/env python3
"""Grant a role to a user, creating the user if needed (idempotent).

Usage:
  python scripts/assign_role.py --email reviewer@example.com --role reviewer
  python scripts/assign_role.py --email new.author@example.com --role author --create --password s3cret
"""

import argparse
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docflow.models import Role, User  # noqa: E402
from scripts._db_utils import resolve_db_url, script_session  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", required=True, help="Role key (admin, author, reviewer, publisher)")
    parser.add_argument("--create", action="store_true", help="Create the user when missing")
    parser.add_argument("--password", default=None, help="Password for a newly created user")
    parser.add_argument("--name", default=None, help="Display name for a newly created user")
    args = parser.parse_args()

    email = args.email.strip().lower()
    db_url = resolve_db_url()
    with script_session(db_url) as s:
        role = s.query(Role).filter(Role.key == args.role).one_or_none()
        if not role:
            print(f"Role not found: {args.role}. Run python scripts/init_db.py first.")
            sys.exit(1)

        user = s.query(User).filter(User.email.ilike(email)).one_or_none()
        if not user:
            if not args.create:
                print(f"User not found: {email} (pass --create to add it)")
                sys.exit(1)
            if not args.password:
                print("--password is required with --create")
                sys.exit(1)
            user = User(
                email=email,
                display_name=args.name,
                password_hash=generate_password_hash(args.password),
                is_active=True,
            )
            s.add(user)
            print(f"Created user {email}")

        if role in (user.roles or []):
            print(f"User already has role {args.role}: {email}")
            return
        user.roles.append(role)
        print(f"Role {args.role} attached to {email}")


if __name__ == "__main__":
    main()
