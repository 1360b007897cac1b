import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.docflow.models import Permission, Role, User  # noqa: E402
from scripts._db_utils import resolve_db_url, script_session  # noqa: E402

PERMISSIONS: dict[str, str] = {
    "docs.view": "Docs: view documents, versions and audit trail",
    "docs.create": "Docs: create documents and drafts",
    "docs.submit": "Docs: submit and resubmit for review",
    "docs.review": "Docs: approve or request changes",
    "docs.publish": "Docs: publish approved versions",
    "docs.rollback": "Docs: roll back to an earlier version",
}

ROLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "admin": ("Administrator", tuple(PERMISSIONS)),
    "author": ("Author", ("docs.view", "docs.create", "docs.submit")),
    "reviewer": ("Reviewer", ("docs.view", "docs.review")),
    "publisher": ("Publisher", ("docs.view", "docs.publish", "docs.rollback")),
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@docflow.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = resolve_db_url(database_url)

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in PERMISSIONS.items():
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        roles: dict[str, Role] = {}
        for key, (name, perm_keys) in ROLES.items():
            r = s.query(Role).filter(Role.key == key).one_or_none()
            if not r:
                r = Role(key=key, name=name)
                s.add(r)
            for pk in perm_keys:
                if perms[pk] not in r.permissions:
                    r.permissions.append(perms[pk])
            roles[key] = r

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                display_name="Administrator",
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
