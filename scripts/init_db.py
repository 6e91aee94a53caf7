import os
import sys
from importlib import import_module
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.erp.db import script_session  # noqa: E402
from app.erp.models import Company, Permission, Role, User  # noqa: E402
from app.erp.modules import MODULES  # noqa: E402
from app.erp.rbac import KNOWN_PERMISSIONS  # noqa: E402


def _permission_name(key: str) -> str:
    head, _, rest = key.partition(".")
    return f"{head.replace('_', ' ').title()}: {rest.replace('.', ' ').replace('_', ' ')}"


def collect_permissions() -> list[str]:
    """
    Import every admin blueprint so their require_permission() keys are registered,
    then return the full sorted list.
    """
    import_module("app.erp.admin")
    for entry in MODULES:
        import_module(f"app.erp.modules.{entry.key}.admin")
    return sorted(KNOWN_PERMISSIONS)


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, the admin role, the default company and the admin user.
    Idempotent; does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    company_name = (os.environ.get("DEFAULT_COMPANY_NAME") or "Default Company").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///erp.db").strip()
    keys = collect_permissions()

    # Direct engine/session so release can run without importing app.wsgi.
    with script_session(db_url) as s:
        existing = {p.key: p for p in s.query(Permission).all()}
        for key in keys:
            if key not in existing:
                existing[key] = Permission(key=key, name=_permission_name(key))
                s.add(existing[key])

        role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrator")
            s.add(role_admin)
        for key in keys:
            if existing[key] not in role_admin.permissions:
                role_admin.permissions.append(existing[key])

        company = s.query(Company).order_by(Company.id.asc()).first()
        if not company:
            company = Company(name=company_name, slug="default")
            s.add(company)
            s.flush()

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                company_id=company.id,
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print(f"Initialized database (seed_only): {len(keys)} permissions.")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
