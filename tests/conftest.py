import pytest
from werkzeug.security import generate_password_hash

from app.erp import auth, create_app
from app.erp.db import session_scope
from app.erp.models import Base, Company, Permission, Role, User
from app.erp.rbac import KNOWN_PERMISSIONS

ADMIN_EMAIL = "admin@example.com"
OTHER_EMAIL = "other@example.com"
VIEWER_EMAIL = "viewer@example.com"
PASSWORD = "pw"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_LOCAL_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("ENCRYPTION_MASTER_KEY", "test-master-key")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    auth._login_attempts.clear()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        acme = Company(name="Acme", slug="acme")
        other = Company(name="Other Co", slug="other")
        s.add_all([acme, other])
        s.flush()

        perms = [Permission(key=key, name=key) for key in sorted(KNOWN_PERMISSIONS)]
        admin = Role(key="admin", name="Administrator")
        admin.permissions.extend(perms)
        viewer = Role(key="viewer", name="Viewer")
        viewer.permissions.extend(p for p in perms if p.key in ("admin.view", "procurement.view", "forms.view"))

        u_admin = User(company_id=acme.id, email=ADMIN_EMAIL, first_name="Ada", last_name="Admin", password_hash=generate_password_hash(PASSWORD))
        u_admin.roles.append(admin)
        u_other = User(company_id=other.id, email=OTHER_EMAIL, password_hash=generate_password_hash(PASSWORD))
        u_other.roles.append(admin)
        u_viewer = User(company_id=acme.id, email=VIEWER_EMAIL, password_hash=generate_password_hash(PASSWORD))
        u_viewer.roles.append(viewer)
        s.add_all(perms + [admin, viewer, u_admin, u_other, u_viewer])

    return app


def login(client, email: str = ADMIN_EMAIL):
    r = client.post("/auth/login", data={"email": email, "password": PASSWORD}, follow_redirects=False)
    assert r.status_code == 302
    return client


@pytest.fixture()
def anon(app):
    return app.test_client()


@pytest.fixture()
def client(app):
    return login(app.test_client())


@pytest.fixture()
def other_client(app):
    return login(app.test_client(), OTHER_EMAIL)


@pytest.fixture()
def viewer_client(app):
    return login(app.test_client(), VIEWER_EMAIL)


@pytest.fixture()
def ids(app):
    """Primary keys of the seeded companies and users."""
    with session_scope(app) as s:
        users = {u.email: u for u in s.query(User).all()}
        return {
            "acme": users[ADMIN_EMAIL].company_id,
            "other": users[OTHER_EMAIL].company_id,
            "admin": users[ADMIN_EMAIL].id,
            "other_user": users[OTHER_EMAIL].id,
            "viewer": users[VIEWER_EMAIL].id,
        }
