from app.erp.db import session_scope
from app.erp.models import AuditEvent

ADMIN_EMAIL = "admin@example.com"
PASSWORD = "pw"


def test_health_ok(anon):
    r = anon.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert anon.get("/healthz").data == b"ok"


def test_public_index_redirects_when_logged_in(anon, client):
    assert anon.get("/").status_code == 200
    r = client.get("/")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/")


def test_login_and_admin_access(anon):
    r = anon.get("/admin/")
    assert r.status_code == 302
    assert "/auth/login?next=" in r.headers["Location"]

    r = anon.post("/auth/login", data={"email": ADMIN_EMAIL.upper(), "password": PASSWORD, "next": "/admin/audit"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/admin/audit")
    assert anon.get("/admin/").status_code == 200


def test_login_ignores_offsite_next(anon):
    r = anon.post("/auth/login", data={"email": ADMIN_EMAIL, "password": PASSWORD, "next": "//evil.example/"})
    assert r.headers["Location"].endswith("/admin/")


def test_failed_login_is_audited(app, anon, ids):
    r = anon.post("/auth/login", data={"email": ADMIN_EMAIL, "password": "wrong"})
    assert r.status_code == 302
    assert anon.get("/admin/").status_code == 302

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.company_id == ids["acme"]
        assert ev.actor_user_id is None


def test_login_rate_limit(anon):
    for _ in range(5):
        anon.post("/auth/login", data={"email": ADMIN_EMAIL, "password": "wrong"})
    r = anon.post("/auth/login", data={"email": ADMIN_EMAIL, "password": PASSWORD}, follow_redirects=True)
    assert b"Too many login attempts" in r.data
    assert anon.get("/admin/").status_code == 302


def test_logout(client):
    r = client.get("/auth/logout")
    assert r.status_code == 302
    assert client.get("/admin/").status_code == 302


def test_admin_index_lists_permitted_modules(client, viewer_client):
    body = client.get("/admin/").get_data(as_text=True)
    assert "Quality Management" in body
    assert "API Marketplace" in body
    assert "connected" in body

    body = viewer_client.get("/admin/").get_data(as_text=True)
    assert "Procurement" in body
    assert "Quality Management" not in body


def test_forbidden_page_names_missing_permission(viewer_client):
    r = viewer_client.get("/admin/quality/")
    assert r.status_code == 403
    assert b"quality.view" in r.data

    r = viewer_client.get("/admin/audit")
    assert r.status_code == 403


def test_api_unknown_route_is_json(client):
    r = client.get("/admin/procurement/api/nothing-here")
    assert r.status_code == 404
    assert r.json["success"] is False


def test_audit_list_filters_and_scoping(client, other_client):
    client.post("/admin/procurement/api/vendors", json={"vendor_name": "Northwind", "email": "n@example.com"})

    body = client.get("/admin/audit").get_data(as_text=True)
    assert "procurement.vendor.create" in body
    assert "other@example.com" not in body

    body = client.get("/admin/audit?action=auth.login").get_data(as_text=True)
    assert "procurement.vendor.create" not in body

    body = client.get("/admin/audit?date_from=2000-01-01&date_to=2000-01-02").get_data(as_text=True)
    assert "No audit events match." in body

    body = client.get("/admin/audit?date_from=yesterday").get_data(as_text=True)
    assert "date_from must be YYYY-MM-DD" in body


def test_csrf_enforced_when_enabled(app, client):
    app.config["CSRF_ENABLED"] = True
    r = client.post("/admin/procurement/api/vendors", json={"vendor_name": "x", "email": "x@example.com"})
    assert r.status_code == 400
    assert r.json["error"] == "CSRF token missing or invalid."

    with client.session_transaction() as sess:
        token = sess["csrf_token"]
    r = client.post(
        "/admin/procurement/api/vendors",
        json={"vendor_name": "x", "email": "x@example.com"},
        headers={"X-CSRF-Token": token},
    )
    assert r.status_code == 201
