from datetime import date, timedelta

from app.erp.db import session_scope
from app.erp.modules.security_features import service as svc
from app.erp.modules.security_features.models import (
    EncryptionKey,
    EncryptionLog,
    SecurityAlert,
    SecurityAlertNotification,
)

BASE = "/admin/security"

PAGES = ("/", "/encryption", "/audit", "/compliance", "/privacy", "/monitoring", "/access-control", "/incidents")


def _key(client, name="customer-pii"):
    r = client.post(f"{BASE}/api/keys", json={"key_name": name})
    assert r.status_code == 201, r.json
    return r.json["data"]["key_id"]


def _alert(client, **overrides):
    payload = {"alert_type": "brute_force", "severity": "high", "title": "Repeated failed logins"}
    payload.update(overrides)
    r = client.post(f"{BASE}/api/alerts", json=payload)
    assert r.status_code == 201, r.json
    return r.json["data"]


def test_pages_render(client):
    _alert(client)
    client.post(f"{BASE}/api/audit-events", json={"action": "export", "resource_type": "Report"})
    for path in PAGES:
        r = client.get(BASE + path)
        assert r.status_code == 200, path


def test_viewer_has_no_access(viewer_client):
    r = viewer_client.post(f"{BASE}/api/keys", json={"key_name": "x"})
    assert r.status_code == 403
    assert r.json["missing_permission"] == "security.encryption.manage"


def test_encrypt_decrypt_roundtrip(app, client):
    key_id = _key(client)
    r = client.post(f"{BASE}/api/encrypt", json={"key_id": key_id, "data": "4111 1111 1111 1111"})
    assert r.status_code == 200, r.json
    token = r.json["data"]["encrypted_data"]
    assert "4111" not in token

    r = client.post(f"{BASE}/api/decrypt", json={"key_id": key_id, "data": token})
    assert r.status_code == 200
    assert r.json["data"]["decrypted_data"] == "4111 1111 1111 1111"

    with session_scope(app) as s:
        key = s.get(EncryptionKey, key_id)
        assert key.algorithm == "AES-256-GCM"
        assert "4111" not in key.key_material


def test_encryption_failures_are_logged(app, client):
    key_id = _key(client)
    r = client.post(f"{BASE}/api/encrypt", json={"key_id": 9999, "data": "secret"})
    assert r.status_code == 400
    assert r.json["error"] == "Encryption key not found"

    r = client.post(f"{BASE}/api/encrypt", json={"key_id": key_id, "data": ""})
    assert r.json["error"] == "data is required"

    r = client.post(f"{BASE}/api/decrypt", json={"key_id": key_id, "data": "bm90LWEtdG9rZW4="})
    assert r.status_code == 400
    assert r.json["error"] == "Unsupported ciphertext format"

    client.post(f"{BASE}/api/encrypt", json={"key_id": key_id, "data": "ok"})
    with session_scope(app) as s:
        logs = s.query(EncryptionLog).order_by(EncryptionLog.id).all()
        assert [log.status for log in logs] == ["failure", "failure", "failure", "success"]
        assert logs[0].key_id is None
        stats = svc.dashboard_stats(s, logs[0].company_id)
        assert stats["encryption_success_rate"] == 25.0


def test_rotate_key(client):
    key_id = _key(client)
    token = client.post(f"{BASE}/api/encrypt", json={"key_id": key_id, "data": "before rotation"}).json["data"]["encrypted_data"]

    r = client.post(f"{BASE}/api/keys/{key_id}/rotate")
    assert r.status_code == 200
    new_id = r.json["data"]["new_key_id"]
    assert new_id != key_id

    # Old key still decrypts, but no longer encrypts.
    r = client.post(f"{BASE}/api/decrypt", json={"key_id": key_id, "data": token})
    assert r.json["data"]["decrypted_data"] == "before rotation"
    r = client.post(f"{BASE}/api/encrypt", json={"key_id": key_id, "data": "x"})
    assert r.json["error"] == "Encryption key is rotated"

    r = client.post(f"{BASE}/api/keys/{key_id}/rotate")
    assert r.status_code == 400
    assert r.json["error"] == "Only active keys can be rotated"

    r = client.post(f"{BASE}/api/decrypt", json={"key_id": new_id, "data": token})
    assert r.status_code == 400


def test_alert_notifies_monitoring_users(app, client, ids):
    data = _alert(client)
    # Only the admin holds security.monitoring.view in Acme.
    assert data["notified_users"] == 1

    r = client.post(f"{BASE}/api/alerts", json={"alert_type": "x", "severity": "urgent", "title": "x"})
    assert r.status_code == 400
    assert r.json["error"] == "Invalid severity. Must be one of: low, medium, high, critical"

    r = client.post(f"{BASE}/api/alerts/{data['alert_id']}/status", json={"status": "resolved"})
    assert r.json["data"]["status"] == "resolved"

    with session_scope(app) as s:
        assert s.get(SecurityAlert, data["alert_id"]).resolved_at is not None
        notes = s.query(SecurityAlertNotification).all()
        assert [n.user_id for n in notes] == [ids["admin"]]


def test_audit_log_filters(app, client, ids):
    client.post(f"{BASE}/api/audit-events", json={"action": "report.export", "resource_type": "Report", "resource_id": 7})
    client.post(f"{BASE}/api/audit-events", json={"action": "user.delete", "resource_type": "User", "severity": "critical"})
    r = client.post(f"{BASE}/api/audit-events", json={"action": "x", "resource_type": "User", "details": "nope"})
    assert r.json["error"] == "details must be an object"

    with session_scope(app) as s:
        cid = ids["acme"]
        assert [r.action for r in svc.audit_log_query(s, cid, {"severity": "critical"})] == ["user.delete"]
        assert [r.action for r in svc.audit_log_query(s, cid, {"action": "export"})] == ["report.export"]
        assert len(svc.audit_log_query(s, cid, {"user_id": str(ids["admin"])}).all()) == 2
        assert svc.audit_log_query(s, cid, {"date_to": "2000-01-01"}).all() == []
        assert svc.audit_log_query(s, ids["other"], {}).all() == []


def test_compliance_upsert_and_score(client):
    r = client.post(f"{BASE}/api/compliance-controls", json={"framework": "ISO27001", "control_ref": "A.5.1", "title": "Policies"})
    first = r.json["data"]
    assert first["status"] == "in_progress"

    r = client.post(
        f"{BASE}/api/compliance-controls",
        json={"framework": "ISO27001", "control_ref": "A.5.1", "title": "Policies", "status": "compliant"},
    )
    assert r.json["data"]["control_id"] == first["control_id"]
    client.post(
        f"{BASE}/api/compliance-controls",
        json={"framework": "SOC2", "control_ref": "CC6.1", "title": "Logical access", "status": "non_compliant"},
    )
    r = client.post(f"{BASE}/api/compliance-controls", json={"framework": "SOC2", "control_ref": "x", "title": "x", "status": "done"})
    assert r.status_code == 400


def test_compliance_by_framework(app, client, ids):
    for ref, status in (("A.1", "compliant"), ("A.2", "compliant"), ("A.3", "non_compliant"), ("A.4", "in_progress")):
        client.post(
            f"{BASE}/api/compliance-controls",
            json={"framework": "ISO27001", "control_ref": ref, "title": ref, "status": status},
        )
    with session_scope(app) as s:
        assert svc.compliance_score(s, ids["acme"]) == 50.0
        assert svc.compliance_score(s, ids["other"]) is None
        [row] = svc.compliance_by_framework(s, ids["acme"])
        assert row == {"framework": "ISO27001", "controls": 4, "compliant": 2, "non_compliant": 1, "score": 50.0}


def test_privacy_requests(app, client, ids):
    r = client.post(f"{BASE}/api/privacy-requests", json={"request_type": "erasure", "subject_email": "Jane@Example.com"})
    assert r.status_code == 201
    assert r.json["data"]["due_date"] == (date.today() + timedelta(days=30)).isoformat()

    r = client.post(f"{BASE}/api/privacy-requests", json={"request_type": "forget", "subject_email": "a@example.com"})
    assert r.status_code == 400
    r = client.post(f"{BASE}/api/privacy-requests", json={"request_type": "access", "subject_email": "nobody"})
    assert r.json["error"] == "subject_email must be a valid email"

    with session_scope(app) as s:
        [row] = svc.privacy_requests(s, ids["acme"])
        assert row["subject_email"] == "jane@example.com"
        assert row["overdue"] is False
        [late] = svc.privacy_requests(s, ids["acme"], today=date.today() + timedelta(days=31))
        assert late["overdue"] is True


def test_incident_lifecycle(app, client, ids):
    alert_id = _alert(client)["alert_id"]
    r = client.post(f"{BASE}/api/incidents", json={"title": "Credential stuffing", "severity": "critical", "alert_id": alert_id})
    assert r.status_code == 201, r.json
    incident_id = r.json["data"]["incident_id"]
    assert r.json["data"]["incident_number"].startswith("INC-")

    r = client.post(f"{BASE}/api/incidents", json={"title": "x", "alert_id": 9999})
    assert r.json["error"] == "Security alert not found"

    r = client.post(f"{BASE}/api/incidents/{incident_id}/resolve", json={})
    assert r.json["error"] == "Field 'resolution' is required"
    r = client.post(f"{BASE}/api/incidents/{incident_id}/resolve", json={"resolution": "Reset passwords"})
    assert r.status_code == 200
    r = client.post(f"{BASE}/api/incidents/{incident_id}/resolve", json={"resolution": "again"})
    assert r.json["error"] == "Incident is already resolved"

    with session_scope(app) as s:
        assert s.get(SecurityAlert, alert_id).status == "acknowledged"
        data = svc.incident_overview(s, ids["acme"])
        assert data["by_status"] == {"resolved": 1}
        assert data["mttr_hours"] is not None


def test_access_control_overview(app, ids):
    with session_scope(app) as s:
        data = svc.access_control_overview(s, ids["acme"])
        roles = {r["key"]: r for r in data["roles"]}
        assert roles["admin"]["users"] == 1
        assert roles["viewer"]["users"] == 1
        assert roles["viewer"]["permissions"] == 3
        assert [u["email"] for u in data["users"]] == ["admin@example.com", "viewer@example.com"]


def test_records_are_company_scoped(client, other_client):
    key_id = _key(client)
    alert_id = _alert(client)["alert_id"]
    assert other_client.post(f"{BASE}/api/keys/{key_id}/rotate").status_code == 404
    assert other_client.post(f"{BASE}/api/alerts/{alert_id}/status", json={"status": "resolved"}).status_code == 404
    r = other_client.post(f"{BASE}/api/encrypt", json={"key_id": key_id, "data": "x"})
    assert r.json["error"] == "Encryption key not found"

    r = other_client.post(f"{BASE}/api/incidents", json={"title": "x", "alert_id": alert_id})
    assert r.status_code == 400
