import json

import pytest
import requests
from werkzeug.security import check_password_hash

from app.erp.db import session_scope
from app.erp.models import AuditEvent
from app.erp.modules.api_marketplace import service as svc
from app.erp.modules.api_marketplace.models import ApiAppCredential, ApiWebhook

BASE = "/admin/api-marketplace"
PAGES = ("/", "/apis", "/developers", "/apps", "/usage", "/webhooks", "/marketplace", "/docs", "/gateway")


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture()
def app_id(client):
    dev = client.post(f"{BASE}/api/developers", json={"name": "Dee", "email": "Dee@Example.com"})
    assert dev.status_code == 201
    r = client.post(f"{BASE}/api/apps", json={"developer_id": dev.json["data"]["developer_id"], "name": "Dee's app"})
    assert r.status_code == 201
    return r.json["data"]["app_id"]


def _key(client, app_id, **extra):
    r = client.post(f"{BASE}/api/keys", json={"application_id": app_id, **extra})
    assert r.status_code == 201, r.json
    return r.json["data"]


def test_pages_render(client, app_id):
    api_id = client.post(f"{BASE}/api/apis", json={"name": "Orders", "status": "published", "is_public": True}).json["data"]["api_id"]
    key = _key(client, app_id)
    client.post(f"{BASE}/api/usage", json={"api_key": key["api_key"], "endpoint": "/orders", "api_id": api_id, "response_time_ms": 40})
    client.post(f"{BASE}/api/webhooks", json={"application_id": app_id, "url": "https://hooks.example.com", "events": ["order.created"]})
    for path in PAGES:
        r = client.get(BASE + path)
        assert r.status_code == 200, path


def test_api_status_transitions(client):
    api_id = client.post(f"{BASE}/api/apis", json={"name": "Inventory"}).json["data"]["api_id"]
    r = client.post(f"{BASE}/api/apis/{api_id}/status", json={"status": "published"})
    assert r.json["data"]["status"] == "published"
    r = client.post(f"{BASE}/api/apis/{api_id}/status", json={"status": "retired"})
    assert r.status_code == 400
    assert client.post(f"{BASE}/api/apis/99999/status", json={"status": "draft"}).status_code == 404


def test_developer_registration(client):
    r = client.post(f"{BASE}/api/developers", json={"name": "Sam", "email": "sam@example.com"})
    assert r.json["data"]["status"] == "pending"
    r = client.post(f"{BASE}/api/developers", json={"name": "Sam again", "email": "SAM@example.com"})
    assert r.status_code == 400
    assert r.json["error"] == "Developer with this email already exists"
    r = client.post(f"{BASE}/api/developers", json={"name": "x", "email": "not-an-email"})
    assert r.json["error"] == "Invalid email address"

    dev_id = client.post(f"{BASE}/api/developers", json={"name": "Kim", "email": "kim@example.com"}).json["data"]["developer_id"]
    r = client.post(f"{BASE}/api/developers/{dev_id}/status", json={"status": "approved"})
    assert r.json["data"]["status"] == "approved"


def test_app_registration_returns_usable_secret(app, client):
    dev_id = client.post(f"{BASE}/api/developers", json={"name": "Lee", "email": "lee@example.com"}).json["data"]["developer_id"]
    r = client.post(f"{BASE}/api/apps", json={"developer_id": dev_id, "name": "Lee's app"})
    secret = r.json["data"]["client_secret"]
    with session_scope(app) as s:
        cred = s.query(ApiAppCredential).filter(ApiAppCredential.client_id == r.json["data"]["client_id"]).one()
        assert check_password_hash(cred.client_secret_hash, secret)
        assert secret not in cred.client_secret_hash


def test_generate_key_defaults_and_validation(client, app_id):
    key = _key(client, app_id)
    assert key["rate_limit"] == svc.DEFAULT_RATE_LIMIT
    assert len(key["api_key"]) == 64
    assert key["expires_at"] is None

    r = client.post(f"{BASE}/api/keys", json={"application_id": app_id, "rate_limit": 0})
    assert r.status_code == 422
    assert r.json["errors"] == {"rate_limit": ["rate_limit must be at least 1"]}
    r = client.post(f"{BASE}/api/keys", json={"application_id": app_id, "rate_limit": "lots"})
    assert r.json["errors"] == {"rate_limit": ["rate_limit must be a valid int"]}
    assert _key(client, app_id, rate_limit="50")["rate_limit"] == 50
    r = client.post(f"{BASE}/api/keys", json={"application_id": app_id, "expires_at": "soon"})
    assert r.json["error"] == "expires_at must be an ISO date or datetime"


def test_usage_tracking_rejects_bad_keys(app, client, app_id, ids):
    key = _key(client, app_id)
    expired = _key(client, app_id, expires_at="2020-01-01")

    r = client.post(f"{BASE}/api/usage", json={"api_key": key["api_key"], "endpoint": "/orders", "status_code": 500, "response_time_ms": 120})
    assert r.status_code == 201
    assert r.json["data"]["method"] == "GET"
    client.post(f"{BASE}/api/usage", json={"api_key": key["api_key"], "endpoint": "/orders", "response_time_ms": 80})

    r = client.post(f"{BASE}/api/usage", json={"api_key": expired["api_key"], "endpoint": "/orders"})
    assert r.json["error"] == "Invalid API key"
    r = client.post(f"{BASE}/api/usage", json={"api_key": key["api_key"], "endpoint": "/orders", "method": "BREW"})
    assert r.status_code == 400
    r = client.post(f"{BASE}/api/usage", json={"api_key": key["api_key"], "endpoint": "/orders", "status_code": 0})
    assert r.json["error"] == "status_code must be between 100 and 599"

    assert client.post(f"{BASE}/api/keys/{key['key_id']}/revoke").json["data"]["status"] == "revoked"
    r = client.post(f"{BASE}/api/keys/{key['key_id']}/revoke")
    assert r.json["error"] == "API key is already revoked"
    r = client.post(f"{BASE}/api/usage", json={"api_key": key["api_key"], "endpoint": "/orders"})
    assert r.json["error"] == "Invalid API key"

    with session_scope(app) as s:
        stats = svc.dashboard_stats(s, ids["acme"])
        assert stats["requests_today"] == 2
        assert stats["error_rate"] == 50.0
        assert stats["avg_response_time"] == 100.0
        assert stats["active_keys"] == 1
        usage = svc.usage_overview(s, ids["acme"])
        assert usage["per_key"][0]["key_prefix"] == key["api_key"][:8]


def test_usage_tracking_is_audited(app, client, app_id, ids):
    key = _key(client, app_id)
    r = client.post(f"{BASE}/api/usage", json={"api_key": key["api_key"], "endpoint": "/orders", "status_code": 404})
    assert r.status_code == 201
    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "api_marketplace.usage.track").one()
        assert ev.entity_id == str(r.json["data"]["id"])
        assert ev.actor_user_id == ids["admin"]
        assert ev.company_id == ids["acme"]
        assert json.loads(ev.metadata_json) == {"api_key_id": key["key_id"], "endpoint": "/orders", "status_code": 404}


def test_webhook_validation(client, app_id):
    r = client.post(f"{BASE}/api/webhooks", json={"application_id": app_id, "url": "ftp://x", "events": ["a"]})
    assert r.json["error"] == "url must be an http(s) URL"
    r = client.post(f"{BASE}/api/webhooks", json={"application_id": app_id, "url": "https://x", "events": "a"})
    assert r.json["error"] == "events must be a non-empty list of event names"


def test_webhook_test_delivery_is_signed(client, app_id, monkeypatch):
    sent = {}

    def fake_post(url, data=None, headers=None, timeout=None):
        sent.update(url=url, data=data, headers=headers, timeout=timeout)
        return FakeResponse(204)

    monkeypatch.setattr(svc.requests, "post", fake_post)
    r = client.post(f"{BASE}/api/webhooks", json={"application_id": app_id, "url": "https://hooks.example.com/in", "events": ["order.created"], "secret": "s3cret"})
    hook_id = r.json["data"]["webhook_id"]

    r = client.post(f"{BASE}/api/webhooks/{hook_id}/test")
    assert r.json["data"] == {"delivered": True, "status_code": 204, "error": None, "failure_count": 0}
    assert sent["url"] == "https://hooks.example.com/in"
    assert sent["headers"][svc.SIGNATURE_HEADER] == svc.sign_payload("s3cret", sent["data"])
    assert json.loads(sent["data"])["event"] == "webhook.test"


def test_webhook_failures_are_counted(app, client, app_id, monkeypatch):
    def refuse(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    hook_id = client.post(f"{BASE}/api/webhooks", json={"application_id": app_id, "url": "https://down.example.com", "events": ["x"]}).json["data"]["webhook_id"]
    monkeypatch.setattr(svc.requests, "post", refuse)
    r = client.post(f"{BASE}/api/webhooks/{hook_id}/test")
    assert r.status_code == 200
    assert r.json["data"]["delivered"] is False
    assert r.json["data"]["error"] == "connection refused"

    monkeypatch.setattr(svc.requests, "post", lambda *a, **k: FakeResponse(500))
    r = client.post(f"{BASE}/api/webhooks/{hook_id}/test")
    assert r.json["data"]["error"] == "HTTP 500"
    with session_scope(app) as s:
        hook = s.get(ApiWebhook, hook_id)
        assert hook.failure_count == 2
        assert hook.last_triggered_at is not None


def test_marketplace_is_company_scoped(client, other_client, app_id):
    key = _key(client, app_id)
    r = other_client.post(f"{BASE}/api/usage", json={"api_key": key["api_key"], "endpoint": "/orders"})
    assert r.json["error"] == "Invalid API key"
    assert other_client.post(f"{BASE}/api/keys/{key['key_id']}/revoke").status_code == 404
    r = other_client.post(f"{BASE}/api/keys", json={"application_id": app_id})
    assert r.json["error"] == "Application not found"
