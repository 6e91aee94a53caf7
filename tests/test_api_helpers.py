from datetime import date, datetime
from decimal import Decimal

import pytest

from app.erp.api import (
    ApiError,
    NotFound,
    ValidationFailed,
    json_endpoint,
    json_success,
    jsonable,
    require_fields,
    validate_payload,
)
from app.erp.audit import record_event
from app.erp.db import db_session, session_scope
from app.erp.models import AuditEvent

RULES = {
    "email": {"required": True, "type": "email"},
    "rating": {"type": "int", "min": 1, "max": 5},
    "status": {"choices": ("draft", "published"), "default": "draft"},
    "code": {"pattern": r"[A-Z]{3}-\d+"},
    "tags": {"type": "list", "max": 2},
}


def test_validate_payload_coerces():
    clean = validate_payload({"email": " Ops@Example.com ", "rating": "4", "code": "ABC-12"}, RULES)
    assert clean == {"email": "ops@example.com", "rating": 4, "status": "draft", "code": "ABC-12"}


def test_validate_payload_collects_errors():
    with pytest.raises(ValidationFailed) as exc:
        validate_payload({"rating": "9", "status": "gone", "code": "abc", "tags": [1, 2, 3]}, RULES)
    errors = exc.value.errors
    assert exc.value.status == 422
    assert errors["email"] == ["email is required"]
    assert errors["rating"] == ["rating must be at most 5"]
    assert errors["status"] == ["status must be one of: draft, published"]
    assert errors["code"] == ["code has an invalid format"]
    assert errors["tags"] == ["tags must be at most 2"]

    with pytest.raises(ValidationFailed) as exc:
        validate_payload({"email": "nope", "rating": True}, RULES)
    assert exc.value.errors == {"email": ["email must be a valid email"], "rating": ["rating must be a valid int"]}


def test_require_fields():
    require_fields({"a": 1, "b": "x"}, ("a", "b"))
    for bad in ({"a": None}, {"a": "  "}, {"a": []}, {}):
        with pytest.raises(ApiError, match="Field 'a' is required"):
            require_fields(bad, ("a",))


def test_jsonable():
    row = {"when": datetime(2026, 3, 10, 8, 30), "day": date(2026, 3, 10), "amount": Decimal("10.50"), "tags": ("a",)}
    assert jsonable(row) == {"when": "2026-03-10T08:30:00", "day": "2026-03-10", "amount": 10.5, "tags": ["a"]}


@pytest.fixture()
def api_client(app):
    def _write(action):
        record_event(db_session(), actor=None, action=action)

    @json_endpoint
    def ok():
        _write("test.ok")
        return json_success({"n": 1}, message="done", status=201)

    @json_endpoint
    def fails():
        _write("test.rolled_back")
        raise ValueError("bad input")

    @json_endpoint
    def missing():
        raise NotFound("Widget not found")

    @json_endpoint
    def conflict():
        raise ApiError("Already exists", 409)

    @json_endpoint
    def invalid():
        validate_payload({}, {"name": {"required": True}})

    @json_endpoint
    def crash():
        raise RuntimeError("boom")

    for fn in (ok, fails, missing, conflict, invalid, crash):
        app.add_url_rule(f"/helpers/api/{fn.__name__}", fn.__name__, fn, methods=["POST"])
    return app.test_client()


def test_json_endpoint_translates_errors(app, api_client):
    r = api_client.post("/helpers/api/ok")
    assert r.status_code == 201
    assert r.json == {"success": True, "message": "done", "data": {"n": 1}}

    r = api_client.post("/helpers/api/fails")
    assert (r.status_code, r.json) == (400, {"success": False, "error": "bad input"})
    assert api_client.post("/helpers/api/missing").status_code == 404
    assert api_client.post("/helpers/api/conflict").json["error"] == "Already exists"
    r = api_client.post("/helpers/api/invalid")
    assert r.status_code == 422
    assert r.json["errors"] == {"name": ["name is required"]}
    r = api_client.post("/helpers/api/crash")
    assert r.status_code == 500

    with session_scope(app) as s:
        actions = {e.action for e in s.query(AuditEvent).all()}
    assert "test.ok" in actions
    assert "test.rolled_back" not in actions
