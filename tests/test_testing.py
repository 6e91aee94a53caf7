import random
from decimal import Decimal

import pytest

from app.erp.db import session_scope
from app.erp.models import User
from app.erp.modules.testing import models
from app.erp.modules.testing import service as svc

BASE = "/admin/testing"

PAGES = ("/", "/integration", "/security", "/performance", "/uat", "/accessibility", "/unit", "/automation", "/qa")


class FixedRandom(random.Random):
    """randint() hands out the queued values in order, then the lower bound."""

    def __init__(self, values):
        super().__init__(0)
        self.values = list(values)

    def randint(self, a, b):
        return self.values.pop(0) if self.values else a


def _run(app, ids, test_type, payload, values):
    with session_scope(app) as s:
        run = svc.run_test(s, test_type, payload, user=s.get(User, ids["admin"]), rng=FixedRandom(values))
        return run.id, run.status, run.result


def test_pages_render(client):
    client.post(f"{BASE}/api/security/run", json={"test_name": "Login form", "target": "/auth/login"})
    client.post(f"{BASE}/api/bugs", json={"title": "Typo"})
    for path in PAGES:
        r = client.get(BASE + path)
        assert r.status_code == 200, path


def test_risk_level_and_score():
    assert [svc.risk_level(n) for n in (0, 1, 2, 3, 4)] == ["low", "medium", "high", "high", "critical"]
    assert svc.accessibility_score(2, 1) == 85
    assert svc.accessibility_score(30, 5) == 0


def test_security_executor(app, ids):
    _, status, result = _run(app, ids, "security", {"test_name": "Scan", "target": "api"}, [0, 45])
    assert status == "passed"
    assert result["risk_level"] == "low"
    assert result["report"]["scan_summary"] == "Found 0 vulnerabilities"

    run_id, status, _ = _run(app, ids, "security", {"test_name": "Scan", "target": "api"}, [4, 45])
    assert status == "failed"
    with session_scope(app) as s:
        run = s.get(models.TestRun, run_id)
        assert run.vulnerabilities_found == 4
        assert run.risk_level == "critical"
        assert run.completed_at is not None


def test_performance_executor():
    result = svc.execute_performance({"load_parameters": {"users": 50}}, FixedRandom([450, 2000, 300, 1, 120]))
    assert result["status"] == "passed"
    assert result["error_rate"] == 0.01
    assert result["performance_data"]["percentiles"] == {"p50": 338, "p95": 1225, "p99": 1845}
    assert result["performance_data"]["load_parameters"] == {"users": 50}

    slow = svc.execute_performance({}, FixedRandom([450, 2000, 300, 3, 120]))
    assert slow["status"] == "failed"


def test_accessibility_and_integration_executors(app, ids):
    run_id, status, result = _run(app, ids, "accessibility", {"test_name": "Home", "target": "/"}, [2, 0, 3, 20])
    assert status == "passed"
    assert result["overall_score"] == 90
    assert result["wcag_level"] == "WCAG_2_1_AA"
    with session_scope(app) as s:
        assert s.get(models.TestRun, run_id).accessibility_score == Decimal(90)

    payload = {"test_name": "PO to receipt", "module_from": "procurement", "module_to": "manufacturing", "test_scenario": "x"}
    _, status, result = _run(app, ids, "integration", payload, [3, 1])
    assert status == "failed"
    assert result["error_message"] == "Mock integration error"
    _, status, _ = _run(app, ids, "integration", payload, [3, 9])
    assert status == "passed"


def test_run_api_validation(client):
    r = client.post(f"{BASE}/api/integration/run", json={"test_name": "x", "module_to": "quality", "test_scenario": "x"})
    assert r.status_code == 400
    assert r.json["error"] == "Field 'module_from' is required"

    r = client.post(f"{BASE}/api/accessibility/run", json={"test_name": "Home", "target": "/", "suite_id": 9999})
    assert r.json["error"] == "Test suite not found"

    r = client.post(f"{BASE}/api/performance/run", json={"test_name": "Load", "target": "/", "load_parameters": {"users": 10}})
    assert r.status_code == 200
    assert r.json["message"] == "Performance test completed"
    assert r.json["data"]["status"] in ("passed", "failed")
    assert set(r.json["data"]["result"]) >= {"average_response_time", "throughput", "error_rate"}


def test_generate_report(app, client, ids):
    _run(app, ids, "security", {"test_name": "a", "target": "x"}, [0, 10])
    _run(app, ids, "security", {"test_name": "b", "target": "x"}, [2, 10])
    _run(app, ids, "accessibility", {"test_name": "c", "target": "x"}, [0, 0, 0, 30])

    r = client.post(f"{BASE}/api/reports", json={"report_type": "summary", "test_types": ["security"]})
    assert r.status_code == 201, r.json
    data = r.json["data"]["report_data"]
    assert data["summary"] == {"total_tests": 2, "passed_tests": 1, "failed_tests": 1, "success_rate": 50.0}
    assert data["by_type"]["security"]["avg_execution_time"] == 10.0

    r = client.post(f"{BASE}/api/reports", json={"report_type": "trend"})
    assert r.json["data"]["report_data"]["summary"]["total_tests"] == 3

    r = client.post(f"{BASE}/api/reports", json={"report_type": "summary", "date_to": "2000-01-01"})
    assert r.json["data"]["report_data"]["summary"]["success_rate"] is None

    r = client.post(f"{BASE}/api/reports", json={"report_type": "summary", "date_from": "2026-02-01", "date_to": "2026-01-01"})
    assert r.json["error"] == "date_from must be on or before date_to"
    r = client.post(f"{BASE}/api/reports", json={"report_type": "summary", "test_types": ["smoke"]})
    assert r.status_code == 400
    r = client.post(f"{BASE}/api/reports", json={"report_type": "weekly"})
    assert r.status_code == 400


def test_coverage_and_bugs(app, client, ids):
    r = client.post(f"{BASE}/api/coverage", json={"module_name": "procurement", "total_lines": 200, "covered_lines": 150})
    assert r.status_code == 201
    assert r.json["data"]["lines_of_code"] == 200
    r = client.post(f"{BASE}/api/coverage", json={"module_name": "quality", "total_lines": 10, "covered_lines": 11})
    assert r.json["error"] == "covered_lines must be between 0 and total_lines"
    r = client.post(f"{BASE}/api/coverage", json={"module_name": "quality", "total_lines": "lots"})
    assert r.json["error"] == "Line counts must be integers"

    bug_id = client.post(f"{BASE}/api/bugs", json={"title": "Rounding in totals", "severity": "high"}).json["data"]["bug_id"]
    r = client.post(f"{BASE}/api/bugs", json={"title": "x", "severity": "blocker"})
    assert r.status_code == 400

    with session_scope(app) as s:
        metrics = svc.quality_metrics(s, ids["acme"])
        assert metrics["test_coverage"] == 75.0
        assert metrics["bug_density"] == 5.0
        assert metrics["open_bugs"] == 1
        assert metrics["mttr_hours"] is None

    assert client.post(f"{BASE}/api/bugs/{bug_id}/resolve").status_code == 200
    r = client.post(f"{BASE}/api/bugs/{bug_id}/resolve")
    assert r.json["error"] == "Bug is already resolved"

    with session_scope(app) as s:
        metrics = svc.quality_metrics(s, ids["acme"])
        assert metrics["open_bugs"] == 0
        assert metrics["mttr_hours"] is not None


def test_uat_and_automation(app, client, ids):
    for status in ("approved", "rejected", "scheduled"):
        r = client.post(f"{BASE}/api/uat-sessions", json={"session_name": f"Round {status}", "status": status, "session_date": "2026-03-10"})
        assert r.status_code == 201
    r = client.post(f"{BASE}/api/uat-sessions", json={"session_name": "x", "status": "maybe"})
    assert r.status_code == 400

    suite_id = client.post(
        f"{BASE}/api/suites", json={"suite_name": "Nightly", "test_type": "security", "is_automated": True}
    ).json["data"]["suite_id"]
    r = client.post(f"{BASE}/api/security/run", json={"test_name": "Nightly scan", "target": "api", "suite_id": suite_id})
    assert r.status_code == 200

    with session_scope(app) as s:
        uat = svc.uat_overview(s, ids["acme"])
        assert uat["approval_rate"] == 50.0
        assert len(uat["sessions"]) == 3
        auto = svc.automation_overview(s, ids["acme"])
        assert [x.suite_name for x in auto["suites"]] == ["Nightly"]
        assert auto["runs_7d"] == 1


@pytest.mark.parametrize("path", ["/api/security/run", "/api/bugs", "/api/reports"])
def test_viewer_cannot_write(viewer_client, path):
    assert viewer_client.post(BASE + path, json={}).status_code == 403


def test_records_are_company_scoped(client, other_client, app, ids):
    bug_id = client.post(f"{BASE}/api/bugs", json={"title": "Ours"}).json["data"]["bug_id"]
    suite_id = client.post(f"{BASE}/api/suites", json={"suite_name": "Ours", "test_type": "unit"}).json["data"]["suite_id"]

    assert other_client.post(f"{BASE}/api/bugs/{bug_id}/resolve").status_code == 404
    r = other_client.post(f"{BASE}/api/security/run", json={"test_name": "x", "target": "x", "suite_id": suite_id})
    assert r.json["error"] == "Test suite not found"

    with session_scope(app) as s:
        assert svc.quality_metrics(s, ids["other"])["total_bugs"] == 0
