from decimal import Decimal

import pytest

from app.erp.db import session_scope
from app.erp.models import AuditEvent
from app.erp.modules.quality import service as svc
from app.erp.modules.quality.models import (
    AuditType,
    NcCategory,
    NonConformance,
    QualityActivity,
    QualityCheck,
    QualityCriteria,
    QualityStandard,
)

PAGES = (
    "/admin/quality/",
    "/admin/quality/control",
    "/admin/quality/audits",
    "/admin/quality/non-conformance",
    "/admin/quality/capa",
    "/admin/quality/iso",
    "/admin/quality/standards",
    "/admin/quality/spc",
    "/admin/quality/analytics",
)


@pytest.fixture()
def refs(app, ids):
    """Reference rows the quality API expects to exist: a standard, criteria, NC category, audit type."""
    with session_scope(app) as s:
        std = QualityStandard(company_id=ids["acme"], standard_code="ISO 9001", title="QMS", compliance_score=Decimal("92.5"))
        s.add(std)
        s.flush()
        crit = QualityCriteria(
            company_id=ids["acme"],
            standard_id=std.id,
            criteria_name="Bore diameter",
            unit="mm",
            lower_limit=Decimal("9.5"),
            upper_limit=Decimal("10.5"),
        )
        cat = NcCategory(company_id=ids["acme"], name="Dimensional")
        atype = AuditType(company_id=ids["acme"], name="internal")
        other_cat = NcCategory(company_id=ids["other"], name="Theirs")
        s.add_all([crit, cat, atype, other_cat])
        s.flush()
        return {"criteria": crit.id, "category": cat.id, "audit_type": atype.id, "other_category": other_cat.id}


def _check(client, refs, **extra):
    payload = {"criteria_id": refs["criteria"], "check_date": "2026-05-01", **extra}
    return client.post("/admin/quality/api/checks", json=payload)


def test_pages_render(client, refs):
    _check(client, refs, result="pass", actual_value=10.0, defect_rate=0.5)
    _check(client, refs, result="fail", actual_value=10.6, raise_nc=True)
    for path in PAGES:
        r = client.get(path)
        assert r.status_code == 200, path


def test_create_check_logs_activity(app, client, refs, ids):
    r = _check(client, refs, result="pass", actual_value="10.01")
    assert r.status_code == 201
    assert r.json["quality_check_id"]
    assert "nc_id" not in r.json
    with session_scope(app) as s:
        acts = s.query(QualityActivity).filter(QualityActivity.company_id == ids["acme"]).all()
        assert [a.activity_type for a in acts] == ["quality_check_created"]
        assert s.query(AuditEvent).filter(AuditEvent.action == "quality.check.create").count() == 1


def test_create_check_validation(client, refs):
    assert _check(client, refs, result="maybe").status_code == 400
    r = client.post("/admin/quality/api/checks", json={"criteria_id": refs["criteria"]})
    assert r.status_code == 400
    assert r.json["error"] == "Field 'check_date' is required"
    r = _check(client, refs, check_date="01/05/2026")
    assert r.json["error"] == "check_date must be YYYY-MM-DD"
    r = _check(client, refs, actual_value="ten")
    assert r.json["error"] == "actual_value must be a number"


def test_failed_check_can_raise_nc(app, client, refs):
    r = _check(client, refs, result="fail", raise_nc="true", nc_severity="major")
    assert r.status_code == 201
    assert r.json["nc_number"].startswith("NC-")
    with session_scope(app) as s:
        nc = s.get(NonConformance, r.json["nc_id"])
        assert nc.severity == "major"
        assert nc.source == "quality_check"
        assert nc.quality_check_id == r.json["quality_check_id"]
        assert nc.category.name == svc.FAILED_CHECK_NC_CATEGORY

    # A passing check never raises one.
    r = _check(client, refs, result="pass", raise_nc=True)
    assert "nc_id" not in r.json


def test_bulk_update_checks(client, refs):
    ids_ = [_check(client, refs).json["quality_check_id"] for _ in range(3)]
    r = client.post("/admin/quality/api/checks/bulk-update", json={"check_ids": ids_, "updates": {"result": "pass", "color": "red"}})
    assert r.status_code == 200
    assert r.json["updated_count"] == 3

    r = client.post("/admin/quality/api/checks/bulk-update", json={"check_ids": ids_, "updates": {"color": "red"}})
    assert r.status_code == 400
    r = client.post("/admin/quality/api/checks/bulk-update", json={"check_ids": [], "updates": {"result": "pass"}})
    assert r.json["error"] == "check_ids is required"

    r = client.get("/admin/quality/api/checks?result=pass")
    assert r.json["pagination"]["total"] == 3


def test_audit_and_findings(app, client, refs, ids):
    r = client.post(
        "/admin/quality/api/audits",
        json={"audit_title": "Annual internal", "audit_type_id": refs["audit_type"], "scheduled_date": "2026-12-01", "duration_days": 2},
    )
    assert r.status_code == 201
    audit_id = r.json["audit_id"]
    r = client.post(
        "/admin/quality/api/audits",
        json={"audit_title": "Bad", "audit_type_id": refs["audit_type"], "scheduled_date": "2026-12-01", "duration_days": 0},
    )
    assert r.status_code == 422
    assert r.json["error"] == "Validation failed"
    assert r.json["errors"] == {"duration_days": ["duration_days must be at least 1"]}

    for finding_type in ("major", "minor", "observation"):
        r = client.post("/admin/quality/api/audit-findings", json={"audit_id": audit_id, "description": "x", "finding_type": finding_type})
        assert r.status_code == 201
    r = client.post("/admin/quality/api/audit-findings", json={"audit_id": audit_id, "description": "x", "finding_type": "fatal"})
    assert r.status_code == 400

    with session_scope(app) as s:
        rows = svc.audits_with_findings(s, ids["acme"])
        assert rows[0]["finding_count"] == 3
        assert rows[0]["major_findings"] == 1
        assert rows[0]["audit_type"] == "internal"


def test_nc_lifecycle(app, client, refs):
    r = client.post(
        "/admin/quality/api/non-conformances",
        json={"description": "Burr on edge", "category_id": refs["category"], "severity": "critical", "priority": "high"},
    )
    assert r.status_code == 201
    nc_id = r.json["nc_id"]

    r = client.post(
        "/admin/quality/api/root-cause-analyses",
        json={"nc_id": nc_id, "root_cause": "Worn tool", "method": "fishbone", "contributing_factors": ["tool life", "no SPC"]},
    )
    assert r.status_code == 201
    r = client.post("/admin/quality/api/root-cause-analyses", json={"nc_id": nc_id, "root_cause": "x", "contributing_factors": "tool"})
    assert r.json["error"] == "contributing_factors must be a list"

    r = client.post("/admin/quality/api/containment-actions", json={"nc_id": nc_id, "action_description": "Quarantine lot"})
    assert r.status_code == 201

    with session_scope(app) as s:
        assert s.get(NonConformance, nc_id).status == "investigating"

    r = client.get("/admin/quality/api/non-conformances?severity=critical")
    assert [row["id"] for row in r.json["data"]] == [nc_id]
    assert r.json["data"][0]["category"] == "Dimensional"


def test_nc_rejects_other_company_category(client, refs):
    r = client.post("/admin/quality/api/non-conformances", json={"description": "x", "category_id": refs["other_category"]})
    assert r.status_code == 400
    assert r.json["error"] == "Non-conformance category not found"


def test_capa(client, refs):
    nc_id = client.post("/admin/quality/api/non-conformances", json={"description": "x", "category_id": refs["category"]}).json["nc_id"]
    r = client.post("/admin/quality/api/capas", json={"capa_type": "corrective", "description": "Replace tooling", "nc_id": nc_id, "due_date": "2020-01-01"})
    assert r.status_code == 201
    assert r.json["capa_number"].startswith("CAPA-")
    assert client.post("/admin/quality/api/capas", json={"capa_type": "detective", "description": "x"}).status_code == 400

    r = client.get("/admin/quality/api/capas?capa_type=corrective")
    assert r.json["pagination"]["total"] == 1


def test_dashboard_counts_overdue_capas(app, client, refs, ids):
    client.post("/admin/quality/api/capas", json={"capa_type": "preventive", "description": "late", "due_date": "2020-01-01"})
    client.post("/admin/quality/api/capas", json={"capa_type": "preventive", "description": "fine", "due_date": "2099-01-01"})
    _check(client, refs, result="pass", defect_rate="1.0")
    _check(client, refs, result="fail", defect_rate="3.0")
    _check(client, refs)
    with session_scope(app) as s:
        stats = svc.dashboard_stats(s, ids["acme"])
        assert stats["open_capas"] == 2
        assert stats["overdue_capas"] == 1
        assert stats["check_pass_rate"] == 50.0
        assert stats["average_defect_rate"] == 2.0


def test_spc_summary():
    out = svc.spc_summary([10.0, 10.2, 9.8, 10.0], 9.0, 11.0)
    assert out["n"] == 4
    assert out["mean"] == 10.0
    assert out["out_of_control"] == 0
    assert out["cpk"] > 1
    assert svc.spc_summary([]) == {"n": 0}
    assert svc.spc_summary([5.0])["cpk"] is None


def test_statistical_process_groups_by_criteria(app, client, refs, ids):
    for v in ("10.0", "10.1", "9.9"):
        _check(client, refs, actual_value=v)
    with session_scope(app) as s:
        rows = svc.statistical_process(s, ids["acme"])
    assert len(rows) == 1
    assert rows[0]["criteria_name"] == "Bore diameter"
    assert rows[0]["n"] == 3


def test_checks_are_company_scoped(client, other_client, refs):
    _check(client, refs, result="pass")
    assert other_client.get("/admin/quality/api/checks").json["pagination"]["total"] == 0
    r = _check(other_client, refs)
    assert r.status_code == 400
    assert r.json["error"] == "Quality criteria not found"


def test_user_references_stay_in_company(app, client, refs, ids):
    for bad in (ids["other_user"], 9999, "someone"):
        r = _check(client, refs, inspector_user_id=bad)
        assert r.status_code == 400
        assert r.json["error"] == "User not found"

    r = _check(client, refs, inspector_user_id=ids["viewer"])
    assert r.status_code == 201
    with session_scope(app) as s:
        check = s.get(QualityCheck, r.json["quality_check_id"])
        assert check.inspector_user_id == ids["viewer"]

    r = client.post(
        "/admin/quality/api/audits",
        json={"audit_title": "x", "audit_type_id": refs["audit_type"], "scheduled_date": "2026-12-01", "lead_auditor_user_id": ids["other_user"]},
    )
    assert r.json["error"] == "User not found"

    r = client.post("/admin/quality/api/capas", json={"capa_type": "corrective", "description": "x", "assigned_to_user_id": ids["other_user"]})
    assert r.json["error"] == "User not found"

    nc_id = client.post(
        "/admin/quality/api/non-conformances", json={"description": "Burr", "category_id": refs["category"], "severity": "minor"}
    ).json["nc_id"]
    r = client.post(
        "/admin/quality/api/containment-actions",
        json={"nc_id": nc_id, "action_description": "Quarantine", "responsible_user_id": ids["other_user"]},
    )
    assert r.status_code == 400
    assert r.json["error"] == "User not found"
