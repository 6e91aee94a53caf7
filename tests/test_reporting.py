from datetime import datetime

import pytest
import requests

from app.erp.crypto import open_config
from app.erp.db import session_scope
from app.erp.models import AuditEvent
from app.erp.modules.reporting import bi
from app.erp.modules.reporting.models import BiSyncJob, BiToolConfig, Report, ReportExport, ReportRun
from app.erp.modules.reporting.service import calculate_next_run

BASE = "/admin/reporting"

PAGES = (
    "/",
    "/builder",
    "/dashboards",
    "/visualization",
    "/insights",
    "/scheduler",
    "/sharing",
    "/analytics",
    "/optimization",
    "/bi",
)

TABLEAU = {"server_url": "https://tableau.example", "site_id": "site1", "username": "svc", "password": "hunter2"}


def _vendor(client, name, category="raw_materials"):
    r = client.post(
        "/admin/procurement/api/vendors",
        json={"vendor_name": name, "email": f"{name.split()[0].lower()}@example.com", "category": category},
    )
    assert r.status_code == 201, r.json


def _report(client, template=None, **extra):
    payload = {
        "report_name": "Vendor list",
        "query_template": template or {"source": "vendors", "columns": ["vendor_name", "category", "rating"]},
    }
    payload.update(extra)
    r = client.post(f"{BASE}/api/reports", json=payload)
    assert r.status_code == 201, r.json
    return r.json["data"]["report_id"]


@pytest.fixture()
def vendors(client):
    _vendor(client, "Northwind Metals")
    _vendor(client, "Contoso Plastics", category="packaging")


def _configure(client, tool="tableau", config=None):
    r = client.post(f"{BASE}/api/bi/{tool}/configure", json={"config": config or TABLEAU})
    assert r.status_code == 200, r.json
    return r


def test_pages_render(client, vendors):
    report_id = _report(client)
    client.post(f"{BASE}/api/reports/{report_id}/generate", json={})
    for path in PAGES:
        r = client.get(BASE + path)
        assert r.status_code == 200, path


def test_create_report_rejects_unknown_source(client):
    r = client.post(f"{BASE}/api/reports", json={"report_name": "Payroll", "query_template": {"source": "salaries"}})
    assert r.status_code == 400
    assert r.json["error"] == "Invalid query template: Unknown data source: salaries"

    r = client.post(
        f"{BASE}/api/reports",
        json={"report_name": "Vendors", "query_template": {"source": "vendors", "columns": ["password_hash"]}},
    )
    assert r.status_code == 400
    assert "Unknown column 'password_hash'" in r.json["error"]

    r = client.post(f"{BASE}/api/reports", json={"query_template": {"source": "vendors"}})
    assert r.status_code == 400
    assert r.json["error"] == "Field 'report_name' is required"


def test_generate_returns_rows_and_records_run(app, client, vendors):
    report_id = _report(client)
    r = client.post(f"{BASE}/api/reports/{report_id}/generate", json={})
    assert r.status_code == 200, r.json
    data = r.json["data"]
    assert data["columns"] == ["vendor_name", "category", "rating"]
    assert data["row_count"] == 2
    assert {row["vendor_name"] for row in data["rows"]} == {"Northwind Metals", "Contoso Plastics"}

    r = client.post(f"{BASE}/api/reports/{report_id}/generate", json={"date_to": "2000-01-01"})
    assert r.json["data"]["row_count"] == 0

    with session_scope(app) as s:
        report = s.get(Report, report_id)
        assert report.view_count == 2
        assert report.last_run is not None
        assert s.query(ReportRun).filter(ReportRun.report_id == report_id).count() == 2


def test_generate_with_filters_and_grouping(client, vendors):
    filtered = _report(
        client,
        {"source": "vendors", "columns": ["vendor_name"], "filters": [["category", "eq", "packaging"]]},
    )
    r = client.post(f"{BASE}/api/reports/{filtered}/generate", json={})
    assert r.json["data"]["rows"] == [{"vendor_name": "Contoso Plastics"}]

    grouped = _report(client, {"source": "vendors", "group_by": "category", "aggregates": [["count", "id"]]})
    r = client.post(f"{BASE}/api/reports/{grouped}/generate", json={})
    data = r.json["data"]
    assert data["columns"] == ["category", "count_id"]
    assert {row["category"]: row["count_id"] for row in data["rows"]} == {"packaging": 1, "raw_materials": 1}


def test_failed_run_is_kept(app, client, vendors):
    report_id = _report(client)
    with session_scope(app) as s:
        s.get(Report, report_id).query_template = {"source": "salaries"}

    r = client.post(f"{BASE}/api/reports/{report_id}/generate", json={})
    assert r.status_code == 400
    assert r.json["error"] == "Unknown data source: salaries"
    run_id = r.json["run_id"]

    with session_scope(app) as s:
        run = s.get(ReportRun, run_id)
        assert run.status == "failed"
        assert run.error == "Unknown data source: salaries"


def test_export_writes_file_to_storage(app, client, vendors):
    report_id = _report(client)
    r = client.post(f"{BASE}/api/reports/{report_id}/export", json={"format": "csv"})
    assert r.status_code == 200, r.json
    data = r.json["data"]
    assert data["format"] == "csv"
    assert data["row_count"] == 2
    assert data["filename"].startswith(f"report-{report_id}-")

    with session_scope(app) as s:
        export = s.get(ReportExport, data["export_id"])
        key = export.storage_key
    path = app.config["STORAGE_LOCAL_ROOT"] + "/" + key
    with open(path, "rb") as fh:
        body = fh.read()
    assert len(body) == data["file_size"]
    assert b"vendor_name" in body

    r = client.post(f"{BASE}/api/reports/{report_id}/export", json={"format": "docx"})
    assert r.status_code == 400
    assert r.json["error"].startswith("Unsupported export format")


def test_export_download(app, client, other_client, vendors):
    report_id = _report(client)
    data = client.post(f"{BASE}/api/reports/{report_id}/export", json={"format": "csv"}).json["data"]

    r = client.get(f"{BASE}/exports/{data['export_id']}/download")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert data["filename"] in r.headers["Content-Disposition"]
    assert len(r.data) == data["file_size"]
    assert b"vendor_name" in r.data
    r.close()

    assert other_client.get(f"{BASE}/exports/{data['export_id']}/download").status_code == 404
    assert client.get(f"{BASE}/exports/99999/download").status_code == 404
    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "reporting.export.download").one()
        assert ev.entity_id == str(data["export_id"])


def test_bulk_update(app, client, vendors):
    a = _report(client)
    b = _report(client, report_name="Second")
    r = client.post(
        f"{BASE}/api/reports/bulk-update",
        json={"report_ids": [a, b, 9999], "updates": {"status": "archived", "owner": "ignored"}},
    )
    assert r.status_code == 200
    assert r.json["data"]["updated_count"] == 2
    with session_scope(app) as s:
        assert {s.get(Report, a).status, s.get(Report, b).status} == {"archived"}

    r = client.post(f"{BASE}/api/reports/bulk-update", json={"report_ids": [a], "updates": {"status": "deleted"}})
    assert r.status_code == 400
    r = client.post(f"{BASE}/api/reports/bulk-update", json={"report_ids": [a], "updates": {"owner": "x"}})
    assert r.json["error"] == "No valid fields to update"


def test_calculate_next_run():
    now = datetime(2026, 10, 14, 10, 0)  # a Wednesday
    assert calculate_next_run("daily", {}, now=now) == datetime(2026, 10, 15, 9, 0)
    assert calculate_next_run("daily", {"time": "11:30"}, now=now) == datetime(2026, 10, 14, 11, 30)
    assert calculate_next_run("weekly", {"day": "monday"}, now=now) == datetime(2026, 10, 19, 9, 0)
    assert calculate_next_run("weekly", {"day": "wednesday", "time": "08:00"}, now=now) == datetime(2026, 10, 21, 8, 0)
    assert calculate_next_run("monthly", {"day": 15}, now=now) == datetime(2026, 11, 15, 9, 0)
    assert calculate_next_run("once", {}, now=now) == now
    with pytest.raises(ValueError):
        calculate_next_run("daily", {"time": "25:00"}, now=now)


def test_schedule_and_share(client, vendors):
    report_id = _report(client)
    r = client.post(
        f"{BASE}/api/reports/{report_id}/schedule",
        json={"schedule_type": "weekly", "schedule_config": {"day": "friday"}, "recipients": ["Ops@Example.com"]},
    )
    assert r.status_code == 201, r.json
    assert r.json["data"]["next_run"]

    r = client.post(f"{BASE}/api/reports/{report_id}/schedule", json={"schedule_type": "hourly"})
    assert r.status_code == 400
    r = client.post(
        f"{BASE}/api/reports/{report_id}/schedule", json={"schedule_type": "daily", "recipients": ["not-an-email"]}
    )
    assert r.json["error"] == "recipients must be a list of email addresses"

    r = client.post(
        f"{BASE}/api/reports/{report_id}/share",
        json={"recipients": ["a@example.com", "b@example.com"], "permission_level": "edit"},
    )
    assert r.status_code == 200
    assert len(r.json["data"]["share_ids"]) == 2

    r = client.post(f"{BASE}/api/reports/{report_id}/share", json={"recipients": ["bad"]})
    assert r.json["error"] == "Invalid email address: bad"
    r = client.post(f"{BASE}/api/reports/{report_id}/share", json={"recipients": ["a@example.com"], "permission_level": "owner"})
    assert r.status_code == 400


def test_insight_and_analysis(client, vendors):
    report_id = _report(client, is_responsive=False)
    r = client.post(f"{BASE}/api/reports/{report_id}/insights")
    assert r.status_code == 201, r.json
    data = r.json["data"]
    assert data["title"] == "Rating averages 3.0"
    assert data["insight_type"] in ("trend", "anomaly", "summary")
    assert 70 <= data["confidence"] <= 95

    client.post(f"{BASE}/api/reports/{report_id}/generate", json={})
    r = client.post(f"{BASE}/api/reports/{report_id}/analyze")
    assert r.status_code == 200, r.json
    data = r.json["data"]
    assert data["current_metrics"]["data_volume"] == 2
    assert data["current_metrics"]["run_count"] == 1
    assert [sg["title"] for sg in data["optimization_suggestions"]] == ["Improve Mobile Responsiveness"]
    charts = {c["field_name"]: c["recommended_chart"] for c in data["chart_recommendations"]}
    assert charts == {"vendor_name": "pie_chart", "category": "pie_chart", "rating": "bar_chart"}


def test_dashboards_and_widgets(client, other_client, vendors):
    report_id = _report(client)
    r = client.post(f"{BASE}/api/dashboards", json={"dashboard_name": "Ops"})
    assert r.status_code == 201
    dashboard_id = r.json["data"]["dashboard_id"]

    r = client.post(f"{BASE}/api/dashboards/{dashboard_id}/widgets", json={"widget_type": "bar", "title": "Vendors", "report_id": report_id})
    assert r.status_code == 201, r.json
    assert r.json["data"]["position"] == 0
    r = client.post(f"{BASE}/api/dashboards/{dashboard_id}/widgets", json={"widget_type": "kpi", "title": "Count"})
    assert r.json["data"]["position"] == 1

    r = client.post(f"{BASE}/api/dashboards/{dashboard_id}/widgets", json={"widget_type": "gauge", "title": "x"})
    assert r.status_code == 400

    other = other_client.post(f"{BASE}/api/dashboards", json={"dashboard_name": "Theirs"}).json["data"]["dashboard_id"]
    r = other_client.post(f"{BASE}/api/dashboards/{other}/widgets", json={"widget_type": "bar", "title": "x", "report_id": report_id})
    assert r.status_code == 400
    assert r.json["error"] == "Report not found"
    r = other_client.post(f"{BASE}/api/dashboards/{dashboard_id}/widgets", json={"widget_type": "bar", "title": "x"})
    assert r.status_code == 404


def test_configure_bi_tool_seals_secrets(app, client):
    r = client.post(f"{BASE}/api/bi/tableau/configure", json={"config": {"server_url": "https://t.example"}})
    assert r.status_code == 400
    assert r.json["error"] == "Missing required configuration field: site_id"
    r = client.post(f"{BASE}/api/bi/excel/configure", json={"config": TABLEAU})
    assert r.json["error"] == "Unsupported BI tool: excel"

    _configure(client)
    _configure(client, config={**TABLEAU, "password": "rotated"})
    with session_scope(app) as s:
        rows = s.query(BiToolConfig).all()
        assert len(rows) == 1
        assert rows[0].config["password"] != "rotated"
        assert open_config(app.config["ENCRYPTION_MASTER_KEY"], rows[0].config)["password"] == "rotated"


def test_configure_connection_check_failure(app, client, monkeypatch):
    app.config["BI_CONNECTION_CHECK"] = True

    def fake_get(url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(bi.requests, "get", fake_get)
    r = client.post(f"{BASE}/api/bi/tableau/configure", json={"config": TABLEAU})
    assert r.status_code == 400
    assert r.json["error"].startswith("Connection test failed for tableau")


def test_bi_export_import_and_embed(client, vendors):
    r = client.post(f"{BASE}/api/bi/tableau/export", json={"data_source": "vendors"})
    assert r.status_code == 400
    assert r.json["error"] == "BI tool tableau not configured"

    _configure(client)
    r = client.post(
        f"{BASE}/api/bi/tableau/export",
        json={
            "data_source": "vendors",
            "options": {"transformations": [{"type": "filter", "field": "vendor_name", "operator": "contains", "value": "north"}]},
        },
    )
    assert r.status_code == 200, r.json
    data = r.json["data"]
    assert data["record_count"] == 1
    payload = data["payload"]
    assert payload["site_id"] == "site1"
    types = {c["name"]: c["type"] for c in payload["datasource"]["columns"]}
    assert types["vendor_name"] == "string"
    assert types["rating"] == "number"

    r = client.post(f"{BASE}/api/bi/tableau/import", json={"dataset_name": "forecast", "rows": [{"month": "2026-01", "units": 10}]})
    assert r.status_code == 201
    assert r.json["data"]["row_count"] == 1
    r = client.post(f"{BASE}/api/bi/tableau/import", json={"dataset_name": "forecast", "rows": "nope"})
    assert r.json["error"] == "rows must be a list of objects"

    r = client.post(f"{BASE}/api/bi/tableau/embed", json={"dashboard_id": "sales"})
    assert r.status_code == 200
    assert r.json["data"]["embed_url"] == "https://tableau.example/t/site1/views/sales?:embed=yes"
    assert r.json["data"]["embed_token"]


def test_bi_sync(app, client, vendors):
    _configure(client)
    r = client.post(f"{BASE}/api/bi/tableau/sync", json={"direction": "to_bi", "data_source": "vendors"})
    assert r.status_code == 200, r.json
    assert r.json["data"]["status"] == "completed"
    assert r.json["data"]["records_processed"] == 2

    r = client.post(
        f"{BASE}/api/bi/tableau/sync",
        json={"direction": "bidirectional", "data_source": "vendors", "options": {"rows": [{"a": 1}, {"a": 2}]}},
    )
    assert r.json["data"]["records_processed"] == 4

    r = client.post(f"{BASE}/api/bi/qlik/sync", json={"direction": "to_bi", "data_source": "vendors"})
    assert r.status_code == 400
    assert r.json["error"] == "BI tool qlik not configured"
    failed_id = r.json["sync_id"]

    r = client.post(f"{BASE}/api/bi/tableau/sync", json={"direction": "sideways", "data_source": "vendors"})
    assert r.json["error"] == "Invalid sync direction: sideways"

    with session_scope(app) as s:
        assert s.get(BiSyncJob, failed_id).status == "failed"
        cfg = s.query(BiToolConfig).filter(BiToolConfig.tool_name == "tableau").one()
        assert cfg.last_sync_at is not None


def test_reports_are_company_scoped(client, other_client, vendors):
    report_id = _report(client)
    assert other_client.post(f"{BASE}/api/reports/{report_id}/generate", json={}).status_code == 404
    assert other_client.post(f"{BASE}/api/reports/{report_id}/export", json={"format": "csv"}).status_code == 404

    theirs = _report(other_client)
    r = other_client.post(f"{BASE}/api/reports/{theirs}/generate", json={})
    assert r.json["data"]["row_count"] == 0
