from __future__ import annotations

from flask import Blueprint, abort, current_app, request, send_file

from app.erp.api import NotFound, get_payload, json_endpoint, json_error, json_success, model_to_dict
from app.erp.audit import record_event
from app.erp.db import db_session
from app.erp.modules.reporting import bi
from app.erp.modules.reporting import service as svc
from app.erp.modules.reporting.models import Dashboard, Report, ReportExport
from app.erp.modules.reporting.optimizer import analyze_report
from app.erp.pages import render_module_page, stat_list, table
from app.erp.querying import get_scoped, paginate
from app.erp.rbac import require_permission
from app.erp.storage import storage_from_config
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("reporting", __name__)

SUBNAV = [
    ("Dashboard", "reporting.index", "reporting.view"),
    ("Report builder", "reporting.report_builder", "reporting.builder.view"),
    ("Dashboards", "reporting.dashboards", "reporting.dashboards.view"),
    ("Visualization", "reporting.data_visualization", "reporting.visualization.view"),
    ("AI insights", "reporting.ai_insights", "reporting.insights.view"),
    ("Scheduler", "reporting.report_scheduler", "reporting.scheduler.view"),
    ("Sharing", "reporting.report_sharing", "reporting.sharing.view"),
    ("Analytics", "reporting.report_analytics", "reporting.analytics.view"),
    ("Optimization", "reporting.report_optimization", "reporting.optimization.view"),
    ("BI integration", "reporting.bi_integration", "reporting.bi.view"),
]

REPORT_COLUMNS = [
    ("report_name", "Report"),
    ("category", "Category"),
    ("status", "Status"),
    ("view_count", "Views"),
    ("last_run", "Last run"),
]
RUN_COLUMNS = [
    ("report_name", "Report"),
    ("started_at", "Started"),
    ("duration_ms", "ms"),
    ("row_count", "Rows"),
    ("status", "Status"),
]


def _run_row(run) -> dict:
    row = model_to_dict(run)
    row["report_name"] = run.report.report_name if run.report else None
    return row


def _master_secret() -> str:
    return current_app.config.get("ENCRYPTION_MASTER_KEY") or current_app.config["SECRET_KEY"]


# ---------- Pages ----------


@bp.get("/")
@require_permission("reporting.view")
def index():
    s = db_session()
    cid = current_company_id()
    stats = svc.dashboard_stats(s, cid)
    return render_module_page(
        "reporting",
        page_title="Reporting",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Reports": stats["total_reports"],
                "Active reports": stats["active_reports"],
                "Runs today": stats["runs_today"],
                "Active schedules": stats["active_schedules"],
                "Dashboards": stats["dashboards"],
            }
        ),
        tables=[
            table("Most viewed", REPORT_COLUMNS, svc.most_viewed(s, cid)),
            table("Recent runs", RUN_COLUMNS, [_run_row(r) for r in svc.recent_runs(s, cid)]),
            table(
                "Active schedules",
                [("report_name", "Report"), ("schedule_type", "Type"), ("next_run", "Next run")],
                [
                    {"report_name": sc.report.report_name, "schedule_type": sc.schedule_type, "next_run": sc.next_run}
                    for sc in svc.list_schedules(s, cid)
                    if sc.is_active
                ][:10],
            ),
        ],
    )


@bp.get("/builder")
@require_permission("reporting.builder.view")
def report_builder():
    s = db_session()
    cid = current_company_id()
    items, pagination = paginate(svc.list_reports(s, cid, request.args), request.args.get("page", 1), 50)
    return render_module_page(
        "reporting",
        page_title="Report builder",
        subnav=SUBNAV,
        filters={
            "status": ("Status", ("",) + svc.REPORT_STATUSES),
            "category": ("Category", ("",) + svc.REPORT_CATEGORIES),
            "search": ("Search", None),
        },
        pagination=pagination,
        tables=[
            table("Data sources", [("name", "Source"), ("label", "Label"), ("columns", "Columns")], svc.data_source_catalog()),
            table("Reports", REPORT_COLUMNS + [("created_at", "Created")], items),
        ],
    )


@bp.get("/dashboards")
@require_permission("reporting.dashboards.view")
def dashboards():
    s = db_session()
    rows = svc.list_dashboards(s, current_company_id())
    return render_module_page(
        "reporting",
        page_title="Dashboards",
        subnav=SUBNAV,
        stats=stat_list({"Dashboards": len(rows), "Widgets": sum(r["widget_count"] for r in rows)}),
        tables=[
            table(
                "Dashboards",
                [("dashboard_name", "Dashboard"), ("description", "Description"), ("widget_count", "Widgets"), ("is_public", "Public"), ("created_at", "Created")],
                rows,
            )
        ],
    )


@bp.get("/visualization")
@require_permission("reporting.visualization.view")
def data_visualization():
    s = db_session()
    return render_module_page(
        "reporting",
        page_title="Data visualization",
        subnav=SUBNAV,
        tables=[
            table("Chart types", [("chart_type", "Chart type")], [{"chart_type": c} for c in svc.CHART_TYPES]),
            table("Widgets by type", [("widget_type", "Type"), ("count", "Widgets")], svc.widgets_by_type(s, current_company_id())),
        ],
    )


@bp.get("/insights")
@require_permission("reporting.insights.view")
def ai_insights():
    s = db_session()
    overview = svc.insights_overview(s, current_company_id())
    rows = []
    for i in overview["items"]:
        row = model_to_dict(i)
        row["report_name"] = i.report.report_name if i.report else None
        rows.append(row)
    return render_module_page(
        "reporting",
        page_title="AI insights",
        subnav=SUBNAV,
        stats=stat_list({"Insights": overview["total"], "Avg confidence": overview["avg_confidence"]}),
        tables=[
            table(
                "Insights",
                [("report_name", "Report"), ("insight_type", "Type"), ("title", "Title"), ("confidence", "Confidence"), ("created_at", "Generated")],
                rows,
            )
        ],
    )


@bp.get("/scheduler")
@require_permission("reporting.scheduler.view")
def report_scheduler():
    s = db_session()
    schedules = svc.list_schedules(s, current_company_id())
    return render_module_page(
        "reporting",
        page_title="Report scheduler",
        subnav=SUBNAV,
        stats=stat_list({"Schedules": len(schedules), "Active": sum(1 for sc in schedules if sc.is_active)}),
        tables=[
            table(
                "Schedules",
                [("report_name", "Report"), ("schedule_type", "Type"), ("export_format", "Format"), ("next_run", "Next run"), ("is_active", "Active")],
                [{**model_to_dict(sc), "report_name": sc.report.report_name} for sc in schedules],
            )
        ],
    )


@bp.get("/sharing")
@require_permission("reporting.sharing.view")
def report_sharing():
    s = db_session()
    shares = svc.list_shares(s, current_company_id())
    return render_module_page(
        "reporting",
        page_title="Report sharing",
        subnav=SUBNAV,
        tables=[
            table(
                "Shares",
                [("report_name", "Report"), ("shared_with_email", "Shared with"), ("permission_level", "Permission"), ("created_at", "Shared")],
                [{**model_to_dict(sh), "report_name": sh.report.report_name} for sh in shares],
            )
        ],
    )


@bp.get("/analytics")
@require_permission("reporting.analytics.view")
def report_analytics():
    s = db_session()
    data = svc.report_analytics(s, current_company_id())
    return render_module_page(
        "reporting",
        page_title="Report analytics",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Runs (30d)": data["total_runs"],
                "Failed runs": data["failed_runs"],
                "Avg execution (ms)": data["avg_execution_ms"],
            }
        ),
        tables=[
            table("Runs per day", [("day", "Day"), ("runs", "Runs"), ("avg_ms", "Avg ms")], data["runs_per_day"]),
            table("Top reports", [("report_name", "Report"), ("view_count", "Views"), ("runs", "Runs")], data["top_reports"]),
        ],
    )


@bp.get("/optimization")
@require_permission("reporting.optimization.view")
def report_optimization():
    s = db_session()
    return render_module_page(
        "reporting",
        page_title="Report optimization",
        subnav=SUBNAV,
        tables=[
            table(
                "Stored analyses",
                [("report_name", "Report"), ("data_volume", "Rows"), ("suggestion_count", "Suggestions"), ("titles", "Suggestions"), ("created_at", "Analyzed")],
                svc.list_optimizations(s, current_company_id()),
            )
        ],
    )


@bp.get("/bi")
@require_permission("reporting.bi.view")
def bi_integration():
    s = db_session()
    overview = svc.bi_overview(s, current_company_id())
    return render_module_page(
        "reporting",
        page_title="BI integration",
        subnav=SUBNAV,
        tables=[
            table(
                "Supported tools",
                [("tool", "Tool"), ("required", "Required settings")],
                [{"tool": t, "required": ", ".join(bi.REQUIRED_FIELDS[t])} for t in bi.SUPPORTED_TOOLS],
            ),
            table("Configured tools", [("tool_name", "Tool"), ("status", "Status"), ("last_sync_at", "Last sync"), ("updated_at", "Updated")], overview["configs"]),
            table(
                "Recent sync jobs",
                [("tool_name", "Tool"), ("direction", "Direction"), ("data_source", "Source"), ("status", "Status"), ("records_processed", "Records"), ("started_at", "Started")],
                overview["jobs"],
            ),
        ],
    )


# ---------- JSON API ----------


def _report_or_404(report_id: int) -> Report:
    report = get_scoped(db_session(), Report, report_id, current_company_id())
    if report is None:
        raise NotFound("Report not found")
    return report


@bp.post("/api/reports")
@require_permission("reporting.builder.create")
@json_endpoint
def api_create_report():
    report = svc.create_report(db_session(), get_payload(), user=current_user())
    return json_success({"report_id": report.id}, message="Report created successfully", status=201)


@bp.post("/api/reports/<int:report_id>/generate")
@require_permission("reporting.view")
@json_endpoint
def api_generate_report(report_id: int):
    payload = get_payload()
    run, columns, rows = svc.generate_report(
        db_session(),
        _report_or_404(report_id),
        user=current_user(),
        date_from=payload.get("date_from"),
        date_to=payload.get("date_to"),
    )
    if run.status == "failed":
        return json_error(run.error or "Report failed", 400, run_id=run.id)
    return json_success(
        {"run_id": run.id, "columns": columns, "rows": rows, "row_count": run.row_count, "duration_ms": run.duration_ms}
    )


@bp.post("/api/reports/<int:report_id>/export")
@require_permission("reporting.export")
@json_endpoint
def api_export_report(report_id: int):
    export = svc.export_report(
        db_session(),
        _report_or_404(report_id),
        get_payload().get("format") or "",
        user=current_user(),
        storage=storage_from_config(current_app.config),
    )
    return json_success(
        {
            "export_id": export.id,
            "filename": export.filename,
            "format": export.export_format,
            "file_size": export.file_size,
            "row_count": export.row_count,
        },
        message="Report exported successfully",
    )


@bp.get("/exports/<int:export_id>/download")
@require_permission("reporting.export")
def export_download(export_id: int):
    s = db_session()
    export = get_scoped(s, ReportExport, export_id, current_company_id())
    storage = storage_from_config(current_app.config)
    if export is None or not storage.exists(export.storage_key):
        abort(404)
    fobj = storage.open(export.storage_key)
    record_event(
        s,
        actor=current_user(),
        action="reporting.export.download",
        entity_type="ReportExport",
        entity_id=str(export.id),
        metadata={"storage_key": export.storage_key},
    )
    s.commit()
    return send_file(fobj, mimetype=export.content_type, as_attachment=True, download_name=export.filename, max_age=0)


@bp.post("/api/reports/bulk-update")
@require_permission("reporting.builder.create")
@json_endpoint
def api_bulk_update_reports():
    payload = get_payload()
    count = svc.bulk_update_reports(
        db_session(), payload.get("report_ids") or [], payload.get("updates") or {}, user=current_user()
    )
    return json_success({"updated_count": count}, message=f"{count} reports updated")


@bp.post("/api/reports/<int:report_id>/schedule")
@require_permission("reporting.scheduler.create")
@json_endpoint
def api_schedule_report(report_id: int):
    schedule = svc.schedule_report(db_session(), _report_or_404(report_id), get_payload(), user=current_user())
    return json_success(
        {"schedule_id": schedule.id, "next_run": schedule.next_run},
        message="Report scheduled successfully",
        status=201,
    )


@bp.post("/api/reports/<int:report_id>/share")
@require_permission("reporting.sharing.create")
@json_endpoint
def api_share_report(report_id: int):
    shares = svc.share_report(db_session(), _report_or_404(report_id), get_payload(), user=current_user())
    return json_success({"share_ids": [sh.id for sh in shares]}, message=f"Report shared with {len(shares)} recipients")


@bp.post("/api/reports/<int:report_id>/insights")
@require_permission("reporting.insights.create")
@json_endpoint
def api_generate_insight(report_id: int):
    insight = svc.generate_ai_insight(db_session(), _report_or_404(report_id), user=current_user())
    return json_success(
        {
            "insight_id": insight.id,
            "insight_type": insight.insight_type,
            "title": insight.title,
            "content": insight.content,
            "confidence": insight.confidence,
        },
        status=201,
    )


@bp.post("/api/reports/<int:report_id>/analyze")
@require_permission("reporting.optimization.view")
@json_endpoint
def api_analyze_report(report_id: int):
    row = analyze_report(db_session(), _report_or_404(report_id), user=current_user())
    return json_success({"optimization_id": row.id, **row.analysis})


@bp.post("/api/dashboards")
@require_permission("reporting.dashboards.create")
@json_endpoint
def api_create_dashboard():
    dashboard = svc.create_dashboard(db_session(), get_payload(), user=current_user())
    return json_success({"dashboard_id": dashboard.id}, message="Dashboard created successfully", status=201)


@bp.post("/api/dashboards/<int:dashboard_id>/widgets")
@require_permission("reporting.dashboards.create")
@json_endpoint
def api_add_widget(dashboard_id: int):
    s = db_session()
    dashboard = get_scoped(s, Dashboard, dashboard_id, current_company_id())
    if dashboard is None:
        raise NotFound("Dashboard not found")
    widget = svc.add_widget(s, dashboard, get_payload(), user=current_user())
    return json_success({"widget_id": widget.id, "position": widget.position}, message="Widget added", status=201)


@bp.post("/api/bi/<tool>/configure")
@require_permission("reporting.bi.configure")
@json_endpoint
def api_configure_bi_tool(tool: str):
    payload = get_payload()
    row = bi.configure_tool(
        db_session(),
        tool,
        payload.get("config") or {},
        user=current_user(),
        master_secret=_master_secret(),
        check=bool(current_app.config.get("BI_CONNECTION_CHECK")),
        timeout=int(current_app.config.get("WEBHOOK_TIMEOUT_SECONDS") or 10),
    )
    return json_success({"tool": row.tool_name, "configured_at": row.updated_at}, message=f"{row.tool_name} configured")


@bp.post("/api/bi/<tool>/export")
@require_permission("reporting.bi.configure")
@json_endpoint
def api_export_to_bi_tool(tool: str):
    payload = get_payload()
    result = bi.export_to_tool(
        db_session(),
        tool,
        payload.get("data_source") or "",
        user=current_user(),
        master_secret=_master_secret(),
        options=payload.get("options") or {},
    )
    return json_success(result)


@bp.post("/api/bi/<tool>/import")
@require_permission("reporting.bi.configure")
@json_endpoint
def api_import_from_bi_tool(tool: str):
    payload = get_payload()
    dataset = bi.import_from_tool(
        db_session(),
        tool,
        payload.get("dataset_name") or "",
        payload.get("rows"),
        user=current_user(),
        master_secret=_master_secret(),
    )
    return json_success({"dataset_id": dataset.id, "row_count": dataset.row_count}, status=201)


@bp.post("/api/bi/<tool>/embed")
@require_permission("reporting.bi.view")
@json_endpoint
def api_create_embedded_dashboard(tool: str):
    result = bi.create_embedded_dashboard(
        db_session(),
        tool,
        get_payload(),
        company_id=current_company_id(),
        master_secret=_master_secret(),
    )
    return json_success(result)


@bp.post("/api/bi/<tool>/sync")
@require_permission("reporting.bi.configure")
@json_endpoint
def api_sync_with_bi_tool(tool: str):
    payload = get_payload()
    job = bi.sync_with_tool(
        db_session(),
        tool,
        payload.get("direction"),
        payload.get("data_source") or "",
        user=current_user(),
        master_secret=_master_secret(),
        options=payload.get("options") or {},
    )
    if job.status == "failed":
        return json_error(job.error_message or "Sync failed", 400, sync_id=job.id)
    return json_success({"sync_id": job.id, "status": job.status, "records_processed": job.records_processed})
