"""
Reporting service layer.
Reports (declarative query templates), runs, exports, dashboards, schedules,
shares, mock AI insights. BI integration lives in bi.py, analysis in optimizer.py.
"""
from __future__ import annotations

import logging
import random
import statistics
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.erp import exports
from app.erp.api import EMAIL_RE, require_fields
from app.erp.audit import record_event
from app.erp.querying import FilterBuilder, FilterError, day_bucket, get_scoped
from app.erp.storage import Storage, build_export_key

from .models import (
    AiInsight,
    BiSyncJob,
    BiToolConfig,
    Dashboard,
    DashboardWidget,
    Report,
    ReportExport,
    ReportOptimization,
    ReportRun,
    ReportSchedule,
    ReportShare,
)
from .sources import DATA_SOURCES, run_template, validate_template

if TYPE_CHECKING:
    from app.erp.models import User

logger = logging.getLogger(__name__)

REPORT_STATUSES = ("active", "archived")
REPORT_CATEGORIES = ("general", "operations", "finance", "quality", "procurement", "manufacturing", "it")
EXPORT_FORMATS = ("csv", "json", "excel", "pdf")
SCHEDULE_TYPES = ("daily", "weekly", "monthly", "once")
SHARE_PERMISSIONS = ("view", "edit")
CHART_TYPES = ("line", "bar", "pie", "area", "scatter", "table", "kpi")
BULK_FIELDS = ("category", "status", "is_public")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_SCHEDULE_TIME = "09:00"


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ---------- Reads / aggregates ----------


def dashboard_stats(s: Session, company_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    day_start = datetime(today.year, today.month, today.day)

    by_status = dict(
        s.execute(
            select(Report.status, func.count(Report.id)).where(Report.company_id == company_id).group_by(Report.status)
        ).all()
    )
    runs_today = s.execute(
        select(func.count(ReportRun.id)).where(ReportRun.company_id == company_id, ReportRun.started_at >= day_start)
    ).scalar_one()
    active_schedules = s.execute(
        select(func.count(ReportSchedule.id)).where(
            ReportSchedule.company_id == company_id, ReportSchedule.is_active.is_(True)
        )
    ).scalar_one()
    dashboards = s.execute(select(func.count(Dashboard.id)).where(Dashboard.company_id == company_id)).scalar_one()
    return {
        "total_reports": sum(by_status.values()),
        "active_reports": by_status.get("active", 0),
        "runs_today": runs_today,
        "active_schedules": active_schedules,
        "dashboards": dashboards,
    }


def most_viewed(s: Session, company_id: int, limit: int = 5) -> list[Report]:
    return (
        s.query(Report)
        .filter(Report.company_id == company_id)
        .order_by(Report.view_count.desc(), Report.id.desc())
        .limit(limit)
        .all()
    )


def recent_runs(s: Session, company_id: int, limit: int = 10) -> list[ReportRun]:
    return (
        s.query(ReportRun)
        .filter(ReportRun.company_id == company_id)
        .order_by(ReportRun.started_at.desc(), ReportRun.id.desc())
        .limit(limit)
        .all()
    )


def list_reports(s: Session, company_id: int, args: dict):
    fb = FilterBuilder(Report, company_id)
    fb.add(Report.status, "eq", args.get("status"))
    fb.add(Report.category, "eq", args.get("category"))
    fb.search([Report.report_name, Report.description], args.get("search"))
    return fb.apply(s.query(Report)).order_by(Report.updated_at.desc(), Report.id.desc())


def data_source_catalog() -> list[dict[str, Any]]:
    return [{"name": ds.name, "label": ds.label, "columns": ", ".join(ds.columns)} for ds in DATA_SOURCES.values()]


def list_dashboards(s: Session, company_id: int) -> list[dict[str, Any]]:
    counts = dict(
        s.execute(
            select(DashboardWidget.dashboard_id, func.count(DashboardWidget.id))
            .join(Dashboard, Dashboard.id == DashboardWidget.dashboard_id)
            .where(Dashboard.company_id == company_id)
            .group_by(DashboardWidget.dashboard_id)
        ).all()
    )
    rows = s.query(Dashboard).filter(Dashboard.company_id == company_id).order_by(Dashboard.created_at.desc()).all()
    return [
        {
            "id": d.id,
            "dashboard_name": d.dashboard_name,
            "description": d.description,
            "is_public": d.is_public,
            "widget_count": counts.get(d.id, 0),
            "created_at": d.created_at,
        }
        for d in rows
    ]


def widgets_by_type(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(DashboardWidget.widget_type, func.count(DashboardWidget.id))
        .join(Dashboard, Dashboard.id == DashboardWidget.dashboard_id)
        .where(Dashboard.company_id == company_id)
        .group_by(DashboardWidget.widget_type)
        .order_by(func.count(DashboardWidget.id).desc())
    ).all()
    return [{"widget_type": t, "count": c} for t, c in rows]


def insights_overview(s: Session, company_id: int, limit: int = 50) -> dict[str, Any]:
    avg_conf, total = s.execute(
        select(func.avg(AiInsight.confidence), func.count(AiInsight.id)).where(AiInsight.company_id == company_id)
    ).one()
    items = (
        s.query(AiInsight)
        .filter(AiInsight.company_id == company_id)
        .order_by(AiInsight.created_at.desc(), AiInsight.id.desc())
        .limit(limit)
        .all()
    )
    return {
        "total": total,
        "avg_confidence": round(float(avg_conf), 2) if avg_conf is not None else None,
        "items": items,
    }


def list_schedules(s: Session, company_id: int) -> list[ReportSchedule]:
    return (
        s.query(ReportSchedule)
        .filter(ReportSchedule.company_id == company_id)
        .order_by(ReportSchedule.next_run.asc())
        .all()
    )


def list_shares(s: Session, company_id: int, limit: int = 100) -> list[ReportShare]:
    return (
        s.query(ReportShare)
        .filter(ReportShare.company_id == company_id)
        .order_by(ReportShare.created_at.desc(), ReportShare.id.desc())
        .limit(limit)
        .all()
    )


def report_analytics(s: Session, company_id: int, *, days: int = 30) -> dict[str, Any]:
    since = datetime.utcnow() - timedelta(days=days)
    bucket = day_bucket(s, ReportRun.started_at)
    per_day = [
        {"day": d, "runs": n, "avg_ms": round(float(avg or 0), 1)}
        for d, n, avg in s.execute(
            select(bucket, func.count(ReportRun.id), func.avg(ReportRun.duration_ms))
            .where(ReportRun.company_id == company_id, ReportRun.started_at >= since)
            .group_by(bucket)
            .order_by(bucket)
        ).all()
    ]
    avg_ms, failed, total = s.execute(
        select(
            func.avg(ReportRun.duration_ms),
            func.coalesce(func.sum(case((ReportRun.status == "failed", 1), else_=0)), 0),
            func.count(ReportRun.id),
        ).where(ReportRun.company_id == company_id, ReportRun.started_at >= since)
    ).one()
    top = s.execute(
        select(Report.id, Report.report_name, Report.view_count, func.count(ReportRun.id).label("runs"))
        .outerjoin(ReportRun, ReportRun.report_id == Report.id)
        .where(Report.company_id == company_id)
        .group_by(Report.id, Report.report_name, Report.view_count)
        .order_by(Report.view_count.desc(), func.count(ReportRun.id).desc())
        .limit(10)
    ).all()
    return {
        "runs_per_day": per_day,
        "avg_execution_ms": round(float(avg_ms), 1) if avg_ms is not None else None,
        "failed_runs": failed,
        "total_runs": total,
        "top_reports": [dict(r._mapping) for r in top],
    }


def list_optimizations(s: Session, company_id: int, limit: int = 50) -> list[dict[str, Any]]:
    rows = (
        s.query(ReportOptimization)
        .filter(ReportOptimization.company_id == company_id)
        .order_by(ReportOptimization.created_at.desc(), ReportOptimization.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": r.id,
            "report_name": r.report.report_name if r.report else None,
            "suggestion_count": r.suggestion_count,
            "data_volume": (r.analysis.get("current_metrics") or {}).get("data_volume"),
            "titles": ", ".join(x["title"] for x in r.analysis.get("optimization_suggestions") or []),
            "created_at": r.created_at,
        }
        for r in rows
    ]


def bi_overview(s: Session, company_id: int) -> dict[str, Any]:
    configs = s.query(BiToolConfig).filter(BiToolConfig.company_id == company_id).order_by(BiToolConfig.tool_name).all()
    jobs = (
        s.query(BiSyncJob)
        .filter(BiSyncJob.company_id == company_id)
        .order_by(BiSyncJob.started_at.desc(), BiSyncJob.id.desc())
        .limit(20)
        .all()
    )
    return {
        "configs": [
            {"tool_name": c.tool_name, "status": c.status, "last_sync_at": c.last_sync_at, "updated_at": c.updated_at}
            for c in configs
        ],
        "jobs": jobs,
    }


# ---------- Reports ----------


def create_report(s: Session, payload: dict, *, user: User) -> Report:
    require_fields(payload, ("report_name", "query_template"))
    try:
        template = validate_template(payload["query_template"])
    except FilterError as e:
        raise ValueError(f"Invalid query template: {e}")

    category = (payload.get("category") or "general").strip()
    now = datetime.utcnow()
    report = Report(
        company_id=user.company_id,
        report_name=str(payload["report_name"]).strip(),
        description=(payload.get("description") or "").strip() or None,
        category=category,
        query_template=template,
        is_public=_bool(payload.get("is_public", False)),
        is_responsive=_bool(payload.get("is_responsive", True)),
        view_count=0,
        status="active",
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    s.add(report)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.report.create",
        entity_type="Report",
        entity_id=str(report.id),
        metadata={"report_name": report.report_name, "source": template["source"]},
    )
    return report


def generate_report(
    s: Session,
    report: Report,
    *,
    user: User,
    date_from: Any = None,
    date_to: Any = None,
) -> tuple[ReportRun, list[str], list[dict[str, Any]]]:
    """
    Run the report's template and record the run.

    A template that no longer validates yields a failed run (kept for history)
    instead of an exception.
    """
    started = datetime.utcnow()
    t0 = time.perf_counter()
    columns: list[str] = []
    rows: list[dict[str, Any]] = []
    error = None
    try:
        columns, rows = run_template(s, report.company_id, report.query_template, date_from=date_from, date_to=date_to)
    except FilterError as e:
        error = str(e)
        logger.warning("report %s failed: %s", report.id, e)
    duration_ms = int((time.perf_counter() - t0) * 1000)

    run = ReportRun(
        company_id=report.company_id,
        report_id=report.id,
        started_at=started,
        duration_ms=duration_ms,
        row_count=len(rows),
        status="failed" if error else "success",
        error=error,
        run_by_user_id=user.id,
    )
    s.add(run)
    report.last_run = started
    report.view_count = (report.view_count or 0) + 1
    s.flush()

    record_event(
        s,
        actor=user,
        action="reporting.report.generate",
        entity_type="Report",
        entity_id=str(report.id),
        metadata={"rows": len(rows), "duration_ms": duration_ms, "status": run.status},
    )
    return run, columns, rows


def export_report(s: Session, report: Report, fmt: str, *, user: User, storage: Storage) -> ReportExport:
    fmt = (fmt or "").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format. Must be one of: {', '.join(EXPORT_FORMATS)}")

    try:
        columns, rows = run_template(s, report.company_id, report.query_template)
    except FilterError as e:
        raise ValueError(str(e))
    data = exports.render(fmt, report.report_name, columns, rows)

    filename = f"report-{report.id}-{datetime.utcnow():%Y%m%d%H%M%S}.{exports.EXTENSIONS[fmt]}"
    key = build_export_key(report.company_id, "reports", filename)
    content_type = exports.CONTENT_TYPES[fmt]
    storage.put_bytes(key, data, content_type=content_type)

    export = ReportExport(
        company_id=report.company_id,
        report_id=report.id,
        export_format=fmt,
        storage_key=key,
        filename=filename,
        content_type=content_type,
        file_size=len(data),
        row_count=len(rows),
        exported_at=datetime.utcnow(),
        exported_by_user_id=user.id,
    )
    s.add(export)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.report.export",
        entity_type="Report",
        entity_id=str(report.id),
        metadata={"format": fmt, "rows": len(rows), "storage_key": key},
    )
    return export


def bulk_update_reports(s: Session, report_ids: list, updates: dict, *, user: User) -> int:
    if not report_ids or not isinstance(report_ids, list):
        raise ValueError("report_ids must be a non-empty list")
    clean: dict[str, Any] = {}
    for field, value in (updates or {}).items():
        if field not in BULK_FIELDS:
            continue
        if field == "status" and value not in REPORT_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(REPORT_STATUSES)}")
        clean[field] = _bool(value) if field == "is_public" else value
    if not clean:
        raise ValueError("No valid fields to update")

    count = 0
    now = datetime.utcnow()
    for rid in report_ids:
        report = get_scoped(s, Report, rid, user.company_id)
        if report is None:
            continue
        for field, value in clean.items():
            setattr(report, field, value)
        report.updated_at = now
        count += 1

    record_event(
        s,
        actor=user,
        action="reporting.report.bulk_update",
        entity_type="Report",
        metadata={"ids": report_ids, "updates": clean, "updated": count},
    )
    return count


def generate_ai_insight(s: Session, report: Report, *, user: User, rng: random.Random | None = None) -> AiInsight:
    """Mock insight built from the report's current data; confidence in [70, 95]."""
    rng = rng or random.Random()
    try:
        columns, rows = run_template(s, report.company_id, report.query_template)
    except FilterError as e:
        raise ValueError(str(e))

    numeric: dict[str, list[float]] = {}
    for c in columns:
        values = [float(r[c]) for r in rows if isinstance(r.get(c), (int, float, Decimal)) and not isinstance(r.get(c), bool)]
        if values and c != "id" and not c.endswith("_id"):
            numeric[c] = values

    insight_type = rng.choice(("trend", "anomaly", "summary"))
    if numeric:
        col, values = next(iter(numeric.items()))
        mean = round(statistics.fmean(values), 2)
        title = f"{col.replace('_', ' ').title()} averages {mean}"
        content = (
            f"Across {len(rows)} rows of {report.report_name}, {col} ranges from "
            f"{min(values)} to {max(values)} with a mean of {mean}."
        )
        data = {"column": col, "mean": mean, "min": min(values), "max": max(values), "rows": len(rows)}
    else:
        title = f"{report.report_name}: {len(rows)} rows"
        content = f"The report currently returns {len(rows)} rows across {len(columns)} columns."
        data = {"rows": len(rows), "columns": len(columns)}

    insight = AiInsight(
        company_id=report.company_id,
        report_id=report.id,
        insight_type=insight_type,
        title=title,
        content=content,
        confidence=Decimal(str(round(rng.uniform(70, 95), 2))),
        data=data,
        created_at=datetime.utcnow(),
    )
    s.add(insight)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.insight.generate",
        entity_type="AiInsight",
        entity_id=str(insight.id),
        metadata={"report_id": report.id, "type": insight_type},
    )
    return insight


# ---------- Dashboards ----------


def create_dashboard(s: Session, payload: dict, *, user: User) -> Dashboard:
    require_fields(payload, ("dashboard_name",))
    dashboard = Dashboard(
        company_id=user.company_id,
        dashboard_name=str(payload["dashboard_name"]).strip(),
        description=(payload.get("description") or "").strip() or None,
        layout=payload.get("layout") if isinstance(payload.get("layout"), dict) else None,
        is_public=_bool(payload.get("is_public", False)),
        created_at=datetime.utcnow(),
        created_by_user_id=user.id,
    )
    s.add(dashboard)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.dashboard.create",
        entity_type="Dashboard",
        entity_id=str(dashboard.id),
        metadata={"dashboard_name": dashboard.dashboard_name},
    )
    return dashboard


def add_widget(s: Session, dashboard: Dashboard, payload: dict, *, user: User) -> DashboardWidget:
    require_fields(payload, ("widget_type", "title"))
    widget_type = str(payload["widget_type"]).strip()
    if widget_type not in CHART_TYPES:
        raise ValueError(f"Invalid widget_type. Must be one of: {', '.join(CHART_TYPES)}")
    report_id = payload.get("report_id")
    if report_id not in (None, ""):
        if get_scoped(s, Report, report_id, user.company_id) is None:
            raise ValueError("Report not found")
        report_id = int(report_id)
    else:
        report_id = None

    position = payload.get("position")
    if position in (None, ""):
        position = len(dashboard.widgets)
    widget = DashboardWidget(
        dashboard_id=dashboard.id,
        widget_type=widget_type,
        title=str(payload["title"]).strip(),
        report_id=report_id,
        config=payload.get("config") if isinstance(payload.get("config"), dict) else None,
        position=int(position),
    )
    dashboard.widgets.append(widget)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.dashboard.add_widget",
        entity_type="Dashboard",
        entity_id=str(dashboard.id),
        metadata={"widget_id": widget.id, "widget_type": widget_type},
    )
    return widget


# ---------- Schedules and shares ----------


def _parse_time(raw: Any) -> tuple[int, int]:
    try:
        hh, mm = str(raw or DEFAULT_SCHEDULE_TIME).split(":")[:2]
        hour, minute = int(hh), int(mm)
    except ValueError:
        raise ValueError("time must be HH:MM")
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError("time must be HH:MM")
    return hour, minute


def calculate_next_run(schedule_type: str, config: dict | None, *, now: datetime | None = None) -> datetime:
    """
    daily   -> today at `time` (default 09:00), tomorrow if already past
    weekly  -> next `day` (default monday) at `time`, a week later if already past
    monthly -> first of next month + (`day` - 1) days at `time`
    other   -> now
    """
    now = now or datetime.utcnow()
    config = config or {}
    if schedule_type not in ("daily", "weekly", "monthly"):
        return now
    hour, minute = _parse_time(config.get("time"))

    if schedule_type == "daily":
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    if schedule_type == "weekly":
        day = str(config.get("day") or "monday").strip().lower()
        if day not in WEEKDAYS:
            raise ValueError(f"day must be one of: {', '.join(WEEKDAYS)}")
        ahead = (WEEKDAYS.index(day) - now.weekday()) % 7
        candidate = (now + timedelta(days=ahead)).replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=7)
        return candidate

    try:
        day_of_month = int(config.get("day") or 1)
    except (TypeError, ValueError):
        raise ValueError("day must be a day of the month")
    first_next = (now.replace(day=1) + timedelta(days=32)).replace(day=1)
    return first_next.replace(hour=hour, minute=minute, second=0, microsecond=0) + timedelta(days=max(day_of_month, 1) - 1)


def schedule_report(s: Session, report: Report, payload: dict, *, user: User, now: datetime | None = None) -> ReportSchedule:
    require_fields(payload, ("schedule_type",))
    schedule_type = str(payload["schedule_type"]).strip().lower()
    if schedule_type not in SCHEDULE_TYPES:
        raise ValueError(f"Invalid schedule_type. Must be one of: {', '.join(SCHEDULE_TYPES)}")
    config = payload.get("schedule_config") or {}
    if not isinstance(config, dict):
        raise ValueError("schedule_config must be an object")
    fmt = (payload.get("export_format") or "pdf").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format. Must be one of: {', '.join(EXPORT_FORMATS)}")
    recipients = payload.get("recipients") or []
    if not isinstance(recipients, list) or any(not EMAIL_RE.match(str(r)) for r in recipients):
        raise ValueError("recipients must be a list of email addresses")

    schedule = ReportSchedule(
        company_id=report.company_id,
        report_id=report.id,
        schedule_type=schedule_type,
        schedule_config=config,
        recipients=[str(r).strip().lower() for r in recipients],
        export_format=fmt,
        next_run=calculate_next_run(schedule_type, config, now=now),
        is_active=True,
        created_at=datetime.utcnow(),
        created_by_user_id=user.id,
    )
    s.add(schedule)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.report.schedule",
        entity_type="ReportSchedule",
        entity_id=str(schedule.id),
        metadata={"report_id": report.id, "schedule_type": schedule_type, "next_run": schedule.next_run.isoformat()},
    )
    return schedule


def share_report(s: Session, report: Report, payload: dict, *, user: User) -> list[ReportShare]:
    recipients = payload.get("recipients")
    if not isinstance(recipients, list) or not recipients:
        raise ValueError("recipients must be a non-empty list of email addresses")
    emails = []
    for r in recipients:
        email = str(r or "").strip().lower()
        if not EMAIL_RE.match(email):
            raise ValueError(f"Invalid email address: {r}")
        emails.append(email)
    level = (payload.get("permission_level") or "view").strip().lower()
    if level not in SHARE_PERMISSIONS:
        raise ValueError(f"Invalid permission_level. Must be one of: {', '.join(SHARE_PERMISSIONS)}")

    now = datetime.utcnow()
    shares = [
        ReportShare(
            company_id=report.company_id,
            report_id=report.id,
            shared_with_email=email,
            permission_level=level,
            message=(payload.get("message") or "").strip() or None,
            shared_by_user_id=user.id,
            created_at=now,
        )
        for email in emails
    ]
    s.add_all(shares)
    s.flush()
    record_event(
        s,
        actor=user,
        action="reporting.report.share",
        entity_type="Report",
        entity_id=str(report.id),
        metadata={"recipients": emails, "permission_level": level},
    )
    return shares
