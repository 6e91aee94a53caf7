"""
Quality management service layer.

Checks against criteria, audits and findings, non-conformances with their
root-cause and containment records, CAPA, and the SPC numbers derived from
check measurements.
"""
from __future__ import annotations

import secrets
import statistics
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.erp.api import require_fields, validate_payload
from app.erp.audit import record_event
from app.erp.models import User
from app.erp.querying import FilterBuilder, get_scoped, month_bucket, parse_date, pct

from .models import (
    AuditFinding,
    AuditType,
    Capa,
    ContainmentAction,
    NcCategory,
    NonConformance,
    QualityActivity,
    QualityAudit,
    QualityCheck,
    QualityCriteria,
    QualityStandard,
    RootCauseAnalysis,
)


CHECK_RESULTS = ("pending", "pass", "fail")
AUDIT_STATUSES = ("planned", "in_progress", "completed", "cancelled")
NC_SEVERITIES = ("minor", "major", "critical")
NC_STATUSES = ("open", "investigating", "closed")
PRIORITIES = ("low", "medium", "high", "critical")
CAPA_TYPES = ("corrective", "preventive")
CAPA_STATUSES = ("open", "in_progress", "completed", "verified", "cancelled")
CAPA_OPEN_STATUSES = ("open", "in_progress")
FINDING_TYPES = ("observation", "minor", "major")
RCA_METHODS = ("5_whys", "fishbone", "fault_tree", "other")
BULK_CHECK_FIELDS = ("result", "actual_value", "defect_rate", "notes")

# Category used for NCs raised straight from a failed check when none is given.
FAILED_CHECK_NC_CATEGORY = "Quality check failure"
AUDIT_RULES = {"duration_days": {"type": "int", "min": 1, "max": 365, "default": 1}}


def _number(prefix: str) -> str:
    return f"{prefix}-{datetime.utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


def _opt_dec(value: Any, field: str) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"{field} must be a number")


def _bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


def _company_user_id(s: Session, raw: Any, user: User, *, default: int | None) -> int | None:
    if raw in (None, ""):
        return default
    other = get_scoped(s, User, raw, user.company_id)
    if other is None:
        raise ValueError("User not found")
    return other.id


def log_activity(
    s: Session, *, user: User, activity_type: str, entity_type: str, entity_id: int | None, description: str
) -> QualityActivity:
    row = QualityActivity(
        company_id=user.company_id,
        user_id=user.id,
        activity_type=activity_type,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
    )
    s.add(row)
    return row


# ---------- Reads / aggregates ----------


def dashboard_stats(s: Session, company_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()

    decided, passed, avg_defect = s.execute(
        select(
            func.count(QualityCheck.id),
            func.coalesce(func.sum(case((QualityCheck.result == "pass", 1), else_=0)), 0),
            func.avg(QualityCheck.defect_rate),
        ).where(QualityCheck.company_id == company_id, QualityCheck.result != "pending")
    ).one()

    open_nc_by_severity = dict(
        s.execute(
            select(NonConformance.severity, func.count(NonConformance.id))
            .where(NonConformance.company_id == company_id, NonConformance.status != "closed")
            .group_by(NonConformance.severity)
        ).all()
    )

    open_capas, overdue_capas = s.execute(
        select(
            func.count(Capa.id),
            func.coalesce(func.sum(case((Capa.due_date < today, 1), else_=0)), 0),
        ).where(Capa.company_id == company_id, Capa.status.in_(CAPA_OPEN_STATUSES))
    ).one()

    upcoming_audits = (
        s.query(QualityAudit)
        .filter(
            QualityAudit.company_id == company_id,
            QualityAudit.status == "planned",
            QualityAudit.scheduled_date >= today,
        )
        .order_by(QualityAudit.scheduled_date)
        .limit(10)
        .all()
    )

    return {
        "check_pass_rate": pct(passed, decided),
        "average_defect_rate": round(float(avg_defect), 4) if avg_defect is not None else None,
        "open_nc_by_severity": open_nc_by_severity,
        "open_ncs": sum(open_nc_by_severity.values()),
        "open_capas": open_capas,
        "overdue_capas": int(overdue_capas or 0),
        "upcoming_audits": upcoming_audits,
    }


def recent_activities(s: Session, company_id: int, limit: int = 10) -> list[QualityActivity]:
    return (
        s.query(QualityActivity)
        .filter(QualityActivity.company_id == company_id)
        .order_by(QualityActivity.created_at.desc(), QualityActivity.id.desc())
        .limit(limit)
        .all()
    )


def list_checks(s: Session, company_id: int, args: dict):
    fb = FilterBuilder(QualityCheck, company_id)
    fb.add(QualityCheck.result, "eq", args.get("result") or args.get("status"))
    criteria_id = args.get("criteria_id")
    if criteria_id not in (None, "", "all"):
        try:
            fb.add(QualityCheck.criteria_id, "eq", int(criteria_id))
        except (TypeError, ValueError):
            pass
    fb.date_range(QualityCheck.check_date, args.get("date_from"), args.get("date_to"))
    fb.search([QualityCheck.notes], args.get("search"))
    return s.query(QualityCheck).filter(*fb.clauses).order_by(QualityCheck.check_date.desc(), QualityCheck.id.desc())


def check_row(c: QualityCheck) -> dict[str, Any]:
    return {
        "id": c.id,
        "criteria_name": c.criteria.criteria_name if c.criteria else None,
        "check_date": c.check_date,
        "result": c.result,
        "actual_value": c.actual_value,
        "defect_rate": c.defect_rate,
        "notes": c.notes,
    }


def criteria_pass_rates(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            QualityCriteria.id,
            QualityCriteria.criteria_name,
            QualityCriteria.category,
            func.count(QualityCheck.id).label("checks"),
            func.coalesce(func.sum(case((QualityCheck.result == "pass", 1), else_=0)), 0).label("passed"),
            func.coalesce(func.sum(case((QualityCheck.result == "fail", 1), else_=0)), 0).label("failed"),
        )
        .outerjoin(QualityCheck, QualityCheck.criteria_id == QualityCriteria.id)
        .where(QualityCriteria.company_id == company_id)
        .group_by(QualityCriteria.id, QualityCriteria.criteria_name, QualityCriteria.category)
        .order_by(QualityCriteria.criteria_name)
    ).mappings().all()
    return [{**dict(r), "pass_rate": pct(r["passed"], r["passed"] + r["failed"])} for r in rows]


def list_audits(s: Session, company_id: int, args: dict):
    fb = FilterBuilder(QualityAudit, company_id)
    fb.add(QualityAudit.status, "eq", args.get("status"))
    fb.date_range(QualityAudit.scheduled_date, args.get("date_from"), args.get("date_to"))
    fb.search([QualityAudit.audit_title, QualityAudit.scope], args.get("search"))
    return s.query(QualityAudit).filter(*fb.clauses).order_by(QualityAudit.scheduled_date.desc())


def audits_with_findings(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            QualityAudit.id,
            QualityAudit.audit_title,
            AuditType.name.label("audit_type"),
            QualityAudit.scheduled_date,
            QualityAudit.duration_days,
            QualityAudit.status,
            func.count(AuditFinding.id).label("finding_count"),
            func.coalesce(func.sum(case((AuditFinding.finding_type == "major", 1), else_=0)), 0).label("major_findings"),
        )
        .join(AuditType, AuditType.id == QualityAudit.audit_type_id)
        .outerjoin(AuditFinding, AuditFinding.audit_id == QualityAudit.id)
        .where(QualityAudit.company_id == company_id)
        .group_by(
            QualityAudit.id,
            QualityAudit.audit_title,
            AuditType.name,
            QualityAudit.scheduled_date,
            QualityAudit.duration_days,
            QualityAudit.status,
        )
        .order_by(QualityAudit.scheduled_date.desc())
    ).mappings().all()
    return [dict(r) for r in rows]


def list_non_conformances(s: Session, company_id: int, args: dict):
    fb = FilterBuilder(NonConformance, company_id)
    fb.add(NonConformance.status, "eq", args.get("status"))
    fb.add(NonConformance.severity, "eq", args.get("severity"))
    fb.add(NonConformance.priority, "eq", args.get("priority"))
    category_id = args.get("category_id")
    if category_id not in (None, "", "all"):
        try:
            fb.add(NonConformance.category_id, "eq", int(category_id))
        except (TypeError, ValueError):
            pass
    fb.date_range(NonConformance.created_at, args.get("date_from"), args.get("date_to"))
    fb.search([NonConformance.nc_number, NonConformance.description], args.get("search"))
    return s.query(NonConformance).filter(*fb.clauses).order_by(NonConformance.created_at.desc(), NonConformance.id.desc())


def nc_row(nc: NonConformance) -> dict[str, Any]:
    return {
        "id": nc.id,
        "nc_number": nc.nc_number,
        "description": nc.description,
        "category": nc.category.name if nc.category else None,
        "severity": nc.severity,
        "status": nc.status,
        "priority": nc.priority,
        "source": nc.source,
        "created_at": nc.created_at,
    }


def nc_breakdown(s: Session, company_id: int) -> dict[str, list[dict[str, Any]]]:
    by_severity = s.execute(
        select(NonConformance.severity, func.count(NonConformance.id).label("count"))
        .where(NonConformance.company_id == company_id)
        .group_by(NonConformance.severity)
        .order_by(NonConformance.severity)
    ).mappings().all()
    by_category = s.execute(
        select(NcCategory.name.label("category"), func.count(NonConformance.id).label("count"))
        .join(NonConformance, NonConformance.category_id == NcCategory.id)
        .where(NcCategory.company_id == company_id)
        .group_by(NcCategory.name)
        .order_by(func.count(NonConformance.id).desc())
    ).mappings().all()
    return {"by_severity": [dict(r) for r in by_severity], "by_category": [dict(r) for r in by_category]}


def list_capas(s: Session, company_id: int, args: dict):
    fb = FilterBuilder(Capa, company_id)
    fb.add(Capa.status, "eq", args.get("status"))
    fb.add(Capa.capa_type, "eq", args.get("capa_type"))
    fb.search([Capa.capa_number, Capa.description], args.get("search"))
    return s.query(Capa).filter(*fb.clauses).order_by(Capa.created_at.desc(), Capa.id.desc())


def capa_effectiveness(s: Session, company_id: int) -> dict[str, Any]:
    counts = dict(
        s.execute(
            select(Capa.status, func.count(Capa.id)).where(Capa.company_id == company_id).group_by(Capa.status)
        ).all()
    )
    verified = counts.get("verified", 0)
    completed = counts.get("completed", 0)
    return {"by_status": counts, "effectiveness": pct(verified, completed + verified)}


def standards_overview(s: Session, company_id: int) -> dict[str, Any]:
    rows = s.execute(
        select(
            QualityStandard.id,
            QualityStandard.standard_code,
            QualityStandard.title,
            QualityStandard.version,
            QualityStandard.status,
            QualityStandard.compliance_score,
            QualityStandard.last_review_date,
            func.count(QualityCriteria.id).label("criteria_count"),
        )
        .outerjoin(QualityCriteria, QualityCriteria.standard_id == QualityStandard.id)
        .where(QualityStandard.company_id == company_id)
        .group_by(
            QualityStandard.id,
            QualityStandard.standard_code,
            QualityStandard.title,
            QualityStandard.version,
            QualityStandard.status,
            QualityStandard.compliance_score,
            QualityStandard.last_review_date,
        )
        .order_by(QualityStandard.standard_code)
    ).mappings().all()
    avg_score = s.execute(
        select(func.avg(QualityStandard.compliance_score)).where(
            QualityStandard.company_id == company_id, QualityStandard.compliance_score.is_not(None)
        )
    ).scalar_one()
    return {
        "standards": [dict(r) for r in rows],
        "average_compliance": round(float(avg_score), 2) if avg_score is not None else None,
    }


def spc_summary(values: list[float], lower_limit: float | None = None, upper_limit: float | None = None) -> dict[str, Any]:
    """Mean, sigma and ±3σ control limits for one series; Cpk when both USL and LSL are set."""
    n = len(values)
    if n == 0:
        return {"n": 0}
    mean = statistics.fmean(values)
    sigma = statistics.stdev(values) if n > 1 else 0.0
    ucl = mean + 3 * sigma
    lcl = mean - 3 * sigma
    out = {
        "n": n,
        "mean": round(mean, 4),
        "std_dev": round(sigma, 4),
        "min": min(values),
        "max": max(values),
        "ucl": round(ucl, 4),
        "lcl": round(lcl, 4),
        "out_of_control": sum(1 for v in values if v > ucl or v < lcl),
        "cpk": None,
    }
    if lower_limit is not None and upper_limit is not None and sigma > 0:
        out["cpk"] = round(min(upper_limit - mean, mean - lower_limit) / (3 * sigma), 3)
    return out


def statistical_process(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(QualityCheck.criteria_id, QualityCheck.actual_value)
        .where(QualityCheck.company_id == company_id, QualityCheck.actual_value.is_not(None))
        .order_by(QualityCheck.check_date, QualityCheck.id)
    ).all()
    series: dict[int, list[float]] = defaultdict(list)
    for criteria_id, value in rows:
        series[criteria_id].append(float(value))

    criteria = {
        c.id: c
        for c in s.query(QualityCriteria).filter(QualityCriteria.company_id == company_id, QualityCriteria.id.in_(list(series))).all()
    }
    out = []
    for criteria_id, values in series.items():
        c = criteria.get(criteria_id)
        if c is None:
            continue
        lsl = float(c.lower_limit) if c.lower_limit is not None else None
        usl = float(c.upper_limit) if c.upper_limit is not None else None
        out.append({"criteria_id": criteria_id, "criteria_name": c.criteria_name, "unit": c.unit, **spc_summary(values, lsl, usl)})
    return sorted(out, key=lambda r: r["criteria_name"])


def quality_analytics(s: Session, company_id: int, *, today: date | None = None) -> dict[str, Any]:
    today = today or date.today()
    since_date = (today.replace(day=1) - timedelta(days=335)).replace(day=1)
    since = datetime(since_date.year, since_date.month, 1)

    nc_month = month_bucket(s, NonConformance.created_at)
    nc_trend = s.execute(
        select(
            nc_month.label("month"),
            func.count(NonConformance.id).label("total"),
            func.coalesce(func.sum(case((NonConformance.severity == "critical", 1), else_=0)), 0).label("critical"),
        )
        .where(NonConformance.company_id == company_id, NonConformance.created_at >= since)
        .group_by(nc_month)
        .order_by(nc_month)
    ).mappings().all()

    check_month = month_bucket(s, QualityCheck.check_date)
    defect_trend = s.execute(
        select(
            check_month.label("month"),
            func.count(QualityCheck.id).label("checks"),
            func.avg(QualityCheck.defect_rate).label("avg_defect_rate"),
        )
        .where(QualityCheck.company_id == company_id, QualityCheck.check_date >= since_date)
        .group_by(check_month)
        .order_by(check_month)
    ).mappings().all()

    return {
        "nc_trend": [dict(r) for r in nc_trend],
        "defect_trend": [
            {**dict(r), "avg_defect_rate": round(float(r["avg_defect_rate"]), 4) if r["avg_defect_rate"] is not None else None}
            for r in defect_trend
        ],
    }


# ---------- Writes ----------


def _failed_check_category(s: Session, company_id: int, category_id: Any) -> NcCategory:
    if category_id not in (None, ""):
        cat = get_scoped(s, NcCategory, category_id, company_id)
        if cat is None:
            raise ValueError("Non-conformance category not found")
        return cat
    cat = (
        s.query(NcCategory)
        .filter(NcCategory.company_id == company_id, NcCategory.name == FAILED_CHECK_NC_CATEGORY)
        .one_or_none()
    )
    if cat is None:
        cat = NcCategory(company_id=company_id, name=FAILED_CHECK_NC_CATEGORY)
        s.add(cat)
        s.flush()
    return cat


def create_quality_check(s: Session, payload: dict, *, user: User) -> tuple[QualityCheck, NonConformance | None]:
    require_fields(payload, ("criteria_id", "check_date"))
    criteria = get_scoped(s, QualityCriteria, payload["criteria_id"], user.company_id)
    if criteria is None:
        raise ValueError("Quality criteria not found")
    check_date = parse_date(payload["check_date"])
    if check_date is None:
        raise ValueError("check_date must be YYYY-MM-DD")
    result = payload.get("result") or "pending"
    if result not in CHECK_RESULTS:
        raise ValueError(f"Invalid result. Must be one of: {', '.join(CHECK_RESULTS)}")

    inspector_id = _company_user_id(s, payload.get("inspector_user_id"), user, default=user.id)

    check = QualityCheck(
        company_id=user.company_id,
        criteria_id=criteria.id,
        check_date=check_date,
        result=result,
        actual_value=_opt_dec(payload.get("actual_value"), "actual_value"),
        defect_rate=_opt_dec(payload.get("defect_rate"), "defect_rate"),
        notes=(payload.get("notes") or "").strip() or None,
        inspector_user_id=inspector_id,
    )
    s.add(check)
    s.flush()
    log_activity(
        s,
        user=user,
        activity_type="quality_check_created",
        entity_type="quality_check",
        entity_id=check.id,
        description=f"Quality check on {criteria.criteria_name}: {result}",
    )
    record_event(
        s,
        actor=user,
        action="quality.check.create",
        entity_type="QualityCheck",
        entity_id=str(check.id),
        metadata={"criteria_id": criteria.id, "result": result},
    )

    nc = None
    if result == "fail" and _bool(payload.get("raise_nc")):
        category = _failed_check_category(s, user.company_id, payload.get("nc_category_id"))
        nc = create_non_conformance(
            s,
            {
                "description": payload.get("nc_description")
                or f"Failed quality check on {criteria.criteria_name} ({check_date.isoformat()})",
                "category_id": category.id,
                "severity": payload.get("nc_severity") or "minor",
                "source": "quality_check",
            },
            user=user,
            quality_check_id=check.id,
        )
    return check, nc


def bulk_update_quality_checks(s: Session, check_ids: list, updates: dict, *, user: User) -> int:
    if not check_ids:
        raise ValueError("check_ids is required")
    fields = {k: v for k, v in (updates or {}).items() if k in BULK_CHECK_FIELDS}
    if not fields:
        raise ValueError(f"No updatable fields. Allowed: {', '.join(BULK_CHECK_FIELDS)}")
    if "result" in fields and fields["result"] not in CHECK_RESULTS:
        raise ValueError(f"Invalid result. Must be one of: {', '.join(CHECK_RESULTS)}")
    for key in ("actual_value", "defect_rate"):
        if key in fields:
            fields[key] = _opt_dec(fields[key], key)

    checks = (
        s.query(QualityCheck)
        .filter(QualityCheck.company_id == user.company_id, QualityCheck.id.in_([int(i) for i in check_ids]))
        .all()
    )
    for check in checks:
        for key, value in fields.items():
            setattr(check, key, value)

    log_activity(
        s,
        user=user,
        activity_type="quality_checks_bulk_updated",
        entity_type="quality_check",
        entity_id=None,
        description=f"{len(checks)} quality checks updated",
    )
    record_event(
        s,
        actor=user,
        action="quality.check.bulk_update",
        entity_type="QualityCheck",
        metadata={"check_ids": [c.id for c in checks], "fields": fields},
    )
    return len(checks)


def schedule_audit(s: Session, payload: dict, *, user: User) -> QualityAudit:
    require_fields(payload, ("audit_title", "audit_type_id", "scheduled_date"))
    audit_type = get_scoped(s, AuditType, payload["audit_type_id"], user.company_id)
    if audit_type is None:
        raise ValueError("Audit type not found")
    scheduled = parse_date(payload["scheduled_date"])
    if scheduled is None:
        raise ValueError("scheduled_date must be YYYY-MM-DD")
    duration = validate_payload(payload, AUDIT_RULES)["duration_days"]
    lead_auditor_id = _company_user_id(s, payload.get("lead_auditor_user_id"), user, default=user.id)

    audit = QualityAudit(
        company_id=user.company_id,
        audit_title=str(payload["audit_title"]).strip(),
        audit_type_id=audit_type.id,
        scheduled_date=scheduled,
        duration_days=duration,
        status="planned",
        lead_auditor_user_id=lead_auditor_id,
        scope=(payload.get("scope") or "").strip() or None,
    )
    s.add(audit)
    s.flush()
    log_activity(
        s,
        user=user,
        activity_type="audit_scheduled",
        entity_type="quality_audit",
        entity_id=audit.id,
        description=f"Audit '{audit.audit_title}' scheduled for {scheduled.isoformat()}",
    )
    record_event(
        s,
        actor=user,
        action="quality.audit.schedule",
        entity_type="QualityAudit",
        entity_id=str(audit.id),
        metadata={"scheduled_date": scheduled.isoformat()},
    )
    return audit


def create_audit_finding(s: Session, payload: dict, *, user: User) -> AuditFinding:
    require_fields(payload, ("audit_id", "description"))
    audit = get_scoped(s, QualityAudit, payload["audit_id"], user.company_id)
    if audit is None:
        raise ValueError("Audit not found")
    finding_type = payload.get("finding_type") or "observation"
    if finding_type not in FINDING_TYPES:
        raise ValueError(f"Invalid finding_type. Must be one of: {', '.join(FINDING_TYPES)}")
    finding = AuditFinding(
        company_id=user.company_id,
        audit_id=audit.id,
        finding_type=finding_type,
        description=str(payload["description"]).strip(),
        clause=(payload.get("clause") or "").strip() or None,
    )
    s.add(finding)
    s.flush()
    log_activity(
        s,
        user=user,
        activity_type="audit_finding_created",
        entity_type="audit_finding",
        entity_id=finding.id,
        description=f"{finding_type.title()} finding on '{audit.audit_title}'",
    )
    record_event(s, actor=user, action="quality.audit_finding.create", entity_type="AuditFinding", entity_id=str(finding.id))
    return finding


def create_non_conformance(
    s: Session, payload: dict, *, user: User, quality_check_id: int | None = None
) -> NonConformance:
    require_fields(payload, ("description", "category_id"))
    category = get_scoped(s, NcCategory, payload["category_id"], user.company_id)
    if category is None:
        raise ValueError("Non-conformance category not found")
    severity = payload.get("severity") or "minor"
    if severity not in NC_SEVERITIES:
        raise ValueError(f"Invalid severity. Must be one of: {', '.join(NC_SEVERITIES)}")
    priority = payload.get("priority") or "medium"
    if priority not in PRIORITIES:
        raise ValueError(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")

    nc = NonConformance(
        company_id=user.company_id,
        nc_number=_number("NC"),
        description=str(payload["description"]).strip(),
        category_id=category.id,
        severity=severity,
        status="open",
        priority=priority,
        source=payload.get("source"),
        quality_check_id=quality_check_id,
        reported_by_user_id=user.id,
    )
    s.add(nc)
    s.flush()
    log_activity(
        s,
        user=user,
        activity_type="nc_created",
        entity_type="non_conformance",
        entity_id=nc.id,
        description=f"Non-conformance {nc.nc_number} ({severity}) created",
    )
    record_event(
        s,
        actor=user,
        action="quality.nc.create",
        entity_type="NonConformance",
        entity_id=str(nc.id),
        metadata={"nc_number": nc.nc_number, "severity": severity, "quality_check_id": quality_check_id},
    )
    return nc


def create_root_cause_analysis(s: Session, payload: dict, *, user: User) -> RootCauseAnalysis:
    require_fields(payload, ("nc_id", "root_cause"))
    nc = get_scoped(s, NonConformance, payload["nc_id"], user.company_id)
    if nc is None:
        raise ValueError("Non-conformance not found")
    method = payload.get("method") or "5_whys"
    if method not in RCA_METHODS:
        raise ValueError(f"Invalid method. Must be one of: {', '.join(RCA_METHODS)}")
    factors = payload.get("contributing_factors")
    if factors is not None and not isinstance(factors, list):
        raise ValueError("contributing_factors must be a list")

    rca = RootCauseAnalysis(
        company_id=user.company_id,
        nc_id=nc.id,
        method=method,
        root_cause=str(payload["root_cause"]).strip(),
        contributing_factors=factors,
        analyzed_by_user_id=user.id,
    )
    s.add(rca)
    if nc.status == "open":
        nc.status = "investigating"
    s.flush()
    log_activity(
        s,
        user=user,
        activity_type="root_cause_recorded",
        entity_type="non_conformance",
        entity_id=nc.id,
        description=f"Root cause recorded for {nc.nc_number}",
    )
    record_event(s, actor=user, action="quality.rca.create", entity_type="RootCauseAnalysis", entity_id=str(rca.id))
    return rca


def create_containment_action(s: Session, payload: dict, *, user: User) -> ContainmentAction:
    require_fields(payload, ("nc_id", "action_description"))
    nc = get_scoped(s, NonConformance, payload["nc_id"], user.company_id)
    if nc is None:
        raise ValueError("Non-conformance not found")
    responsible_id = _company_user_id(s, payload.get("responsible_user_id"), user, default=user.id)
    action = ContainmentAction(
        company_id=user.company_id,
        nc_id=nc.id,
        action_description=str(payload["action_description"]).strip(),
        status="open",
        due_date=parse_date(payload.get("due_date")),
        responsible_user_id=responsible_id,
    )
    s.add(action)
    s.flush()
    log_activity(
        s,
        user=user,
        activity_type="containment_action_created",
        entity_type="non_conformance",
        entity_id=nc.id,
        description=f"Containment action added to {nc.nc_number}",
    )
    record_event(s, actor=user, action="quality.containment.create", entity_type="ContainmentAction", entity_id=str(action.id))
    return action


def create_capa(s: Session, payload: dict, *, user: User) -> Capa:
    require_fields(payload, ("capa_type", "description"))
    capa_type = payload["capa_type"]
    if capa_type not in CAPA_TYPES:
        raise ValueError(f"Invalid capa_type. Must be one of: {', '.join(CAPA_TYPES)}")
    nc_id = None
    if payload.get("nc_id") not in (None, ""):
        nc = get_scoped(s, NonConformance, payload["nc_id"], user.company_id)
        if nc is None:
            raise ValueError("Non-conformance not found")
        nc_id = nc.id
    assignee_id = _company_user_id(s, payload.get("assigned_to_user_id"), user, default=None)

    capa = Capa(
        company_id=user.company_id,
        capa_number=_number("CAPA"),
        capa_type=capa_type,
        description=str(payload["description"]).strip(),
        nc_id=nc_id,
        status="open",
        progress=0,
        due_date=parse_date(payload.get("due_date")),
        assigned_to_user_id=assignee_id,
    )
    s.add(capa)
    s.flush()
    log_activity(
        s,
        user=user,
        activity_type="capa_created",
        entity_type="capa",
        entity_id=capa.id,
        description=f"{capa_type.title()} action {capa.capa_number} opened",
    )
    record_event(
        s,
        actor=user,
        action="quality.capa.create",
        entity_type="Capa",
        entity_id=str(capa.id),
        metadata={"capa_number": capa.capa_number, "nc_id": nc_id},
    )
    return capa
