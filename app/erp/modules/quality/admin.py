from __future__ import annotations

from flask import Blueprint, request

from app.erp.api import get_payload, json_endpoint, json_success, model_to_dict
from app.erp.db import db_session
from app.erp.modules.quality import service as svc
from app.erp.pages import render_module_page, stat_list, table
from app.erp.querying import paginate
from app.erp.rbac import require_permission
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("quality", __name__)

SUBNAV = [
    ("Dashboard", "quality.index", "quality.view"),
    ("Quality control", "quality.quality_control", "quality.control.view"),
    ("Audits", "quality.audit_management", "quality.audit.view"),
    ("Non-conformance", "quality.non_conformance", "quality.nonconformance.view"),
    ("CAPA", "quality.capa", "quality.capa.view"),
    ("ISO compliance", "quality.iso_compliance", "quality.iso.view"),
    ("Standards", "quality.quality_standards", "quality.standards.view"),
    ("SPC", "quality.statistical_process", "quality.spc.view"),
    ("Analytics", "quality.analytics", "quality.analytics.view"),
]

CHECK_COLUMNS = [
    ("check_date", "Date"),
    ("criteria_name", "Criteria"),
    ("result", "Result"),
    ("actual_value", "Value"),
    ("defect_rate", "Defect rate"),
    ("notes", "Notes"),
]
NC_COLUMNS = [
    ("nc_number", "NC #"),
    ("description", "Description"),
    ("category", "Category"),
    ("severity", "Severity"),
    ("priority", "Priority"),
    ("status", "Status"),
    ("created_at", "Raised"),
]
CAPA_COLUMNS = [
    ("capa_number", "CAPA #"),
    ("capa_type", "Type"),
    ("description", "Description"),
    ("status", "Status"),
    ("progress", "Progress %"),
    ("due_date", "Due"),
]
AUDIT_COLUMNS = [
    ("audit_title", "Audit"),
    ("audit_type", "Type"),
    ("scheduled_date", "Scheduled"),
    ("duration_days", "Days"),
    ("status", "Status"),
    ("finding_count", "Findings"),
    ("major_findings", "Major"),
]


def _page_args() -> tuple:
    return request.args.get("page", 1), request.args.get("limit", 50)


# ---------- Pages ----------


@bp.get("/")
@require_permission("quality.view")
def index():
    s = db_session()
    cid = current_company_id()
    stats = svc.dashboard_stats(s, cid)
    return render_module_page(
        "quality",
        page_title="Quality management",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Check pass rate %": stats["check_pass_rate"],
                "Avg defect rate": stats["average_defect_rate"],
                "Open NCs": stats["open_ncs"],
                "Open CAPAs": stats["open_capas"],
                "Overdue CAPAs": stats["overdue_capas"],
            }
        ),
        tables=[
            table(
                "Open non-conformances by severity",
                [("severity", "Severity"), ("count", "Open")],
                [{"severity": k, "count": v} for k, v in sorted(stats["open_nc_by_severity"].items())],
            ),
            table(
                "Upcoming audits",
                [("audit_title", "Audit"), ("scheduled_date", "Scheduled"), ("duration_days", "Days")],
                stats["upcoming_audits"],
            ),
            table(
                "Recent activity",
                [("created_at", "When"), ("activity_type", "Activity"), ("description", "Description")],
                svc.recent_activities(s, cid),
            ),
        ],
    )


@bp.get("/control")
@require_permission("quality.control.view")
def quality_control():
    s = db_session()
    cid = current_company_id()
    items, pagination = paginate(svc.list_checks(s, cid, request.args), *_page_args())
    return render_module_page(
        "quality",
        page_title="Quality control",
        subnav=SUBNAV,
        filters={
            "result": ("Result", ("",) + svc.CHECK_RESULTS),
            "date_from": ("From", "date"),
            "date_to": ("To", "date"),
            "search": ("Search", None),
        },
        pagination=pagination,
        tables=[
            table("Quality checks", CHECK_COLUMNS, [svc.check_row(c) for c in items]),
            table(
                "Pass rate by criteria",
                [("criteria_name", "Criteria"), ("category", "Category"), ("checks", "Checks"), ("pass_rate", "Pass %")],
                svc.criteria_pass_rates(s, cid),
            ),
        ],
    )


@bp.get("/audits")
@require_permission("quality.audit.view")
def audit_management():
    s = db_session()
    return render_module_page(
        "quality",
        page_title="Audit management",
        subnav=SUBNAV,
        tables=[table("Audits", AUDIT_COLUMNS, svc.audits_with_findings(s, current_company_id()))],
    )


@bp.get("/non-conformance")
@require_permission("quality.nonconformance.view")
def non_conformance():
    s = db_session()
    cid = current_company_id()
    items, pagination = paginate(svc.list_non_conformances(s, cid, request.args), *_page_args())
    breakdown = svc.nc_breakdown(s, cid)
    return render_module_page(
        "quality",
        page_title="Non-conformance",
        subnav=SUBNAV,
        filters={
            "status": ("Status", ("",) + svc.NC_STATUSES),
            "severity": ("Severity", ("",) + svc.NC_SEVERITIES),
            "date_from": ("From", "date"),
            "date_to": ("To", "date"),
            "search": ("Search", None),
        },
        pagination=pagination,
        tables=[
            table("Non-conformances", NC_COLUMNS, [svc.nc_row(nc) for nc in items]),
            table("By severity", [("severity", "Severity"), ("count", "Count")], breakdown["by_severity"]),
            table("By category", [("category", "Category"), ("count", "Count")], breakdown["by_category"]),
        ],
    )


@bp.get("/capa")
@require_permission("quality.capa.view")
def capa():
    s = db_session()
    cid = current_company_id()
    items, pagination = paginate(svc.list_capas(s, cid, request.args), *_page_args())
    eff = svc.capa_effectiveness(s, cid)
    return render_module_page(
        "quality",
        page_title="CAPA",
        subnav=SUBNAV,
        filters={
            "status": ("Status", ("",) + svc.CAPA_STATUSES),
            "capa_type": ("Type", ("",) + svc.CAPA_TYPES),
            "search": ("Search", None),
        },
        pagination=pagination,
        stats=stat_list({"Effectiveness %": eff["effectiveness"], **{k.replace("_", " ").title(): v for k, v in sorted(eff["by_status"].items())}}),
        tables=[table("CAPAs", CAPA_COLUMNS, items)],
    )


@bp.get("/iso")
@require_permission("quality.iso.view")
def iso_compliance():
    s = db_session()
    data = svc.standards_overview(s, current_company_id())
    return render_module_page(
        "quality",
        page_title="ISO compliance",
        subnav=SUBNAV,
        stats=stat_list({"Average compliance %": data["average_compliance"]}),
        tables=[
            table(
                "Standards",
                [
                    ("standard_code", "Standard"),
                    ("title", "Title"),
                    ("compliance_score", "Compliance %"),
                    ("last_review_date", "Last review"),
                    ("status", "Status"),
                ],
                data["standards"],
            )
        ],
    )


@bp.get("/standards")
@require_permission("quality.standards.view")
def quality_standards():
    s = db_session()
    data = svc.standards_overview(s, current_company_id())
    return render_module_page(
        "quality",
        page_title="Quality standards",
        subnav=SUBNAV,
        tables=[
            table(
                "Standards",
                [("standard_code", "Standard"), ("title", "Title"), ("version", "Version"), ("criteria_count", "Criteria")],
                data["standards"],
            )
        ],
    )


@bp.get("/spc")
@require_permission("quality.spc.view")
def statistical_process():
    s = db_session()
    return render_module_page(
        "quality",
        page_title="Statistical process control",
        subnav=SUBNAV,
        tables=[
            table(
                "Control limits",
                [
                    ("criteria_name", "Criteria"),
                    ("n", "Points"),
                    ("mean", "Mean"),
                    ("std_dev", "σ"),
                    ("lcl", "LCL"),
                    ("ucl", "UCL"),
                    ("out_of_control", "Out of control"),
                    ("cpk", "Cpk"),
                ],
                svc.statistical_process(s, current_company_id()),
                empty="No measured checks yet.",
            )
        ],
    )


@bp.get("/analytics")
@require_permission("quality.analytics.view")
def analytics():
    s = db_session()
    data = svc.quality_analytics(s, current_company_id())
    return render_module_page(
        "quality",
        page_title="Quality analytics",
        subnav=SUBNAV,
        tables=[
            table("Non-conformance trend", [("month", "Month"), ("total", "NCs"), ("critical", "Critical")], data["nc_trend"]),
            table("Defect rate trend", [("month", "Month"), ("checks", "Checks"), ("avg_defect_rate", "Avg defect rate")], data["defect_trend"]),
        ],
    )


# ---------- JSON API ----------


@bp.get("/api/checks")
@require_permission("quality.control.view")
@json_endpoint
def api_list_checks():
    items, pagination = paginate(svc.list_checks(db_session(), current_company_id(), request.args), *_page_args())
    return json_success([svc.check_row(c) for c in items], pagination=pagination)


@bp.post("/api/checks")
@require_permission("quality.control.manage")
@json_endpoint
def api_create_quality_check():
    check, nc = svc.create_quality_check(db_session(), get_payload(), user=current_user())
    extra = {"nc_id": nc.id, "nc_number": nc.nc_number} if nc else {}
    return json_success(message="Quality check created", status=201, quality_check_id=check.id, **extra)


@bp.post("/api/checks/bulk-update")
@require_permission("quality.control.manage")
@json_endpoint
def api_bulk_update_quality_checks():
    payload = get_payload()
    count = svc.bulk_update_quality_checks(
        db_session(), payload.get("check_ids") or [], payload.get("updates") or {}, user=current_user()
    )
    return json_success(message=f"{count} quality checks updated", updated_count=count)


@bp.get("/api/audits")
@require_permission("quality.audit.view")
@json_endpoint
def api_list_audits():
    items, pagination = paginate(svc.list_audits(db_session(), current_company_id(), request.args), *_page_args())
    return json_success([model_to_dict(a) for a in items], pagination=pagination)


@bp.post("/api/audits")
@require_permission("quality.audit.manage")
@json_endpoint
def api_schedule_audit():
    audit = svc.schedule_audit(db_session(), get_payload(), user=current_user())
    return json_success(message="Audit scheduled", status=201, audit_id=audit.id)


@bp.post("/api/audit-findings")
@require_permission("quality.audit.manage")
@json_endpoint
def api_create_audit_finding():
    finding = svc.create_audit_finding(db_session(), get_payload(), user=current_user())
    return json_success(message="Audit finding recorded", status=201, finding_id=finding.id)


@bp.get("/api/non-conformances")
@require_permission("quality.nonconformance.view")
@json_endpoint
def api_list_non_conformances():
    items, pagination = paginate(svc.list_non_conformances(db_session(), current_company_id(), request.args), *_page_args())
    return json_success([svc.nc_row(nc) for nc in items], pagination=pagination)


@bp.post("/api/non-conformances")
@require_permission("quality.nonconformance.manage")
@json_endpoint
def api_create_non_conformance():
    nc = svc.create_non_conformance(db_session(), get_payload(), user=current_user())
    return json_success(message="Non-conformance created", status=201, nc_id=nc.id, nc_number=nc.nc_number)


@bp.post("/api/root-cause-analyses")
@require_permission("quality.nonconformance.manage")
@json_endpoint
def api_create_root_cause_analysis():
    rca = svc.create_root_cause_analysis(db_session(), get_payload(), user=current_user())
    return json_success(message="Root cause analysis recorded", status=201, rca_id=rca.id)


@bp.post("/api/containment-actions")
@require_permission("quality.nonconformance.manage")
@json_endpoint
def api_create_containment_action():
    action = svc.create_containment_action(db_session(), get_payload(), user=current_user())
    return json_success(message="Containment action created", status=201, containment_action_id=action.id)


@bp.get("/api/capas")
@require_permission("quality.capa.view")
@json_endpoint
def api_list_capas():
    items, pagination = paginate(svc.list_capas(db_session(), current_company_id(), request.args), *_page_args())
    return json_success([model_to_dict(c) for c in items], pagination=pagination)


@bp.post("/api/capas")
@require_permission("quality.capa.manage")
@json_endpoint
def api_create_capa():
    capa = svc.create_capa(db_session(), get_payload(), user=current_user())
    return json_success(message="CAPA created", status=201, capa_id=capa.id, capa_number=capa.capa_number)
