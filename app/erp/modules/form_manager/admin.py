from __future__ import annotations

from io import BytesIO

from flask import Blueprint, request, send_file

from app.erp.api import NotFound, get_payload, json_endpoint, json_success
from app.erp.db import db_session
from app.erp.modules.form_manager import service as svc
from app.erp.modules.form_manager.models import Form
from app.erp.pages import render_module_page, stat_list, table
from app.erp.rbac import require_permission
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("form_manager", __name__)

SUBNAV = [
    ("Dashboard", "form_manager.index", "forms.view"),
    ("Builder", "form_manager.builder", "forms.builder.view"),
    ("Templates", "form_manager.templates", "forms.templates.view"),
    ("Workflows", "form_manager.workflows", "forms.workflows.view"),
    ("Analytics", "form_manager.analytics", "forms.analytics.view"),
    ("Management", "form_manager.management", "forms.management.view"),
]

FORM_COLUMNS = [
    ("form_title", "Form"),
    ("category", "Category"),
    ("status", "Status"),
    ("field_count", "Fields"),
    ("total_submissions", "Submissions"),
    ("created_by", "Created by"),
    ("created_at", "Created"),
]


def _form_or_404(form_id: int) -> Form:
    form = svc.get_form(db_session(), form_id, current_company_id())
    if form is None:
        raise NotFound("Form not found")
    return form


def _catalogue(entries: dict, *keys: str) -> list[dict]:
    return [{"key": k, **{c: (", ".join(v[c]) if isinstance(v[c], list) else v[c]) for c in keys}} for k, v in entries.items()]


# ---------- Pages ----------


@bp.get("/")
@require_permission("forms.view")
def index():
    s = db_session()
    cid = current_company_id()
    counts = svc.form_counts(s, cid)
    by_status = counts["by_status"]
    return render_module_page(
        "form_manager",
        page_title="Forms",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Forms": sum(by_status.values()),
                "Published": by_status.get("published", 0),
                "Drafts": by_status.get("draft", 0),
                "Archived": by_status.get("archived", 0),
            }
        ),
        tables=[
            table("Recent forms", FORM_COLUMNS, svc.get_recent_forms(s, cid)),
            table(
                "By category",
                [("category", "Category"), ("name", "Name"), ("count", "Forms")],
                [
                    {"category": k, "name": v["name"], "count": counts["by_category"].get(k, 0)}
                    for k, v in svc.CATEGORIES.items()
                ],
            ),
        ],
    )


@bp.get("/builder")
@require_permission("forms.builder.view")
def builder():
    s = db_session()
    cid = current_company_id()
    form_id = request.args.get("form_id")
    tables = [
        table(
            "Field types",
            [("field_type", "Type")],
            [{"field_type": t} for t in svc.FIELD_TYPES],
        ),
        table("Templates", [("template_name", "Template"), ("category", "Category"), ("field_count", "Fields")], svc.get_form_templates(s, cid)),
    ]
    title = "Form builder"
    if form_id:
        data = svc.get_form_data(s, form_id, cid)
        if data is None:
            raise NotFound("Form not found")
        title = f"Form builder: {data['form_title']}"
        tables.insert(
            0,
            table(
                "Fields",
                [("field_order", "#"), ("field_name", "Name"), ("field_label", "Label"), ("field_type", "Type"), ("is_required", "Required")],
                data["fields"],
            ),
        )
    return render_module_page(
        "form_manager",
        page_title=title,
        subnav=SUBNAV,
        filters={"form_id": ("Form ID", None)},
        tables=tables,
    )


@bp.get("/templates")
@require_permission("forms.templates.view")
def templates():
    s = db_session()
    cid = current_company_id()
    return render_module_page(
        "form_manager",
        page_title="Form templates",
        subnav=SUBNAV,
        tables=[
            table(
                "Popular templates",
                [("template_name", "Template"), ("category", "Category"), ("usage_count", "Uses"), ("forms_created", "Forms"), ("last_used", "Last used")],
                svc.get_popular_templates(s, cid),
            ),
            table(
                "Public templates",
                [("template_name", "Template"), ("category", "Category"), ("field_count", "Fields"), ("avg_rating", "Rating"), ("description", "Description")],
                svc.get_form_templates(s, cid),
            ),
        ],
    )


@bp.get("/workflows")
@require_permission("forms.workflows.view")
def workflows():
    rows = svc.get_active_workflows(db_session(), current_company_id())
    return render_module_page(
        "form_manager",
        page_title="Form workflows",
        subnav=SUBNAV,
        stats=stat_list({"Active workflows": len(rows)}),
        tables=[
            table(
                "Active workflows",
                [("workflow_name", "Workflow"), ("form_title", "Form"), ("current_step", "Step"), ("created_at", "Started")],
                rows,
            ),
            table("Workflow templates", [("key", "Key"), ("name", "Name"), ("steps", "Steps")], _catalogue(svc.WORKFLOW_TEMPLATES, "name", "steps")),
        ],
    )


@bp.get("/analytics")
@require_permission("forms.analytics.view")
def analytics():
    data = svc.submission_analytics(db_session(), current_company_id())
    return render_module_page(
        "form_manager",
        page_title="Form analytics",
        subnav=SUBNAV,
        stats=stat_list({"Submissions (30d)": sum(d["submissions"] for d in data["per_day"])}),
        tables=[
            table("Submissions per form", [("form_title", "Form"), ("submissions", "Submissions"), ("avg_rating", "Rating")], data["per_form"]),
            table("Submissions per day", [("day", "Day"), ("submissions", "Submissions")], data["per_day"]),
        ],
    )


@bp.get("/management")
@require_permission("forms.management.view")
def management():
    rows = svc.get_all_forms(db_session(), current_company_id())
    return render_module_page(
        "form_manager",
        page_title="Form management",
        subnav=SUBNAV,
        tables=[
            table("All forms", FORM_COLUMNS + [("avg_rating", "Rating")], rows),
            table(
                "Bulk actions",
                [("key", "Action"), ("label", "Label")],
                [{"key": k, "label": v} for k, v in svc.BULK_ACTION_LABELS.items()],
            ),
            table("Export options", [("key", "Format"), ("name", "Name"), ("description", "Description")], _catalogue(svc.EXPORT_OPTIONS, "name", "description")),
            table("Integrations", [("key", "Key"), ("name", "Name"), ("settings", "Settings")], _catalogue(svc.INTEGRATIONS, "name", "settings")),
            table("Permissions", [("key", "Key"), ("name", "Name"), ("roles", "Roles")], _catalogue(svc.FORM_PERMISSIONS, "name", "roles")),
        ],
    )


# ---------- JSON API ----------


@bp.get("/api/forms/<int:form_id>")
@require_permission("forms.view")
@json_endpoint
def api_get_form(form_id: int):
    data = svc.get_form_data(db_session(), form_id, current_company_id())
    if data is None:
        raise NotFound("Form not found")
    return json_success(data)


@bp.post("/api/forms")
@require_permission("forms.create")
@json_endpoint
def api_create_form():
    form = svc.create_form(db_session(), get_payload(), user=current_user())
    return json_success({"form_id": form.id, "status": form.status}, message="Form created successfully", status=201)


@bp.post("/api/forms/<int:form_id>")
@require_permission("forms.edit")
@json_endpoint
def api_update_form(form_id: int):
    form = svc.update_form(db_session(), _form_or_404(form_id), get_payload(), user=current_user())
    return json_success({"form_id": form.id}, message="Form updated successfully")


@bp.post("/api/forms/<int:form_id>/fields")
@require_permission("forms.edit")
@json_endpoint
def api_save_fields(form_id: int):
    rows = svc.save_fields(db_session(), _form_or_404(form_id), get_payload().get("fields"), user=current_user())
    return json_success({"form_id": form_id, "field_count": len(rows)}, message="Fields saved")


@bp.post("/api/forms/<int:form_id>/settings")
@require_permission("forms.edit")
@json_endpoint
def api_save_settings(form_id: int):
    svc.save_settings(db_session(), _form_or_404(form_id), get_payload().get("settings"), user=current_user())
    return json_success({"form_id": form_id}, message="Settings saved")


@bp.post("/api/forms/<int:form_id>/delete")
@require_permission("forms.delete")
@json_endpoint
def api_delete_form(form_id: int):
    svc.delete_form(db_session(), _form_or_404(form_id), user=current_user())
    return json_success({"form_id": form_id}, message="Form deleted successfully")


@bp.post("/api/forms/<int:form_id>/publish")
@require_permission("forms.publish")
@json_endpoint
def api_publish_form(form_id: int):
    form = svc.publish_form(db_session(), _form_or_404(form_id), user=current_user())
    return json_success({"form_id": form.id, "published_at": form.published_at}, message="Form published successfully")


@bp.post("/api/forms/<int:form_id>/duplicate")
@require_permission("forms.create")
@json_endpoint
def api_duplicate_form(form_id: int):
    copy = svc.duplicate_form(db_session(), form_id, get_payload().get("form_title"), user=current_user())
    return json_success({"form_id": copy.id, "form_title": copy.form_title}, message="Form duplicated successfully", status=201)


@bp.post("/api/forms/<int:form_id>/submit")
@require_permission("forms.submit")
@json_endpoint
def api_submit_form(form_id: int):
    sub = svc.submit_form(db_session(), _form_or_404(form_id), get_payload(), user=current_user())
    return json_success({"submission_id": sub.id}, message="Submission received", status=201)


@bp.post("/api/forms/bulk")
@require_permission("forms.edit")
@json_endpoint
def api_bulk_action():
    payload = get_payload()
    count = svc.bulk_action(
        db_session(), payload.get("action"), payload.get("form_ids"), user=current_user(), category=payload.get("category")
    )
    return json_success({"affected": count}, message=f"{count} forms updated")


@bp.get("/api/forms/<int:form_id>/export")
@require_permission("forms.export")
@json_endpoint
def api_export_form(form_id: int):
    body, content_type, filename = svc.export_form(db_session(), _form_or_404(form_id), request.args.get("format"))
    return send_file(BytesIO(body), mimetype=content_type, as_attachment=True, download_name=filename, max_age=0)


@bp.post("/api/templates")
@require_permission("forms.templates.manage")
@json_endpoint
def api_create_template():
    tpl = svc.create_template(db_session(), get_payload(), user=current_user())
    return json_success({"template_id": tpl.id}, message="Template created", status=201)


@bp.post("/api/forms/<int:form_id>/workflows")
@require_permission("forms.workflows.manage")
@json_endpoint
def api_start_workflow(form_id: int):
    wf = svc.start_workflow(db_session(), _form_or_404(form_id), get_payload().get("workflow"), user=current_user())
    return json_success({"workflow_id": wf.id, "current_step": wf.current_step}, status=201)
