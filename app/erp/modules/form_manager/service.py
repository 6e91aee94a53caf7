"""
Form manager service layer.

Forms are built from fields (optionally copied from a template), carry one
settings document, accept submissions once published and can be exported as
json / xml / csv / pdf. Multi-row writes (create, duplicate, delete) run inside
the caller's transaction; json_endpoint commits or rolls back the lot.
"""
from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.erp import exports
from app.erp.api import jsonable, require_fields
from app.erp.audit import record_event
from app.erp.querying import day_bucket, get_scoped

from .models import Form, FormField, FormSetting, FormSubmission, FormTemplate, FormTemplateField, FormWorkflow

if TYPE_CHECKING:
    from app.erp.models import User

FORM_STATUSES = ("draft", "published", "unpublished", "archived")
FIELD_TYPES = ("text", "textarea", "email", "number", "date", "select", "radio", "checkbox", "file", "rating")
EXPORT_FORMATS = ("json", "xml", "csv", "pdf")
BULK_ACTIONS = ("publish", "unpublish", "archive", "delete", "category")
FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

CATEGORIES: dict[str, dict[str, str]] = {
    "contact": {"name": "Contact Forms", "description": "Forms for collecting contact information"},
    "survey": {"name": "Surveys", "description": "Survey and feedback forms"},
    "registration": {"name": "Registration", "description": "Event or service registration forms"},
    "application": {"name": "Applications", "description": "Job or membership applications"},
    "feedback": {"name": "Feedback", "description": "Customer or employee feedback forms"},
    "order": {"name": "Order Forms", "description": "Product or service order forms"},
    "custom": {"name": "Custom Forms", "description": "Custom-built forms for specific needs"},
}

STATUS_OPTIONS: dict[str, dict[str, Any]] = {
    "draft": {"name": "Draft", "actions": ["edit", "publish", "delete"]},
    "published": {"name": "Published", "actions": ["edit", "unpublish", "duplicate", "analytics"]},
    "unpublished": {"name": "Unpublished", "actions": ["edit", "publish", "delete"]},
    "archived": {"name": "Archived", "actions": ["restore", "delete"]},
}

FORM_PERMISSIONS: dict[str, dict[str, Any]] = {
    "view": {"name": "View Form", "roles": ["admin", "manager", "user"]},
    "submit": {"name": "Submit Form", "roles": ["admin", "manager", "user"]},
    "edit": {"name": "Edit Form", "roles": ["admin", "manager"]},
    "delete": {"name": "Delete Form", "roles": ["admin"]},
    "manage_submissions": {"name": "Manage Submissions", "roles": ["admin", "manager"]},
    "export_data": {"name": "Export Data", "roles": ["admin", "manager"]},
}

BULK_ACTION_LABELS: dict[str, str] = {
    "publish": "Publish Forms",
    "unpublish": "Unpublish Forms",
    "archive": "Archive Forms",
    "delete": "Delete Forms",
    "category": "Change Category",
}

EXPORT_OPTIONS: dict[str, dict[str, str]] = {
    "json": {"name": "JSON Export", "description": "Form structure as JSON"},
    "xml": {"name": "XML Export", "description": "Form structure as XML"},
    "csv": {"name": "CSV Template", "description": "Form fields as a CSV template"},
    "pdf": {"name": "PDF Form", "description": "Printable form as PDF"},
}

INTEGRATIONS: dict[str, dict[str, Any]] = {
    "email": {"name": "Email Notifications", "settings": ["recipients", "templates", "conditions"]},
    "webhook": {"name": "Webhooks", "settings": ["url", "method", "headers", "authentication"]},
    "api": {"name": "API Integration", "settings": ["endpoint", "method", "mapping", "authentication"]},
    "database": {"name": "Database Export", "settings": ["connection", "table", "mapping"]},
    "crm": {"name": "CRM Integration", "settings": ["crm_type", "mapping", "sync_frequency"]},
    "analytics": {"name": "Analytics Integration", "settings": ["platform", "tracking_id", "events"]},
}

WORKFLOW_TEMPLATES: dict[str, dict[str, Any]] = {
    "approval": {"name": "Approval Workflow", "steps": ["submit", "review", "approve", "complete"]},
    "review": {"name": "Review Workflow", "steps": ["submit", "initial_review", "detailed_review", "final_approval"]},
    "feedback": {"name": "Feedback Workflow", "steps": ["submit", "analyze", "respond", "follow_up"]},
    "assessment": {"name": "Assessment Workflow", "steps": ["submit", "grade", "review", "certify"]},
}

FIELD_EXPORT_COLUMNS = ["field_order", "field_name", "field_label", "field_type", "is_required", "options"]


def _category(value: Any) -> str:
    value = str(value or "custom").strip()
    if value not in CATEGORIES:
        raise ValueError(f"Invalid category. Must be one of: {', '.join(CATEGORIES)}")
    return value


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", value).strip("_").lower() or "form"


def _user_name(user: Any) -> str | None:
    return user.full_name if user is not None else None


# ---------- Reads / aggregates ----------


def get_form(s: Session, form_id: Any, company_id: int) -> Form | None:
    return get_scoped(s, Form, form_id, company_id)


def get_settings(s: Session, form_id: int) -> dict | None:
    row = s.query(FormSetting).filter(FormSetting.form_id == form_id).one_or_none()
    return row.settings if row else None


def get_form_data(s: Session, form_id: Any, company_id: int) -> dict[str, Any] | None:
    form = get_form(s, form_id, company_id)
    if form is None:
        return None
    fields = (
        s.query(FormField)
        .filter(FormField.form_id == form.id)
        .order_by(FormField.field_order.asc(), FormField.id.asc())
        .all()
    )
    data: dict[str, Any] = {c.key: getattr(form, c.key) for c in Form.__table__.columns}
    data["fields"] = [{c.key: getattr(f, c.key) for c in FormField.__table__.columns} for f in fields]
    data["settings"] = get_settings(s, form.id)
    return data


def _field_counts(s: Session, company_id: int) -> dict[int, int]:
    return dict(
        s.execute(
            select(FormField.form_id, func.count(FormField.id))
            .join(Form, Form.id == FormField.form_id)
            .where(Form.company_id == company_id)
            .group_by(FormField.form_id)
        ).all()
    )


def _form_row(form: Form, field_count: int) -> dict[str, Any]:
    return {
        "id": form.id,
        "form_title": form.form_title,
        "description": form.description,
        "category": form.category,
        "status": form.status,
        "total_submissions": form.total_submissions,
        "last_submission": form.last_submission,
        "created_at": form.created_at,
        "created_by": _user_name(form.created_by),
        "field_count": field_count,
    }


def get_recent_forms(s: Session, company_id: int, limit: int = 10) -> list[dict[str, Any]]:
    counts = _field_counts(s, company_id)
    forms = (
        s.query(Form)
        .filter(Form.company_id == company_id)
        .order_by(Form.created_at.desc(), Form.id.desc())
        .limit(limit)
        .all()
    )
    return [_form_row(f, counts.get(f.id, 0)) for f in forms]


def get_all_forms(s: Session, company_id: int) -> list[dict[str, Any]]:
    counts = _field_counts(s, company_id)
    ratings = dict(
        s.execute(
            select(FormSubmission.form_id, func.avg(FormSubmission.rating))
            .where(FormSubmission.company_id == company_id)
            .group_by(FormSubmission.form_id)
        ).all()
    )
    forms = s.query(Form).filter(Form.company_id == company_id).order_by(Form.created_at.desc(), Form.id.desc()).all()
    out = []
    for f in forms:
        row = _form_row(f, counts.get(f.id, 0))
        avg = ratings.get(f.id)
        row["avg_rating"] = round(float(avg), 2) if avg is not None else None
        out.append(row)
    return out


def form_counts(s: Session, company_id: int) -> dict[str, dict[str, int]]:
    by_status = dict(
        s.execute(select(Form.status, func.count(Form.id)).where(Form.company_id == company_id).group_by(Form.status)).all()
    )
    by_category = dict(
        s.execute(
            select(Form.category, func.count(Form.id)).where(Form.company_id == company_id).group_by(Form.category)
        ).all()
    )
    return {"by_status": by_status, "by_category": by_category}


def get_popular_templates(s: Session, company_id: int, limit: int = 6) -> list[dict[str, Any]]:
    rows = s.execute(
        select(FormTemplate, func.count(Form.id))
        .outerjoin(Form, Form.template_id == FormTemplate.id)
        .where(FormTemplate.company_id == company_id)
        .group_by(FormTemplate.id)
        .order_by(FormTemplate.usage_count.desc(), FormTemplate.id.asc())
        .limit(limit)
    ).all()
    return [
        {
            "id": t.id,
            "template_name": t.template_name,
            "category": t.category,
            "usage_count": t.usage_count,
            "avg_rating": t.avg_rating,
            "last_used": t.last_used,
            "forms_created": n,
        }
        for t, n in rows
    ]


def get_form_templates(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(FormTemplate, func.count(FormTemplateField.id))
        .outerjoin(FormTemplateField, FormTemplateField.template_id == FormTemplate.id)
        .where(FormTemplate.company_id == company_id, FormTemplate.is_public.is_(True))
        .group_by(FormTemplate.id)
        .order_by(FormTemplate.usage_count.desc(), FormTemplate.id.asc())
    ).all()
    return [
        {
            "id": t.id,
            "template_name": t.template_name,
            "description": t.description,
            "category": t.category,
            "usage_count": t.usage_count,
            "avg_rating": t.avg_rating,
            "field_count": n,
        }
        for t, n in rows
    ]


def get_active_workflows(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = (
        s.query(FormWorkflow)
        .filter(FormWorkflow.company_id == company_id, FormWorkflow.status == "active")
        .order_by(FormWorkflow.created_at.desc(), FormWorkflow.id.desc())
        .all()
    )
    return [
        {
            "id": w.id,
            "workflow_name": w.workflow_name,
            "form_title": w.form.form_title if w.form else None,
            "status": w.status,
            "current_step": w.current_step,
            "created_at": w.created_at,
        }
        for w in rows
    ]


def submission_analytics(s: Session, company_id: int, *, days: int = 30) -> dict[str, Any]:
    per_form = s.execute(
        select(Form.form_title, func.count(FormSubmission.id), func.avg(FormSubmission.rating))
        .join(FormSubmission, FormSubmission.form_id == Form.id)
        .where(Form.company_id == company_id)
        .group_by(Form.id, Form.form_title)
        .order_by(func.count(FormSubmission.id).desc())
    ).all()
    since = datetime.utcnow() - timedelta(days=days)
    bucket = day_bucket(s, FormSubmission.created_at)
    per_day = s.execute(
        select(bucket, func.count(FormSubmission.id))
        .where(FormSubmission.company_id == company_id, FormSubmission.created_at >= since)
        .group_by(bucket)
        .order_by(bucket)
    ).all()
    return {
        "per_form": [
            {"form_title": t, "submissions": n, "avg_rating": round(float(r), 2) if r is not None else None}
            for t, n, r in per_form
        ],
        "per_day": [{"day": d, "submissions": n} for d, n in per_day],
    }


# ---------- Templates ----------


def _clean_fields(raw: Any) -> list[dict[str, Any]]:
    if raw in (None, ""):
        return []
    if not isinstance(raw, list):
        raise ValueError("fields must be a list")
    out = []
    seen: set[str] = set()
    for i, f in enumerate(raw):
        if not isinstance(f, dict):
            raise ValueError("Each field must be an object")
        name = str(f.get("field_name") or "").strip()
        if not FIELD_NAME_RE.match(name):
            raise ValueError(f"Invalid field_name: {name!r}")
        if name in seen:
            raise ValueError(f"Duplicate field_name: {name}")
        seen.add(name)
        ftype = str(f.get("field_type") or "text")
        if ftype not in FIELD_TYPES:
            raise ValueError(f"Invalid field_type. Must be one of: {', '.join(FIELD_TYPES)}")
        options = f.get("options")
        if options is not None and not isinstance(options, list):
            raise ValueError("options must be a list")
        out.append(
            {
                "field_name": name,
                "field_label": str(f.get("field_label") or name).strip(),
                "field_type": ftype,
                "field_order": int(f.get("field_order") if f.get("field_order") is not None else i),
                "is_required": bool(f.get("is_required")),
                "options": options,
            }
        )
    return out


def create_template(s: Session, payload: dict, *, user: User) -> FormTemplate:
    require_fields(payload, ("template_name",))
    tpl = FormTemplate(
        company_id=user.company_id,
        template_name=str(payload["template_name"]).strip(),
        description=payload.get("description"),
        category=_category(payload.get("category")),
        is_public=payload.get("is_public", True) is not False,
    )
    s.add(tpl)
    s.flush()
    for f in _clean_fields(payload.get("fields")):
        s.add(FormTemplateField(template_id=tpl.id, **f))
    s.flush()
    record_event(s, actor=user, action="forms.template.create", entity_type="FormTemplate", entity_id=str(tpl.id))
    return tpl


# ---------- Forms ----------


def create_form(s: Session, payload: dict, *, user: User) -> Form:
    require_fields(payload, ("form_title",))
    settings = payload.get("settings")
    if settings is not None and not isinstance(settings, dict):
        raise ValueError("settings must be an object")

    template = None
    if payload.get("template_id") not in (None, ""):
        template = get_scoped(s, FormTemplate, payload["template_id"], user.company_id)
        if template is None:
            raise ValueError("Template not found")

    now = datetime.utcnow()
    form = Form(
        company_id=user.company_id,
        form_title=str(payload["form_title"]).strip(),
        description=payload.get("description") or "",
        category=_category(payload.get("category")),
        template_id=template.id if template else None,
        status="draft",
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(form)
    s.flush()

    if settings is not None:
        s.add(FormSetting(form_id=form.id, settings=settings, updated_at=now))

    if template is not None:
        for tf in template.fields:
            s.add(
                FormField(
                    form_id=form.id,
                    field_name=tf.field_name,
                    field_label=tf.field_label,
                    field_type=tf.field_type,
                    field_order=tf.field_order,
                    is_required=tf.is_required,
                    options=tf.options,
                )
            )
        template.usage_count = (template.usage_count or 0) + 1
        template.last_used = now
    else:
        for f in _clean_fields(payload.get("fields")):
            s.add(FormField(form_id=form.id, **f))
    s.flush()

    record_event(
        s,
        actor=user,
        action="forms.form.create",
        entity_type="Form",
        entity_id=str(form.id),
        metadata={"template_id": form.template_id},
    )
    return form


def update_form(s: Session, form: Form, payload: dict, *, user: User) -> Form:
    require_fields(payload, ("form_title",))
    form.form_title = str(payload["form_title"]).strip()
    form.description = payload.get("description") or ""
    form.category = _category(payload.get("category"))
    form.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="forms.form.update", entity_type="Form", entity_id=str(form.id))
    return form


def save_fields(s: Session, form: Form, raw_fields: Any, *, user: User) -> list[FormField]:
    """Replace a form's fields with the given list."""
    fields = _clean_fields(raw_fields)
    for old in list(form.fields):
        s.delete(old)
    s.flush()
    rows = [FormField(form_id=form.id, **f) for f in fields]
    s.add_all(rows)
    form.updated_at = datetime.utcnow()
    s.flush()
    s.expire(form, ["fields"])
    record_event(
        s,
        actor=user,
        action="forms.form.fields",
        entity_type="Form",
        entity_id=str(form.id),
        metadata={"fields": len(rows)},
    )
    return rows


def save_settings(s: Session, form: Form, settings: Any, *, user: User) -> FormSetting:
    if not isinstance(settings, dict):
        raise ValueError("settings must be an object")
    row = s.query(FormSetting).filter(FormSetting.form_id == form.id).one_or_none()
    if row is None:
        row = FormSetting(form_id=form.id, settings=settings)
        s.add(row)
    else:
        row.settings = settings
    row.updated_at = datetime.utcnow()
    s.flush()
    record_event(s, actor=user, action="forms.form.settings", entity_type="Form", entity_id=str(form.id))
    return row


def delete_form(s: Session, form: Form, *, user: User) -> None:
    form_id = form.id
    for f in list(form.fields):
        s.delete(f)
    s.query(FormSetting).filter(FormSetting.form_id == form_id).delete(synchronize_session=False)
    s.query(FormSubmission).filter(FormSubmission.form_id == form_id).delete(synchronize_session=False)
    s.delete(form)
    s.flush()
    record_event(s, actor=user, action="forms.form.delete", entity_type="Form", entity_id=str(form_id))


def publish_form(s: Session, form: Form, *, user: User) -> Form:
    form.status = "published"
    form.published_at = datetime.utcnow()
    form.published_by_user_id = user.id
    form.updated_at = form.published_at
    record_event(s, actor=user, action="forms.form.publish", entity_type="Form", entity_id=str(form.id))
    return form


def duplicate_form(s: Session, form_id: Any, new_title: Any, *, user: User) -> Form:
    source = get_form(s, form_id, user.company_id)
    if source is None:
        raise ValueError("Form not found")
    title = str(new_title or "").strip() or f"{source.form_title} (Copy)"

    now = datetime.utcnow()
    copy = Form(
        company_id=user.company_id,
        form_title=title,
        description=source.description,
        category=source.category,
        template_id=source.template_id,
        status="draft",
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(copy)
    s.flush()
    for f in source.fields:
        s.add(
            FormField(
                form_id=copy.id,
                field_name=f.field_name,
                field_label=f.field_label,
                field_type=f.field_type,
                field_order=f.field_order,
                is_required=f.is_required,
                options=f.options,
            )
        )
    settings = get_settings(s, source.id)
    if settings is not None:
        s.add(FormSetting(form_id=copy.id, settings=dict(settings), updated_at=now))
    s.flush()

    record_event(
        s,
        actor=user,
        action="forms.form.duplicate",
        entity_type="Form",
        entity_id=str(copy.id),
        metadata={"source_id": source.id},
    )
    return copy


def submit_form(s: Session, form: Form, payload: dict, *, user: User | None) -> FormSubmission:
    if form.status != "published":
        raise ValueError("Form is not accepting submissions")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise ValueError("data must be an object")

    missing = [
        f.field_name
        for f in form.fields
        if f.is_required and (data.get(f.field_name) is None or str(data.get(f.field_name)).strip() == "")
    ]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")
    known = {f.field_name for f in form.fields}
    clean = {k: v for k, v in data.items() if k in known} if known else data

    rating = payload.get("rating")
    if rating not in (None, ""):
        try:
            rating = int(rating)
        except (TypeError, ValueError):
            raise ValueError("rating must be an integer between 1 and 5")
        if not 1 <= rating <= 5:
            raise ValueError("rating must be an integer between 1 and 5")
    else:
        rating = None

    now = datetime.utcnow()
    sub = FormSubmission(
        company_id=form.company_id,
        form_id=form.id,
        data=clean,
        rating=rating,
        submitted_by_user_id=user.id if user else None,
        created_at=now,
    )
    s.add(sub)
    form.total_submissions = (form.total_submissions or 0) + 1
    form.last_submission = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="forms.submission.create",
        entity_type="FormSubmission",
        entity_id=str(sub.id),
        metadata={"form_id": form.id},
        company_id=form.company_id,
    )
    return sub


def bulk_action(s: Session, action: Any, form_ids: Any, *, user: User, category: Any = None) -> int:
    action = str(action or "").strip()
    if action not in BULK_ACTIONS:
        raise ValueError(f"Invalid bulk action. Must be one of: {', '.join(BULK_ACTIONS)}")
    if not isinstance(form_ids, list) or not form_ids:
        raise ValueError("form_ids must be a non-empty list")
    if action == "category":
        category = _category(category)

    forms = [f for f in (get_form(s, fid, user.company_id) for fid in form_ids) if f is not None]
    for form in forms:
        if action == "publish":
            publish_form(s, form, user=user)
        elif action == "unpublish":
            form.status = "unpublished"
            form.updated_at = datetime.utcnow()
        elif action == "archive":
            form.status = "archived"
            form.updated_at = datetime.utcnow()
        elif action == "category":
            form.category = category
            form.updated_at = datetime.utcnow()
        else:
            delete_form(s, form, user=user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="forms.form.bulk",
        entity_type="Form",
        metadata={"action": action, "count": len(forms)},
    )
    return len(forms)


def start_workflow(s: Session, form: Form, template_key: Any, *, user: User) -> FormWorkflow:
    key = str(template_key or "").strip()
    if key not in WORKFLOW_TEMPLATES:
        raise ValueError(f"Invalid workflow. Must be one of: {', '.join(WORKFLOW_TEMPLATES)}")
    tpl = WORKFLOW_TEMPLATES[key]
    wf = FormWorkflow(
        company_id=user.company_id,
        form_id=form.id,
        workflow_name=f"{tpl['name']}: {form.form_title}",
        status="active",
        current_step=tpl["steps"][0],
        initiated_by_user_id=user.id,
    )
    s.add(wf)
    s.flush()
    record_event(s, actor=user, action="forms.workflow.start", entity_type="FormWorkflow", entity_id=str(wf.id))
    return wf


# ---------- Export ----------


def _structure(s: Session, form: Form) -> dict[str, Any]:
    return {
        "form": {
            "id": form.id,
            "form_title": form.form_title,
            "description": form.description,
            "category": form.category,
            "status": form.status,
        },
        "fields": [
            {c: getattr(f, c) for c in FIELD_EXPORT_COLUMNS}
            for f in sorted(form.fields, key=lambda x: (x.field_order, x.id))
        ],
        "settings": get_settings(s, form.id) or {},
    }


def _to_xml(structure: dict[str, Any]) -> bytes:
    root = ET.Element("form")
    for k, v in structure["form"].items():
        ET.SubElement(root, k).text = "" if v is None else str(v)
    fields_el = ET.SubElement(root, "fields")
    for f in structure["fields"]:
        field_el = ET.SubElement(fields_el, "field")
        for k, v in f.items():
            if k == "options":
                opts = ET.SubElement(field_el, "options")
                for o in v or []:
                    ET.SubElement(opts, "option").text = str(o)
            else:
                ET.SubElement(field_el, k).text = "" if v is None else str(v).lower() if isinstance(v, bool) else str(v)
    settings_el = ET.SubElement(root, "settings")
    for k, v in structure["settings"].items():
        ET.SubElement(settings_el, "setting", name=str(k)).text = json.dumps(jsonable(v))
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def export_form(s: Session, form: Form, fmt: Any) -> tuple[bytes, str, str]:
    """Returns (body, content_type, filename)."""
    fmt = str(fmt or "").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValueError("Unsupported export format")
    structure = _structure(s, form)
    filename = f"{_slug(form.form_title)}_{date.today():%Y%m%d}.{exports.EXTENSIONS[fmt]}"

    if fmt == "json":
        body = json.dumps(jsonable(structure), indent=2).encode("utf-8")
    elif fmt == "xml":
        body = _to_xml(structure)
    elif fmt == "csv":
        body = exports.to_csv(FIELD_EXPORT_COLUMNS, structure["fields"])
    else:
        body = exports.to_pdf(
            form.form_title,
            FIELD_EXPORT_COLUMNS,
            structure["fields"],
            subtitle=form.description or f"Category: {form.category}",
        )
    return body, exports.CONTENT_TYPES[fmt], filename
