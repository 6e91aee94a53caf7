import json

from app.erp.db import session_scope
from app.erp.models import AuditEvent
from app.erp.modules.form_manager.models import Form, FormField, FormSubmission, FormTemplate

FIELDS = [
    {"field_name": "full_name", "field_label": "Full name", "field_type": "text", "is_required": True},
    {"field_name": "email", "field_type": "email", "is_required": True},
    {"field_name": "topic", "field_type": "select", "options": ["sales", "support"]},
]

PAGES = (
    "/admin/forms/",
    "/admin/forms/builder",
    "/admin/forms/templates",
    "/admin/forms/workflows",
    "/admin/forms/analytics",
    "/admin/forms/management",
)


def _form(client, **extra):
    payload = {"form_title": "Contact us", "category": "contact", "fields": FIELDS, **extra}
    r = client.post("/admin/forms/api/forms", json=payload)
    assert r.status_code == 201, r.json
    return r.json["data"]["form_id"]


def _published(client, **extra):
    form_id = _form(client, **extra)
    assert client.post(f"/admin/forms/api/forms/{form_id}/publish").status_code == 200
    return form_id


def test_pages_render(client):
    form_id = _published(client)
    client.post(f"/admin/forms/api/forms/{form_id}/submit", json={"data": {"full_name": "A", "email": "a@x.io"}, "rating": 4})
    client.post(f"/admin/forms/api/forms/{form_id}/workflows", json={"workflow": "approval"})
    for path in PAGES:
        r = client.get(path)
        assert r.status_code == 200, path
    assert client.get(f"/admin/forms/builder?form_id={form_id}").status_code == 200


def test_create_form_starts_as_draft(client):
    r = client.post("/admin/forms/api/forms", json={"form_title": "Survey", "category": "survey", "settings": {"theme": "dark"}})
    assert r.status_code == 201
    assert r.json["data"]["status"] == "draft"
    data = client.get(f"/admin/forms/api/forms/{r.json['data']['form_id']}").json["data"]
    assert data["form_title"] == "Survey"
    assert data["settings"] == {"theme": "dark"}
    assert data["fields"] == []


def test_create_form_validation(client):
    r = client.post("/admin/forms/api/forms", json={"category": "survey"})
    assert r.status_code == 400
    assert r.json["error"] == "Field 'form_title' is required"
    r = client.post("/admin/forms/api/forms", json={"form_title": "x", "category": "poetry"})
    assert r.json["error"].startswith("Invalid category")
    r = client.post("/admin/forms/api/forms", json={"form_title": "x", "fields": [{"field_name": "1bad"}]})
    assert r.json["error"] == "Invalid field_name: '1bad'"
    r = client.post("/admin/forms/api/forms", json={"form_title": "x", "fields": [{"field_name": "a"}, {"field_name": "a"}]})
    assert r.json["error"] == "Duplicate field_name: a"


def test_form_from_template_copies_fields(app, client):
    r = client.post("/admin/forms/api/templates", json={"template_name": "Contact", "category": "contact", "fields": FIELDS})
    assert r.status_code == 201
    template_id = r.json["data"]["template_id"]

    form_id = _form(client, fields=None, template_id=template_id)
    data = client.get(f"/admin/forms/api/forms/{form_id}").json["data"]
    assert [f["field_name"] for f in data["fields"]] == ["full_name", "email", "topic"]
    with session_scope(app) as s:
        assert s.get(FormTemplate, template_id).usage_count == 1


def test_save_fields_replaces_existing(app, client):
    form_id = _form(client)
    r = client.post(f"/admin/forms/api/forms/{form_id}/fields", json={"fields": [{"field_name": "only_one"}]})
    assert r.json["data"]["field_count"] == 1
    with session_scope(app) as s:
        assert [f.field_name for f in s.query(FormField).filter(FormField.form_id == form_id)] == ["only_one"]


def test_submit_requires_published_form(client):
    form_id = _form(client)
    r = client.post(f"/admin/forms/api/forms/{form_id}/submit", json={"data": {"full_name": "A", "email": "a@x.io"}})
    assert r.status_code == 400
    assert r.json["error"] == "Form is not accepting submissions"


def test_submit_validates_and_counts(app, client):
    form_id = _published(client)
    r = client.post(f"/admin/forms/api/forms/{form_id}/submit", json={"data": {"full_name": "A"}})
    assert r.json["error"] == "Missing required fields: email"
    r = client.post(f"/admin/forms/api/forms/{form_id}/submit", json={"data": {"full_name": "A", "email": "a@x.io"}, "rating": 9})
    assert r.status_code == 400

    r = client.post(
        f"/admin/forms/api/forms/{form_id}/submit",
        json={"data": {"full_name": "A", "email": "a@x.io", "unexpected": "dropped"}, "rating": "5"},
    )
    assert r.status_code == 201
    with session_scope(app) as s:
        sub = s.get(FormSubmission, r.json["data"]["submission_id"])
        assert sub.data == {"full_name": "A", "email": "a@x.io"}
        assert sub.rating == 5
        form = s.get(Form, form_id)
        assert form.total_submissions == 1
        assert form.last_submission is not None


def test_submission_is_audited(app, client, ids):
    form_id = _published(client)
    r = client.post(f"/admin/forms/api/forms/{form_id}/submit", json={"data": {"full_name": "A", "email": "a@x.io"}})
    sub_id = r.json["data"]["submission_id"]
    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "forms.submission.create").one()
        assert ev.entity_id == str(sub_id)
        assert ev.company_id == ids["acme"]
        assert json.loads(ev.metadata_json) == {"form_id": form_id}


def test_duplicate_copies_fields_and_settings(client):
    form_id = _published(client, settings={"notify": True})
    r = client.post(f"/admin/forms/api/forms/{form_id}/duplicate", json={})
    assert r.status_code == 201
    assert r.json["data"]["form_title"] == "Contact us (Copy)"
    copy = client.get(f"/admin/forms/api/forms/{r.json['data']['form_id']}").json["data"]
    assert copy["status"] == "draft"
    assert copy["settings"] == {"notify": True}
    assert len(copy["fields"]) == 3


def test_delete_form(app, client):
    form_id = _published(client)
    client.post(f"/admin/forms/api/forms/{form_id}/submit", json={"data": {"full_name": "A", "email": "a@x.io"}})
    assert client.post(f"/admin/forms/api/forms/{form_id}/delete").status_code == 200
    assert client.get(f"/admin/forms/api/forms/{form_id}").status_code == 404
    with session_scope(app) as s:
        assert s.query(FormSubmission).count() == 0
        assert s.query(FormField).count() == 0


def test_bulk_actions(app, client):
    a, b = _form(client), _form(client)
    r = client.post("/admin/forms/api/forms/bulk", json={"action": "category", "form_ids": [a, b], "category": "feedback"})
    assert r.json["data"]["affected"] == 2
    r = client.post("/admin/forms/api/forms/bulk", json={"action": "archive", "form_ids": [a, 99999]})
    assert r.json["data"]["affected"] == 1
    r = client.post("/admin/forms/api/forms/bulk", json={"action": "shred", "form_ids": [a]})
    assert r.status_code == 400
    with session_scope(app) as s:
        assert s.get(Form, a).status == "archived"
        assert s.get(Form, b).category == "feedback"


def test_export_formats(client):
    form_id = _form(client, form_title="Contact Us!")
    r = client.get(f"/admin/forms/api/forms/{form_id}/export?format=json")
    assert r.status_code == 200
    assert r.mimetype == "application/json"
    body = json.loads(r.data)
    assert [f["field_name"] for f in body["fields"]] == ["full_name", "email", "topic"]
    assert "contact_us_" in r.headers["Content-Disposition"]

    r = client.get(f"/admin/forms/api/forms/{form_id}/export?format=xml")
    assert r.data.startswith(b"<?xml")
    assert b"<option>sales</option>" in r.data

    r = client.get(f"/admin/forms/api/forms/{form_id}/export?format=csv")
    assert r.data.decode().splitlines()[0] == "field_order,field_name,field_label,field_type,is_required,options"

    r = client.get(f"/admin/forms/api/forms/{form_id}/export?format=pdf")
    assert r.data.startswith(b"%PDF")

    r = client.get(f"/admin/forms/api/forms/{form_id}/export?format=docx")
    assert r.status_code == 400
    assert r.json["error"] == "Unsupported export format"


def test_workflow_starts_at_first_step(client):
    form_id = _form(client)
    r = client.post(f"/admin/forms/api/forms/{form_id}/workflows", json={"workflow": "review"})
    assert r.status_code == 201
    assert r.json["data"]["current_step"] == "submit"
    assert client.post(f"/admin/forms/api/forms/{form_id}/workflows", json={"workflow": "vibes"}).status_code == 400


def test_viewer_cannot_create(viewer_client):
    r = viewer_client.post("/admin/forms/api/forms", json={"form_title": "x"})
    assert r.status_code == 403
    assert r.json["missing_permission"] == "forms.create"


def test_forms_are_company_scoped(client, other_client):
    form_id = _published(client)
    assert other_client.get(f"/admin/forms/api/forms/{form_id}").status_code == 404
    r = other_client.post(f"/admin/forms/api/forms/{form_id}/submit", json={"data": {}})
    assert r.status_code == 404
    assert r.json["error"] == "Form not found"
