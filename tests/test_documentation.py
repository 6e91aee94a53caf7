import json

from app.erp.db import session_scope
from app.erp.models import AuditEvent
from app.erp.modules.documentation import service as svc
from app.erp.modules.documentation.models import Document

PAGES = (
    "/admin/documentation/",
    "/admin/documentation/manuals",
    "/admin/documentation/api-docs",
    "/admin/documentation/installation",
    "/admin/documentation/developer",
    "/admin/documentation/videos",
    "/admin/documentation/search?q=install",
    "/admin/documentation/management",
)


def _doc(client, title, doc_type="user_manual", status="published", **extra):
    r = client.post("/admin/documentation/api/documents", json={"title": title, "doc_type": doc_type, "status": status, **extra})
    assert r.status_code == 201, r.json
    return r.json["data"]["document_id"]


def test_pages_render(client):
    cat = client.post("/admin/documentation/api/categories", json={"name": "Getting Started"}).json["data"]["category_id"]
    doc_id = _doc(client, "Installing the agent", doc_type="installation", category_id=cat, content="Run the installer")
    _doc(client, "Intro video", doc_type="video", video_url="https://example.com/v.mp4", duration_seconds=90)
    client.post("/admin/documentation/api/feedback", json={"document_id": doc_id, "message": "Step 3 is unclear", "feedback_type": "unclear"})
    client.post("/admin/documentation/api/search-history", json={"query": "install", "results_count": 1})
    for path in PAGES:
        r = client.get(path)
        assert r.status_code == 200, path


def test_category_slug(client):
    r = client.post("/admin/documentation/api/categories", json={"name": "Getting Started"})
    assert r.status_code == 201
    assert r.json["data"]["slug"] == "getting-started"


def test_create_document_validation(client):
    r = client.post("/admin/documentation/api/documents", json={"title": "x", "doc_type": "novel"})
    assert r.status_code == 400
    assert r.json["error"].startswith("Invalid doc_type")
    r = client.post("/admin/documentation/api/documents", json={"title": "x", "doc_type": "faq", "category_id": 424242})
    assert r.json["error"] == "Category not found"
    r = client.post("/admin/documentation/api/documents", json={"title": "x", "doc_type": "video", "duration_seconds": "long"})
    assert r.json["error"] == "duration_seconds must be an integer"


def test_draft_hidden_until_published(client):
    doc_id = _doc(client, "Release notes", status="draft")
    assert client.get("/admin/documentation/api/search?q=Release").json["data"]["total"] == 0

    r = client.post(f"/admin/documentation/api/documents/{doc_id}/publish")
    assert r.status_code == 200
    assert r.json["data"]["published_at"]
    assert client.get("/admin/documentation/api/search?q=release").json["data"]["total"] == 1

    r = client.post(f"/admin/documentation/api/documents/{doc_id}/publish")
    assert r.status_code == 400
    assert r.json["error"] == "Document is already published"


def test_search_filters_and_suggestions(client):
    cat = client.post("/admin/documentation/api/categories", json={"name": "Setup", "slug": "setup"}).json["data"]["category_id"]
    _doc(client, "Install on Linux", doc_type="installation", category_id=cat)
    _doc(client, "Install on Windows", doc_type="installation")
    _doc(client, "How to reinstall", doc_type="faq")

    data = client.get("/admin/documentation/api/search?q=install").json["data"]
    assert data["total"] == 3
    # Prefix matches come before substring matches.
    assert data["suggestions"][-1] == "How to reinstall"

    data = client.get("/admin/documentation/api/search?q=install&category=setup").json["data"]
    assert [r["title"] for r in data["results"]] == ["Install on Linux"]
    assert data["results"][0]["category"] == "Setup"

    data = client.get("/admin/documentation/api/search?q=install&type=faq").json["data"]
    assert data["total"] == 1

    assert client.get("/admin/documentation/api/search?q=in").json["data"]["suggestions"] == []


def test_get_document_counts_views(app, client):
    doc_id = _doc(client, "Admin guide", content="Body text")
    for _ in range(2):
        r = client.get(f"/admin/documentation/api/document?id={doc_id}")
        assert r.json["data"]["content"] == "Body text"
    assert r.json["data"]["view_count"] == 2
    assert client.get("/admin/documentation/api/document").status_code == 400
    assert client.get("/admin/documentation/api/document?id=99999").status_code == 404


def test_rating_is_one_per_user(app, client, ids):
    doc_id = _doc(client, "API keys")
    r = client.post(f"/admin/documentation/api/documents/{doc_id}/rate", json={"rating": 4})
    assert r.json["data"] == {"avg_rating": 4.0, "rating_count": 1}
    r = client.post(f"/admin/documentation/api/documents/{doc_id}/rate", json={"rating": "2"})
    assert r.json["data"] == {"avg_rating": 2.0, "rating_count": 1}

    for bad in (0, 6, "3.5", True, None):
        r = client.post(f"/admin/documentation/api/documents/{doc_id}/rate", json={"rating": bad})
        assert r.status_code == 400, bad
        assert r.json["error"] == "Rating must be an integer between 1 and 5"

    with session_scope(app) as s:
        assert svc.dashboard_stats(s, ids["acme"])["avg_rating"] == 2.0


def test_search_analytics(app, client, ids):
    for query, n in (("install", 3), ("Install", 1), ("licence", 0)):
        assert client.post("/admin/documentation/api/search-history", json={"query": query, "results_count": n}).status_code == 201
    assert client.post("/admin/documentation/api/search-history", json={"query": "  "}).status_code == 400
    with session_scope(app) as s:
        data = svc.search_analytics(s, ids["acme"])
    assert data["total_searches"] == 3
    assert data["unique_queries"] == 2
    assert data["success_rate"] == 66.67
    assert data["top_queries"][0] == {"query": "install", "searches": 2}
    assert data["zero_result_queries"] == [{"query": "licence", "searches": 1}]


def test_documents_are_company_scoped(app, client, other_client):
    doc_id = _doc(client, "Internal handbook")
    assert other_client.get(f"/admin/documentation/api/document?id={doc_id}").status_code == 404
    assert other_client.get("/admin/documentation/api/search?q=handbook").json["data"]["total"] == 0
    r = other_client.post("/admin/documentation/api/feedback", json={"document_id": doc_id, "message": "hi"})
    assert r.json["error"] == "Document not found"
    assert other_client.post(f"/admin/documentation/api/documents/{doc_id}/rate", json={"rating": 5}).status_code == 404
    with session_scope(app) as s:
        assert s.get(Document, doc_id).view_count == 0


def test_reader_writes_are_audited(app, client, ids):
    cat = client.post("/admin/documentation/api/categories", json={"name": "Guides"}).json["data"]["category_id"]
    doc_id = _doc(client, "Exporting reports")
    client.post(f"/admin/documentation/api/documents/{doc_id}/rate", json={"rating": 5})
    fb_id = client.post(
        "/admin/documentation/api/feedback", json={"document_id": doc_id, "message": "Needs screenshots"}
    ).json["data"]["feedback_id"]
    client.post("/admin/documentation/api/search-history", json={"query": "export", "results_count": 0})

    with session_scope(app) as s:
        events = {e.action: e for e in s.query(AuditEvent).filter(AuditEvent.action.like("documentation.%")).all()}
        assert events["documentation.category.create"].entity_id == str(cat)
        assert events["documentation.document.rate"].entity_id == str(doc_id)
        assert json.loads(events["documentation.document.rate"].metadata_json) == {"rating": 5}
        assert events["documentation.feedback.submit"].entity_id == str(fb_id)
        search = events["documentation.search.track"]
        assert json.loads(search.metadata_json) == {"query": "export", "results_count": 0}
        assert search.actor_user_id == ids["admin"]
