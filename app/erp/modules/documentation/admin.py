from __future__ import annotations

from flask import Blueprint, request

from app.erp.api import ApiError, NotFound, get_payload, json_endpoint, json_success, model_to_dict
from app.erp.db import db_session
from app.erp.modules.documentation import service as svc
from app.erp.modules.documentation.models import Document
from app.erp.pages import render_module_page, stat_list, table
from app.erp.querying import get_scoped
from app.erp.rbac import require_permission
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("documentation", __name__)

SUBNAV = [
    ("Dashboard", "documentation.index", "documentation.view"),
    ("User manuals", "documentation.user_manuals", "documentation.manuals.view"),
    ("API docs", "documentation.api_docs", "documentation.api.view"),
    ("Installation", "documentation.installation", "documentation.installation.view"),
    ("Developer", "documentation.developer", "documentation.developer.view"),
    ("Videos", "documentation.videos", "documentation.videos.view"),
    ("Search", "documentation.search", "documentation.search.view"),
    ("Management", "documentation.management", "documentation.management.view"),
]

DOC_COLUMNS = [
    ("title", "Title"),
    ("version", "Version"),
    ("view_count", "Views"),
    ("avg_rating", "Rating"),
    ("updated_at", "Updated"),
]


def _doc_row(doc: Document) -> dict:
    row = model_to_dict(doc, exclude=("content",))
    row["category"] = doc.category.name if doc.category else None
    return row


def _type_page(doc_type: str, title: str, extra_columns: list[tuple[str, str]] | None = None):
    docs = svc.documents_of_type(db_session(), current_company_id(), doc_type)
    return render_module_page(
        "documentation",
        page_title=title,
        subnav=SUBNAV,
        stats=stat_list({"Documents": len(docs), "Views": sum(d.view_count for d in docs)}),
        tables=[table(title, [("category", "Category")] + DOC_COLUMNS + (extra_columns or []), [_doc_row(d) for d in docs])],
    )


# ---------- Pages ----------


@bp.get("/")
@require_permission("documentation.view")
def index():
    s = db_session()
    cid = current_company_id()
    stats = svc.dashboard_stats(s, cid)
    return render_module_page(
        "documentation",
        page_title="Documentation",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Published documents": stats["total_documents"],
                "Total views": stats["total_views"],
                "Avg rating": stats["avg_rating"],
            }
        ),
        tables=[
            table(
                "By type",
                [("doc_type", "Type"), ("count", "Documents")],
                [{"doc_type": k, "count": v} for k, v in sorted(stats["by_type"].items())],
            ),
            table("Recently updated", DOC_COLUMNS, [_doc_row(d) for d in svc.recent_documents(s, cid)]),
            table("Most viewed", DOC_COLUMNS, [_doc_row(d) for d in svc.popular_documents(s, cid)]),
        ],
    )


@bp.get("/manuals")
@require_permission("documentation.manuals.view")
def user_manuals():
    return _type_page("user_manual", "User manuals")


@bp.get("/api-docs")
@require_permission("documentation.api.view")
def api_docs():
    return _type_page("api", "API documentation")


@bp.get("/installation")
@require_permission("documentation.installation.view")
def installation():
    return _type_page("installation", "Installation guides")


@bp.get("/developer")
@require_permission("documentation.developer.view")
def developer():
    return _type_page("developer", "Developer guides")


@bp.get("/videos")
@require_permission("documentation.videos.view")
def videos():
    return _type_page("video", "Video tutorials", [("duration_seconds", "Seconds"), ("video_url", "URL")])


@bp.get("/search")
@require_permission("documentation.search.view")
def search():
    s = db_session()
    cid = current_company_id()
    result = svc.perform_search(
        s, cid, request.args.get("q"), category=request.args.get("category"), doc_type=request.args.get("type")
    )
    categories = svc.list_categories(s, cid)
    return render_module_page(
        "documentation",
        page_title="Search documentation",
        subnav=SUBNAV,
        filters={
            "q": ("Search", None),
            "category": ("Category", ("",) + tuple(c.slug for c in categories)),
            "type": ("Type", ("",) + svc.DOC_TYPES),
        },
        stats=stat_list({"Results": result["total"]}),
        tables=[
            table("Results", [("doc_type", "Type")] + DOC_COLUMNS, [_doc_row(d) for d in result["results"]]),
            table("Suggestions", [("title", "Title")], [{"title": t} for t in result["suggestions"]]),
        ],
    )


@bp.get("/management")
@require_permission("documentation.management.view")
def management():
    s = db_session()
    cid = current_company_id()
    analytics = svc.search_analytics(s, cid)
    return render_module_page(
        "documentation",
        page_title="Documentation management",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Searches": analytics["total_searches"],
                "Unique queries": analytics["unique_queries"],
                "Search success %": analytics["success_rate"],
            }
        ),
        tables=[
            table(
                "All documents",
                [("doc_type", "Type"), ("status", "Status")] + DOC_COLUMNS,
                [_doc_row(d) for d in svc.all_documents(s, cid)],
            ),
            table(
                "Recent feedback",
                [("created_at", "When"), ("document", "Document"), ("feedback_type", "Type"), ("message", "Message")],
                [{**model_to_dict(f), "document": f.document.title} for f in svc.recent_feedback(s, cid)],
            ),
            table("Top queries", [("query", "Query"), ("searches", "Searches")], analytics["top_queries"]),
            table("Zero-result queries", [("query", "Query"), ("searches", "Searches")], analytics["zero_result_queries"]),
        ],
    )


# ---------- JSON API ----------


def _document_or_404(doc_id: int) -> Document:
    doc = get_scoped(db_session(), Document, doc_id, current_company_id())
    if doc is None:
        raise NotFound("Document not found")
    return doc


@bp.get("/api/search")
@require_permission("documentation.search.view")
@json_endpoint
def api_search():
    result = svc.perform_search(
        db_session(),
        current_company_id(),
        request.args.get("q"),
        category=request.args.get("category"),
        doc_type=request.args.get("type"),
    )
    return json_success(
        {
            "query": result["query"],
            "total": result["total"],
            "results": [_doc_row(d) for d in result["results"]],
            "suggestions": result["suggestions"],
        }
    )


@bp.get("/api/document")
@require_permission("documentation.view")
@json_endpoint
def api_get_document():
    doc_id = request.args.get("id")
    if not doc_id:
        raise ApiError("Document ID is required", 400)
    doc = svc.get_document(db_session(), doc_id, current_company_id())
    if doc is None:
        raise NotFound("Document not found")
    row = _doc_row(doc)
    row["content"] = doc.content
    return json_success(row)


@bp.post("/api/documents")
@require_permission("documentation.management.view")
@json_endpoint
def api_create_document():
    doc = svc.create_document(db_session(), get_payload(), user=current_user())
    return json_success({"document_id": doc.id, "status": doc.status}, message="Document created", status=201)


@bp.post("/api/documents/<int:doc_id>/publish")
@require_permission("documentation.management.view")
@json_endpoint
def api_publish_document(doc_id: int):
    doc = svc.publish_document(db_session(), _document_or_404(doc_id), user=current_user())
    return json_success({"document_id": doc.id, "published_at": doc.published_at}, message="Document published")


@bp.post("/api/categories")
@require_permission("documentation.management.view")
@json_endpoint
def api_create_category():
    cat = svc.create_category(db_session(), get_payload(), user=current_user())
    return json_success({"category_id": cat.id, "slug": cat.slug}, status=201)


@bp.post("/api/documents/<int:doc_id>/rate")
@require_permission("documentation.view")
@json_endpoint
def api_rate_document(doc_id: int):
    doc = svc.rate_document(db_session(), _document_or_404(doc_id), get_payload().get("rating"), user=current_user())
    return json_success({"avg_rating": doc.avg_rating, "rating_count": doc.rating_count}, message="Rating saved")


@bp.post("/api/feedback")
@require_permission("documentation.view")
@json_endpoint
def api_submit_feedback():
    row = svc.submit_feedback(db_session(), get_payload(), user=current_user())
    return json_success({"feedback_id": row.id}, message="Thank you for your feedback", status=201)


@bp.post("/api/search-history")
@require_permission("documentation.search.view")
@json_endpoint
def api_track_search():
    payload = get_payload()
    row = svc.track_search(db_session(), payload.get("query"), payload.get("results_count"), user=current_user())
    return json_success({"search_id": row.id}, status=201)
