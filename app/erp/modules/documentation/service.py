"""
Documentation service layer: manuals and guides, search with history, ratings
and reader feedback.
"""
from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from app.erp.api import require_fields
from app.erp.audit import record_event
from app.erp.querying import get_scoped, pct

from .models import DocCategory, Document, DocumentRating, DocSearchHistory, ManualFeedback

if TYPE_CHECKING:
    from app.erp.models import User

DOC_TYPES = ("user_manual", "api", "installation", "developer", "video", "faq")
DOC_STATUSES = ("draft", "published")
FEEDBACK_TYPES = ("general", "error", "suggestion", "unclear", "outdated")

SEARCH_LIMIT = 50
SUGGESTION_LIMIT = 5
SUGGESTION_MIN_QUERY = 3


def _check_choice(value: Any, choices: tuple[str, ...], label: str) -> str:
    value = str(value or "").strip()
    if value not in choices:
        raise ValueError(f"Invalid {label}. Must be one of: {', '.join(choices)}")
    return value


# ---------- Reads / aggregates ----------


def dashboard_stats(s: Session, company_id: int) -> dict[str, Any]:
    by_type = dict(
        s.execute(
            select(Document.doc_type, func.count(Document.id))
            .where(Document.company_id == company_id, Document.status == "published")
            .group_by(Document.doc_type)
        ).all()
    )
    views, avg_rating = s.execute(
        select(
            func.coalesce(func.sum(Document.view_count), 0),
            func.avg(case((Document.rating_count > 0, Document.avg_rating), else_=None)),
        ).where(Document.company_id == company_id, Document.status == "published")
    ).one()
    return {
        "by_type": by_type,
        "total_documents": sum(by_type.values()),
        "total_views": views,
        "avg_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
    }


def _published(s: Session, company_id: int):
    return s.query(Document).filter(Document.company_id == company_id, Document.status == "published")


def recent_documents(s: Session, company_id: int, limit: int = 5) -> list[Document]:
    return _published(s, company_id).order_by(Document.updated_at.desc(), Document.id.desc()).limit(limit).all()


def popular_documents(s: Session, company_id: int, limit: int = 5) -> list[Document]:
    return _published(s, company_id).order_by(Document.view_count.desc(), Document.id.desc()).limit(limit).all()


def documents_of_type(s: Session, company_id: int, doc_type: str) -> list[Document]:
    return (
        _published(s, company_id)
        .filter(Document.doc_type == doc_type)
        .order_by(Document.title.asc(), Document.id.asc())
        .all()
    )


def list_categories(s: Session, company_id: int) -> list[DocCategory]:
    return (
        s.query(DocCategory)
        .filter(DocCategory.company_id == company_id)
        .order_by(DocCategory.sort_order.asc(), DocCategory.name.asc())
        .all()
    )


def all_documents(s: Session, company_id: int) -> list[Document]:
    return (
        s.query(Document)
        .filter(Document.company_id == company_id)
        .order_by(Document.updated_at.desc(), Document.id.desc())
        .all()
    )


def recent_feedback(s: Session, company_id: int, limit: int = 20) -> list[ManualFeedback]:
    return (
        s.query(ManualFeedback)
        .filter(ManualFeedback.company_id == company_id)
        .order_by(ManualFeedback.created_at.desc(), ManualFeedback.id.desc())
        .limit(limit)
        .all()
    )


def search_analytics(s: Session, company_id: int, limit: int = 10) -> dict[str, Any]:
    scope = DocSearchHistory.company_id == company_id
    total, unique, with_results = s.execute(
        select(
            func.count(DocSearchHistory.id),
            func.count(func.distinct(func.lower(DocSearchHistory.query))),
            func.coalesce(func.sum(case((DocSearchHistory.results_count > 0, 1), else_=0)), 0),
        ).where(scope)
    ).one()
    q = func.lower(DocSearchHistory.query)
    top = s.execute(
        select(q, func.count(DocSearchHistory.id)).where(scope).group_by(q).order_by(func.count(DocSearchHistory.id).desc(), q).limit(limit)
    ).all()
    zero = s.execute(
        select(q, func.count(DocSearchHistory.id))
        .where(scope, DocSearchHistory.results_count == 0)
        .group_by(q)
        .order_by(func.count(DocSearchHistory.id).desc(), q)
        .limit(limit)
    ).all()
    return {
        "total_searches": total,
        "unique_queries": unique,
        "success_rate": pct(with_results, total),
        "top_queries": [{"query": t, "searches": n} for t, n in top],
        "zero_result_queries": [{"query": t, "searches": n} for t, n in zero],
    }


# ---------- Search ----------


def perform_search(
    s: Session, company_id: int, query: str | None, *, category: Any = None, doc_type: Any = None
) -> dict[str, Any]:
    term = (query or "").strip()
    q = _published(s, company_id)
    if term:
        like = f"%{term}%"
        q = q.filter(or_(Document.title.ilike(like), Document.description.ilike(like), Document.content.ilike(like)))
    if category not in (None, "", "all"):
        cat = str(category)
        q = q.outerjoin(DocCategory, DocCategory.id == Document.category_id).filter(
            or_(DocCategory.slug == cat, DocCategory.id == (int(cat) if cat.isdigit() else -1))
        )
    if doc_type not in (None, "", "all"):
        q = q.filter(Document.doc_type == str(doc_type))
    results = q.order_by(Document.view_count.desc(), Document.id.desc()).limit(SEARCH_LIMIT).all()

    return {
        "query": term,
        "results": results,
        "total": len(results),
        "suggestions": search_suggestions(s, company_id, term),
    }


def search_suggestions(s: Session, company_id: int, term: str) -> list[str]:
    if len(term) < SUGGESTION_MIN_QUERY:
        return []
    prefix = [
        t
        for (t,) in _published(s, company_id)
        .with_entities(Document.title)
        .filter(Document.title.ilike(f"{term}%"))
        .order_by(Document.view_count.desc(), Document.title)
        .limit(SUGGESTION_LIMIT)
    ]
    if len(prefix) < SUGGESTION_LIMIT:
        more = (
            _published(s, company_id)
            .with_entities(Document.title)
            .filter(Document.title.ilike(f"%{term}%"))
            .order_by(Document.view_count.desc(), Document.title)
            .limit(SUGGESTION_LIMIT * 2)
        )
        for (t,) in more:
            if t not in prefix:
                prefix.append(t)
            if len(prefix) >= SUGGESTION_LIMIT:
                break
    return prefix


def track_search(s: Session, query: Any, results_count: Any, *, user: User) -> DocSearchHistory:
    term = str(query or "").strip()
    if not term:
        raise ValueError("Field 'query' is required")
    try:
        count = max(int(results_count or 0), 0)
    except (TypeError, ValueError):
        raise ValueError("results_count must be an integer")
    row = DocSearchHistory(company_id=user.company_id, user_id=user.id, query=term[:255], results_count=count)
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=user,
        action="documentation.search.track",
        entity_type="DocSearchHistory",
        entity_id=str(row.id),
        metadata={"query": row.query, "results_count": count},
    )
    return row


# ---------- Documents ----------


def get_document(s: Session, doc_id: Any, company_id: int) -> Document | None:
    """Fetch a document for reading and count the view."""
    doc = get_scoped(s, Document, doc_id, company_id)
    if doc is None:
        return None
    doc.view_count = (doc.view_count or 0) + 1
    s.flush()
    return doc


def create_document(s: Session, payload: dict, *, user: User) -> Document:
    require_fields(payload, ("title", "doc_type"))
    doc_type = _check_choice(payload.get("doc_type"), DOC_TYPES, "doc_type")
    status = _check_choice(payload.get("status") or "draft", DOC_STATUSES, "status")

    category_id = payload.get("category_id")
    if category_id not in (None, ""):
        cat = get_scoped(s, DocCategory, category_id, user.company_id)
        if cat is None:
            raise ValueError("Category not found")
        category_id = cat.id
    else:
        category_id = None

    duration = payload.get("duration_seconds")
    if duration not in (None, ""):
        try:
            duration = int(duration)
        except (TypeError, ValueError):
            raise ValueError("duration_seconds must be an integer")
    else:
        duration = None

    now = datetime.utcnow()
    doc = Document(
        company_id=user.company_id,
        category_id=category_id,
        title=str(payload["title"]).strip(),
        description=payload.get("description"),
        content=payload.get("content"),
        doc_type=doc_type,
        version=str(payload.get("version") or "1.0"),
        status=status,
        video_url=payload.get("video_url"),
        duration_seconds=duration,
        author_user_id=user.id,
        created_at=now,
        updated_at=now,
        published_at=now if status == "published" else None,
    )
    s.add(doc)
    s.flush()
    record_event(
        s,
        actor=user,
        action="documentation.document.create",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"doc_type": doc_type, "status": status},
    )
    return doc


def publish_document(s: Session, doc: Document, *, user: User) -> Document:
    if doc.status == "published":
        raise ValueError("Document is already published")
    now = datetime.utcnow()
    doc.status = "published"
    doc.published_at = now
    doc.updated_at = now
    record_event(s, actor=user, action="documentation.document.publish", entity_type="Document", entity_id=str(doc.id))
    return doc


def create_category(s: Session, payload: dict, *, user: User) -> DocCategory:
    require_fields(payload, ("name",))
    name = str(payload["name"]).strip()
    slug = str(payload.get("slug") or name).strip().lower().replace(" ", "-")
    cat = DocCategory(company_id=user.company_id, name=name, slug=slug, sort_order=int(payload.get("sort_order") or 0))
    s.add(cat)
    s.flush()
    record_event(s, actor=user, action="documentation.category.create", entity_type="DocCategory", entity_id=str(cat.id))
    return cat


def rate_document(s: Session, doc: Document, rating: Any, *, user: User) -> Document:
    if isinstance(rating, bool):
        raise ValueError("Rating must be an integer between 1 and 5")
    try:
        value = int(rating)
    except (TypeError, ValueError):
        raise ValueError("Rating must be an integer between 1 and 5")
    if str(rating).strip() != str(value) or not 1 <= value <= 5:
        raise ValueError("Rating must be an integer between 1 and 5")

    now = datetime.utcnow()
    row = (
        s.query(DocumentRating)
        .filter(DocumentRating.document_id == doc.id, DocumentRating.user_id == user.id)
        .one_or_none()
    )
    if row is None:
        s.add(DocumentRating(document_id=doc.id, user_id=user.id, rating=value, created_at=now, updated_at=now))
    else:
        row.rating = value
        row.updated_at = now
    s.flush()

    avg, count = s.execute(
        select(func.avg(DocumentRating.rating), func.count(DocumentRating.id)).where(DocumentRating.document_id == doc.id)
    ).one()
    doc.avg_rating = Decimal(str(avg or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    doc.rating_count = count
    record_event(
        s,
        actor=user,
        action="documentation.document.rate",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={"rating": value},
    )
    return doc


def submit_feedback(s: Session, payload: dict, *, user: User) -> ManualFeedback:
    require_fields(payload, ("document_id", "message"))
    doc = get_scoped(s, Document, payload["document_id"], user.company_id)
    if doc is None:
        raise ValueError("Document not found")
    row = ManualFeedback(
        company_id=user.company_id,
        document_id=doc.id,
        user_id=user.id,
        feedback_type=_check_choice(payload.get("feedback_type") or "general", FEEDBACK_TYPES, "feedback_type"),
        message=str(payload["message"]).strip(),
    )
    s.add(row)
    s.flush()
    record_event(s, actor=user, action="documentation.feedback.submit", entity_type="ManualFeedback", entity_id=str(row.id))
    return row
