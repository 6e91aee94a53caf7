"""
User experience service layer: onboarding tutorials, in-app notifications,
personal dashboards, keyboard shortcuts, help, feedback voting and action
tracking.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.erp.api import require_fields
from app.erp.audit import record_event
from app.erp.models import User
from app.erp.querying import day_bucket, get_scoped, pct

from .models import (
    FeedbackVote,
    HelpArticle,
    KeyboardShortcut,
    Notification,
    NotificationRecipient,
    ShortcutUsage,
    Tutorial,
    TutorialStep,
    UserAction,
    UserDashboard,
    UserDashboardWidget,
    UserFeedback,
    UserTutorialProgress,
)

NOTIFICATION_TYPES = ("info", "success", "warning", "error")
NOTIFICATION_PRIORITIES = ("low", "normal", "high", "urgent")
CHANNELS = ("in_app", "email", "sms", "push")
FEEDBACK_CATEGORIES = ("general", "bug", "feature", "usability", "performance")
FEEDBACK_PRIORITIES = ("low", "medium", "high")
VOTE_TYPES = ("up", "down")


def _check_choice(value: Any, choices: tuple[str, ...], label: str) -> str:
    value = str(value or "").strip()
    if value not in choices:
        raise ValueError(f"Invalid {label}. Must be one of: {', '.join(choices)}")
    return value


def _int(value: Any, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be an integer")


# ---------- Reads / aggregates ----------


def dashboard_stats(s: Session, company_id: int, *, user_id: int) -> dict[str, Any]:
    started, completed = s.execute(
        select(
            func.count(UserTutorialProgress.id),
            func.coalesce(func.sum(case((UserTutorialProgress.completed.is_(True), 1), else_=0)), 0),
        ).where(UserTutorialProgress.company_id == company_id)
    ).one()
    unread = s.execute(
        select(func.count(NotificationRecipient.id))
        .join(Notification, Notification.id == NotificationRecipient.notification_id)
        .where(
            Notification.company_id == company_id,
            NotificationRecipient.user_id == user_id,
            NotificationRecipient.status != "read",
        )
    ).scalar_one()
    since = datetime.utcnow() - timedelta(days=7)
    active_users = s.execute(
        select(func.count(func.distinct(UserAction.user_id))).where(
            UserAction.company_id == company_id, UserAction.created_at >= since
        )
    ).scalar_one()
    open_feedback = s.execute(
        select(func.count(UserFeedback.id)).where(UserFeedback.company_id == company_id, UserFeedback.status == "open")
    ).scalar_one()
    return {
        "onboarding_completion_rate": pct(completed, started),
        "unread_notifications": unread,
        "active_users_7d": active_users,
        "open_feedback": open_feedback,
    }


def top_actions(s: Session, company_id: int, limit: int = 10) -> list[dict[str, Any]]:
    rows = s.execute(
        select(UserAction.action_type, func.count(UserAction.id))
        .where(UserAction.company_id == company_id)
        .group_by(UserAction.action_type)
        .order_by(func.count(UserAction.id).desc(), UserAction.action_type)
        .limit(limit)
    ).all()
    return [{"action_type": a, "count": n} for a, n in rows]


def tutorial_overview(s: Session, company_id: int) -> list[dict[str, Any]]:
    steps = dict(
        s.execute(
            select(TutorialStep.tutorial_id, func.count(TutorialStep.id))
            .join(Tutorial, Tutorial.id == TutorialStep.tutorial_id)
            .where(Tutorial.company_id == company_id)
            .group_by(TutorialStep.tutorial_id)
        ).all()
    )
    progress = {
        tid: (n, done)
        for tid, n, done in s.execute(
            select(
                UserTutorialProgress.tutorial_id,
                func.count(UserTutorialProgress.id),
                func.coalesce(func.sum(case((UserTutorialProgress.completed.is_(True), 1), else_=0)), 0),
            )
            .where(UserTutorialProgress.company_id == company_id)
            .group_by(UserTutorialProgress.tutorial_id)
        ).all()
    }
    tutorials = (
        s.query(Tutorial)
        .filter(Tutorial.company_id == company_id, Tutorial.is_active.is_(True))
        .order_by(Tutorial.title.asc())
        .all()
    )
    out = []
    for t in tutorials:
        started, done = progress.get(t.id, (0, 0))
        out.append(
            {
                "id": t.id,
                "title": t.title,
                "module_name": t.module_name,
                "step_count": steps.get(t.id, 0),
                "started": started,
                "completed": done,
                "completion_rate": pct(done, started),
            }
        )
    return out


def notification_overview(s: Session, company_id: int, limit: int = 50) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            Notification,
            func.count(NotificationRecipient.id),
            func.coalesce(func.sum(case((NotificationRecipient.status == "read", 1), else_=0)), 0),
        )
        .outerjoin(NotificationRecipient, NotificationRecipient.notification_id == Notification.id)
        .where(Notification.company_id == company_id)
        .group_by(Notification.id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    ).all()
    return [
        {
            "id": n.id,
            "title": n.title,
            "notification_type": n.notification_type,
            "priority": n.priority,
            "status": n.status,
            "recipients": total,
            "read": read,
            "read_rate": pct(read, total),
            "created_at": n.created_at,
        }
        for n, total, read in rows
    ]


def user_dashboards(s: Session, user_id: int) -> list[UserDashboard]:
    return (
        s.query(UserDashboard)
        .filter(UserDashboard.user_id == user_id)
        .order_by(UserDashboard.is_default.desc(), UserDashboard.dashboard_name.asc())
        .all()
    )


def shortcuts_with_usage(s: Session, company_id: int, user_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(KeyboardShortcut, ShortcutUsage.usage_count, ShortcutUsage.last_used_at)
        .outerjoin(
            ShortcutUsage,
            (ShortcutUsage.shortcut_id == KeyboardShortcut.id) & (ShortcutUsage.user_id == user_id),
        )
        .where(KeyboardShortcut.company_id == company_id, KeyboardShortcut.is_active.is_(True))
        .order_by(KeyboardShortcut.shortcut_key.asc())
    ).all()
    return [
        {
            "id": sc.id,
            "shortcut_key": sc.shortcut_key,
            "action": sc.action,
            "description": sc.description,
            "usage_count": count or 0,
            "last_used_at": last,
        }
        for sc, count, last in rows
    ]


def popular_help_articles(s: Session, company_id: int, limit: int = 20) -> list[HelpArticle]:
    return (
        s.query(HelpArticle)
        .filter(HelpArticle.company_id == company_id, HelpArticle.is_published.is_(True))
        .order_by(HelpArticle.view_count.desc(), HelpArticle.id.asc())
        .limit(limit)
        .all()
    )


def feedback_by_votes(s: Session, company_id: int, limit: int = 50) -> list[UserFeedback]:
    return (
        s.query(UserFeedback)
        .filter(UserFeedback.company_id == company_id)
        .order_by(UserFeedback.votes.desc(), UserFeedback.created_at.desc())
        .limit(limit)
        .all()
    )


def engagement(s: Session, company_id: int, *, days: int = 30) -> dict[str, Any]:
    since = datetime.utcnow() - timedelta(days=days)
    bucket = day_bucket(s, UserAction.created_at)
    daily = s.execute(
        select(bucket, func.count(func.distinct(UserAction.user_id)), func.count(UserAction.id))
        .where(UserAction.company_id == company_id, UserAction.created_at >= since)
        .group_by(bucket)
        .order_by(bucket)
    ).all()
    pages = s.execute(
        select(UserAction.page, func.count(UserAction.id))
        .where(UserAction.company_id == company_id, UserAction.created_at >= since)
        .group_by(UserAction.page)
        .order_by(func.count(UserAction.id).desc())
    ).all()
    return {
        "daily": [{"day": d, "active_users": u, "actions": n} for d, u, n in daily],
        "pages": [{"page": p or "(none)", "actions": n} for p, n in pages],
    }


# ---------- Tutorials ----------


def get_tutorial_step(s: Session, company_id: int, tutorial_id: Any, step: Any) -> TutorialStep | None:
    tutorial = get_scoped(s, Tutorial, tutorial_id, company_id)
    if tutorial is None:
        return None
    return (
        s.query(TutorialStep)
        .filter(TutorialStep.tutorial_id == tutorial.id, TutorialStep.step_number == _int(step, "step"))
        .one_or_none()
    )


def update_tutorial_progress(s: Session, payload: dict, *, user: User) -> UserTutorialProgress:
    require_fields(payload, ("tutorial_id", "step"))
    tutorial = get_scoped(s, Tutorial, payload["tutorial_id"], user.company_id)
    if tutorial is None:
        raise ValueError("Tutorial not found")
    step = _int(payload["step"], "step")
    total = s.execute(select(func.count(TutorialStep.id)).where(TutorialStep.tutorial_id == tutorial.id)).scalar_one()

    row = (
        s.query(UserTutorialProgress)
        .filter(UserTutorialProgress.user_id == user.id, UserTutorialProgress.tutorial_id == tutorial.id)
        .one_or_none()
    )
    if row is None:
        row = UserTutorialProgress(company_id=user.company_id, user_id=user.id, tutorial_id=tutorial.id)
        s.add(row)
    row.current_step = step
    row.total_steps = total
    row.completed = step >= total
    row.completed_at = datetime.utcnow() if row.completed else None
    s.flush()
    record_event(
        s,
        actor=user,
        action="ux.tutorial.progress",
        entity_type="Tutorial",
        entity_id=str(tutorial.id),
        metadata={"step": step, "completed": row.completed},
    )
    return row


# ---------- Notifications ----------


def send_notification(s: Session, payload: dict, *, user: User) -> Notification:
    require_fields(payload, ("title", "message"))
    user_ids = payload.get("user_ids")
    if not isinstance(user_ids, list) or not user_ids:
        raise ValueError("user_ids must be a non-empty list")
    channels = payload.get("channels") or ["in_app"]
    if not isinstance(channels, list) or any(c not in CHANNELS for c in channels):
        raise ValueError(f"Invalid channels. Must be a list drawn from: {', '.join(CHANNELS)}")

    ids = {_int(u, "user_ids") for u in user_ids}
    recipients = [
        uid
        for (uid,) in s.query(User.id).filter(User.company_id == user.company_id, User.id.in_(ids)).order_by(User.id)
    ]

    note = Notification(
        company_id=user.company_id,
        title=str(payload["title"]).strip(),
        message=str(payload["message"]),
        notification_type=_check_choice(payload.get("notification_type") or "info", NOTIFICATION_TYPES, "notification_type"),
        priority=_check_choice(payload.get("priority") or "normal", NOTIFICATION_PRIORITIES, "priority"),
        channels=channels,
        status="queued",
        sent_by_user_id=user.id,
    )
    note.recipients = [NotificationRecipient(user_id=uid, status="pending") for uid in recipients]
    s.add(note)
    s.flush()
    record_event(
        s,
        actor=user,
        action="ux.notification.send",
        entity_type="Notification",
        entity_id=str(note.id),
        metadata={"recipients": len(recipients)},
    )
    return note


def mark_notification_read(s: Session, notification_id: Any, *, user: User) -> NotificationRecipient | None:
    row = (
        s.query(NotificationRecipient)
        .join(Notification, Notification.id == NotificationRecipient.notification_id)
        .filter(
            Notification.company_id == user.company_id,
            NotificationRecipient.notification_id == _int(notification_id, "notification_id"),
            NotificationRecipient.user_id == user.id,
        )
        .one_or_none()
    )
    if row is None:
        return None
    if row.status != "read":
        row.status = "read"
        row.read_at = datetime.utcnow()
    s.flush()
    record_event(s, actor=user, action="ux.notification.read", entity_type="Notification", entity_id=str(row.notification_id))
    return row


# ---------- Dashboards / shortcuts ----------


def save_dashboard(s: Session, payload: dict, *, user: User) -> UserDashboard:
    require_fields(payload, ("dashboard_name",))
    widgets = payload.get("widgets") or []
    if not isinstance(widgets, list):
        raise ValueError("widgets must be a list")
    for w in widgets:
        if not isinstance(w, dict) or not w.get("widget_type"):
            raise ValueError("Each widget needs a widget_type")
    layout = payload.get("layout")
    if layout is not None and not isinstance(layout, dict):
        raise ValueError("layout must be an object")

    name = str(payload["dashboard_name"]).strip()
    now = datetime.utcnow()
    dash = (
        s.query(UserDashboard)
        .filter(UserDashboard.user_id == user.id, UserDashboard.dashboard_name == name)
        .one_or_none()
    )
    if dash is None:
        dash = UserDashboard(company_id=user.company_id, user_id=user.id, dashboard_name=name, created_at=now)
        s.add(dash)
    dash.layout = layout
    dash.is_default = bool(payload.get("is_default"))
    dash.updated_at = now
    dash.widgets.clear()
    s.flush()
    dash.widgets.extend(
        UserDashboardWidget(
            widget_type=str(w["widget_type"]),
            title=w.get("title"),
            config=w.get("config"),
            position=int(w.get("position") if w.get("position") is not None else i),
        )
        for i, w in enumerate(widgets)
    )
    s.flush()
    record_event(
        s,
        actor=user,
        action="ux.dashboard.save",
        entity_type="UserDashboard",
        entity_id=str(dash.id),
        metadata={"widgets": len(widgets)},
    )
    return dash


def update_shortcut_usage(s: Session, shortcut_id: Any, *, user: User) -> ShortcutUsage:
    shortcut = get_scoped(s, KeyboardShortcut, shortcut_id, user.company_id)
    if shortcut is None:
        raise ValueError("Shortcut not found")
    row = (
        s.query(ShortcutUsage)
        .filter(ShortcutUsage.user_id == user.id, ShortcutUsage.shortcut_id == shortcut.id)
        .one_or_none()
    )
    if row is None:
        row = ShortcutUsage(user_id=user.id, shortcut_id=shortcut.id, usage_count=0)
        s.add(row)
    row.usage_count = (row.usage_count or 0) + 1
    row.last_used_at = datetime.utcnow()
    s.flush()
    record_event(s, actor=user, action="ux.shortcut.use", entity_type="KeyboardShortcut", entity_id=str(shortcut.id))
    return row


# ---------- Feedback / tracking ----------


def submit_feedback(s: Session, payload: dict, *, user: User) -> UserFeedback:
    require_fields(payload, ("title", "description"))
    row = UserFeedback(
        company_id=user.company_id,
        user_id=user.id,
        title=str(payload["title"]).strip(),
        description=str(payload["description"]),
        category=_check_choice(payload.get("category") or "general", FEEDBACK_CATEGORIES, "category"),
        priority=_check_choice(payload.get("priority") or "medium", FEEDBACK_PRIORITIES, "priority"),
        status="open",
        votes=0,
    )
    s.add(row)
    s.flush()
    record_event(s, actor=user, action="ux.feedback.submit", entity_type="UserFeedback", entity_id=str(row.id))
    return row


def vote_feedback(s: Session, feedback: UserFeedback, vote_type: Any, *, user: User) -> UserFeedback:
    vote_type = _check_choice(vote_type, VOTE_TYPES, "vote_type")
    existing = (
        s.query(FeedbackVote.id)
        .filter(FeedbackVote.feedback_id == feedback.id, FeedbackVote.user_id == user.id)
        .first()
    )
    if existing is not None:
        raise ValueError("You have already voted on this feedback")
    s.add(FeedbackVote(feedback_id=feedback.id, user_id=user.id, vote_type=vote_type))
    feedback.votes = (feedback.votes or 0) + (1 if vote_type == "up" else -1)
    s.flush()
    record_event(
        s,
        actor=user,
        action="ux.feedback.vote",
        entity_type="UserFeedback",
        entity_id=str(feedback.id),
        metadata={"vote_type": vote_type},
    )
    return feedback


def track_user_action(s: Session, payload: dict, *, user: User) -> UserAction:
    require_fields(payload, ("action_type",))
    details = payload.get("details")
    if details is not None and not isinstance(details, dict):
        raise ValueError("details must be an object")
    row = UserAction(
        company_id=user.company_id,
        user_id=user.id,
        action_type=str(payload["action_type"]).strip()[:64],
        page=payload.get("page"),
        element=payload.get("element"),
        details=details,
    )
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=user,
        action="ux.action.track",
        entity_type="UserAction",
        entity_id=str(row.id),
        metadata={"action_type": row.action_type},
    )
    return row
