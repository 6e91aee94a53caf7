from __future__ import annotations

from flask import Blueprint, request

from app.erp.api import ApiError, NotFound, get_payload, json_endpoint, json_success, model_to_dict
from app.erp.db import db_session
from app.erp.modules.user_experience import service as svc
from app.erp.modules.user_experience.models import UserFeedback
from app.erp.pages import render_module_page, stat_list, table
from app.erp.querying import get_scoped
from app.erp.rbac import require_permission
from app.erp.tenancy import current_company_id, current_user

bp = Blueprint("user_experience", __name__)

SUBNAV = [
    ("Dashboard", "user_experience.index", "ux.view"),
    ("Onboarding", "user_experience.onboarding", "ux.onboarding.view"),
    ("Notifications", "user_experience.notifications", "ux.notifications.view"),
    ("Dashboards", "user_experience.dashboards", "ux.dashboards.view"),
    ("Shortcuts", "user_experience.shortcuts", "ux.shortcuts.view"),
    ("Help", "user_experience.help_center", "ux.help.view"),
    ("Feedback", "user_experience.feedback", "ux.feedback.view"),
    ("Engagement", "user_experience.engagement", "ux.engagement.view"),
]


# ---------- Pages ----------


@bp.get("/")
@require_permission("ux.view")
def index():
    s = db_session()
    cid = current_company_id()
    stats = svc.dashboard_stats(s, cid, user_id=current_user().id)
    return render_module_page(
        "user_experience",
        page_title="User experience",
        subnav=SUBNAV,
        stats=stat_list(
            {
                "Onboarding completion %": stats["onboarding_completion_rate"],
                "Unread notifications": stats["unread_notifications"],
                "Active users (7d)": stats["active_users_7d"],
                "Open feedback": stats["open_feedback"],
            }
        ),
        tables=[table("Top actions", [("action_type", "Action"), ("count", "Count")], svc.top_actions(s, cid))],
    )


@bp.get("/onboarding")
@require_permission("ux.onboarding.view")
def onboarding():
    rows = svc.tutorial_overview(db_session(), current_company_id())
    return render_module_page(
        "user_experience",
        page_title="Onboarding",
        subnav=SUBNAV,
        tables=[
            table(
                "Tutorials",
                [("title", "Tutorial"), ("module_name", "Module"), ("step_count", "Steps"), ("started", "Started"), ("completed", "Completed"), ("completion_rate", "Completion %")],
                rows,
            )
        ],
    )


@bp.get("/notifications")
@require_permission("ux.notifications.view")
def notifications():
    rows = svc.notification_overview(db_session(), current_company_id())
    return render_module_page(
        "user_experience",
        page_title="Notifications",
        subnav=SUBNAV,
        tables=[
            table(
                "Recent notifications",
                [("created_at", "Sent"), ("title", "Title"), ("notification_type", "Type"), ("priority", "Priority"), ("recipients", "Recipients"), ("read_rate", "Read %")],
                rows,
            )
        ],
    )


@bp.get("/dashboards")
@require_permission("ux.dashboards.view")
def dashboards():
    rows = svc.user_dashboards(db_session(), current_user().id)
    return render_module_page(
        "user_experience",
        page_title="My dashboards",
        subnav=SUBNAV,
        tables=[
            table(
                "Dashboards",
                [("dashboard_name", "Name"), ("is_default", "Default"), ("widget_count", "Widgets"), ("updated_at", "Updated")],
                [{**model_to_dict(d), "widget_count": len(d.widgets)} for d in rows],
            )
        ],
    )


@bp.get("/shortcuts")
@require_permission("ux.shortcuts.view")
def shortcuts():
    rows = svc.shortcuts_with_usage(db_session(), current_company_id(), current_user().id)
    return render_module_page(
        "user_experience",
        page_title="Keyboard shortcuts",
        subnav=SUBNAV,
        tables=[
            table(
                "Shortcuts",
                [("shortcut_key", "Key"), ("action", "Action"), ("description", "Description"), ("usage_count", "My uses"), ("last_used_at", "Last used")],
                rows,
            )
        ],
    )


@bp.get("/help")
@require_permission("ux.help.view")
def help_center():
    rows = svc.popular_help_articles(db_session(), current_company_id())
    return render_module_page(
        "user_experience",
        page_title="Help center",
        subnav=SUBNAV,
        tables=[
            table(
                "Popular articles",
                [("title", "Article"), ("category", "Category"), ("view_count", "Views"), ("helpful_count", "Helpful")],
                rows,
            )
        ],
    )


@bp.get("/feedback")
@require_permission("ux.feedback.view")
def feedback():
    rows = svc.feedback_by_votes(db_session(), current_company_id())
    return render_module_page(
        "user_experience",
        page_title="User feedback",
        subnav=SUBNAV,
        tables=[
            table(
                "Feedback",
                [("title", "Title"), ("category", "Category"), ("priority", "Priority"), ("status", "Status"), ("votes", "Votes"), ("created_at", "Submitted")],
                rows,
            )
        ],
    )


@bp.get("/engagement")
@require_permission("ux.engagement.view")
def engagement():
    data = svc.engagement(db_session(), current_company_id())
    return render_module_page(
        "user_experience",
        page_title="Engagement",
        subnav=SUBNAV,
        tables=[
            table("Daily active users (30d)", [("day", "Day"), ("active_users", "Users"), ("actions", "Actions")], data["daily"]),
            table("Actions by page", [("page", "Page"), ("actions", "Actions")], data["pages"]),
        ],
    )


# ---------- JSON API ----------


@bp.get("/api/tutorial-step")
@require_permission("ux.onboarding.view")
@json_endpoint
def api_get_tutorial_step():
    tutorial_id = request.args.get("tutorial_id")
    step = request.args.get("step")
    if not tutorial_id or step in (None, ""):
        raise ApiError("Tutorial ID and step are required", 400)
    row = svc.get_tutorial_step(db_session(), current_company_id(), tutorial_id, step)
    if row is None:
        raise NotFound("Tutorial step not found")
    return json_success(model_to_dict(row))


@bp.post("/api/tutorial-progress")
@require_permission("ux.onboarding.view")
@json_endpoint
def api_update_tutorial_progress():
    row = svc.update_tutorial_progress(db_session(), get_payload(), user=current_user())
    return json_success(
        {"current_step": row.current_step, "total_steps": row.total_steps, "completed": row.completed},
        message="Progress updated",
    )


@bp.post("/api/notifications")
@require_permission("ux.notifications.send")
@json_endpoint
def api_send_notification():
    note = svc.send_notification(db_session(), get_payload(), user=current_user())
    return json_success(
        {"notification_id": note.id, "recipients": len(note.recipients)}, message="Notification queued", status=201
    )


@bp.post("/api/notifications/<int:notification_id>/read")
@require_permission("ux.notifications.view")
@json_endpoint
def api_mark_notification_read(notification_id: int):
    row = svc.mark_notification_read(db_session(), notification_id, user=current_user())
    if row is None:
        raise NotFound("Notification not found")
    return json_success({"notification_id": notification_id, "read_at": row.read_at})


@bp.post("/api/dashboards")
@require_permission("ux.dashboards.view")
@json_endpoint
def api_save_dashboard():
    dash = svc.save_dashboard(db_session(), get_payload(), user=current_user())
    return json_success({"dashboard_id": dash.id, "widgets": len(dash.widgets)}, message="Dashboard saved")


@bp.post("/api/feedback")
@require_permission("ux.feedback.view")
@json_endpoint
def api_submit_feedback():
    row = svc.submit_feedback(db_session(), get_payload(), user=current_user())
    return json_success({"feedback_id": row.id}, message="Thank you for your feedback", status=201)


@bp.post("/api/feedback/<int:feedback_id>/vote")
@require_permission("ux.feedback.view")
@json_endpoint
def api_vote_feedback(feedback_id: int):
    s = db_session()
    fb = get_scoped(s, UserFeedback, feedback_id, current_company_id())
    if fb is None:
        raise NotFound("Feedback not found")
    svc.vote_feedback(s, fb, get_payload().get("vote_type"), user=current_user())
    return json_success({"feedback_id": fb.id, "votes": fb.votes}, message="Vote recorded")


@bp.post("/api/shortcuts/<int:shortcut_id>/usage")
@require_permission("ux.shortcuts.view")
@json_endpoint
def api_update_shortcut_usage(shortcut_id: int):
    row = svc.update_shortcut_usage(db_session(), shortcut_id, user=current_user())
    return json_success({"shortcut_id": shortcut_id, "usage_count": row.usage_count})


@bp.post("/api/actions")
@require_permission("ux.view")
@json_endpoint
def api_track_action():
    row = svc.track_user_action(db_session(), get_payload(), user=current_user())
    return json_success({"action_id": row.id}, status=201)
