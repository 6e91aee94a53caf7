import pytest

from app.erp.db import session_scope
from app.erp.models import AuditEvent
from app.erp.modules.user_experience import service as svc
from app.erp.modules.user_experience.models import (
    HelpArticle,
    KeyboardShortcut,
    NotificationRecipient,
    Tutorial,
    TutorialStep,
    UserDashboard,
)

PAGES = (
    "/admin/ux/",
    "/admin/ux/onboarding",
    "/admin/ux/notifications",
    "/admin/ux/dashboards",
    "/admin/ux/shortcuts",
    "/admin/ux/help",
    "/admin/ux/feedback",
    "/admin/ux/engagement",
)


@pytest.fixture()
def seeded(app, ids):
    with session_scope(app) as s:
        tut = Tutorial(company_id=ids["acme"], title="Getting started", module_name="procurement")
        tut.steps = [TutorialStep(step_number=n, title=f"Step {n}") for n in (1, 2, 3)]
        sc = KeyboardShortcut(company_id=ids["acme"], shortcut_key="ctrl+k", action="search")
        other_sc = KeyboardShortcut(company_id=ids["other"], shortcut_key="ctrl+j", action="jump")
        s.add_all([tut, sc, other_sc, HelpArticle(company_id=ids["acme"], title="Raising a PO", view_count=12)])
        s.flush()
        return {"tutorial": tut.id, "shortcut": sc.id, "other_shortcut": other_sc.id}


def test_pages_render(client, seeded):
    client.post("/admin/ux/api/actions", json={"action_type": "click", "page": "/admin/procurement/"})
    client.post("/admin/ux/api/feedback", json={"title": "Dark mode", "description": "please"})
    client.post("/admin/ux/api/dashboards", json={"dashboard_name": "Mine", "widgets": [{"widget_type": "kpi"}]})
    for path in PAGES:
        r = client.get(path)
        assert r.status_code == 200, path


def test_tutorial_step_lookup(client, seeded):
    r = client.get(f"/admin/ux/api/tutorial-step?tutorial_id={seeded['tutorial']}&step=2")
    assert r.status_code == 200
    assert r.json["data"]["title"] == "Step 2"
    assert client.get(f"/admin/ux/api/tutorial-step?tutorial_id={seeded['tutorial']}&step=9").status_code == 404
    r = client.get("/admin/ux/api/tutorial-step?step=1")
    assert r.status_code == 400
    assert r.json["error"] == "Tutorial ID and step are required"


def test_tutorial_progress_completes_on_last_step(app, client, seeded, ids):
    r = client.post("/admin/ux/api/tutorial-progress", json={"tutorial_id": seeded["tutorial"], "step": 1})
    assert r.json["data"] == {"current_step": 1, "total_steps": 3, "completed": False}
    r = client.post("/admin/ux/api/tutorial-progress", json={"tutorial_id": seeded["tutorial"], "step": 3})
    assert r.json["data"]["completed"] is True
    with session_scope(app) as s:
        assert svc.dashboard_stats(s, ids["acme"], user_id=ids["admin"])["onboarding_completion_rate"] == 100.0
        rows = svc.tutorial_overview(s, ids["acme"])
        assert rows[0]["step_count"] == 3
        assert rows[0]["started"] == 1


def test_notifications_only_reach_own_company(app, client, ids):
    r = client.post(
        "/admin/ux/api/notifications",
        json={"title": "Hi", "message": "Welcome", "user_ids": [ids["admin"], ids["viewer"], ids["other_user"]]},
    )
    assert r.status_code == 201
    assert r.json["data"]["recipients"] == 2
    note_id = r.json["data"]["notification_id"]

    with session_scope(app) as s:
        assert svc.dashboard_stats(s, ids["acme"], user_id=ids["admin"])["unread_notifications"] == 1

    r = client.post(f"/admin/ux/api/notifications/{note_id}/read")
    assert r.status_code == 200
    assert r.json["data"]["read_at"]
    with session_scope(app) as s:
        statuses = {n.user_id: n.status for n in s.query(NotificationRecipient).all()}
        assert statuses == {ids["admin"]: "read", ids["viewer"]: "pending"}
        assert svc.notification_overview(s, ids["acme"])[0]["read_rate"] == 50.0


def test_notification_validation(client, ids):
    r = client.post("/admin/ux/api/notifications", json={"title": "Hi", "message": "x", "user_ids": []})
    assert r.json["error"] == "user_ids must be a non-empty list"
    r = client.post("/admin/ux/api/notifications", json={"title": "Hi", "message": "x", "user_ids": [ids["admin"]], "channels": ["pigeon"]})
    assert r.status_code == 400
    r = client.post("/admin/ux/api/notifications", json={"title": "Hi", "message": "x", "user_ids": [ids["admin"]], "priority": "meh"})
    assert r.json["error"].startswith("Invalid priority")


def test_mark_read_of_foreign_notification_is_404(client, other_client, ids):
    note_id = client.post(
        "/admin/ux/api/notifications", json={"title": "Hi", "message": "x", "user_ids": [ids["admin"]]}
    ).json["data"]["notification_id"]
    assert other_client.post(f"/admin/ux/api/notifications/{note_id}/read").status_code == 404


def test_save_dashboard_replaces_widgets(app, client, ids):
    payload = {"dashboard_name": "Ops", "is_default": True, "widgets": [{"widget_type": "kpi"}, {"widget_type": "chart"}]}
    r = client.post("/admin/ux/api/dashboards", json=payload)
    assert r.json["data"]["widgets"] == 2
    dash_id = r.json["data"]["dashboard_id"]

    r = client.post("/admin/ux/api/dashboards", json={"dashboard_name": "Ops", "widgets": [{"widget_type": "table"}]})
    assert r.json["data"] == {"dashboard_id": dash_id, "widgets": 1}
    with session_scope(app) as s:
        dash = s.get(UserDashboard, dash_id)
        assert [w.widget_type for w in dash.widgets] == ["table"]
        assert dash.is_default is False

    r = client.post("/admin/ux/api/dashboards", json={"dashboard_name": "Bad", "widgets": [{"title": "no type"}]})
    assert r.json["error"] == "Each widget needs a widget_type"


def test_shortcut_usage_counts(client, seeded):
    for expected in (1, 2):
        r = client.post(f"/admin/ux/api/shortcuts/{seeded['shortcut']}/usage")
        assert r.json["data"]["usage_count"] == expected
    r = client.post(f"/admin/ux/api/shortcuts/{seeded['other_shortcut']}/usage")
    assert r.status_code == 400
    assert r.json["error"] == "Shortcut not found"


def test_feedback_votes_once_per_user(client, viewer_client, app):
    fb_id = client.post("/admin/ux/api/feedback", json={"title": "Faster search", "description": "x", "category": "performance"}).json["data"]["feedback_id"]
    r = client.post(f"/admin/ux/api/feedback/{fb_id}/vote", json={"vote_type": "up"})
    assert r.json["data"]["votes"] == 1
    r = client.post(f"/admin/ux/api/feedback/{fb_id}/vote", json={"vote_type": "down"})
    assert r.status_code == 400
    assert r.json["error"] == "You have already voted on this feedback"
    assert client.post("/admin/ux/api/feedback/99999/vote", json={"vote_type": "up"}).status_code == 404
    r = client.post("/admin/ux/api/feedback", json={"title": "x", "description": "y", "category": "rant"})
    assert r.status_code == 400


def test_track_action_feeds_engagement(app, client, ids):
    for page in ("/a", "/a", "/b"):
        r = client.post("/admin/ux/api/actions", json={"action_type": "view", "page": page})
        assert r.status_code == 201
    assert client.post("/admin/ux/api/actions", json={"action_type": "view", "details": "nope"}).status_code == 400
    with session_scope(app) as s:
        data = svc.engagement(s, ids["acme"])
        assert data["pages"][0] == {"page": "/a", "actions": 2}
        assert sum(d["actions"] for d in data["daily"]) == 3
        assert svc.top_actions(s, ids["acme"]) == [{"action_type": "view", "count": 3}]
        assert svc.dashboard_stats(s, ids["acme"], user_id=ids["admin"])["active_users_7d"] == 1


def test_user_writes_are_audited(app, client, seeded, ids):
    client.post("/admin/ux/api/tutorial-progress", json={"tutorial_id": seeded["tutorial"], "step": 1})
    note_id = client.post(
        "/admin/ux/api/notifications", json={"title": "Hi", "message": "x", "user_ids": [ids["admin"]]}
    ).json["data"]["notification_id"]
    client.post(f"/admin/ux/api/notifications/{note_id}/read")
    client.post("/admin/ux/api/dashboards", json={"dashboard_name": "Ops", "widgets": [{"widget_type": "kpi"}]})
    client.post(f"/admin/ux/api/shortcuts/{seeded['shortcut']}/usage")
    fb_id = client.post("/admin/ux/api/feedback", json={"title": "Faster", "description": "x"}).json["data"]["feedback_id"]
    client.post(f"/admin/ux/api/feedback/{fb_id}/vote", json={"vote_type": "up"})
    client.post("/admin/ux/api/actions", json={"action_type": "view", "page": "/a"})

    with session_scope(app) as s:
        events = {e.action: e for e in s.query(AuditEvent).filter(AuditEvent.action.like("ux.%")).all()}
        assert set(events) >= {
            "ux.tutorial.progress",
            "ux.notification.read",
            "ux.dashboard.save",
            "ux.shortcut.use",
            "ux.feedback.submit",
            "ux.feedback.vote",
            "ux.action.track",
        }
        assert events["ux.notification.read"].entity_id == str(note_id)
        assert events["ux.shortcut.use"].entity_id == str(seeded["shortcut"])
        assert events["ux.feedback.vote"].entity_id == str(fb_id)
        assert all(e.actor_user_id == ids["admin"] and e.company_id == ids["acme"] for e in events.values())
