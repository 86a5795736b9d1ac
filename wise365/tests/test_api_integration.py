"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database seeded with the default catalog.
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from wise365.analyzer import LLMCallError
from wise365.db import seed_defaults
from wise365.models import Base

MSW = "Marketing Success Wheel"


@pytest.fixture()
def test_db():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with TestSession() as session:
        seed_defaults(session)
    return engine, TestSession


@pytest.fixture()
def client(test_db):
    engine, TestSession = test_db
    from wise365.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    # keep the lifespan from opening the on-disk database
    with patch("wise365.app.init_db"):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def tenant_id(client):
    resp = client.post("/api/tenants", json={"name": "Acme Holdings"})
    assert resp.status_code == 201
    return resp.json()["id"]


@pytest.fixture()
def user_id(client, tenant_id):
    resp = client.post(f"/api/tenants/{tenant_id}/users", json={
        "email": "owner@acme.test", "display_name": "Owner", "team_id": "sales",
    })
    assert resp.status_code == 201
    return resp.json()["id"]


def onboard(client, user_id):
    client.put(f"/api/users/{user_id}/profile", json={"updates": {
        "basicInfo": {"website": "https://acme.test"},
        "websiteInsights": {"title": "Acme"},
        "reportedChallenges": ["Low visibility"],
    }})
    client.post(f"/api/users/{user_id}/submissions", json={
        "template_name": MSW, "answers": {"Awareness Grade": "C"},
    })
    for conv in ("basicInfoConversation", "websiteInsightsConversation"):
        client.post(f"/api/users/{user_id}/messages", json={
            "conversation_name": conv, "content": "Completed", "sender": "Shawn",
        })


# ---------------------------------------------------------------------------
# Tenants & users
# ---------------------------------------------------------------------------


class TestTenants:
    def test_create_and_list(self, client, tenant_id):
        tenants = client.get("/api/tenants").json()
        assert tenants == [{"id": tenant_id, "name": "Acme Holdings", "slug": "acme-holdings", "user_count": 0}]

    def test_duplicate_name(self, client, tenant_id):
        resp = client.post("/api/tenants", json={"name": "Acme Holdings"})
        assert resp.status_code == 409

    def test_blank_name_rejected(self, client):
        assert client.post("/api/tenants", json={"name": "  "}).status_code == 422
        assert client.post("/api/tenants", json={"name": "X", "slug": "Bad Slug"}).status_code == 422

    def test_user_created_with_onboarding(self, client, tenant_id, user_id):
        users = client.get(f"/api/tenants/{tenant_id}/users").json()
        assert [u["email"] for u in users] == ["owner@acme.test"]
        progress = client.get(f"/api/users/{user_id}/progress").json()
        assert [p["funnel_name"] for p in progress] == ["Onboarding Funnel"]
        assert progress[0]["status"] == "in_progress"

    def test_unknown_user(self, client):
        assert client.get("/api/users/999").status_code == 404
        assert client.get("/api/users/999/funnels").status_code == 404

    def test_unknown_tenant(self, client):
        resp = client.post("/api/tenants/999/users", json={"email": "x@y.test"})
        assert resp.status_code == 404

    def test_profile_merge(self, client, user_id):
        client.put(f"/api/users/{user_id}/profile", json={"updates": {"basicInfo": {"name": "Acme", "city": "Oslo"}}})
        resp = client.put(f"/api/users/{user_id}/profile", json={"updates": {"basicInfo": {"city": None}}})
        assert resp.status_code == 200
        assert resp.json()["profile"] == {"basicInfo": {"name": "Acme"}}


# ---------------------------------------------------------------------------
# Funnels & milestones
# ---------------------------------------------------------------------------


class TestFunnels:
    def test_catalog(self, client):
        funnels = client.get("/api/funnels").json()
        assert len(funnels) == 6
        assert funnels[0]["name"] == "Onboarding Funnel"

    def test_new_user_board(self, client, user_id):
        board = client.get(f"/api/users/{user_id}/funnels").json()
        assert board["new_user"] is True
        assert [f["name"] for f in board["in_progress"]] == ["Onboarding Funnel"]
        assert len(board["locked"]) == 5
        assert board["completed"] == []

    def test_board_after_onboarding(self, client, user_id):
        onboard(client, user_id)
        board = client.get(f"/api/users/{user_id}/funnels").json()
        assert board["new_user"] is False
        assert [f["name"] for f in board["completed"]] == ["Onboarding Funnel"]
        assert [f["name"] for f in board["in_progress"]] == ["Awareness Funnel"]

    def test_milestones_status_filter(self, client, user_id):
        milestones = client.get(f"/api/users/{user_id}/milestones").json()
        assert [m["name"] for m in milestones] == ["Collect Basic Info", "Validate Website Findings"]
        assert client.get(f"/api/users/{user_id}/milestones?status=bogus").status_code == 400

    def test_set_milestone_progress(self, client, user_id):
        url = f"/api/users/{user_id}/funnels/Onboarding Funnel/milestones/Collect Basic Info"
        resp = client.put(url, json={"progress": 80})
        assert resp.status_code == 200
        assert resp.json() == {"progress": 80, "status": "in_progress"}
        assert client.put(url, json={"progress": 120}).status_code == 422

    def test_set_unknown_milestone(self, client, user_id):
        url = f"/api/users/{user_id}/funnels/Onboarding Funnel/milestones/Nope"
        assert client.put(url, json={"progress": 10}).status_code == 404


# ---------------------------------------------------------------------------
# Actions, conversations & forms
# ---------------------------------------------------------------------------


class TestActions:
    def test_new_user_actions(self, client, user_id):
        actions = client.get(f"/api/users/{user_id}/actions").json()
        assert [(a["type"], a["priority"]) for a in actions] == [("form", 1), ("chat", 1)]
        assert actions[0]["form_name"] == MSW
        assert client.get(f"/api/users/{user_id}/actions?limit=1").json() == actions[:1]

    def test_start_action(self, client, user_id):
        action = client.get(f"/api/users/{user_id}/actions").json()[1]
        resp = client.post(f"/api/users/{user_id}/actions/start", json=action)
        assert resp.status_code == 201
        proj = resp.json()
        assert proj["conversation_name"] == "basicInfoConversation"
        assert proj["funnel_name"] == "Onboarding Funnel"
        messages = client.get(f"/api/users/{user_id}/messages?conversation=basicInfoConversation").json()
        assert len(messages) == 1
        assert messages[0]["project_id"] == proj["id"]
        assert [p["id"] for p in client.get(f"/api/users/{user_id}/projects").json()] == [proj["id"]]

    def test_start_action_bad_type(self, client, user_id):
        resp = client.post(f"/api/users/{user_id}/actions/start", json={"type": "call", "description": "x"})
        assert resp.status_code == 422


class TestConversationsAndForms:
    def test_record_message(self, client, user_id):
        resp = client.post(f"/api/users/{user_id}/messages", json={
            "conversation_name": "basicInfoConversation", "content": "Hi there",
        })
        assert resp.status_code == 201
        assert resp.json()["sender"] == "user"
        assert client.post(f"/api/users/{user_id}/messages", json={
            "conversation_name": " ", "content": "x",
        }).status_code == 422

    def test_message_for_foreign_project(self, client, tenant_id, user_id):
        other = client.post(f"/api/tenants/{tenant_id}/users", json={"email": "rep@acme.test"}).json()["id"]
        action = client.get(f"/api/users/{other}/actions").json()[0]
        proj = client.post(f"/api/users/{other}/actions/start", json=action).json()
        resp = client.post(f"/api/users/{user_id}/messages", json={
            "conversation_name": "x", "content": "y", "project_id": proj["id"],
        })
        assert resp.status_code == 400

    def test_templates_and_submissions(self, client, user_id):
        templates = client.get("/api/forms/templates").json()
        assert [t["name"] for t in templates][0] == MSW
        resp = client.post(f"/api/users/{user_id}/submissions", json={
            "template_name": MSW, "answers": {"a": "B"},
        })
        assert resp.status_code == 201
        assert client.get(f"/api/users/{user_id}").json()["profile"]["mswScore"] == 4.0
        assert len(client.get(f"/api/users/{user_id}/submissions").json()) == 1

    def test_unknown_template(self, client, user_id):
        resp = client.post(f"/api/users/{user_id}/submissions", json={"template_name": "Nope"})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class TestGoals:
    def test_message_opens_goal(self, client, user_id):
        client.post(f"/api/users/{user_id}/messages", json={
            "conversation_name": "contentConversation", "content": "Please set up a content calendar",
        })
        goals = client.get(f"/api/users/{user_id}/goals").json()
        assert len(goals) == 1
        assert goals[0]["status"] == "pending"
        assert goals[0]["type"] == "content_creation"
        assert goals[0]["due_date"]
        assert client.get(f"/api/users/{user_id}/goals?status=completed").json() == []

    def test_unknown_status_filter(self, client, user_id):
        assert client.get(f"/api/users/{user_id}/goals?status=someday").status_code == 400

    def test_update_goal(self, client, user_id):
        client.post(f"/api/users/{user_id}/messages", json={
            "conversation_name": "strategy", "content": "Let's develop a strategy",
        })
        goal_id = client.get(f"/api/users/{user_id}/goals").json()[0]["id"]
        resp = client.put(f"/api/users/{user_id}/goals/{goal_id}", json={"status": "Completed"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"
        back = client.put(f"/api/users/{user_id}/goals/{goal_id}", json={"status": "pending"})
        assert back.status_code == 400
        assert client.put(f"/api/users/{user_id}/goals/9999", json={"status": "completed"}).status_code == 404

    def test_goal_of_another_user(self, client, tenant_id, user_id):
        other = client.post(f"/api/tenants/{tenant_id}/users", json={"email": "rep@acme.test"}).json()["id"]
        client.post(f"/api/users/{other}/messages", json={"conversation_name": "s", "content": "marketing plan"})
        goal_id = client.get(f"/api/users/{other}/goals").json()[0]["id"]
        resp = client.put(f"/api/users/{user_id}/goals/{goal_id}", json={"status": "completed"})
        assert resp.status_code == 404


class TestAnalysis:
    def test_analyze(self, client, user_id):
        result = {
            "progress": 40, "status": "in_progress", "reasoning": "Partial",
            "blockers": [], "next_steps": [], "recorded": {"progress": 40, "status": "in_progress"},
        }
        with patch("wise365.services.run_milestone_analysis", AsyncMock(return_value=result)):
            resp = client.post(
                f"/api/users/{user_id}/funnels/Onboarding Funnel/milestones/Collect Basic Info/analyze"
            )
        assert resp.status_code == 200
        assert resp.json()["progress"] == 40

    def test_analyze_llm_failure(self, client, user_id):
        failing = AsyncMock(side_effect=LLMCallError("rate limited", retryable=True))
        with patch("wise365.services.run_milestone_analysis", failing):
            resp = client.post(
                f"/api/users/{user_id}/funnels/Onboarding Funnel/milestones/Collect Basic Info/analyze"
            )
        assert resp.status_code == 502
        assert "rate limited" in resp.json()["detail"]

    def test_analyze_unknown_milestone(self, client, user_id):
        resp = client.post(f"/api/users/{user_id}/funnels/Nope/milestones/Nope/analyze")
        assert resp.status_code == 404

    def test_website_insights(self, client, user_id):
        url = f"/api/users/{user_id}/website-insights"
        assert client.post(url).status_code == 400

        client.put(f"/api/users/{user_id}/profile", json={"updates": {"basicInfo": {"website": "acme.test"}}})
        insights = {"url": "https://acme.test", "title": "Acme", "validated": False}
        with patch("wise365.services.collect_website_insights", AsyncMock(return_value=insights)):
            resp = client.post(url)
        assert resp.status_code == 200
        assert client.get(f"/api/users/{user_id}").json()["profile"]["websiteInsights"] == insights

        with patch("wise365.services.collect_website_insights", AsyncMock(return_value=None)):
            assert client.post(url).status_code == 502


# ---------------------------------------------------------------------------
# Stats & admin
# ---------------------------------------------------------------------------


class TestStats:
    def test_team_summary(self, client, tenant_id, user_id):
        onboard(client, user_id)
        summary = client.get(f"/api/tenants/{tenant_id}/teams/sales/summary").json()
        assert summary["team_id"] == "sales"
        assert summary["members"] == 1
        onboarding = next(f for f in summary["funnels"] if f["name"] == "Onboarding Funnel")
        assert onboarding["by_status"] == {"completed": 1}

    def test_stats(self, client, user_id):
        onboard(client, user_id)
        stats = client.get("/api/stats").json()
        assert stats["users"] == 1
        assert stats["messages"] == 2
        assert stats["submissions"] == 1
        assert stats["goals"] == 0
        assert stats["completed_by_funnel"] == {"Onboarding Funnel": 1}


class TestAdmin:
    def test_replace_catalog(self, client):
        resp = client.post("/api/admin/catalog", json=[
            {"name": "Onboarding Funnel", "milestones": [{"name": "Say hello", "dataPath": "basicInfo"}]},
            {"name": "Next Funnel", "dependencies": ["Onboarding Funnel"]},
        ])
        assert resp.status_code == 200
        assert resp.json() == {"funnels": 2, "milestones": 1, "source": "json"}
        assert [f["name"] for f in client.get("/api/funnels").json()] == ["Onboarding Funnel", "Next Funnel"]

    def test_invalid_catalog_conflict(self, client):
        resp = client.post("/api/admin/catalog", json=[{"name": "A", "dependencies": ["Ghost"]}])
        assert resp.status_code == 409
        assert len(client.get("/api/funnels").json()) == 6

    def test_upload(self, client):
        payload = json.dumps({"funnels": [{"name": "Only Funnel"}]}).encode()
        resp = client.post("/api/admin/catalog/upload", files={"file": ("catalog.json", payload, "application/json")})
        assert resp.status_code == 200
        assert resp.json()["funnels"] == 1

    def test_upload_unsupported_type(self, client):
        resp = client.post("/api/admin/catalog/upload", files={"file": ("catalog.txt", b"hi", "text/plain")})
        assert resp.status_code == 400

    def test_upload_undecodable_json(self, client):
        resp = client.post(
            "/api/admin/catalog/upload", files={"file": ("catalog.json", b"\xff\xfe[", "application/json")},
        )
        assert resp.status_code == 409
        assert "UTF-8" in resp.json()["detail"]
        assert len(client.get("/api/funnels").json()) == 6

    def test_reset(self, client, user_id):
        onboard(client, user_id)
        assert client.delete("/api/reset").json() == {"ok": True}
        assert client.get(f"/api/users/{user_id}/messages").json() == []
        assert client.get(f"/api/users/{user_id}/progress").json() == []
        assert client.get(f"/api/users/{user_id}").status_code == 200
