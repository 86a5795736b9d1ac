from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from wise365 import db, mcp_server
from wise365.analyzer import LLMCallError
from wise365.models import Tenant, User


@pytest.fixture()
def user_id(tmp_path):
    db.init_db(tmp_path / "mcp.db")
    with db.session_scope() as session:
        tenant = Tenant(name="Acme", slug="acme")
        session.add(tenant)
        session.flush()
        user = User(tenant_id=tenant.id, email="owner@acme.test")
        session.add(user)
        session.commit()
        return user.id


def test_board_for_new_user(user_id):
    board = mcp_server.get_board(user_id)
    assert board["new_user"] is True
    assert len(board["locked"]) == 5


def test_unknown_user(user_id):
    assert mcp_server.get_board(424242) == {"error": "User 424242 not found"}


def test_list_milestones_rejects_unknown_status(user_id):
    assert "error" in mcp_server.list_milestones(user_id, status="someday")


def test_activity_moves_progress(user_id):
    actions = mcp_server.next_actions(user_id, limit=1)
    assert actions[0]["form_name"] == "Marketing Success Wheel"

    msg = mcp_server.record_message(user_id, " basicInfoConversation ", "Hello Shawn")
    assert msg["conversation_name"] == "basicInfoConversation"
    assert mcp_server.record_message(user_id, "  ", "x") == {"error": "conversation_name must not be empty"}

    sub = mcp_server.submit_form(user_id, "Marketing Success Wheel", {"Awareness Grade": "A"})
    assert sub["template_name"] == "Marketing Success Wheel"
    assert "error" in mcp_server.submit_form(user_id, "Unknown Form", {})

    result = mcp_server.update_profile(user_id, {"basicInfo": {"website": "acme.test"}})
    assert result["profile"]["mswScore"] == 5.0
    assert result["profile"]["basicInfo"] == {"website": "acme.test"}

    stats = mcp_server.get_stats()
    assert stats["messages"] == 1
    assert stats["submissions"] == 1


@pytest.mark.asyncio
async def test_analyze_reports_llm_failure(user_id):
    failing = AsyncMock(side_effect=LLMCallError("bad reply"))
    with patch("wise365.services.run_milestone_analysis", failing):
        result = await mcp_server.analyze_milestone(user_id, "Onboarding Funnel", "Collect Basic Info")
    assert result == {"error": "Analysis failed: bad reply", "retryable": False}
    missing = await mcp_server.analyze_milestone(user_id, "Onboarding Funnel", "Nope")
    assert "not found" in missing["error"]


def test_goals_from_messages(user_id):
    mcp_server.record_message(user_id, "strategy", "We need a marketing plan for spring")
    goals = mcp_server.list_goals(user_id)
    assert [g["type"] for g in goals] == ["strategy"]
    assert mcp_server.list_goals(user_id, status="completed") == []
    assert mcp_server.list_goals(user_id, status="later") == {"error": "Unknown goal status 'later'"}
    assert mcp_server.get_stats()["goals"] == 1
