from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from wise365 import services
from wise365.analyzer import LLMCallError
from wise365.config import configure_logging
from wise365.db import init_db, session_scope
from wise365.goals import GOAL_STATUSES
from wise365.models import FormTemplate, User
from wise365.progress import STATUSES

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def wise365_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Wise365",
    instructions=(
        "Wise365 tracks a business owner's progress through onboarding and growth funnels. "
        "Start with get_board(user_id) to see which funnels are in progress, ready, completed "
        "or locked, then next_actions(user_id) for what to do next. Record agent and user "
        "messages with record_message() so progress stays current."
    ),
    lifespan=wise365_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_user(session, user_id: int) -> tuple[User | None, dict | None]:
    user = session.execute(select(User).where(User.id == user_id)).scalars().first()
    if not user:
        return None, {"error": f"User {user_id} not found"}
    return user, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("wise365://overview")
def wise365_overview() -> str:
    """Overview of Wise365: data model, funnel statuses, and workflow."""
    return json.dumps({
        "system": "Wise365 - funnel and milestone progression for small businesses",
        "data_model": {
            "funnel": "A named sequence of business-development milestones with entry criteria and dependencies.",
            "milestone": "A discrete achievement inside a funnel, evidenced by conversation, form and profile data.",
            "progress": "Per-user, per-funnel status and milestone progress (0-100).",
            "action": "A recommended next step: fill in a form or hold a conversation with an agent.",
            "goal": "A pending piece of work opened when a user message names one, such as a content calendar.",
        },
        "statuses": list(STATUSES),
        "workflow": [
            "1. get_board(user_id) - funnels by status, with unmet requirements for locked ones.",
            "2. next_actions(user_id) - most urgent forms and conversations.",
            "3. record_message(user_id, conversation_name, content, sender) - log conversation turns.",
            "4. submit_form(user_id, template_name, answers) - store form answers.",
            "5. list_milestones(user_id, status) - milestones ordered by priority then status.",
            "6. list_goals(user_id, status) - goals detected in the user's messages, with due dates.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Progress
# ---------------------------------------------------------------------------


@mcp.tool()
def get_board(user_id: int) -> dict:
    """Funnel board for a user: in_progress, ready, completed and locked funnels."""
    with session_scope() as session:
        user, err = _get_user(session, user_id)
        if err:
            return err
        return services.evaluate_user(session, user).to_dict()


@mcp.tool()
def list_milestones(user_id: int, status: str | None = None) -> list[dict] | dict:
    """List milestones of a user's active funnels.

    Args:
        user_id: The user.
        status: Optional filter: not_ready, ready, in_progress, completed, or all.
    """
    if status and status != "all" and status not in STATUSES:
        return {"error": f"Unknown status '{status}'"}
    with session_scope() as session:
        user, err = _get_user(session, user_id)
        if err:
            return err
        return services.user_milestones(session, user, status)


@mcp.tool()
def next_actions(user_id: int, limit: int = 10) -> list[dict] | dict:
    """Recommended next actions for a user, most urgent first."""
    with session_scope() as session:
        user, err = _get_user(session, user_id)
        if err:
            return err
        return [a.to_dict() for a in services.next_actions(session, user, limit)]


# ---------------------------------------------------------------------------
# Tools: Activity
# ---------------------------------------------------------------------------


@mcp.tool()
def record_message(user_id: int, conversation_name: str, content: str, sender: str = "user") -> dict:
    """Record one conversation message and re-evaluate the user's progress."""
    if not conversation_name.strip():
        return {"error": "conversation_name must not be empty"}
    with session_scope() as session:
        user, err = _get_user(session, user_id)
        if err:
            return err
        msg = services.record_message(session, user, conversation_name.strip(), content, sender)
        session.commit()
        return services.message_summary(msg)


@mcp.tool()
def submit_form(user_id: int, template_name: str, answers: dict[str, Any]) -> dict:
    """Submit form answers. For the Marketing Success Wheel this also sets mswScore."""
    with session_scope() as session:
        user, err = _get_user(session, user_id)
        if err:
            return err
        if not session.execute(select(FormTemplate.id).where(FormTemplate.name == template_name)).first():
            return {"error": f"Form template '{template_name}' not found"}
        sub = services.submit_form(session, user, template_name, answers)
        session.commit()
        return services.submission_summary(sub)


@mcp.tool()
def update_profile(user_id: int, updates: dict[str, Any]) -> dict:
    """Deep-merge updates into the user's profile. A null value deletes the key."""
    with session_scope() as session:
        user, err = _get_user(session, user_id)
        if err:
            return err
        profile = services.update_profile(session, user, updates)
        session.commit()
        return {"user_id": user.id, "profile": profile}


@mcp.tool()
def list_goals(user_id: int, status: str | None = None) -> list[dict] | dict:
    """Goals opened from a user's chat messages, soonest due first.

    Args:
        user_id: The user.
        status: Optional filter: pending, in_progress, or completed.
    """
    if status and status not in GOAL_STATUSES:
        return {"error": f"Unknown goal status '{status}'"}
    with session_scope() as session:
        user, err = _get_user(session, user_id)
        if err:
            return err
        return [services.goal_summary(g) for g in services.list_goals(session, user, status)]


@mcp.tool()
async def analyze_milestone(user_id: int, funnel_name: str, milestone_name: str) -> dict:
    """Estimate one milestone's progress with the configured LLM and record it."""
    with session_scope() as session:
        user, err = _get_user(session, user_id)
        if err:
            return err
        found = services.find_milestone(session, funnel_name, milestone_name)
        if found is None:
            return {"error": f"Milestone '{funnel_name}/{milestone_name}' not found"}
        try:
            result = await services.run_milestone_analysis(session, user, *found)
        except LLMCallError as exc:
            return {"error": f"Analysis failed: {exc}", "retryable": exc.retryable}
        session.commit()
        return result


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Counts of tenants, users, activity, and funnel progress by status."""
    with session_scope() as session:
        return services.compute_stats(session)


def main():
    configure_logging()
    mcp.run()


if __name__ == "__main__":
    main()
