"""Shared business logic for the Wise365 API and MCP server."""
from __future__ import annotations

import json
import logging
from collections import Counter, defaultdict
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from wise365.analyzer import LLMClient, analyze_milestone
from wise365.catalog import (
    FunnelDef, MilestoneDef, funnel_from_orm, funnel_to_orm, is_onboarding, validate_catalog,
)
from wise365.eligibility import FunnelBoard, evaluate_funnels, ordered_milestones
from wise365.goals import COMPLETED as GOAL_COMPLETED, check_goal_status, detect_goal
from wise365.insights import collect_website_insights
from wise365.models import (
    ConversationMessage, FormSubmission, FormTemplate, Funnel, FunnelProgress, Goal, Project, Tenant, User,
)
from wise365.progress import (
    COMPLETED, NOT_READY, Evidence, Message, clamp_progress, merge_status,
    status_for_progress,
)
from wise365.recommender import SUCCESS_WHEEL, Action, initial_message, recommend_actions
from wise365.utils import deep_merge, json_parse

log = logging.getLogger(__name__)

# Letter grades of the success wheel mapped onto a 1-5 scale (higher is better)
WHEEL_GRADES = {"A": 5, "B": 4, "C": 3, "D": 2, "E": 1, "F": 1}

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def tenant_summary(tenant: Tenant) -> dict:
    return {
        "id": tenant.id, "name": tenant.name, "slug": tenant.slug,
        "user_count": len(tenant.users),
    }


def user_summary(user: User) -> dict:
    return {
        "id": user.id, "tenant_id": user.tenant_id, "auth_id": user.auth_id,
        "team_id": user.team_id, "email": user.email, "display_name": user.display_name,
        "profile": json_parse(user.profile_json, {}),
    }


def progress_doc(row: FunnelProgress) -> dict[str, Any]:
    return {
        "funnel_name": row.funnel_name,
        "status": row.status,
        "progress": row.progress,
        "milestones": json_parse(row.milestones_json, {}),
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
    }


def project_summary(proj: Project) -> dict:
    return {
        "id": proj.id, "user_id": proj.user_id, "funnel_name": proj.funnel_name,
        "phase": proj.phase, "title": proj.title, "agent": proj.agent,
        "supporting_agents": json_parse(proj.supporting_agents_json, []),
        "conversation_name": proj.conversation_name, "form_name": proj.form_name,
        "status": proj.status,
    }


def submission_summary(sub: FormSubmission) -> dict:
    return {
        "id": sub.id, "template_name": sub.template_name,
        "answers": json_parse(sub.answers_json, {}),
        "submitted_at": sub.submitted_at.isoformat() if sub.submitted_at else None,
    }


def message_summary(msg: ConversationMessage) -> dict:
    return {
        "id": msg.id, "conversation_name": msg.conversation_name, "sender": msg.sender,
        "content": msg.content, "project_id": msg.project_id,
        "timestamp": msg.timestamp.isoformat() if msg.timestamp else None,
    }


def template_summary(tpl: FormTemplate) -> dict:
    return {
        "id": tpl.id, "name": tpl.name, "description": tpl.description,
        "sections": json_parse(tpl.sections_json, []),
    }


def goal_summary(goal: Goal) -> dict:
    return {
        "id": goal.id, "user_id": goal.user_id, "type": goal.goal_type, "title": goal.title,
        "description": goal.description, "priority": goal.priority, "status": goal.status,
        "trigger_phrase": goal.trigger_phrase, "source_conversation": goal.source_conversation,
        "source_message_id": goal.source_message_id, "auto_created": goal.auto_created,
        "due_date": goal.due_date.isoformat() if goal.due_date else None,
        "created_at": goal.created_at.isoformat() if goal.created_at else None,
    }


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_catalog(session: Session) -> list[FunnelDef]:
    rows = session.execute(select(Funnel).order_by(Funnel.id)).scalars().all()
    return [funnel_from_orm(r) for r in rows]


def replace_catalog(session: Session, funnels: list[FunnelDef]) -> int:
    """Swap the stored catalog for *funnels* (caller must commit)."""
    validate_catalog(funnels)
    for row in session.execute(select(Funnel)).scalars().all():
        session.delete(row)
    session.flush()
    for defn in funnels:
        session.add(funnel_to_orm(defn))
    log.info("Replaced funnel catalog with %d funnels", len(funnels))
    return len(funnels)


def user_profile(user: User) -> dict[str, Any]:
    profile = json_parse(user.profile_json, {})
    return profile if isinstance(profile, dict) else {}


def load_evidence(session: Session, user: User) -> Evidence:
    messages = session.execute(
        select(ConversationMessage)
        .where(ConversationMessage.user_id == user.id)
        .order_by(ConversationMessage.timestamp, ConversationMessage.id)
    ).scalars().all()
    forms = session.execute(
        select(FormSubmission.template_name).where(FormSubmission.user_id == user.id)
    ).scalars().all()
    profile = user_profile(user)
    submitted = set(forms) | {str(f) for f in profile.get("completedForms") or []}
    return Evidence(
        profile=profile,
        messages=[Message(m.conversation_name, m.content, m.sender) for m in messages],
        submitted_forms=submitted,
    )


def progress_docs(session: Session, user: User) -> dict[str, dict[str, Any]]:
    rows = session.execute(
        select(FunnelProgress).where(FunnelProgress.user_id == user.id)
    ).scalars().all()
    return {r.funnel_name: progress_doc(r) for r in rows}


def evaluate_user(session: Session, user: User) -> FunnelBoard:
    return evaluate_funnels(load_catalog(session), load_evidence(session, user), progress_docs(session, user))


# ---------------------------------------------------------------------------
# Progress persistence
# ---------------------------------------------------------------------------


def refresh_progress(session: Session, user: User) -> FunnelBoard:
    """Re-evaluate a user and upsert their progress rows (caller must commit).

    Rows are written for onboarding and for any non-locked funnel with
    progress. Stored statuses never regress.
    """
    board = evaluate_user(session, user)
    existing = {
        r.funnel_name: r
        for r in session.execute(
            select(FunnelProgress).where(FunnelProgress.user_id == user.id)
        ).scalars().all()
    }
    for view in board.in_progress + board.completed + board.ready:
        row = existing.get(view.name)
        if row is None and view.progress == 0 and not is_onboarding(view.name):
            continue
        previous = row.status if row is not None else None
        if row is None:
            row = FunnelProgress(user_id=user.id, funnel_name=view.name, progress=0)
            session.add(row)
            log.info("Started %s for user %s", view.name, user.id)
        new_status = merge_status(previous, view.status, f"user {user.id} {view.name}")
        if new_status == COMPLETED and previous != COMPLETED:
            row.completed_at = datetime.now(UTC)
            log.info("User %s completed %s", user.id, view.name)
        row.status = new_status
        row.progress = 100 if new_status == COMPLETED else view.progress
        row.milestones_json = json.dumps({
            m.name: {"progress": m.progress, "status": m.status} for m in view.milestones
        })
    session.flush()
    return board


def set_milestone_progress(
    session: Session, user: User, funnel_name: str, milestone_name: str, progress: int,
) -> dict[str, Any]:
    """Record progress for one milestone, e.g. from an agent or an analysis."""
    row = session.execute(
        select(FunnelProgress).where(
            FunnelProgress.user_id == user.id, FunnelProgress.funnel_name == funnel_name,
        )
    ).scalars().first()
    if row is None:
        # refresh_progress promotes the row once the funnel is eligible
        row = FunnelProgress(user_id=user.id, funnel_name=funnel_name, status=NOT_READY, progress=0)
        session.add(row)
    milestones = json_parse(row.milestones_json, {})
    entry = milestones.get(milestone_name) or {}
    pct = max(clamp_progress(progress), clamp_progress(entry.get("progress")))
    entry["progress"] = pct
    entry["status"] = merge_status(entry.get("status"), status_for_progress(pct), milestone_name)
    milestones[milestone_name] = entry
    row.milestones_json = json.dumps(milestones)
    session.flush()
    refresh_progress(session, user)
    return entry


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def update_profile(session: Session, user: User, updates: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge *updates* into the user's profile and re-evaluate (caller must commit)."""
    profile = deep_merge(user_profile(user), updates)
    user.profile_json = json.dumps(profile)
    refresh_progress(session, user)
    return profile


def record_message(
    session: Session, user: User, conversation_name: str, content: str,
    sender: str = "user", project_id: int | None = None,
) -> ConversationMessage:
    msg = ConversationMessage(
        user_id=user.id, conversation_name=conversation_name, content=content,
        sender=sender, project_id=project_id, timestamp=datetime.now(UTC),
    )
    session.add(msg)
    session.flush()
    if sender == "user":
        create_goal_from_message(session, user, msg)
    refresh_progress(session, user)
    return msg


def create_goal_from_message(session: Session, user: User, msg: ConversationMessage) -> Goal | None:
    """Open a pending goal when *msg* names one (caller must commit).

    An open goal of the same type from the same conversation is not duplicated.
    """
    detected = detect_goal(msg.content)
    if detected is None:
        return None
    open_goal = session.execute(
        select(Goal).where(
            Goal.user_id == user.id,
            Goal.goal_type == detected.type,
            Goal.source_conversation == msg.conversation_name,
            Goal.status != GOAL_COMPLETED,
        )
    ).scalars().first()
    if open_goal is not None:
        log.debug("User %s already has open %s goal %s", user.id, detected.type, open_goal.id)
        return None
    now = datetime.now(UTC)
    goal = Goal(
        user_id=user.id, goal_type=detected.type, title=detected.title,
        description=detected.description, priority=detected.priority,
        trigger_phrase=detected.trigger, source_conversation=msg.conversation_name,
        source_message_id=msg.id, due_date=detected.due_date(now),
        created_at=now, updated_at=now,
    )
    session.add(goal)
    session.flush()
    log.info("Created %s goal %s for user %s from message %s", detected.type, goal.id, user.id, msg.id)
    return goal


def list_goals(session: Session, user: User, status: str | None = None) -> list[Goal]:
    query = select(Goal).where(Goal.user_id == user.id)
    if status:
        query = query.where(Goal.status == status)
    return list(session.execute(query.order_by(Goal.due_date, Goal.id)).scalars().all())


def update_goal_status(goal: Goal, status: str) -> Goal:
    """Move *goal* to *status*; raises InvalidGoalStatus on unknown or backward moves."""
    check_goal_status(goal.status, status)
    goal.status = status
    goal.updated_at = datetime.now(UTC)
    return goal


def success_wheel_score(answers: dict[str, Any]) -> float | None:
    """Mean of the letter grades in a success wheel submission (A=5 ... F=1)."""
    grades = []
    for value in answers.values():
        letter = str(value or "").strip().upper()[:1]
        if letter in WHEEL_GRADES:
            grades.append(WHEEL_GRADES[letter])
    if not grades:
        return None
    return round(sum(grades) / len(grades), 1)


def submit_form(session: Session, user: User, template_name: str, answers: dict[str, Any]) -> FormSubmission:
    """Store a submission, mark the form completed, and re-evaluate (caller must commit)."""
    sub = FormSubmission(
        user_id=user.id, template_name=template_name,
        answers_json=json.dumps(answers), submitted_at=datetime.now(UTC),
    )
    session.add(sub)
    profile = user_profile(user)
    completed = list(profile.get("completedForms") or [])
    if template_name not in completed:
        completed.append(template_name)
    profile["completedForms"] = completed
    if template_name == SUCCESS_WHEEL:
        score = success_wheel_score(answers)
        if score is not None:
            profile["mswScore"] = score
    user.profile_json = json.dumps(profile)
    session.flush()
    refresh_progress(session, user)
    return sub


def next_actions(session: Session, user: User, limit: int | None = None) -> list[Action]:
    board = evaluate_user(session, user)
    evidence = load_evidence(session, user)
    return recommend_actions(board, evidence.profile, evidence.submitted_forms, limit)


def user_milestones(session: Session, user: User, status: str | None = None) -> list[dict]:
    return [m.to_dict() for m in ordered_milestones(evaluate_user(session, user), status)]


def start_action(session: Session, user: User, action: Action) -> Project:
    """Open a project and its conversation for a recommended action (caller must commit)."""
    agents = action.agents or ["Shawn (Tool Guidance Assistant)"]
    title = f"{action.funnel} - {action.description}" if action.funnel else action.description
    conversation_name = action.conversation_id or title
    proj = Project(
        user_id=user.id, funnel_name=action.funnel, phase=action.milestone, title=title,
        agent=agents[0], supporting_agents_json=json.dumps(agents[1:]),
        conversation_name=conversation_name, form_name=action.form_name, status="active",
    )
    session.add(proj)
    session.flush()
    session.add(ConversationMessage(
        user_id=user.id, conversation_name=conversation_name, sender=agents[0],
        content=initial_message(action, action.funnel or "business"),
        project_id=proj.id, timestamp=datetime.now(UTC),
    ))
    session.flush()
    refresh_progress(session, user)
    return proj


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def team_summary(session: Session, tenant_id: int, team_id: str) -> dict:
    users = session.execute(
        select(User).where(User.tenant_id == tenant_id, User.team_id == team_id)
    ).scalars().all()
    progress: dict[str, list[int]] = defaultdict(list)
    statuses: dict[str, Counter[str]] = defaultdict(Counter)
    for user in users:
        for view in evaluate_user(session, user).all():
            progress[view.name].append(view.progress)
            statuses[view.name][view.status] += 1
    return {
        "team_id": team_id,
        "members": len(users),
        "funnels": [
            {
                "name": name,
                "average_progress": round(sum(vals) / len(vals)) if vals else 0,
                "by_status": dict(statuses[name]),
            }
            for name, vals in progress.items()
        ],
    }


def compute_stats(session: Session) -> dict:
    rows = session.execute(select(FunnelProgress)).scalars().all()
    by_funnel: Counter[str] = Counter()
    by_status: Counter[str] = Counter()
    completed: Counter[str] = Counter()
    for row in rows:
        by_funnel[row.funnel_name] += 1
        by_status[row.status] += 1
        if row.status == COMPLETED:
            completed[row.funnel_name] += 1
    return {
        "tenants": len(session.execute(select(Tenant.id)).all()),
        "users": len(session.execute(select(User.id)).all()),
        "messages": len(session.execute(select(ConversationMessage.id)).all()),
        "submissions": len(session.execute(select(FormSubmission.id)).all()),
        "goals": len(session.execute(select(Goal.id)).all()),
        "by_funnel": dict(by_funnel),
        "by_status": dict(by_status),
        "completed_by_funnel": dict(completed),
    }


def reset_activity(session: Session) -> None:
    """Delete all user activity; tenants, users, and the catalog stay."""
    session.execute(delete(Goal))
    session.execute(delete(ConversationMessage))
    session.execute(delete(FormSubmission))
    session.execute(delete(Project))
    session.execute(delete(FunnelProgress))


# ---------------------------------------------------------------------------
# Analysis and enrichment
# ---------------------------------------------------------------------------


def find_milestone(
    session: Session, funnel_name: str, milestone_name: str,
) -> tuple[FunnelDef, MilestoneDef] | None:
    for funnel in load_catalog(session):
        if funnel.name != funnel_name:
            continue
        for milestone in funnel.milestones:
            if milestone.name == milestone_name:
                return funnel, milestone
    return None


def form_answers(session: Session, user: User) -> dict[str, dict[str, Any]]:
    """Latest answers per form template for *user*."""
    subs = session.execute(
        select(FormSubmission)
        .where(FormSubmission.user_id == user.id)
        .order_by(FormSubmission.submitted_at, FormSubmission.id)
    ).scalars().all()
    return {s.template_name: json_parse(s.answers_json, {}) for s in subs}


async def run_milestone_analysis(
    session: Session, user: User, funnel: FunnelDef, milestone: MilestoneDef,
    client: LLMClient | None = None,
) -> dict[str, Any]:
    """Ask the LLM to assess one milestone and record the result (caller must commit).

    Raises LLMCallError when the model call fails.
    """
    client = client or LLMClient()
    analysis = await analyze_milestone(
        client, funnel, milestone, load_evidence(session, user), form_answers(session, user),
    )
    entry = set_milestone_progress(session, user, funnel.name, milestone.name, analysis.progress)
    log.info(
        "Analyzed %s/%s for user %s: %d%%", funnel.name, milestone.name, user.id, analysis.progress,
    )
    return {**analysis.to_dict(), "recorded": entry}


async def refresh_website_insights(session: Session, user: User) -> dict[str, Any] | None:
    """Fetch the user's website and store the digest in their profile (caller must commit)."""
    insights = await collect_website_insights(user_profile(user))
    if insights is None:
        return None
    update_profile(session, user, {"websiteInsights": insights})
    return insights
