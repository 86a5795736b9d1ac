from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from sqlalchemy import select
from sqlalchemy.orm import Session

from wise365 import services
from wise365.analyzer import LLMCallError
from wise365.catalog import CatalogError, funnel_to_dict
from wise365.config import configure_logging, get_settings
from wise365.db import current_db_name, init_db, session_generator
from wise365.goals import GOAL_STATUSES, InvalidGoalStatus
from wise365.importer import import_json, import_xlsx
from wise365.models import ConversationMessage, FormSubmission, FormTemplate, Goal, Project, Tenant, User
from wise365.progress import STATUSES, get_path, has_value
from wise365.recommender import Action
from wise365.schemas import (
    ActionOut,
    AnalysisOut,
    BoardOut,
    GoalOut,
    GoalStatusUpdate,
    ImportResult,
    MessageCreate,
    MessageOut,
    MilestoneOut,
    MilestoneProgressUpdate,
    ProfileUpdate,
    ProgressOut,
    ProjectOut,
    StartActionRequest,
    StatsOut,
    SubmissionCreate,
    SubmissionOut,
    TeamSummaryOut,
    TemplateOut,
    TenantCreate,
    TenantOut,
    UserCreate,
    UserOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    log.info("Wise365 API ready (database %s)", current_db_name())
    yield


app = FastAPI(
    title="Wise365",
    version="0.1.0",
    description=(
        "Funnel and milestone progression API for Business Wise365. "
        "Tracks where each business owner stands in the onboarding and growth "
        "funnels and recommends what to do next. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Tenants", "description": "Organizations and their users."},
        {"name": "Funnels", "description": "Funnel catalog and per-user funnel board."},
        {"name": "Milestones", "description": "Milestone lists and recorded milestone progress."},
        {"name": "Actions", "description": "Recommended next actions and starting them."},
        {"name": "Conversations", "description": "Agent conversation messages."},
        {"name": "Goals", "description": "Goals detected in conversations and their status."},
        {"name": "Forms", "description": "Form templates and submissions."},
        {"name": "Analysis", "description": "LLM progress analysis and website insights."},
        {"name": "Stats", "description": "Team summaries and aggregate statistics."},
        {"name": "Admin", "description": "Catalog import and data reset."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


# ---------------------------------------------------------------------------
# Routes: Tenants & Users
# ---------------------------------------------------------------------------


@app.get("/api/tenants", response_model=list[TenantOut], tags=["Tenants"], summary="List tenants")
async def list_tenants(session: Session = Depends(db_session)):
    rows = session.execute(select(Tenant).order_by(Tenant.name)).scalars().all()
    return [services.tenant_summary(t) for t in rows]


@app.post("/api/tenants", response_model=TenantOut, status_code=201,
          tags=["Tenants"], summary="Create a tenant")
async def create_tenant(body: TenantCreate, session: Session = Depends(db_session)):
    if session.execute(select(Tenant.id).where(Tenant.name == body.name)).first():
        raise HTTPException(409, f"Tenant '{body.name}' already exists")
    tenant = Tenant(name=body.name, slug=body.slug or _slugify(body.name))
    session.add(tenant)
    session.commit()
    session.refresh(tenant)
    return services.tenant_summary(tenant)


@app.get("/api/tenants/{tenant_id}/users", response_model=list[UserOut],
         tags=["Tenants"], summary="List users of a tenant")
async def list_users(tenant_id: int, session: Session = Depends(db_session)):
    tenant = _get_or_404(session, Tenant, tenant_id, "Tenant")
    return [services.user_summary(u) for u in tenant.users]


@app.post("/api/tenants/{tenant_id}/users", response_model=UserOut, status_code=201,
          tags=["Tenants"], summary="Create a user and start their onboarding")
async def create_user(tenant_id: int, body: UserCreate, session: Session = Depends(db_session)):
    _get_or_404(session, Tenant, tenant_id, "Tenant")
    user = User(
        tenant_id=tenant_id, auth_id=body.auth_id, team_id=body.team_id,
        email=body.email, display_name=body.display_name,
        profile_json=json.dumps(body.profile),
    )
    session.add(user)
    session.flush()
    services.refresh_progress(session, user)
    session.commit()
    return services.user_summary(user)


@app.get("/api/users/{user_id}", response_model=UserOut, tags=["Tenants"], summary="Get a user with profile")
async def get_user(user_id: int, session: Session = Depends(db_session)):
    return services.user_summary(_get_or_404(session, User, user_id, "User"))


@app.put("/api/users/{user_id}/profile", response_model=UserOut,
         tags=["Tenants"], summary="Deep-merge profile updates (null deletes a key)")
async def update_profile(user_id: int, body: ProfileUpdate, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    services.update_profile(session, user, body.updates)
    session.commit()
    return services.user_summary(user)


# ---------------------------------------------------------------------------
# Routes: Funnels
# ---------------------------------------------------------------------------


@app.get("/api/funnels", tags=["Funnels"], summary="List the funnel catalog")
async def list_funnels(session: Session = Depends(db_session)):
    return [funnel_to_dict(f) for f in services.load_catalog(session)]


@app.get("/api/users/{user_id}/funnels", response_model=BoardOut,
         tags=["Funnels"], summary="Funnel board: in progress, ready, completed and locked")
async def funnel_board(user_id: int, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    return services.evaluate_user(session, user).to_dict()


@app.get("/api/users/{user_id}/progress", response_model=list[ProgressOut],
         tags=["Funnels"], summary="Stored funnel progress records")
async def list_progress(user_id: int, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    return list(services.progress_docs(session, user).values())


# ---------------------------------------------------------------------------
# Routes: Milestones
# ---------------------------------------------------------------------------


@app.get("/api/users/{user_id}/milestones", response_model=list[MilestoneOut],
         tags=["Milestones"], summary="Milestones of active funnels, by priority then status")
async def list_milestones(
    user_id: int,
    status: str | None = Query(None, description="not_ready, ready, in_progress, completed or all"),
    session: Session = Depends(db_session),
):
    if status and status != "all" and status not in STATUSES:
        raise HTTPException(400, f"Unknown status '{status}'")
    user = _get_or_404(session, User, user_id, "User")
    return services.user_milestones(session, user, status)


@app.put("/api/users/{user_id}/funnels/{funnel_name}/milestones/{milestone_name}",
         tags=["Milestones"], summary="Record milestone progress (never lowers it)")
async def set_milestone_progress(
    user_id: int, funnel_name: str, milestone_name: str, body: MilestoneProgressUpdate,
    session: Session = Depends(db_session),
):
    user = _get_or_404(session, User, user_id, "User")
    if services.find_milestone(session, funnel_name, milestone_name) is None:
        raise HTTPException(404, "Milestone not found")
    entry = services.set_milestone_progress(session, user, funnel_name, milestone_name, body.progress)
    session.commit()
    return entry


# ---------------------------------------------------------------------------
# Routes: Actions
# ---------------------------------------------------------------------------


@app.get("/api/users/{user_id}/actions", response_model=list[ActionOut],
         tags=["Actions"], summary="Recommended next actions, most urgent first")
async def list_actions(
    user_id: int,
    limit: int | None = Query(None, ge=0),
    session: Session = Depends(db_session),
):
    user = _get_or_404(session, User, user_id, "User")
    limit = get_settings().default_action_limit if limit is None else limit
    return [a.to_dict() for a in services.next_actions(session, user, limit)]


@app.post("/api/users/{user_id}/actions/start", response_model=ProjectOut, status_code=201,
          tags=["Actions"], summary="Start an action: open a project and its conversation")
async def start_action(user_id: int, body: StartActionRequest, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    proj = services.start_action(session, user, Action(**body.model_dump()))
    session.commit()
    return services.project_summary(proj)


@app.get("/api/users/{user_id}/projects", response_model=list[ProjectOut],
         tags=["Actions"], summary="List a user's projects")
async def list_projects(user_id: int, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    return [services.project_summary(p) for p in user.projects]


# ---------------------------------------------------------------------------
# Routes: Conversations
# ---------------------------------------------------------------------------


@app.get("/api/users/{user_id}/messages", response_model=list[MessageOut],
         tags=["Conversations"], summary="List messages, optionally for one conversation")
async def list_messages(
    user_id: int,
    conversation: str | None = Query(None, description="Conversation name"),
    session: Session = Depends(db_session),
):
    _get_or_404(session, User, user_id, "User")
    query = select(ConversationMessage).where(ConversationMessage.user_id == user_id)
    if conversation:
        query = query.where(ConversationMessage.conversation_name == conversation)
    rows = session.execute(
        query.order_by(ConversationMessage.timestamp, ConversationMessage.id)
    ).scalars().all()
    return [services.message_summary(m) for m in rows]


@app.post("/api/users/{user_id}/messages", response_model=MessageOut, status_code=201,
          tags=["Conversations"], summary="Record a conversation message and re-evaluate progress")
async def create_message(user_id: int, body: MessageCreate, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    if body.project_id is not None:
        proj = _get_or_404(session, Project, body.project_id, "Project")
        if proj.user_id != user.id:
            raise HTTPException(400, "Project belongs to another user")
    msg = services.record_message(
        session, user, body.conversation_name, body.content, body.sender, body.project_id,
    )
    session.commit()
    return services.message_summary(msg)


# ---------------------------------------------------------------------------
# Routes: Goals
# ---------------------------------------------------------------------------


@app.get("/api/users/{user_id}/goals", response_model=list[GoalOut],
         tags=["Goals"], summary="List goals, optionally filtered by status")
async def list_goals(
    user_id: int,
    status: str | None = Query(None, description="pending, in_progress or completed"),
    session: Session = Depends(db_session),
):
    user = _get_or_404(session, User, user_id, "User")
    if status and status not in GOAL_STATUSES:
        raise HTTPException(400, f"Unknown goal status '{status}'")
    return [services.goal_summary(g) for g in services.list_goals(session, user, status)]


@app.put("/api/users/{user_id}/goals/{goal_id}", response_model=GoalOut,
         tags=["Goals"], summary="Move a goal forward to in_progress or completed")
async def update_goal(user_id: int, goal_id: int, body: GoalStatusUpdate, session: Session = Depends(db_session)):
    _get_or_404(session, User, user_id, "User")
    goal = _get_or_404(session, Goal, goal_id, "Goal")
    if goal.user_id != user_id:
        raise HTTPException(404, "Goal not found")
    try:
        services.update_goal_status(goal, body.status)
    except InvalidGoalStatus as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.goal_summary(goal)


# ---------------------------------------------------------------------------
# Routes: Forms
# ---------------------------------------------------------------------------


@app.get("/api/forms/templates", response_model=list[TemplateOut],
         tags=["Forms"], summary="List form templates")
async def list_templates(session: Session = Depends(db_session)):
    rows = session.execute(select(FormTemplate).order_by(FormTemplate.id)).scalars().all()
    return [services.template_summary(t) for t in rows]


@app.get("/api/users/{user_id}/submissions", response_model=list[SubmissionOut],
         tags=["Forms"], summary="List a user's form submissions")
async def list_submissions(user_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, User, user_id, "User")
    rows = session.execute(
        select(FormSubmission).where(FormSubmission.user_id == user_id).order_by(FormSubmission.id)
    ).scalars().all()
    return [services.submission_summary(s) for s in rows]


@app.post("/api/users/{user_id}/submissions", response_model=SubmissionOut, status_code=201,
          tags=["Forms"], summary="Submit a form and re-evaluate progress")
async def create_submission(user_id: int, body: SubmissionCreate, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    if not session.execute(select(FormTemplate.id).where(FormTemplate.name == body.template_name)).first():
        raise HTTPException(404, f"Form template '{body.template_name}' not found")
    sub = services.submit_form(session, user, body.template_name, body.answers)
    session.commit()
    return services.submission_summary(sub)


# ---------------------------------------------------------------------------
# Routes: Analysis
# ---------------------------------------------------------------------------


@app.post("/api/users/{user_id}/funnels/{funnel_name}/milestones/{milestone_name}/analyze",
          response_model=AnalysisOut, tags=["Analysis"],
          summary="Estimate milestone progress with the configured LLM")
async def analyze_milestone(
    user_id: int, funnel_name: str, milestone_name: str, session: Session = Depends(db_session),
):
    user = _get_or_404(session, User, user_id, "User")
    found = services.find_milestone(session, funnel_name, milestone_name)
    if found is None:
        raise HTTPException(404, "Milestone not found")
    funnel, milestone = found
    try:
        result = await services.run_milestone_analysis(session, user, funnel, milestone)
    except LLMCallError as exc:
        raise HTTPException(502, f"Analysis failed: {exc}") from exc
    session.commit()
    return result


@app.post("/api/users/{user_id}/website-insights", tags=["Analysis"],
          summary="Fetch the user's website and store insights in their profile")
async def website_insights(user_id: int, session: Session = Depends(db_session)):
    user = _get_or_404(session, User, user_id, "User")
    if not has_value(get_path(services.user_profile(user), "basicInfo.website")):
        raise HTTPException(400, "User has no basicInfo.website")
    insights = await services.refresh_website_insights(session, user)
    if insights is None:
        raise HTTPException(502, "Could not fetch website")
    session.commit()
    return insights


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/tenants/{tenant_id}/teams/{team_id}/summary", response_model=TeamSummaryOut,
         tags=["Stats"], summary="Per-funnel progress across a team")
async def team_summary(tenant_id: int, team_id: str, session: Session = Depends(db_session)):
    _get_or_404(session, Tenant, tenant_id, "Tenant")
    return services.team_summary(session, tenant_id, team_id)


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics and breakdowns")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.post("/api/admin/catalog", response_model=ImportResult,
          tags=["Admin"], summary="Replace the funnel catalog with JSON funnel records")
async def import_catalog_json(body: list[dict[str, Any]], session: Session = Depends(db_session)):
    try:
        result = import_json(body, session)
    except CatalogError as exc:
        session.rollback()
        raise HTTPException(409, str(exc)) from exc
    session.commit()
    return result.to_dict()


@app.post("/api/admin/catalog/upload", response_model=ImportResult,
          tags=["Admin"], summary="Replace the funnel catalog from an .xlsx or .json file")
async def import_catalog_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    name = (file.filename or "").lower()
    if not name.endswith((".xlsx", ".json")):
        raise HTTPException(400, "Only .xlsx and .json files are supported")
    content = await file.read()
    try:
        if name.endswith(".xlsx"):
            result = import_xlsx(content, session)
        else:
            result = import_json(content, session)
    except CatalogError as exc:
        session.rollback()
        raise HTTPException(409, str(exc)) from exc
    session.commit()
    return result.to_dict()


@app.delete("/api/reset", tags=["Admin"],
            summary="Delete all user activity (messages, submissions, projects, progress)")
async def reset_db(session: Session = Depends(db_session)):
    services.reset_activity(session)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("wise365.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
