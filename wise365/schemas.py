"""Pydantic request/response schemas for the Wise365 API."""
from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, field_validator

_SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


class TenantCreate(BaseModel):
    name: str
    slug: str = ""

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Tenant name must not be empty")
        return v

    @field_validator("slug")
    @classmethod
    def slug_format(cls, v: str) -> str:
        v = v.strip().lower()
        if v and not _SLUG_RE.match(v):
            raise ValueError("Slug may only contain lowercase letters, digits and hyphens")
        return v


class TenantOut(BaseModel):
    id: int
    name: str
    slug: str
    user_count: int = 0


class UserCreate(BaseModel):
    auth_id: str = ""
    team_id: str = ""
    email: str = ""
    display_name: str = ""
    profile: dict[str, Any] = {}


class UserOut(BaseModel):
    id: int
    tenant_id: int
    auth_id: str
    team_id: str
    email: str
    display_name: str
    profile: dict[str, Any] = {}


class ProfileUpdate(BaseModel):
    """Deep-merged into the stored profile; ``null`` values delete keys."""
    updates: dict[str, Any]


class MilestoneOut(BaseModel):
    name: str
    funnel_name: str
    description: str = ""
    status: str
    progress: int
    priority: int
    conversation_id: str = ""
    data_path: str = ""
    kpis: list[str] = []
    agents: list[str] = []


class FunnelOut(BaseModel):
    name: str
    description: str = ""
    status: str
    progress: int
    priority: int
    level: int
    current_phase: str | None = None
    dependencies: list[str] = []
    forms_needed: list[str] = []
    responsible_agents: dict[str, Any] = {}
    unmet_requirements: list[str] = []
    milestones: list[MilestoneOut] = []


class BoardOut(BaseModel):
    new_user: bool
    in_progress: list[FunnelOut] = []
    ready: list[FunnelOut] = []
    completed: list[FunnelOut] = []
    locked: list[FunnelOut] = []


class ActionOut(BaseModel):
    type: str
    description: str
    priority: int
    agents: list[str] = []
    funnel: str = ""
    milestone: str = ""
    form_name: str = ""
    conversation_id: str = ""


class StartActionRequest(BaseModel):
    type: str
    description: str
    priority: int = 1
    agents: list[str] = []
    funnel: str = ""
    milestone: str = ""
    form_name: str = ""
    conversation_id: str = ""

    @field_validator("type")
    @classmethod
    def type_known(cls, v: str) -> str:
        if v not in ("form", "chat"):
            raise ValueError("Action type must be 'form' or 'chat'")
        return v


class ProjectOut(BaseModel):
    id: int
    user_id: int
    funnel_name: str
    phase: str
    title: str
    agent: str
    supporting_agents: list[str] = []
    conversation_name: str
    form_name: str
    status: str


class MessageCreate(BaseModel):
    conversation_name: str
    content: str
    sender: str = "user"
    project_id: int | None = None

    @field_validator("conversation_name")
    @classmethod
    def conversation_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("conversation_name must not be empty")
        return v


class MessageOut(BaseModel):
    id: int
    conversation_name: str
    sender: str
    content: str
    project_id: int | None = None
    timestamp: str | None = None


class GoalOut(BaseModel):
    id: int
    user_id: int
    type: str
    title: str
    description: str
    priority: str
    status: str
    trigger_phrase: str
    source_conversation: str
    source_message_id: int | None = None
    auto_created: bool = True
    due_date: str | None = None
    created_at: str | None = None


class GoalStatusUpdate(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def status_lower(cls, v: str) -> str:
        return v.strip().lower()


class TemplateOut(BaseModel):
    id: int
    name: str
    description: str
    sections: list[dict[str, Any]] = []


class SubmissionCreate(BaseModel):
    template_name: str
    answers: dict[str, Any] = {}


class SubmissionOut(BaseModel):
    id: int
    template_name: str
    answers: dict[str, Any] = {}
    submitted_at: str | None = None


class MilestoneProgressUpdate(BaseModel):
    progress: int

    @field_validator("progress")
    @classmethod
    def progress_range(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("progress must be between 0 and 100")
        return v


class ProgressOut(BaseModel):
    funnel_name: str
    status: str
    progress: int
    milestones: dict[str, Any] = {}
    updated_at: str | None = None
    completed_at: str | None = None


class AnalysisOut(BaseModel):
    progress: int
    status: str
    reasoning: str = ""
    blockers: list[str] = []
    next_steps: list[str] = []
    recorded: dict[str, Any] = {}


class ImportResult(BaseModel):
    funnels: int
    milestones: int
    source: str


class TeamFunnelOut(BaseModel):
    name: str
    average_progress: int
    by_status: dict[str, int] = {}


class TeamSummaryOut(BaseModel):
    team_id: str
    members: int
    funnels: list[TeamFunnelOut] = []


class StatsOut(BaseModel):
    tenants: int
    users: int
    messages: int
    submissions: int
    goals: int = 0
    by_funnel: dict[str, int] = {}
    by_status: dict[str, int] = {}
    completed_by_funnel: dict[str, int] = {}
