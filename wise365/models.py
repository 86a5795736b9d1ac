from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    slug: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    users: Mapped[list[User]] = relationship("User", back_populates="tenant", cascade="all, delete-orphan")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, ForeignKey("tenants.id"), nullable=False)
    auth_id: Mapped[str] = mapped_column(String(200), default="")  # identity-provider subject
    team_id: Mapped[str] = mapped_column(String(100), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    display_name: Mapped[str] = mapped_column(String(200), default="")
    profile_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    tenant: Mapped[Tenant] = relationship("Tenant", back_populates="users")
    progress: Mapped[list[FunnelProgress]] = relationship(
        "FunnelProgress", back_populates="user", cascade="all, delete-orphan",
    )
    messages: Mapped[list[ConversationMessage]] = relationship(
        "ConversationMessage", back_populates="user", cascade="all, delete-orphan",
    )
    submissions: Mapped[list[FormSubmission]] = relationship(
        "FormSubmission", back_populates="user", cascade="all, delete-orphan",
    )
    projects: Mapped[list[Project]] = relationship(
        "Project", back_populates="user", cascade="all, delete-orphan",
    )
    goals: Mapped[list[Goal]] = relationship(
        "Goal", back_populates="user", cascade="all, delete-orphan",
    )


class Funnel(Base):
    __tablename__ = "funnels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[int] = mapped_column(Integer, default=1)
    level: Mapped[int] = mapped_column(Integer, default=1)
    dependencies_json: Mapped[str] = mapped_column(Text, default="[]")
    entry_criteria_json: Mapped[str] = mapped_column(Text, default="{}")
    forms_needed_json: Mapped[str] = mapped_column(Text, default="[]")
    responsible_agents_json: Mapped[str] = mapped_column(Text, default="{}")
    data_requirements_json: Mapped[str] = mapped_column(Text, default="[]")

    milestones: Mapped[list[Milestone]] = relationship(
        "Milestone", back_populates="funnel", cascade="all, delete-orphan",
        order_by="Milestone.position",
    )


class Milestone(Base):
    __tablename__ = "milestones"
    __table_args__ = (UniqueConstraint("funnel_id", "name", name="uq_milestone_funnel_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    funnel_id: Mapped[int] = mapped_column(Integer, ForeignKey("funnels.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    conversation_id: Mapped[str] = mapped_column(String(200), default="")
    data_path: Mapped[str] = mapped_column(String(300), default="")
    requires_conversation: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    requires_form: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    requires_data: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    completion_keywords_json: Mapped[str] = mapped_column(Text, default="[]")
    kpis_json: Mapped[str] = mapped_column(Text, default="[]")
    priority: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    project_name: Mapped[str] = mapped_column(String(300), default="")

    funnel: Mapped[Funnel] = relationship("Funnel", back_populates="milestones")


class FunnelProgress(Base):
    __tablename__ = "funnel_progress"
    __table_args__ = (UniqueConstraint("user_id", "funnel_name", name="uq_progress_user_funnel"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    funnel_name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="ready")  # not_ready | ready | in_progress | completed
    progress: Mapped[int] = mapped_column(Integer, default=0)
    milestones_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    user: Mapped[User] = relationship("User", back_populates="progress")


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    conversation_name: Mapped[str] = mapped_column(String(300), nullable=False)
    sender: Mapped[str] = mapped_column(String(200), default="user")
    content: Mapped[str] = mapped_column(Text, default="")
    project_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("projects.id"), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="messages")


class FormTemplate(Base):
    __tablename__ = "form_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    sections_json: Mapped[str] = mapped_column(Text, default="[]")


class FormSubmission(Base):
    __tablename__ = "form_submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    template_name: Mapped[str] = mapped_column(String(200), nullable=False)
    answers_json: Mapped[str] = mapped_column(Text, default="{}")
    submitted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="submissions")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    funnel_name: Mapped[str] = mapped_column(String(200), default="")
    phase: Mapped[str] = mapped_column(String(200), default="")
    title: Mapped[str] = mapped_column(String(400), default="")
    agent: Mapped[str] = mapped_column(String(200), default="")
    supporting_agents_json: Mapped[str] = mapped_column(Text, default="[]")
    conversation_name: Mapped[str] = mapped_column(String(300), default="")
    form_name: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[str] = mapped_column(String(30), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    user: Mapped[User] = relationship("User", back_populates="projects")


class Goal(Base):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    goal_type: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(400), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[str] = mapped_column(String(30), default="high")
    trigger_phrase: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[str] = mapped_column(String(30), default="pending")  # pending | in_progress | completed
    source_conversation: Mapped[str] = mapped_column(String(300), default="")
    source_message_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("conversation_messages.id", ondelete="SET NULL"), nullable=True,
    )
    auto_created: Mapped[bool] = mapped_column(Boolean, default=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    user: Mapped[User] = relationship("User", back_populates="goals")
