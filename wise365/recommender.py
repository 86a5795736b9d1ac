"""Next-action recommendations from a user's funnel board."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from wise365.catalog import is_onboarding
from wise365.eligibility import FunnelBoard, FunnelView
from wise365.progress import get_path, has_value

log = logging.getLogger(__name__)

SUCCESS_WHEEL = "Marketing Success Wheel"

FORM = "form"
CHAT = "chat"


@dataclass
class Action:
    type: str  # "form" | "chat"
    description: str
    priority: int
    agents: list[str] = field(default_factory=list)
    funnel: str = ""
    milestone: str = ""
    form_name: str = ""
    conversation_id: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.form_name if self.type == FORM else f"{self.funnel}/{self.milestone or self.description}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type, "description": self.description, "priority": self.priority,
            "agents": list(self.agents), "funnel": self.funnel, "milestone": self.milestone,
            "form_name": self.form_name, "conversation_id": self.conversation_id,
        }


def _onboarding_actions(view: FunnelView, profile: dict[str, Any]) -> list[Action]:
    lead = [view.funnel.lead_agent] if view.funnel.lead_agent else []
    actions: list[Action] = []
    if not has_value(get_path(profile, "mswScore")):
        actions.append(Action(
            type=FORM, description=f"Complete {SUCCESS_WHEEL} assessment", priority=1,
            agents=lead, funnel=view.name, form_name=SUCCESS_WHEEL,
        ))
    if not has_value(get_path(profile, "basicInfo.website")):
        first = view.funnel.milestones[0] if view.funnel.milestones else None
        actions.append(Action(
            type=CHAT, description="Gather basic business information", priority=1,
            agents=lead, funnel=view.name, milestone=first.name if first else "",
            conversation_id=first.conversation_id if first else "",
        ))
    return actions


def _funnel_actions(view: FunnelView, submitted_forms: set[str]) -> list[Action]:
    actions = [
        Action(
            type=FORM, description=f"Complete {form}", priority=view.funnel.priority,
            agents=[view.funnel.lead_agent] if view.funnel.lead_agent else [],
            funnel=view.name, form_name=form,
        )
        for form in view.funnel.forms_needed
        if form not in submitted_forms
    ]
    phase = next((m for m in view.milestones if m.name == view.current_phase), None)
    if phase is not None and phase.progress < 100:
        actions.append(Action(
            type=CHAT, description=f"{phase.name}: {phase.description}".rstrip(": "),
            priority=phase.priority, agents=view.funnel.agents, funnel=view.name,
            milestone=phase.name, conversation_id=phase.conversation_id,
        ))
    return actions


def recommend_actions(
    board: FunnelBoard,
    profile: dict[str, Any],
    submitted_forms: set[str],
    limit: int | None = None,
) -> list[Action]:
    """Emit the next actions for a user, most urgent first.

    Forms sort before chats at equal priority; remaining ties follow catalog order.
    """
    candidates: list[Action] = []
    for view in sorted(board.active(), key=lambda v: board.catalog_index(v.name)):
        if is_onboarding(view.name):
            candidates.extend(_onboarding_actions(view, profile))
        candidates.extend(_funnel_actions(view, submitted_forms))

    seen: set[tuple[str, str]] = set()
    actions: list[Action] = []
    for action in candidates:
        if action.key in seen:
            continue
        seen.add(action.key)
        actions.append(action)

    actions.sort(key=lambda a: (a.priority, 0 if a.type == FORM else 1, board.catalog_index(a.funnel)))
    if limit is not None and limit >= 0:
        actions = actions[:limit]
    return actions


def initial_message(action: Action, funnel_name: str) -> str:
    """Opening agent message for a conversation started from *action*."""
    message = f"Hi! I'm here to help you with {action.description} as part of your {funnel_name} progression."
    if action.type == FORM and action.form_name:
        message += f"\n\nWe'll need to complete the {action.form_name} form. I'll guide you through this process."
    message += "\n\nShall we get started?"
    return message
