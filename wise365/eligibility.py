"""Funnel eligibility and the per-user funnel board."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from wise365.catalog import FunnelDef, MilestoneDef, is_onboarding
from wise365.progress import (
    COMPLETED, IN_PROGRESS, NOT_READY, READY,
    Evidence, clamp_progress, current_phase, funnel_completion, get_path, has_value,
    merge_status, milestone_progress, recorded_milestones, status_for_progress,
)

log = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*-\s*(-?\d+(?:\.\d+)?)\s*$")

STATUS_ORDER = {IN_PROGRESS: 0, READY: 1, COMPLETED: 2, NOT_READY: 3}


@dataclass
class MilestoneView:
    name: str
    description: str
    funnel_name: str
    status: str
    progress: int
    priority: int
    conversation_id: str = ""
    data_path: str = ""
    kpis: list[str] = field(default_factory=list)
    agents: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name, "description": self.description,
            "funnel_name": self.funnel_name, "status": self.status,
            "progress": self.progress, "priority": self.priority,
            "conversation_id": self.conversation_id, "data_path": self.data_path,
            "kpis": list(self.kpis), "agents": list(self.agents),
        }


@dataclass
class FunnelView:
    funnel: FunnelDef
    status: str
    progress: int
    milestones: list[MilestoneView] = field(default_factory=list)
    unmet: list[str] = field(default_factory=list)
    current_phase: str | None = None

    @property
    def name(self) -> str:
        return self.funnel.name

    def milestone_progress(self) -> dict[str, int]:
        return {m.name: m.progress for m in self.milestones}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.funnel.name, "description": self.funnel.description,
            "priority": self.funnel.priority, "level": self.funnel.level,
            "status": self.status, "progress": self.progress,
            "current_phase": self.current_phase,
            "dependencies": list(self.funnel.dependencies),
            "forms_needed": list(self.funnel.forms_needed),
            "responsible_agents": {"lead": self.funnel.lead_agent, "supporting": self.funnel.supporting_agents},
            "unmet_requirements": list(self.unmet),
            "milestones": [m.to_dict() for m in self.milestones],
        }


@dataclass
class FunnelBoard:
    in_progress: list[FunnelView] = field(default_factory=list)
    ready: list[FunnelView] = field(default_factory=list)
    completed: list[FunnelView] = field(default_factory=list)
    locked: list[FunnelView] = field(default_factory=list)
    new_user: bool = False
    catalog: list[str] = field(default_factory=list)

    def active(self) -> list[FunnelView]:
        return self.in_progress + self.ready

    def all(self) -> list[FunnelView]:
        return self.in_progress + self.ready + self.completed + self.locked

    def get(self, funnel_name: str) -> FunnelView | None:
        return next((v for v in self.all() if v.name == funnel_name), None)

    def catalog_index(self, funnel_name: str) -> int:
        """Position of *funnel_name* in the catalog; unknown names sort last."""
        try:
            return self.catalog.index(funnel_name)
        except ValueError:
            return len(self.catalog)

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_user": self.new_user,
            "in_progress": [v.to_dict() for v in self.in_progress],
            "ready": [v.to_dict() for v in self.ready],
            "completed": [v.to_dict() for v in self.completed],
            "locked": [v.to_dict() for v in self.locked],
        }


# ---------------------------------------------------------------------------
# Criteria
# ---------------------------------------------------------------------------


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _norm(value: Any) -> str:
    return str(value).strip().lower()


def criterion_met(expected: Any, actual: Any) -> bool:
    """Check one entry criterion against the user's value.

    - ``None`` / empty: always met
    - ``"1-3"``: inclusive numeric range
    - number or numeric string: minimum
    - list: the user's value (scalar or list) shares at least one member
    - ``{"min": .., "max": ..}``: bounds, either optional
    - bool / other strings: equality (strings case-insensitive)
    """
    if expected is None or (isinstance(expected, (str, list, tuple, set, dict)) and not expected):
        return True
    if isinstance(expected, bool):
        return actual is expected
    if isinstance(expected, (int, float)):
        num = _as_number(actual)
        return num is not None and num >= expected
    if isinstance(expected, str):
        m = _RANGE_RE.match(expected)
        if m:
            num = _as_number(actual)
            lo, hi = float(m.group(1)), float(m.group(2))
            return num is not None and lo <= num <= hi
        minimum = _as_number(expected)
        if minimum is not None:
            num = _as_number(actual)
            return num is not None and num >= minimum
        return actual is not None and _norm(actual) == _norm(expected)
    if isinstance(expected, (list, tuple, set)):
        if not has_value(actual):
            return False
        items = actual if isinstance(actual, (list, tuple, set)) else [actual]
        return bool({_norm(a) for a in items} & {_norm(e) for e in expected})
    if isinstance(expected, dict):
        num = _as_number(actual)
        if num is None:
            return False
        lo, hi = _as_number(expected.get("min")), _as_number(expected.get("max"))
        return (lo is None or num >= lo) and (hi is None or num <= hi)
    return actual == expected


def unmet_entry_criteria(criteria: dict[str, Any], profile: dict[str, Any]) -> list[str]:
    return [key for key, expected in (criteria or {}).items()
            if not criterion_met(expected, get_path(profile, key))]


def entry_criteria_met(criteria: dict[str, Any], profile: dict[str, Any]) -> bool:
    return not unmet_entry_criteria(criteria, profile)


def funnel_doc_completed(doc: dict[str, Any] | None) -> bool:
    if not doc:
        return False
    return doc.get("status") == COMPLETED or doc.get("completed") is True


def dependencies_met(funnel: FunnelDef, progress_docs: dict[str, dict[str, Any]]) -> bool:
    return all(funnel_doc_completed(progress_docs.get(dep)) for dep in funnel.dependencies)


def data_requirements_met(funnel: FunnelDef, profile: dict[str, Any]) -> bool:
    return all(has_value(get_path(profile, req["path"])) for req in funnel.data_requirements)


def _describe_criterion(key: str, expected: Any) -> str:
    if isinstance(expected, (list, tuple, set)):
        return f"Report one of {key}: {', '.join(str(e) for e in expected)}"
    return f"Requires {key} {expected}"


def unmet_requirements(
    funnel: FunnelDef,
    profile: dict[str, Any],
    progress_docs: dict[str, dict[str, Any]],
    onboarding_done: bool = True,
) -> list[str]:
    unmet: list[str] = []
    if not is_onboarding(funnel.name) and not onboarding_done:
        unmet.append("Complete onboarding process")
    for dep in funnel.dependencies:
        if not funnel_doc_completed(progress_docs.get(dep)):
            unmet.append(f"Complete {dep}")
    for key in unmet_entry_criteria(funnel.entry_criteria, profile):
        unmet.append(_describe_criterion(key, funnel.entry_criteria[key]))
    for req in funnel.data_requirements:
        if not has_value(get_path(profile, req["path"])):
            unmet.append(f"Provide {req.get('description') or req['path']}")
    return unmet


# ---------------------------------------------------------------------------
# Board
# ---------------------------------------------------------------------------


def milestone_priority(funnel: FunnelDef, milestone: MilestoneDef, index: int) -> int:
    if is_onboarding(funnel.name):
        return 1
    return milestone.priority or funnel.priority or (index + 2)


def _held_status(recorded: str | None) -> str:
    """Status kept while prerequisites are unmet: started or finished work stays put."""
    return recorded if recorded in (IN_PROGRESS, COMPLETED) else NOT_READY


def build_view(
    funnel: FunnelDef,
    evidence: Evidence,
    doc: dict[str, Any] | None,
    *,
    eligible: bool = True,
    sequential: bool = False,
    unmet: list[str] | None = None,
) -> FunnelView:
    """Evaluate one funnel's milestones and roll them up.

    ``sequential`` marks untouched milestones after the first as ``not_ready``
    (used for a brand-new user's onboarding).
    """
    recorded = recorded_milestones(doc)
    recorded_status = {
        name: entry.get("status")
        for name, entry in ((doc or {}).get("milestones") or {}).items()
        if isinstance(entry, dict)
    }
    views: list[MilestoneView] = []
    for idx, m in enumerate(funnel.milestones):
        pct = milestone_progress(m, funnel, evidence, recorded.get(m.name, 0))
        if not eligible:
            status = _held_status(recorded_status.get(m.name))
            if status == COMPLETED:
                pct = 100
        elif sequential and idx > 0 and pct == 0:
            status = NOT_READY
        else:
            status = merge_status(
                recorded_status.get(m.name), status_for_progress(pct), f"{funnel.name}/{m.name}",
            )
            if status == COMPLETED:
                pct = 100
        views.append(MilestoneView(
            name=m.name, description=m.description, funnel_name=funnel.name,
            status=status, progress=pct, priority=milestone_priority(funnel, m, idx),
            conversation_id=m.conversation_id, data_path=m.data_path,
            kpis=list(m.kpis), agents=funnel.agents,
        ))

    pct = funnel_completion([v.progress for v in views], [m.weight for m in funnel.milestones])
    doc_status = COMPLETED if funnel_doc_completed(doc) else (doc or {}).get("status")
    if eligible:
        status = merge_status(doc_status, status_for_progress(pct), funnel.name)
    else:
        # evidence alone never completes or starts a funnel whose prerequisites are unmet
        status = _held_status(doc_status)
    if status == COMPLETED:
        pct = 100
    else:
        pct = max(pct, clamp_progress((doc or {}).get("progress")))
        pct = min(pct, 99) if pct >= 100 else pct

    phase = current_phase(funnel, {v.name: v.progress for v in views})
    return FunnelView(
        funnel=funnel, status=status, progress=pct, milestones=views,
        unmet=list(unmet or []), current_phase=phase.name if phase else None,
    )


def evaluate_funnels(
    funnels: list[FunnelDef],
    evidence: Evidence,
    progress_docs: dict[str, dict[str, Any]] | None = None,
) -> FunnelBoard:
    """Sort every funnel into in_progress / ready / completed / locked for a user."""
    docs = dict(progress_docs or {})
    board = FunnelBoard(new_user=not any(
        clamp_progress(d.get("progress")) > 0 or funnel_doc_completed(d) for d in docs.values()
    ), catalog=[f.name for f in funnels])
    if not funnels:
        return board

    onboarding = next((f for f in funnels if is_onboarding(f.name) and f.milestones), None)
    onboarding_done = True
    if onboarding is not None:
        view = build_view(onboarding, evidence, docs.get(onboarding.name), sequential=board.new_user)
        onboarding_done = view.status == COMPLETED
        if onboarding_done:
            board.completed.append(view)
            docs[onboarding.name] = {**(docs.get(onboarding.name) or {}), "status": COMPLETED}
        else:
            if view.status in (READY, NOT_READY):
                view.status = IN_PROGRESS
            board.in_progress.append(view)

    for funnel in funnels:
        if funnel is onboarding:
            continue
        doc = docs.get(funnel.name)
        unmet = unmet_requirements(funnel, evidence.profile, docs, onboarding_done=onboarding_done)
        view = build_view(funnel, evidence, doc, eligible=not unmet, unmet=unmet)
        if view.status == COMPLETED:
            board.completed.append(view)
            # later funnels in catalog order see this completion as met
            docs[funnel.name] = {**(doc or {}), "status": COMPLETED}
        elif not onboarding_done:
            view.status = NOT_READY
            for m in view.milestones:
                if m.status != COMPLETED:
                    m.status = NOT_READY
            board.locked.append(view)
        elif view.status == IN_PROGRESS:
            board.in_progress.append(view)
        elif unmet:
            board.locked.append(view)
        else:
            board.ready.append(view)

    log.debug(
        "Board: in_progress=%s ready=%s completed=%s locked=%s",
        [v.name for v in board.in_progress], [v.name for v in board.ready],
        [v.name for v in board.completed], [v.name for v in board.locked],
    )
    return board


def ordered_milestones(board: FunnelBoard, status: str | None = None) -> list[MilestoneView]:
    """Milestones of active and completed funnels, by priority then status."""
    items = [m for v in board.in_progress + board.ready + board.completed for m in v.milestones]
    if status and status != "all":
        items = [m for m in items if m.status == status]
    items.sort(key=lambda m: (m.priority, STATUS_ORDER.get(m.status, 99)))
    return items
