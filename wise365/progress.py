"""Progress evaluation: milestone and funnel completion from user evidence.

Milestone progress is a fixed-weight blend of three sub-scores:

- **conversation** (0.4): half for starting the milestone's conversation,
  half for a message containing a completion keyword
- **form** (0.3): fraction of the funnel's required forms submitted
- **data** (0.3): whether the milestone's data path holds a value

Only sources that apply to a milestone take part; weights are renormalised
over those. The evidence score never lowers progress already recorded for a
milestone, and statuses never leave ``completed``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from wise365.catalog import FunnelDef, MilestoneDef
from wise365.config import get_settings

log = logging.getLogger(__name__)

NOT_READY = "not_ready"
READY = "ready"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
STATUSES = (NOT_READY, READY, IN_PROGRESS, COMPLETED)

CONVERSATION_WEIGHT = 0.4
FORM_WEIGHT = 0.3
DATA_WEIGHT = 0.3

_STATUS_RANK = {NOT_READY: 0, READY: 1, IN_PROGRESS: 2, COMPLETED: 3}


class InvalidTransition(ValueError):
    """A status change that would move a funnel or milestone backwards."""


@dataclass
class Message:
    conversation_name: str
    content: str
    sender: str = "user"


@dataclass
class Evidence:
    """Everything the evaluator knows about one user."""
    profile: dict[str, Any] = field(default_factory=dict)
    messages: list[Message] = field(default_factory=list)
    submitted_forms: set[str] = field(default_factory=set)


@dataclass
class ConversationSignal:
    started: bool = False
    completed: bool = False

    @property
    def score(self) -> float:
        return 0.5 * self.started + 0.5 * self.completed


# ---------------------------------------------------------------------------
# Nested lookups
# ---------------------------------------------------------------------------


def get_path(data: Any, path: str) -> Any:
    """Resolve a dotted path like ``userData.basicInfo.website`` against *data*.

    A leading ``userData`` segment is ignored; numeric segments index lists.
    Returns ``None`` when any segment is missing.
    """
    if not path:
        return None
    parts = [p for p in path.strip().split(".") if p]
    if parts and parts[0] == "userData":
        parts = parts[1:]
    current = data
    for part in parts:
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            idx = int(part)
            if not -len(current) <= idx < len(current):
                return None
            current = current[idx]
        else:
            return None
    return current


def has_value(value: Any) -> bool:
    """True when *value* is present and non-empty (0 and False count as present)."""
    if value is None:
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (dict, list, tuple, set)):
        return len(value) > 0
    return True


# ---------------------------------------------------------------------------
# Sub-scores
# ---------------------------------------------------------------------------


def _keyword_pattern(keywords: Iterable[str]) -> re.Pattern[str] | None:
    words = [re.escape(k.strip()) for k in keywords if k and k.strip()]
    if not words:
        return None
    return re.compile(r"\b(?:" + "|".join(words) + r")\b", re.IGNORECASE)


def conversation_signal(messages: Iterable[Message], milestone: MilestoneDef) -> ConversationSignal:
    if not milestone.conversation_id:
        return ConversationSignal()
    keywords = milestone.completion_keywords or get_settings().completion_keywords
    pattern = _keyword_pattern(keywords)
    signal = ConversationSignal()
    for msg in messages:
        if msg.conversation_name != milestone.conversation_id:
            continue
        signal.started = True
        if pattern is not None and pattern.search(msg.content or ""):
            signal.completed = True
            break
    return signal


def form_score(funnel: FunnelDef, submitted: set[str]) -> float:
    if not funnel.forms_needed:
        return 0.0
    done = sum(1 for f in funnel.forms_needed if f in submitted)
    return done / len(funnel.forms_needed)


def data_score(milestone: MilestoneDef, profile: dict[str, Any]) -> float:
    return 1.0 if has_value(get_path(profile, milestone.data_path)) else 0.0


def applicable_sources(milestone: MilestoneDef, funnel: FunnelDef) -> dict[str, bool]:
    """Which evidence sources count towards *milestone*.

    An explicit ``requires_*`` flag wins; otherwise a source applies when the
    milestone (or for forms, its funnel) links to it.
    """
    def resolve(flag: bool | None, linked: bool) -> bool:
        return linked if flag is None else flag

    return {
        "conversation": resolve(milestone.requires_conversation, bool(milestone.conversation_id)),
        "form": resolve(milestone.requires_form, bool(funnel.forms_needed)),
        "data": resolve(milestone.requires_data, bool(milestone.data_path)),
    }


def clamp_progress(value: float | int | None) -> int:
    try:
        v = float(value or 0)
    except (TypeError, ValueError):
        return 0
    return int(max(0, min(100, round(v))))


def evidence_score(milestone: MilestoneDef, funnel: FunnelDef, evidence: Evidence) -> int:
    sources = applicable_sources(milestone, funnel)
    parts: list[tuple[float, float]] = []
    if sources["conversation"]:
        parts.append((CONVERSATION_WEIGHT, conversation_signal(evidence.messages, milestone).score))
    if sources["form"]:
        parts.append((FORM_WEIGHT, form_score(funnel, evidence.submitted_forms)))
    if sources["data"]:
        parts.append((DATA_WEIGHT, data_score(milestone, evidence.profile)))
    total = sum(w for w, _ in parts)
    if total <= 0:
        return 0
    return clamp_progress(100 * sum(w * s for w, s in parts) / total)


def milestone_progress(
    milestone: MilestoneDef, funnel: FunnelDef, evidence: Evidence, recorded: int | float | None = 0,
) -> int:
    return max(evidence_score(milestone, funnel, evidence), clamp_progress(recorded))


def status_for_progress(progress: int | float) -> str:
    if progress >= 100:
        return COMPLETED
    if progress > 0:
        return IN_PROGRESS
    return READY


def funnel_completion(progress: list[int], weights: list[float] | None = None) -> int:
    """Weighted average of milestone progress, rounded to an int."""
    if not progress:
        return 0
    if weights is None:
        weights = [1.0] * len(progress)
    total = sum(weights)
    if total <= 0:
        return 0
    return clamp_progress(sum(p * w for p, w in zip(progress, weights)) / total)


def current_phase(funnel: FunnelDef, progress_by_milestone: dict[str, int]) -> MilestoneDef | None:
    """First milestone (in catalog order) that is not yet at 100%."""
    for m in funnel.milestones:
        if progress_by_milestone.get(m.name, 0) < 100:
            return m
    return funnel.milestones[-1] if funnel.milestones else None


def recorded_milestones(doc: dict[str, Any] | None) -> dict[str, int]:
    """Milestone progress from a stored progress document."""
    out: dict[str, int] = {}
    for name, entry in ((doc or {}).get("milestones") or {}).items():
        if isinstance(entry, dict):
            out[name] = clamp_progress(entry.get("progress"))
        else:
            out[name] = clamp_progress(entry)
    return out


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


def validate_transition(old: str | None, new: str) -> None:
    """Raise :class:`InvalidTransition` unless *old* -> *new* is allowed.

    Statuses only move forward (skipping is fine). ``ready`` may fall back to
    ``not_ready`` when prerequisites lapse. Nothing leaves ``completed``.
    """
    if new not in _STATUS_RANK:
        raise InvalidTransition(f"Unknown status {new!r}")
    if old is None or old == new:
        return
    if old not in _STATUS_RANK:
        raise InvalidTransition(f"Unknown status {old!r}")
    if old == READY and new == NOT_READY:
        return
    if _STATUS_RANK[new] < _STATUS_RANK[old]:
        raise InvalidTransition(f"Cannot move from {old} to {new}")


def merge_status(old: str | None, new: str, label: str = "") -> str:
    """Apply a status change, keeping *old* when the move is illegal."""
    try:
        validate_transition(old, new)
    except InvalidTransition as exc:
        log.warning("Ignoring status change for %s: %s", label or "entry", exc)
        return old if old in _STATUS_RANK else new
    return new
