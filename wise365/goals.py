"""Goal detection: trigger phrases in a user's chat message open a goal with a due date."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

log = logging.getLogger(__name__)

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
GOAL_STATUSES = (PENDING, IN_PROGRESS, COMPLETED)

TITLE_LIMIT = 100


@dataclass(frozen=True)
class GoalPattern:
    type: str
    triggers: tuple[str, ...]
    duration_days: int
    priority: str = "high"


GOAL_PATTERNS: tuple[GoalPattern, ...] = (
    GoalPattern(
        type="content_creation",
        triggers=("let's create content", "create a month", "content calendar", "post schedule"),
        duration_days=30,
    ),
    GoalPattern(
        type="strategy",
        triggers=("develop a strategy", "marketing plan", "campaign strategy"),
        duration_days=14,
    ),
)


@dataclass
class DetectedGoal:
    type: str
    title: str
    description: str
    priority: str
    trigger: str
    duration_days: int

    def due_date(self, start: datetime) -> datetime:
        return start + timedelta(days=self.duration_days)


def _normalize(text: str) -> str:
    # curly apostrophes from mobile keyboards
    return " ".join(text.replace("’", "'").lower().split())


def goal_title(text: str) -> str:
    """First sentence of *text*, cut to TITLE_LIMIT characters with an ellipsis."""
    first = re.split(r"[.!?]+", text.strip(), maxsplit=1)[0].strip()
    if len(first) > TITLE_LIMIT:
        return first[:TITLE_LIMIT] + "..."
    return first


def detect_goal(text: str, patterns: tuple[GoalPattern, ...] = GOAL_PATTERNS) -> DetectedGoal | None:
    """Return the goal of the first pattern whose trigger phrase occurs in *text*."""
    normalized = _normalize(text or "")
    if not normalized:
        return None
    for pattern in patterns:
        trigger = next((t for t in pattern.triggers if t in normalized), None)
        if trigger is None:
            continue
        log.debug("Goal trigger %r matched (%s)", trigger, pattern.type)
        return DetectedGoal(
            type=pattern.type, title=goal_title(text), description=text.strip(),
            priority=pattern.priority, trigger=trigger, duration_days=pattern.duration_days,
        )
    return None


class InvalidGoalStatus(ValueError):
    pass


def check_goal_status(current: str, new: str) -> None:
    """Goals only move forward: pending -> in_progress -> completed (skips allowed)."""
    if new not in GOAL_STATUSES:
        raise InvalidGoalStatus(f"Unknown goal status '{new}'")
    if current in GOAL_STATUSES and GOAL_STATUSES.index(new) < GOAL_STATUSES.index(current):
        raise InvalidGoalStatus(f"Cannot move goal from {current} to {new}")
