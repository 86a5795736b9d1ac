"""LLM-assisted milestone analysis.

Builds a dossier for one milestone (definition, recent conversation, form
answers, relevant profile data), asks the configured LLM for a progress
estimate, and normalises the answer. The estimate is only ever used to raise
recorded milestone progress, never to lower it.
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from wise365.catalog import FunnelDef, MilestoneDef
from wise365.config import get_settings
from wise365.progress import Evidence, clamp_progress, get_path, status_for_progress

log = logging.getLogger(__name__)

_MAX_MESSAGES = 40
_MAX_MESSAGE_CHARS = 1_000


class LLMCallError(Exception):
    """Milestone analysis got no usable answer from the LLM."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


PROGRESS_PROMPT = """\
You are an AI assistant helping to analyze a small business owner's progress \
through a business-development milestone.

You receive the milestone definition, the conversation held with the coaching \
agents about it, submitted form answers, and relevant profile data.

Judge how far the milestone is along (0 = nothing done, 100 = fully achieved). \
Be conservative: only give 100 when the evidence shows the milestone's \
validation logic is satisfied.

Answer with a single JSON object and nothing else:
{
  "progress": <integer 0-100>,
  "reasoning": "<two or three sentences>",
  "blockers": ["<what is stopping progress>"],
  "next_steps": ["<concrete next step>"]
}
"""

_DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "openai_compatible": "gpt-4o-mini",
}
_MAX_TOKENS = 800
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def extract_json(text: str) -> dict[str, Any]:
    """Parse the JSON object in an LLM reply; a fenced block wins over the raw text."""
    m = _FENCED_JSON.search(text)
    if m:
        text = m.group(1)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
    if not isinstance(parsed, dict):
        raise LLMCallError(f"LLM returned {type(parsed).__name__}, expected a JSON object")
    return parsed


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Async chat client used for milestone analysis (Anthropic or OpenAI)."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        settings = get_settings()
        self.provider = (provider or settings.llm_provider).lower()
        self.model = model or settings.llm_model or _DEFAULT_MODELS.get(self.provider, "")
        self._client: Any = self._connect(api_key, base_url)

    def _connect(self, api_key: str | None, base_url: str | None) -> Any:
        if self.provider == "anthropic":
            import anthropic

            key = api_key or os.environ.get("ANTHROPIC_API_KEY")
            return anthropic.AsyncAnthropic(**({"api_key": key} if key else {}))
        if self.provider in ("openai", "openai_compatible"):
            import openai

            kwargs: dict[str, Any] = {}
            key = api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            return openai.AsyncOpenAI(**kwargs)
        raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def _complete_anthropic(self, system: str, user: str) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=_MAX_TOKENS,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return response.content[0].text.strip()

    async def _complete_openai(self, system: str, user: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=_MAX_TOKENS,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Run one system/user exchange and return the JSON object it answers with.

        Transport failures are retryable; an unparseable reply is not.
        """
        complete = self._complete_anthropic if self.provider == "anthropic" else self._complete_openai
        try:
            text = await complete(system, user)
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc
        return extract_json(text)


# ---------------------------------------------------------------------------
# Dossier
# ---------------------------------------------------------------------------


def build_milestone_dossier(
    funnel: FunnelDef, milestone: MilestoneDef, evidence: Evidence,
    answers: dict[str, dict[str, Any]] | None = None,
) -> str:
    sections = [
        f"FUNNEL: {funnel.name}",
        f"MILESTONE: {milestone.name}",
    ]
    if milestone.description:
        sections.append(f"DESCRIPTION: {milestone.description}")
    if milestone.kpis:
        sections.append(f"KPIS: {', '.join(milestone.kpis)}")

    if milestone.data_path:
        value = get_path(evidence.profile, milestone.data_path)
        rendered = json.dumps(value, default=str)[:2000] if value is not None else "(missing)"
        sections.append(f"PROFILE DATA ({milestone.data_path}): {rendered}")

    convo = [m for m in evidence.messages if m.conversation_name == milestone.conversation_id]
    if convo:
        sections.append(f"\n--- CONVERSATION ({len(convo)} messages) ---")
        for msg in convo[-_MAX_MESSAGES:]:
            sections.append(f"{msg.sender}: {msg.content[:_MAX_MESSAGE_CHARS]}")

    for form in funnel.forms_needed:
        if answers and form in answers:
            sections.append(f"\n--- FORM: {form} ---")
            sections.append(json.dumps(answers[form], default=str)[:3000])
        else:
            sections.append(f"FORM {form}: not submitted")
    return "\n".join(sections)


@dataclass
class MilestoneAnalysis:
    progress: int
    status: str
    reasoning: str = ""
    blockers: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "progress": self.progress, "status": self.status, "reasoning": self.reasoning,
            "blockers": list(self.blockers), "next_steps": list(self.next_steps),
        }


def _str_items(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if str(v).strip()]


def parse_analysis(raw: dict[str, Any]) -> MilestoneAnalysis:
    progress = raw.get("progress")
    if not isinstance(progress, (int, float)):
        m = re.search(r"\d+", str(progress or ""))
        if m is None:
            log.warning("Unrecognizable progress %r, defaulting to 0", progress)
        progress = int(m.group(0)) if m else 0
    pct = clamp_progress(progress)
    return MilestoneAnalysis(
        progress=pct,
        status=status_for_progress(pct),
        reasoning=str(raw.get("reasoning", "")),
        blockers=_str_items(raw.get("blockers")),
        next_steps=_str_items(raw.get("next_steps")),
    )


async def analyze_milestone(
    client: LLMClient, funnel: FunnelDef, milestone: MilestoneDef, evidence: Evidence,
    answers: dict[str, dict[str, Any]] | None = None,
) -> MilestoneAnalysis:
    dossier = build_milestone_dossier(funnel, milestone, evidence, answers)
    raw = await client.call(PROGRESS_PROMPT, dossier)
    return parse_analysis(raw)
