"""Funnel catalog: built-in definitions, parsing, and validation.

A catalog is an ordered list of :class:`FunnelDef`. Definitions live in the
``funnels`` / ``milestones`` tables at runtime; this module converts between
raw records (JSON, XLSX rows, seed data), dataclasses, and ORM rows, and
enforces the catalog invariants:

- funnel names are unique
- milestone names are unique within their funnel
- every dependency names a funnel in the same catalog
- the dependency graph has no cycles
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from wise365.config import get_settings
from wise365.models import Funnel, Milestone
from wise365.utils import json_parse

log = logging.getLogger(__name__)


class CatalogError(ValueError):
    """Funnel catalog failed validation."""


@dataclass
class MilestoneDef:
    name: str
    description: str = ""
    conversation_id: str = ""
    data_path: str = ""
    requires_conversation: bool | None = None
    requires_form: bool | None = None
    requires_data: bool | None = None
    completion_keywords: list[str] = field(default_factory=list)
    kpis: list[str] = field(default_factory=list)
    priority: int | None = None
    weight: float = 1.0
    project_name: str = ""


@dataclass
class FunnelDef:
    name: str
    description: str = ""
    priority: int = 1
    level: int = 1
    dependencies: list[str] = field(default_factory=list)
    entry_criteria: dict[str, Any] = field(default_factory=dict)
    forms_needed: list[str] = field(default_factory=list)
    responsible_agents: dict[str, Any] = field(default_factory=dict)
    data_requirements: list[dict[str, str]] = field(default_factory=list)
    milestones: list[MilestoneDef] = field(default_factory=list)

    @property
    def lead_agent(self) -> str:
        return str(self.responsible_agents.get("lead") or "")

    @property
    def supporting_agents(self) -> list[str]:
        return [str(a) for a in self.responsible_agents.get("supporting") or []]

    @property
    def agents(self) -> list[str]:
        lead = [self.lead_agent] if self.lead_agent else []
        return lead + [a for a in self.supporting_agents if a != self.lead_agent]


def is_onboarding(funnel_name: str) -> bool:
    return funnel_name.strip().lower() == get_settings().onboarding_funnel.strip().lower()


# ---------------------------------------------------------------------------
# Built-in catalog
# ---------------------------------------------------------------------------

_MSW = "Marketing Success Wheel"

DEFAULT_FUNNELS: list[dict[str, Any]] = [
    {
        "name": "Onboarding Funnel",
        "description": "Collect foundational business data, validate user objectives, and guide them into relevant funnels.",
        "priority": 1, "level": 1, "dependencies": [],
        "entry_criteria": {},
        "responsible_agents": {
            "lead": "Shawn (Tool Guidance Assistant)",
            "supporting": ["Caner (InsightPulse AI)", "Ally (Positioning Factors Accelerator)"],
        },
        "forms_needed": [_MSW],
        "milestones": [
            {
                "name": "Collect Basic Info",
                "description": "Gather essential business data like name, website, and goals.",
                "conversation_id": "basicInfoConversation", "data_path": "userData.basicInfo",
                "project_name": "Basic Information Collection", "priority": 1,
                "kpis": ["% of users completing onboarding"],
            },
            {
                "name": "Validate Website Findings",
                "description": "Analyze website insights and validate with the user.",
                "conversation_id": "websiteInsightsConversation", "data_path": "userData.websiteInsights",
                "project_name": "Website Analysis Validation", "priority": 2,
                "kpis": ["Accuracy of funnel recommendations"],
            },
        ],
    },
    {
        "name": "Awareness Funnel",
        "description": "Increase visibility and attract a broader audience.",
        "priority": 2, "level": 2, "dependencies": ["Onboarding Funnel"],
        "entry_criteria": {"mswScore": "1-3", "reportedChallenges": ["Low visibility"]},
        "responsible_agents": {
            "lead": "Mike (Marketing Strategist)",
            "supporting": ["Gabriel (Blog Blueprint)", "Lisa (Instagram Marketing Maestro)"],
        },
        "forms_needed": [_MSW],
        "milestones": [
            {
                "name": "Analyze Visibility",
                "description": "Assess current visibility efforts and identify gaps.",
                "conversation_id": "visibilityAnalysisConversation", "data_path": "userData.visibilityAnalysis",
                "project_name": "Visibility Analysis", "priority": 2,
                "kpis": ["Website traffic growth"],
            },
            {
                "name": "Develop Multi-Channel Strategy",
                "description": "Create a strategy for visibility improvement across platforms.",
                "conversation_id": "multiChannelStrategyConversation", "data_path": "userData.multiChannelStrategy",
                "project_name": "Multi-Channel Strategy Development", "priority": 3,
                "kpis": ["Campaign impressions", "Brand mentions"],
            },
        ],
    },
    {
        "name": "Lead Generation Funnel",
        "description": "Build a pipeline of qualified leads.",
        "priority": 3, "level": 3, "dependencies": ["Awareness Funnel"],
        "entry_criteria": {"mswScore": "1-3", "reportedChallenges": ["Low lead volume"]},
        "responsible_agents": {
            "lead": "Orion (Lead Magnet Maker)",
            "supporting": ["Gabriel (Blog Blueprint)", "Ally (Positioning Factors Accelerator)"],
        },
        "forms_needed": [_MSW],
        "milestones": [
            {
                "name": "Develop Lead Magnet",
                "description": "Create high-value lead magnets for potential customers.",
                "conversation_id": "leadMagnetConversation", "data_path": "userData.leadMagnets",
                "project_name": "Lead Magnet Development", "priority": 2,
                "kpis": ["Total leads generated"],
            },
            {
                "name": "Optimize Landing Pages",
                "description": "Enhance landing pages to increase conversions.",
                "conversation_id": "landingPageConversation", "data_path": "userData.landingPageOptimization",
                "project_name": "Landing Page Optimization", "priority": 3,
                "kpis": ["Lead-to-conversion ratios"],
            },
        ],
    },
    {
        "name": "Engagement Funnel",
        "description": "Strengthen interactions between the business and its audience.",
        "priority": 4, "level": 3, "dependencies": ["Awareness Funnel"],
        "entry_criteria": {"mswScore": "1-3", "reportedChallenges": ["Low engagement metrics"]},
        "responsible_agents": {
            "lead": "Sylvester (MSW Optimizer)",
            "supporting": ["Jesse (Email Marketing Maestro)", "Lisa (Instagram Marketing Maestro)"],
        },
        "forms_needed": [_MSW],
        "milestones": [
            {
                "name": "Launch Interactive Content",
                "description": "Create and deploy interactive content like quizzes or polls.",
                "conversation_id": "interactiveContentConversation", "data_path": "userData.interactiveContent",
                "project_name": "Interactive Content Launch", "priority": 2,
                "kpis": ["Engagement rates", "Time spent on site"],
            },
            {
                "name": "Improve Email Open Rates",
                "description": "Enhance email content to increase open and click-through rates.",
                "conversation_id": "emailCampaignsConversation", "data_path": "userData.emailCampaigns",
                "project_name": "Email Campaign Optimization", "priority": 3,
                "kpis": ["Email open rates", "Click-through rates"],
            },
        ],
    },
    {
        "name": "Customer Ladder Funnel",
        "description": "Move customers from buyers to advocates.",
        "priority": 3, "level": 3, "dependencies": ["Lead Generation Funnel"],
        "entry_criteria": {"mswScore": "1-3", "reportedChallenges": ["Retention challenges"]},
        "responsible_agents": {
            "lead": "Troy (CrossSell Catalyst)",
            "supporting": ["Sylvester (MSW Optimizer)", "Aaron (TINB Builder)"],
        },
        "forms_needed": [_MSW],
        "milestones": [
            {
                "name": "Identify Customer Segments",
                "description": "Focus on key segments for upselling and cross-selling.",
                "conversation_id": "customerSegmentsConversation", "data_path": "userData.customerSegments",
                "project_name": "Customer Segment Identification", "priority": 2,
                "kpis": ["Upsell opportunities"],
            },
            {
                "name": "Develop Loyalty Initiatives",
                "description": "Launch loyalty programs or cross-sell campaigns.",
                "conversation_id": "loyaltyInitiativesConversation", "data_path": "userData.loyaltyInitiatives",
                "project_name": "Loyalty Initiative Development", "priority": 3,
                "kpis": ["Repeat purchases"],
            },
        ],
    },
    {
        "name": "Retention & Referrals Funnel",
        "description": "Turn satisfied customers into advocates.",
        "priority": 4, "level": 4, "dependencies": ["Customer Ladder Funnel"],
        "entry_criteria": {"mswScore": "1-3", "reportedChallenges": ["Low retention or referral rates"]},
        "responsible_agents": {
            "lead": "Daniela (Reputation Builder AI)",
            "supporting": ["Troy (CrossSell Catalyst)", "Jesse (Email Marketing Maestro)"],
        },
        "forms_needed": [_MSW],
        "milestones": [
            {
                "name": "Launch Referral Program",
                "description": "Design and implement a referral program.",
                "conversation_id": "referralProgramConversation", "data_path": "userData.referralProgram",
                "project_name": "Referral Program Launch", "priority": 2,
                "kpis": ["Referral conversions"],
            },
            {
                "name": "Gather Testimonials",
                "description": "Collect high-quality testimonials from satisfied customers.",
                "conversation_id": "testimonialsConversation", "data_path": "userData.testimonials",
                "project_name": "Testimonial Collection", "priority": 3,
                "kpis": ["Testimonial volume"],
            },
        ],
    },
]

GRADING_SCALE = [
    "A: Rockstar status! You're crushing it!",
    "B: Nice! You're above average and doing well.",
    "C: You're average, hanging in there with the pack.",
    "D: Below average. Not quite there yet, but there's potential!",
    "F: Ouch! Looks like there's some room for improvement.",
]

_MSW_AREAS = [
    ("Awareness Grade", "The ability to make potential customers aware of your brand, products, or services."),
    ("Engagement Grade", "The level of interaction and involvement your audience has with your content or brand."),
    ("Lead Generation Grade", "How well you turn interested visitors into identifiable leads."),
    ("Conversion Optimization Grade", "How effectively leads become paying customers."),
    ("WOW Grade", "How consistently customers are delighted by the experience you deliver."),
    ("Customer Ladder Grade", "How well you move customers to repeat and higher-value purchases."),
    ("Reviews & Testimonials Grade", "The volume and quality of public proof from happy customers."),
    ("Referrals Grade", "How often existing customers bring you new customers."),
]

DEFAULT_FORM_TEMPLATES: list[dict[str, Any]] = [
    {
        "name": _MSW,
        "description": "A self-assessment form for grading your marketing success across various categories.",
        "sections": [
            {"question": q, "definition": d, "gradingScale": GRADING_SCALE} for q, d in _MSW_AREAS
        ],
    },
    {
        "name": "World's Best Buyer Persona",
        "description": "Describe the ideal customer your marketing is written for.",
        "sections": [
            {"question": "What is your website URL?"},
            {"question": "What name are you giving your persona?"},
            {"question": "What is the job title or role of your persona?"},
            {"question": "What situation is your persona in that needs to be resolved?"},
            {"question": "What problem(s) has this situation caused for your persona?"},
            {"question": "What are the persona's Action Beliefs (Gains they expect from acting)?"},
            {"question": "What are the persona's Inaction Beliefs (Pains they fear from not acting)?"},
            {"question": "What is your T.I.N.B (There Is No B option, as you are the best solution for this persona)?"},
        ],
    },
    {
        "name": "Positioning Factor Worksheet",
        "description": "Work out what makes the business different from its competitors.",
        "sections": [
            {"question": "Website URL"},
            {"question": "Step 1: Reflect on Your Strengths"},
            {"question": "Step 2: Identify Unique Attributes"},
            {"question": "Step 3: Validate with Customer Feedback"},
        ],
    },
]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _pick(record: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key (snake_case or camelCase spelling)."""
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def _opt_bool(value: Any) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_milestone(record: dict[str, Any]) -> MilestoneDef:
    name = str(_pick(record, "name", default="")).strip()
    if not name:
        raise CatalogError("Milestone without a name")
    weight = _pick(record, "weight", default=1.0)
    try:
        weight = float(weight)
    except (TypeError, ValueError):
        weight = 1.0
    return MilestoneDef(
        name=name,
        description=str(_pick(record, "description", default="")),
        conversation_id=str(_pick(record, "conversation_id", "conversationId", default="")),
        data_path=str(_pick(record, "data_path", "dataPath", default="")),
        requires_conversation=_opt_bool(_pick(record, "requires_conversation", "requiresConversation")),
        requires_form=_opt_bool(_pick(record, "requires_form", "requiresForm")),
        requires_data=_opt_bool(_pick(record, "requires_data", "requiresData")),
        completion_keywords=_str_list(_pick(record, "completion_keywords", "completionKeywords")),
        kpis=_str_list(_pick(record, "kpis", default=[])),
        priority=_opt_int(_pick(record, "priority")),
        weight=max(weight, 0.0),
        project_name=str(_pick(record, "project_name", "projectName", default="")),
    )


def parse_funnel(record: dict[str, Any]) -> FunnelDef:
    name = str(_pick(record, "name", default="")).strip()
    if not name:
        raise CatalogError("Funnel without a name")
    agents = _pick(record, "responsible_agents", "responsibleAgents", default={}) or {}
    return FunnelDef(
        name=name,
        description=str(_pick(record, "description", default="")),
        priority=_opt_int(_pick(record, "priority")) or 1,
        level=_opt_int(_pick(record, "level")) or 1,
        dependencies=_str_list(_pick(record, "dependencies", default=[])),
        entry_criteria=dict(_pick(record, "entry_criteria", "entryCriteria", default={}) or {}),
        forms_needed=_str_list(_pick(record, "forms_needed", "formsNeeded", default=[])),
        responsible_agents={
            "lead": str(agents.get("lead") or ""),
            "supporting": _str_list(agents.get("supporting")),
        },
        data_requirements=[
            {"path": str(r.get("path", "")), "description": str(r.get("description", ""))}
            for r in _pick(record, "data_requirements", "dataRequirements", default=[]) or []
            if r.get("path")
        ],
        milestones=[parse_milestone(m) for m in _pick(record, "milestones", default=[]) or []],
    )


def parse_catalog(records: list[dict[str, Any]]) -> list[FunnelDef]:
    """Parse and validate a list of raw funnel records."""
    if not isinstance(records, list):
        raise CatalogError("Catalog must be a list of funnel records")
    funnels = [parse_funnel(r) for r in records]
    validate_catalog(funnels)
    return funnels


def validate_catalog(funnels: list[FunnelDef]) -> None:
    names: set[str] = set()
    for funnel in funnels:
        if funnel.name in names:
            raise CatalogError(f"Duplicate funnel name: {funnel.name!r}")
        names.add(funnel.name)
        seen: set[str] = set()
        for m in funnel.milestones:
            if m.name in seen:
                raise CatalogError(f"Duplicate milestone {m.name!r} in funnel {funnel.name!r}")
            seen.add(m.name)

    by_name = {f.name: f for f in funnels}
    for funnel in funnels:
        for dep in funnel.dependencies:
            if dep not in by_name:
                raise CatalogError(f"Funnel {funnel.name!r} depends on unknown funnel {dep!r}")
            if dep == funnel.name:
                raise CatalogError(f"Funnel {funnel.name!r} depends on itself")

    # 0 = unvisited, 1 = on stack, 2 = done
    state: dict[str, int] = {}

    def visit(name: str, path: list[str]) -> None:
        if state.get(name) == 2:
            return
        if state.get(name) == 1:
            cycle = " -> ".join(path[path.index(name):] + [name])
            raise CatalogError(f"Dependency cycle: {cycle}")
        state[name] = 1
        for dep in by_name[name].dependencies:
            visit(dep, path + [name])
        state[name] = 2

    for funnel in funnels:
        visit(funnel.name, [])


def default_catalog() -> list[FunnelDef]:
    return parse_catalog(DEFAULT_FUNNELS)


# ---------------------------------------------------------------------------
# ORM conversion
# ---------------------------------------------------------------------------


def funnel_from_orm(row: Funnel) -> FunnelDef:
    return FunnelDef(
        name=row.name,
        description=row.description,
        priority=row.priority,
        level=row.level,
        dependencies=json_parse(row.dependencies_json, []),
        entry_criteria=json_parse(row.entry_criteria_json, {}),
        forms_needed=json_parse(row.forms_needed_json, []),
        responsible_agents=json_parse(row.responsible_agents_json, {}),
        data_requirements=json_parse(row.data_requirements_json, []),
        milestones=[
            MilestoneDef(
                name=m.name,
                description=m.description,
                conversation_id=m.conversation_id,
                data_path=m.data_path,
                requires_conversation=m.requires_conversation,
                requires_form=m.requires_form,
                requires_data=m.requires_data,
                completion_keywords=json_parse(m.completion_keywords_json, []),
                kpis=json_parse(m.kpis_json, []),
                priority=m.priority,
                weight=m.weight,
                project_name=m.project_name,
            )
            for m in sorted(row.milestones, key=lambda m: m.position)
        ],
    )


def funnel_to_orm(defn: FunnelDef) -> Funnel:
    return Funnel(
        name=defn.name,
        description=defn.description,
        priority=defn.priority,
        level=defn.level,
        dependencies_json=json.dumps(defn.dependencies),
        entry_criteria_json=json.dumps(defn.entry_criteria),
        forms_needed_json=json.dumps(defn.forms_needed),
        responsible_agents_json=json.dumps(defn.responsible_agents),
        data_requirements_json=json.dumps(defn.data_requirements),
        milestones=[
            Milestone(
                position=idx,
                name=m.name,
                description=m.description,
                conversation_id=m.conversation_id,
                data_path=m.data_path,
                requires_conversation=m.requires_conversation,
                requires_form=m.requires_form,
                requires_data=m.requires_data,
                completion_keywords_json=json.dumps(m.completion_keywords),
                kpis_json=json.dumps(m.kpis),
                priority=m.priority,
                weight=m.weight,
                project_name=m.project_name,
            )
            for idx, m in enumerate(defn.milestones)
        ],
    )


def funnel_to_dict(defn: FunnelDef) -> dict[str, Any]:
    return {
        "name": defn.name,
        "description": defn.description,
        "priority": defn.priority,
        "level": defn.level,
        "dependencies": list(defn.dependencies),
        "entry_criteria": dict(defn.entry_criteria),
        "forms_needed": list(defn.forms_needed),
        "responsible_agents": {"lead": defn.lead_agent, "supporting": defn.supporting_agents},
        "data_requirements": list(defn.data_requirements),
        "milestones": [
            {
                "name": m.name, "description": m.description,
                "conversation_id": m.conversation_id, "data_path": m.data_path,
                "requires_conversation": m.requires_conversation,
                "requires_form": m.requires_form, "requires_data": m.requires_data,
                "completion_keywords": list(m.completion_keywords), "kpis": list(m.kpis),
                "priority": m.priority, "weight": m.weight, "project_name": m.project_name,
            }
            for m in defn.milestones
        ],
    }
