from __future__ import annotations

from wise365.catalog import FunnelDef, MilestoneDef, default_catalog
from wise365.eligibility import evaluate_funnels
from wise365.progress import Evidence, Message
from wise365.recommender import CHAT, FORM, SUCCESS_WHEEL, Action, initial_message, recommend_actions


def _onboarded() -> Evidence:
    return Evidence(
        profile={
            "basicInfo": {"website": "https://acme.test"},
            "websiteInsights": {"title": "Acme"},
            "mswScore": 2,
            "reportedChallenges": ["Low visibility"],
        },
        messages=[
            Message("basicInfoConversation", "completed"),
            Message("websiteInsightsConversation", "completed"),
        ],
        submitted_forms={SUCCESS_WHEEL},
    )


class TestRecommendActions:
    def test_new_user_gets_wheel_then_basic_info(self):
        board = evaluate_funnels(default_catalog(), Evidence(), {})
        actions = recommend_actions(board, {}, set())
        assert [(a.type, a.priority) for a in actions] == [(FORM, 1), (CHAT, 1)]
        assert actions[0].form_name == SUCCESS_WHEEL
        assert actions[1].description == "Gather basic business information"
        assert actions[1].conversation_id == "basicInfoConversation"
        assert actions[0].agents == ["Shawn (Tool Guidance Assistant)"]

    def test_known_website_skips_basic_info_chat(self):
        profile = {"basicInfo": {"website": "https://acme.test"}}
        board = evaluate_funnels(default_catalog(), Evidence(profile=profile), {})
        actions = recommend_actions(board, profile, set())
        descriptions = [a.description for a in actions]
        assert "Gather basic business information" not in descriptions
        # the current-phase chat replaces it
        assert any(a.type == CHAT and a.milestone == "Collect Basic Info" for a in actions)

    def test_active_funnel_phase_chat(self):
        evidence = _onboarded()
        board = evaluate_funnels(default_catalog(), evidence, {})
        actions = recommend_actions(board, evidence.profile, evidence.submitted_forms)
        assert len(actions) == 1
        chat = actions[0]
        assert chat.type == CHAT
        assert chat.funnel == "Awareness Funnel"
        assert chat.milestone == "Analyze Visibility"
        assert chat.conversation_id == "visibilityAnalysisConversation"
        assert chat.agents[0] == "Mike (Marketing Strategist)"
        assert "Lisa (Instagram Marketing Maestro)" in chat.agents

    def test_missing_forms_sort_before_chats(self):
        funnels = [
            FunnelDef(name="Onboarding Funnel", milestones=[MilestoneDef(name="Intro", data_path="ok")]),
            FunnelDef(
                name="Content", priority=2, forms_needed=["Positioning Factor Worksheet"],
                responsible_agents={"lead": "Ally", "supporting": ["Gabriel"]},
                milestones=[MilestoneDef(name="Draft", conversation_id="draft", priority=2)],
            ),
        ]
        evidence = Evidence(profile={"ok": True})
        board = evaluate_funnels(funnels, evidence, {})
        actions = recommend_actions(board, evidence.profile, set())
        assert [a.type for a in actions] == [FORM, CHAT]
        assert actions[0].form_name == "Positioning Factor Worksheet"
        assert actions[0].agents == ["Ally"]
        assert actions[1].agents == ["Ally", "Gabriel"]

    def test_equal_priority_follows_catalog_order(self):
        funnels = [
            FunnelDef(name="Onboarding Funnel", milestones=[MilestoneDef(name="Intro", data_path="ok")]),
            FunnelDef(name="Alpha", priority=2, milestones=[MilestoneDef(name="A1", conversation_id="a", priority=2)]),
            FunnelDef(name="Beta", priority=2, milestones=[MilestoneDef(name="B1", conversation_id="b", priority=2)]),
        ]
        evidence = Evidence(profile={"ok": True}, messages=[Message("b", "Let's begin")])
        board = evaluate_funnels(funnels, evidence, {})
        # Beta is in progress and Alpha only ready, yet Alpha comes first in the catalog
        assert [v.name for v in board.active()] == ["Beta", "Alpha"]
        actions = recommend_actions(board, evidence.profile, set())
        assert [a.funnel for a in actions] == ["Alpha", "Beta"]

    def test_limit(self):
        board = evaluate_funnels(default_catalog(), Evidence(), {})
        assert len(recommend_actions(board, {}, set(), limit=1)) == 1
        assert recommend_actions(board, {}, set(), limit=0) == []

    def test_completed_funnels_produce_no_actions(self):
        funnels = [FunnelDef(name="Onboarding Funnel", milestones=[MilestoneDef(name="Intro", data_path="ok")])]
        evidence = Evidence(profile={"ok": 1})
        board = evaluate_funnels(funnels, evidence, {})
        assert recommend_actions(board, evidence.profile, set()) == []


class TestInitialMessage:
    def test_form_action(self):
        action = Action(type=FORM, description="Complete the wheel", priority=1, form_name=SUCCESS_WHEEL)
        text = initial_message(action, "Onboarding Funnel")
        assert "Complete the wheel" in text
        assert "Onboarding Funnel" in text
        assert SUCCESS_WHEEL in text

    def test_chat_action(self):
        action = Action(type=CHAT, description="Analyze Visibility", priority=2)
        text = initial_message(action, "Awareness Funnel")
        assert "form" not in text
        assert text.endswith("Shall we get started?")
