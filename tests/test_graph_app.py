"""End-to-end pipeline graph: safety -> intervene | generate."""

import pytest

from graph_app import PipelineState, build_intervention_graph, route_after_safety, run_pipeline
from schemas import ContentSource, QuestRequest, ResetRequest, SafetyVerdict, ScriptRequest

from conftest import CRISIS_VERDICT, MODEL_QUEST_SET, quest_payload


@pytest.fixture
def graph(nodes):
    return build_intervention_graph(nodes)


class TestRouting:

    def test_clear_verdict_generates(self):
        state = PipelineState(kind="quests", verdict=SafetyVerdict())
        assert route_after_safety(state) == "generate"

    def test_intervention_verdict_intervenes(self):
        state = PipelineState(kind="quests", verdict=SafetyVerdict.model_validate(CRISIS_VERDICT))
        assert route_after_safety(state) == "intervene"


class TestPipeline:

    def test_clean_notes_generate_without_classifier(self, graph, fake_client):
        fake_client.queue(MODEL_QUEST_SET)
        result = run_pipeline(graph, "quests", QuestRequest.model_validate(quest_payload(notes="calm day")))

        assert result.source is ContentSource.model
        # only the quest generation call; no classifier call
        assert len(fake_client.calls) == 1

    def test_crisis_text_short_circuits_generation(self, graph, fake_client):
        fake_client.queue(CRISIS_VERDICT, MODEL_QUEST_SET)
        request = QuestRequest.model_validate(quest_payload(notes="I want to kill myself"))

        result = run_pipeline(graph, "quests", request)

        assert result.intervention is True
        assert result.quests == []
        assert result.source is ContentSource.intervention
        assert len(fake_client.calls) == 1  # classifier only

    def test_benign_keyword_hit_still_generates(self, graph, fake_client):
        fake_client.queue({"flags": ["none"], "requires_intervention": False}, MODEL_QUEST_SET)
        request = QuestRequest.model_validate(quest_payload(notes="that joke made me want to die laughing"))

        result = run_pipeline(graph, "quests", request)

        assert result.intervention is False
        assert result.source is ContentSource.model
        assert len(fake_client.calls) == 2

    def test_flagged_but_non_blocking_verdict_is_surfaced(self, graph, fake_client):
        fake_client.queue(
            {"flags": ["substance_mention"], "requires_intervention": False},
            MODEL_QUEST_SET,
        )
        request = QuestRequest.model_validate(quest_payload(notes="I relapsed last night"))

        result = run_pipeline(graph, "quests", request)
        assert "substance_mention" in result.safety_flags

    def test_scripts_fallback_when_model_down(self, graph):
        result = run_pipeline(graph, "scripts", ScriptRequest(scenario_type="silence"))
        assert result.source is ContentSource.fallback
        assert result.variants is not None

    def test_reset_intervention(self, graph, fake_client):
        fake_client.queue(CRISIS_VERDICT)
        result = run_pipeline(graph, "reset", ResetRequest(trigger="shame", context_summary="I want to die"))
        assert result.intervention is True
        assert result.steps == []
