"""Tests for the generation orchestrator and the per-content coach nodes."""

import logging
from unittest.mock import MagicMock

import pytest

from ai_nodes import (
    ChatModelClient,
    CoachNodes,
    ContentGenerator,
    GenerationErrorKind,
    ModelUnavailable,
    SamplingParams,
)
from config import Settings
from protocol_runtime import ProtocolRuntime
from prompts import PROMPT_VERSIONS, SAFETY_INTERVENTION_MESSAGE
from schemas import (
    ContentSource,
    FlagKind,
    QuestRequest,
    QuestSet,
    ResetRequest,
    SafetyVerdict,
    ScriptRequest,
    TriggerType,
)

from conftest import (
    CRISIS_VERDICT,
    MODEL_QUEST_SET,
    MODEL_RESET,
    MODEL_SCRIPT_SET,
    FakeModelClient,
    quest_payload,
)


def quest_request(**daily):
    return QuestRequest.model_validate(quest_payload(**daily))


# ---------------------------------------------------------------------------
# ContentGenerator
# ---------------------------------------------------------------------------

class TestContentGenerator:

    def _generator(self, client):
        return ContentGenerator("quests", QuestSet, SamplingParams(temperature=0.7), client, "9.9.9")

    def _fallback(self, catalog):
        return lambda: catalog.quests(5, 5)

    def test_success_tags_model_source(self, catalog):
        client = FakeModelClient(MODEL_QUEST_SET)
        result = self._generator(client).generate("sys", "user", self._fallback(catalog))

        assert result.source is ContentSource.model
        assert result.error is None
        assert result.value.source is ContentSource.model
        assert result.value.prompt_version == "9.9.9"
        assert result.value.quests[0].title == "Ship one small thing"

    def test_passes_prompts_and_sampling(self, catalog):
        client = FakeModelClient(MODEL_QUEST_SET)
        self._generator(client).generate("SYSTEM", "USER", self._fallback(catalog))
        system, user, params = client.calls[0]
        assert (system, user) == ("SYSTEM", "USER")
        assert params.temperature == 0.7

    def test_model_unavailable_degrades(self, catalog, caplog):
        client = FakeModelClient(ModelUnavailable("timeout"))
        with caplog.at_level(logging.WARNING):
            result = self._generator(client).generate("s", "u", self._fallback(catalog))

        assert result.source is ContentSource.fallback
        assert result.error.kind is GenerationErrorKind.model_unavailable
        assert result.value.source is ContentSource.fallback
        assert "generation_fallback | kind=quests | reason=model_unavailable" in caplog.text

    def test_unexpected_client_error_degrades(self, catalog):
        client = FakeModelClient(RuntimeError("boom"))
        result = self._generator(client).generate("s", "u", self._fallback(catalog))
        assert result.source is ContentSource.fallback
        assert result.error.kind is GenerationErrorKind.model_unavailable

    def test_garbage_text_degrades(self, catalog):
        client = FakeModelClient("Sorry, I can only chat.")
        result = self._generator(client).generate("s", "u", self._fallback(catalog))
        assert result.error.kind is GenerationErrorKind.extraction_failed

    def test_wrong_shape_degrades(self, catalog):
        client = FakeModelClient({"quests": "none today"})
        result = self._generator(client).generate("s", "u", self._fallback(catalog))
        assert result.error.kind is GenerationErrorKind.schema_mismatch
        assert result.value.source is ContentSource.fallback

    def test_prose_wrapped_json_is_accepted(self, catalog):
        import json

        text = "Here are your quests:\n```json\n" + json.dumps(MODEL_QUEST_SET) + "\n```\nGood luck!"
        result = self._generator(FakeModelClient(text)).generate("s", "u", self._fallback(catalog))
        assert result.source is ContentSource.model

    def test_model_cannot_claim_intervention(self, catalog):
        reply = dict(MODEL_QUEST_SET, intervention=True, quests=[], source="fallback", message="hi")
        result = self._generator(FakeModelClient(reply)).generate("s", "u", self._fallback(catalog))
        # stripped keys leave an empty quest list -> schema mismatch -> fallback
        assert result.source is ContentSource.fallback
        assert result.value.intervention is False

    def test_fallback_and_model_share_structure(self, catalog):
        model = self._generator(FakeModelClient(MODEL_QUEST_SET)).generate("s", "u", self._fallback(catalog)).value
        fallback = self._generator(FakeModelClient()).generate("s", "u", self._fallback(catalog)).value

        assert type(model) is type(fallback)
        assert set(model.model_dump()) == set(fallback.model_dump())
        assert model.source is not fallback.source


# ---------------------------------------------------------------------------
# ChatModelClient
# ---------------------------------------------------------------------------

class TestChatModelClient:

    def test_missing_key_is_unavailable(self):
        client = ChatModelClient(Settings(_env_file=None, OPENAI_API_KEY=None))
        with pytest.raises(ModelUnavailable):
            client.complete("s", "u", SamplingParams(temperature=0.5))

    def _client_returning(self, content=None, error=None):
        client = ChatModelClient(Settings(_env_file=None, OPENAI_API_KEY="sk-test"))
        llm = MagicMock()
        if error is not None:
            llm.invoke.side_effect = error
        else:
            llm.invoke.return_value = MagicMock(content=content)
        client._llm = MagicMock(return_value=llm)
        return client, llm

    def test_returns_text(self):
        client, llm = self._client_returning('{"a": 1}')
        assert client.complete("sys", "usr", SamplingParams(temperature=0.2)) == '{"a": 1}'

        messages = llm.invoke.call_args[0][0]
        assert messages[0].content == "sys"
        assert messages[1].content == "usr"

    def test_joins_content_blocks(self):
        client, _ = self._client_returning([{"type": "text", "text": '{"a": '}, {"type": "text", "text": "1}"}])
        assert client.complete("s", "u", SamplingParams(temperature=0.2)) == '{"a": 1}'

    def test_empty_text_is_unavailable(self):
        client, _ = self._client_returning("   ")
        with pytest.raises(ModelUnavailable):
            client.complete("s", "u", SamplingParams(temperature=0.2))

    def test_transport_error_is_unavailable(self):
        client, _ = self._client_returning(error=TimeoutError("slow"))
        with pytest.raises(ModelUnavailable, match="TimeoutError"):
            client.complete("s", "u", SamplingParams(temperature=0.2))


# ---------------------------------------------------------------------------
# CoachNodes
# ---------------------------------------------------------------------------

class TestQuests:

    def test_model_quests(self, nodes, fake_client):
        fake_client.queue(MODEL_QUEST_SET)
        result = nodes.generate_quests(quest_request())
        assert result.source is ContentSource.model
        assert result.prompt_version == PROMPT_VERSIONS["quests"]

    def test_prompt_carries_check_in(self, nodes, fake_client):
        fake_client.queue(MODEL_QUEST_SET)
        nodes.generate_quests(quest_request(energy=2, stress=9, notes="long day"))
        _, user, params = fake_client.calls[0]
        assert "2" in user and "9" in user and "long day" in user
        assert params.temperature == 0.7

    @pytest.mark.parametrize(
        "energy,stress,expected_state,main_category",
        [
            (4, 5, "drained", "micro"),
            (5, 5, "calm", "micro"),
            (5, 6, "calm", "micro"),
            (5, 7, "tense", "body"),
            (2, 9, "tense", "body"),
            (1, 10, "tense", "body"),
            (10, 1, "calm", "micro"),
        ],
    )
    def test_fallback_boundaries(self, nodes, energy, stress, expected_state, main_category):
        result = nodes.generate_quests(quest_request(energy=energy, stress=stress))
        assert result.source is ContentSource.fallback
        assert result.state_assessment.state.value == expected_state
        assert result.quests[0].type.value == "main"
        assert result.quests[0].category.value == main_category
        assert len(result.quests) == 3


class TestScripts:

    def test_scenario_forced_to_request(self, nodes, fake_client):
        fake_client.queue(dict(MODEL_SCRIPT_SET, scenario="drama"))
        result = nodes.generate_scripts(ScriptRequest(scenario_type="coldness"))
        assert result.scenario.value == "coldness"
        assert result.source is ContentSource.model

    def test_fallback_uses_boundary_style(self, nodes):
        req = ScriptRequest(scenario_type="blame", user_profile={"boundaries_style": "gentle"})
        result = nodes.generate_scripts(req)
        assert result.source is ContentSource.fallback
        assert result.scenario.value == "blame"
        assert "Can we try again later?" in result.variants.boundary


class TestReset:

    def test_model_protocol(self, nodes, fake_client):
        fake_client.queue(MODEL_RESET)
        result = nodes.generate_reset(ResetRequest(trigger="anger"))
        assert result.source is ContentSource.model
        assert len(result.steps) == 3
        assert result.trust_anchor == "I choose dignity."

    def test_use_fallback_skips_model(self, nodes, fake_client):
        fake_client.queue(MODEL_RESET)
        result = nodes.generate_reset(ResetRequest(trigger="shame", use_fallback=True))
        assert fake_client.calls == []
        assert result.source is ContentSource.fallback
        assert result.trigger is TriggerType.shame

    def test_missing_anchor_filled(self, nodes, fake_client, catalog):
        fake_client.queue(dict(MODEL_RESET, trust_anchor=""))
        assert nodes.generate_reset(ResetRequest(trigger="anger")).trust_anchor == catalog.trust_anchor

    def test_malformed_durations_normalized(self, nodes, fake_client):
        reply = dict(MODEL_RESET)
        reply["steps"] = [dict(MODEL_RESET["steps"][0], duration_seconds=-4)]
        fake_client.queue(reply)
        assert nodes.generate_reset(ResetRequest(trigger="anger")).steps[0].duration_seconds == 10

    def test_step_default_follows_settings(self, monkeypatch, fake_client, catalog):
        monkeypatch.setenv("DEFAULT_STEP_SECONDS", "25")
        settings = Settings(_env_file=None)
        nodes = CoachNodes(client=fake_client, catalog=catalog, settings=settings)

        reply = dict(MODEL_RESET)
        first, second, third = MODEL_RESET["steps"]
        second = {k: v for k, v in second.items() if k != "duration_seconds"}
        reply["steps"] = [dict(first, duration_seconds=0), second, third]
        fake_client.queue(reply)

        protocol = nodes.generate_reset(ResetRequest(trigger="anger"))
        assert protocol.source is ContentSource.model
        assert [s.duration_seconds for s in protocol.steps] == [25, 25, 10]

        runtime = ProtocolRuntime.from_settings(settings)
        assert runtime.deliver(runtime.request_steps(), protocol)
        assert runtime.time_remaining() == 25


class TestIntervention:

    def test_quests_intervention_is_empty(self, nodes):
        verdict = SafetyVerdict.model_validate(CRISIS_VERDICT)
        result = nodes.intervention_response("quests", quest_request(), verdict)
        assert result.intervention is True
        assert result.quests == []
        assert result.message == SAFETY_INTERVENTION_MESSAGE
        assert result.source is ContentSource.intervention
        assert result.safety_flags == [FlagKind.self_harm_risk.value]

    def test_scripts_intervention_has_no_variants(self, nodes):
        verdict = SafetyVerdict.model_validate(CRISIS_VERDICT)
        result = nodes.intervention_response("scripts", ScriptRequest(scenario_type="drama"), verdict)
        assert result.variants is None

    def test_reset_intervention_has_no_steps(self, nodes):
        verdict = SafetyVerdict.model_validate(CRISIS_VERDICT)
        result = nodes.intervention_response("reset", ResetRequest(trigger="anger"), verdict)
        assert result.steps == []

    def test_unknown_kind(self, nodes):
        with pytest.raises(ValueError):
            nodes.intervention_response("poems", None, SafetyVerdict())
