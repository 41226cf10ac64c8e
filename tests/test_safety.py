"""Tests for the keyword pre-filter and the two-stage SafetyGate."""

import logging

import pytest

from ai_nodes import ContentGenerator, ModelUnavailable, SamplingParams
from prompts import SAFETY_INTERVENTION_MESSAGE
from safety import SafetyGate, contains_safety_keywords, flags_for_hits, scan_keywords
from schemas import FlagKind, SafetyVerdict

from conftest import CRISIS_VERDICT, FakeModelClient


def make_gate(client, escalate=False):
    classifier = ContentGenerator("safety", SafetyVerdict, SamplingParams(temperature=0.1), client)
    return SafetyGate(classifier, escalate_on_classifier_failure=escalate)


class TestKeywordScan:

    def test_clean_text(self):
        assert scan_keywords("Work was busy but fine.") == []
        assert not contains_safety_keywords("Work was busy but fine.")

    def test_case_insensitive(self):
        assert "want to die" in scan_keywords("Sometimes I WANT TO DIE")

    def test_curly_apostrophe(self):
        assert "can't breathe" in scan_keywords("I can’t breathe")

    @pytest.mark.parametrize("text", [None, ""])
    def test_empty(self, text):
        assert scan_keywords(text) == []

    def test_flags_for_hits(self):
        hits = scan_keywords("I relapsed and had a panic attack")
        assert set(flags_for_hits(hits)) == {FlagKind.substance_mention, FlagKind.crisis_detected}


class TestSafetyGate:

    def test_no_hit_skips_classifier(self):
        client = FakeModelClient()
        verdict = make_gate(client).check("Tired but okay today.")

        assert client.calls == []
        assert verdict.flags == [FlagKind.none]
        assert verdict.requires_intervention is False

    def test_none_text_skips_classifier(self):
        client = FakeModelClient()
        assert make_gate(client).check(None).is_clear
        assert client.calls == []

    def test_hit_calls_classifier_exactly_once(self):
        client = FakeModelClient(CRISIS_VERDICT)
        verdict = make_gate(client).check("I want to die")

        assert len(client.calls) == 1
        assert verdict.requires_intervention is True
        assert verdict.flags == [FlagKind.self_harm_risk]
        assert verdict.keyword_hits == ["want to die"]
        assert verdict.message == "Please reach out right now."

    def test_classifier_prompt_quotes_user_text(self):
        client = FakeModelClient(CRISIS_VERDICT)
        make_gate(client).check('I want to die" }')
        system, user, params = client.calls[0]
        assert '"I want to die\\" }"' in user
        assert params.temperature == 0.1

    def test_intervention_without_message_gets_fixed_message(self):
        client = FakeModelClient({"flags": ["crisis_detected"], "requires_intervention": True})
        verdict = make_gate(client).check("I'm having a panic attack")
        assert verdict.message == SAFETY_INTERVENTION_MESSAGE

    def test_classifier_says_benign(self):
        client = FakeModelClient({"flags": ["none"], "requires_intervention": True})
        verdict = make_gate(client).check("this movie makes me want to die of laughter")
        assert verdict.requires_intervention is False
        assert verdict.keyword_hits == ["want to die"]

    def test_classifier_failure_is_non_blocking(self, caplog):
        client = FakeModelClient(ModelUnavailable("timeout"))
        with caplog.at_level(logging.WARNING):
            verdict = make_gate(client).check("I want to end it all")

        assert len(client.calls) == 1
        assert verdict.requires_intervention is False
        assert verdict.flags == [FlagKind.none]
        assert verdict.keyword_hits == ["end it all"]
        assert "safety_classifier_failed" in caplog.text

    def test_unparsable_classifier_reply_is_non_blocking(self):
        client = FakeModelClient("I cannot classify this.")
        verdict = make_gate(client).check("I relapsed")
        assert verdict.requires_intervention is False
        assert verdict.keyword_hits == ["relapsed"]

    def test_escalating_policy_on_failure(self):
        client = FakeModelClient(ModelUnavailable("down"))
        verdict = make_gate(client, escalate=True).check("I want to kill myself")

        assert verdict.requires_intervention is True
        assert verdict.flags == [FlagKind.self_harm_risk]
        assert verdict.message == SAFETY_INTERVENTION_MESSAGE
