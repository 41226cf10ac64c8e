"""Shared fakes: scripted model client, manual clock, quiet settings."""

import json

import pytest

from ai_nodes import CoachNodes, ModelUnavailable
from config import Settings
from fallbacks import FallbackCatalog


class FakeModelClient:
    """
    Returns queued replies in order. A reply that is an Exception instance is
    raised instead of returned. Every call is recorded.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def queue(self, *replies):
        self.replies.extend(replies)

    def complete(self, system_instruction, user_prompt, params):
        self.calls.append((system_instruction, user_prompt, params))
        if not self.replies:
            raise ModelUnavailable("no scripted reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, (dict, list)):
            return json.dumps(reply)
        return reply


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = float(now)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(_env_file=None, API_TOKENS="tok-alice:alice,tok-bob:bob")


@pytest.fixture
def fake_client():
    return FakeModelClient()


@pytest.fixture
def catalog():
    return FallbackCatalog()


@pytest.fixture
def nodes(fake_client, catalog, settings):
    return CoachNodes(client=fake_client, catalog=catalog, settings=settings)


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Canned payloads
# ---------------------------------------------------------------------------

def quest_payload(**daily):
    state = {"energy": 6, "stress": 4, "sleep_hours": 7, "focus": "work"}
    state.update(daily)
    return {"daily_state": state}


MODEL_QUEST_SET = {
    "state_assessment": {"state": "focused", "notes": "Good energy, moderate stress."},
    "quests": [
        {
            "type": "main",
            "category": "creation",
            "title": "Ship one small thing",
            "why": "Finishing builds the vessel.",
            "steps": ["Pick the task", "Work 25 minutes", "Send it"],
            "fail_safe": "Write the first sentence",
        },
        {
            "type": "side",
            "category": "body",
            "title": "Stretch",
            "why": "Loosen the shoulders.",
            "steps": ["Stand", "Stretch 2 minutes"],
            "fail_safe": "Roll your shoulders 5 times",
        },
    ],
    "safety_flags": [],
    "followups": ["How did the main quest go?"],
}

MODEL_SCRIPT_SET = {
    "scenario": "coldness",
    "variants": {
        "short": "Okay.",
        "neutral": "I notice distance. I'm here when you're ready.",
        "boundary": "I won't chase. Let's talk when you want to.",
        "exit": "I'm going for a walk. Talk later.",
    },
    "tone_notes": "Calm, unhurried.",
    "safety_flags": [],
}

MODEL_RESET = {
    "trigger": "anger",
    "steps": [
        {"kind": "label", "title": "Name it", "content": "This is anger.", "duration_seconds": 10},
        {"kind": "breath", "title": "Breathe", "content": "Exhale hard 5 times.", "duration_seconds": 30},
        {"kind": "anchor", "title": "Anchor", "content": "I choose the response.", "duration_seconds": 10},
    ],
    "trust_anchor": "I choose dignity.",
}

CRISIS_VERDICT = {
    "flags": ["self_harm_risk"],
    "requires_intervention": True,
    "crisis_resources_needed": True,
    "message": "Please reach out right now.",
}
