"""
Hand-authored, schema-conformant content used whenever model-backed
generation is skipped, fails, or times out.

Everything returned here is built through the same pydantic models as the
model output and tagged ``source=fallback``.
"""

from typing import Dict, Iterable, List, Optional

from schemas import (
    ContentSource,
    FlagKind,
    ProtocolStep,
    QuestSet,
    ResetProtocol,
    SafetyVerdict,
    ScenarioType,
    ScriptSet,
    TriggerType,
)

DEFAULT_TRUST_ANCHOR = "TRUST. I do what's right; the outcome is not in my control."


def _protocol(label: str, breath: str, reframe_title: str, reframe: str, action: str, anchor: str) -> List[dict]:
    return [
        {"kind": "label", "title": "Name it", "content": label, "duration_seconds": 10},
        {"kind": "breath", "title": "Breathe", "content": breath, "duration_seconds": 30},
        {"kind": "reframe", "title": reframe_title, "content": reframe, "duration_seconds": 20},
        {"kind": "action", "title": "Act", "content": action, "duration_seconds": 20},
        {"kind": "anchor", "title": "Anchor", "content": anchor, "duration_seconds": 10},
    ]


RESET_PROTOCOLS: Dict[TriggerType, List[dict]] = {
    TriggerType.jealousy: _protocol(
        "This is jealousy. Fear of loss. I see it.",
        "Inhale 4 s → hold 4 s → exhale 4 s → hold 4 s. Repeat 3 times.",
        "Screen",
        "My vessel is enough. Their choice is their responsibility, not mine. I don't control other people.",
        "One thing for yourself right now: 10 push-ups, a glass of water, or 5 minutes of work.",
        "TRUST. I do what's right; the outcome is not in my control.",
    ),
    TriggerType.uncertainty: _protocol(
        "This is anxiety. The unknown. My mind is trying to control the future.",
        "Inhale 4 s → hold 7 s → exhale 8 s. Repeat 3 times.",
        "Pause",
        "Contraction comes before expansion. The unknown is room to grow. I can hold this.",
        "Write down one thing you CAN control today. Do it.",
        "TRUST. I don't know how yet, but I know I'll manage.",
    ),
    TriggerType.anger: _protocol(
        "This is anger. Something feels unfair. I see it.",
        "Deep breath in through the nose → strong exhale through the mouth. 5 times. Let the tension out.",
        "Screen",
        "Don't react on autopilot; choose the response. My strength is in the pause.",
        "Write what makes you angry. Then what you can REALLY do about it (not a revenge fantasy).",
        "TRUST. I choose dignity. The answer comes later, once I've cooled down.",
    ),
    TriggerType.shame: _protocol(
        "This is shame. The feeling that I'm not good enough. It's a feeling, not a fact.",
        "Hand on your chest. Inhale 4 s → exhale 6 s. Feel the warmth of your hand.",
        "Repair",
        "Repair, not punishment. A mistake is a lesson, not a verdict. I'm growing.",
        "One small action where you are competent. Remind yourself: I can do this.",
        "TRUST. My worth doesn't depend on one moment.",
    ),
    TriggerType.loneliness: _protocol(
        "This is loneliness. A sense of disconnection. It will pass.",
        "Wrap your arms around yourself. Inhale 4 s → exhale 4 s. Feel your body.",
        "Light within",
        "The light is inside me. Connection with myself is the base of every connection.",
        "Send one person a simple message. Or do something kind for yourself.",
        "TRUST. Connection will come. First, connection with myself.",
    ),
    TriggerType.overwhelm: _protocol(
        "This is overwhelm. Too much. My mind is trying to hold everything at once.",
        "Stop. Inhale 4 s → long exhale 8 s. Repeat 4 times. Slow down.",
        "One thing",
        "Not everything. One thing. Now. The rest comes later. The vessel grows step by step.",
        "Pick ONE task for the next 25 minutes. Only one. Everything else goes on the later list.",
        "TRUST. I don't have to do it all at once. Step by step.",
    ),
}


_SCRIPT_CONTEXT: Dict[ScenarioType, Dict[str, str]] = {
    ScenarioType.provocation: {
        "short": "Noted.",
        "neutral": "I hear that you want a reaction. I'm not going to bite today. If something real is bothering you, I'm open to talking about it.",
    },
    ScenarioType.accusation: {
        "short": "I hear you.",
        "neutral": "I can see you're upset with me. I see it differently, and I'm willing to talk it through calmly.",
    },
    ScenarioType.coldness: {
        "short": "Okay. I'm here when you want to talk.",
        "neutral": "I notice some distance between us. I'm not going to chase it, but I'm open when you're ready.",
    },
    ScenarioType.drama: {
        "short": "I hear how strong this feels.",
        "neutral": "I can see this is really intense for you. I want to understand, and that works better when we both slow down.",
    },
    ScenarioType.comparison: {
        "short": "Understood.",
        "neutral": "Comparisons don't help either of us. If there's something you need from me, tell me directly.",
    },
    ScenarioType.silence: {
        "short": "I'll give you space. I'm here.",
        "neutral": "I respect that you need quiet. When you want to talk, I'll listen. Until then, I'll carry on with my day.",
    },
    ScenarioType.blame: {
        "short": "That's not my intention.",
        "neutral": "I hear that you feel controlled. That's not what I want. Tell me which moment felt that way and I'll listen.",
    },
    ScenarioType.testing: {
        "short": "I'm steady. No need to test.",
        "neutral": "I get the sense you're checking how I'll react. I'm not going anywhere, and I'm not going to play along either.",
    },
    ScenarioType.manipulation: {
        "short": "I understand you're hurt.",
        "neutral": "I care about how you feel. I'm also not going to take responsibility for something that isn't mine.",
    },
    ScenarioType.escalation: {
        "short": "Let's slow this down.",
        "neutral": "This is heating up fast. I don't want to say things either of us regrets. Let's lower the volume.",
    },
}

_BOUNDARY = {
    "firm": "I understand you're upset. I'm not willing to continue like this. Let's talk when we're both calm.",
    "gentle": "I can see this matters to you, and it matters to me too. I need us to talk without raising our voices. Can we try again later?",
}
_EXIT = "I can see this conversation isn't constructive right now. I'm taking a break. We'll talk later."


class FallbackCatalog:
    """
    Static fallback content keyed by scenario / trigger / raw check-in levels.
    """

    def __init__(self, trust_anchor: str = DEFAULT_TRUST_ANCHOR):
        self.trust_anchor = trust_anchor

    # ---------- Reset protocol ----------

    def reset_protocol(self, trigger) -> ResetProtocol:
        try:
            key = TriggerType(trigger)
        except ValueError:
            key = TriggerType.overwhelm

        return ResetProtocol(
            trigger=key,
            steps=[ProtocolStep(**step) for step in RESET_PROTOCOLS[key]],
            trust_anchor=self.trust_anchor,
            source=ContentSource.fallback,
        )

    # ---------- Quests ----------

    def quests(self, energy: float, stress: float) -> QuestSet:
        """
        Default quest set chosen from the raw energy / stress levels.
        """
        low_energy = energy <= 4
        high_stress = stress >= 7

        if high_stress:
            state = "tense"
            main = {
                "type": "main",
                "category": "body",
                "title": "15-minute walk",
                "why": "The body discharges tension. A screen built through movement.",
                "steps": [
                    "Step outside",
                    "Walk in any direction for 7 minutes",
                    "Walk back",
                    "Breathe deeply along the way",
                ],
                "fail_safe": "5 minutes standing by a window, breathing deeply",
            }
        else:
            state = "drained" if low_energy else "calm"
            main = {
                "type": "main",
                "category": "micro",
                "title": "Write down 3 things you're grateful for",
                "why": "The vessel grows by acknowledging what is good.",
                "steps": [
                    "Open your notes",
                    "Write 3 things you're grateful for today",
                    "Read them back once",
                ],
                "fail_safe": "Say one thing you're grateful for out loud",
            }

        return QuestSet(
            state_assessment={"state": state, "notes": "Offline mode. Basic quests."},
            quests=[
                main,
                {
                    "type": "side",
                    "category": "micro",
                    "title": "10 push-ups or squats",
                    "why": "A body in tone keeps the mind in tone.",
                    "steps": ["Stand up", "Do 10 reps", "Drink a glass of water"],
                    "fail_safe": "5 reps",
                },
                {
                    "type": "side",
                    "category": "micro",
                    "title": "5 minutes without your phone",
                    "why": "A pause creates room in the vessel.",
                    "steps": [
                        "Put your phone in another room",
                        "Set a 5-minute timer",
                        "Just sit or look out of the window",
                    ],
                    "fail_safe": "2 minutes",
                },
            ],
            safety_flags=[],
            followups=["Come back when you're online again."],
            source=ContentSource.fallback,
        )

    # ---------- Scripts ----------

    def script(self, scenario, boundaries_style: Optional[str] = None) -> ScriptSet:
        try:
            key = ScenarioType(scenario)
        except ValueError:
            key = ScenarioType.escalation

        style = boundaries_style if boundaries_style in _BOUNDARY else "firm"
        lines = _SCRIPT_CONTEXT[key]

        return ScriptSet(
            scenario=key,
            variants={
                "short": lines["short"],
                "neutral": lines["neutral"],
                "boundary": _BOUNDARY[style],
                "exit": _EXIT,
            },
            tone_notes="Slow voice, relaxed shoulders. Say less than you think you need to.",
            safety_flags=[],
            source=ContentSource.fallback,
        )

    # ---------- Safety ----------

    def safety_default(
        self,
        keyword_hits: Iterable[str] = (),
        flags: Iterable[FlagKind] = (),
        message: Optional[str] = None,
    ) -> SafetyVerdict:
        """
        Non-blocking verdict by default. Passing real ``flags`` makes it a
        blocking one (used only when policy escalates on classifier failure).
        """
        flag_list = list(flags) or [FlagKind.none]
        blocking = any(f is not FlagKind.none for f in flag_list)
        return SafetyVerdict(
            flags=flag_list,
            requires_intervention=blocking,
            crisis_resources_needed=blocking,
            message=message if blocking else None,
            keyword_hits=list(keyword_hits),
        )
