"""
Request / response contracts for the Groundwork API.

Every generation response (model-produced or fallback-produced) is validated
against the same model here, so callers never special-case where content
came from. The only difference is the internal ``source`` tag.
"""

import math
from dataclasses import dataclass, field
from datetime import date as Date
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

DEFAULT_STEP_SECONDS = 10

# whole numbers stay int, fractional check-in levels stay float
Level = Union[int, float]


# --------------------------------------------------------------------
# Enums
# --------------------------------------------------------------------


class FocusArea(str, Enum):
    work = "work"
    relationship = "relationship"
    body = "body"
    creation = "creation"


class TriggerType(str, Enum):
    jealousy = "jealousy"
    uncertainty = "uncertainty"
    anger = "anger"
    shame = "shame"
    loneliness = "loneliness"
    overwhelm = "overwhelm"


class ScenarioType(str, Enum):
    provocation = "provocation"
    accusation = "accusation"
    coldness = "coldness"
    drama = "drama"
    comparison = "comparison"
    silence = "silence"
    blame = "blame"
    testing = "testing"
    manipulation = "manipulation"
    escalation = "escalation"


class QuestCategory(str, Enum):
    micro = "micro"
    medium = "medium"
    courage = "courage"
    creation = "creation"
    body = "body"


class QuestType(str, Enum):
    main = "main"
    side = "side"


class MindState(str, Enum):
    calm = "calm"
    tense = "tense"
    triggered = "triggered"
    focused = "focused"
    drained = "drained"


class TonePreference(str, Enum):
    warm = "warm"
    direct = "direct"
    philosophical = "philosophical"


class BoundariesStyle(str, Enum):
    firm = "firm"
    gentle = "gentle"


class UserValue(str, Enum):
    dignity = "dignity"
    honesty = "honesty"
    actions = "actions"
    meaning = "meaning"
    independence = "independence"
    growth = "growth"
    boundaries = "boundaries"


class FlagKind(str, Enum):
    self_harm_risk = "self_harm_risk"
    crisis_detected = "crisis_detected"
    substance_mention = "substance_mention"
    severe_distress = "severe_distress"
    none = "none"


class StepKind(str, Enum):
    label = "label"
    breath = "breath"
    reframe = "reframe"
    action = "action"
    anchor = "anchor"


class ContentSource(str, Enum):
    model = "model"
    fallback = "fallback"
    intervention = "intervention"


# --------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------


def _clamp_number(value, low, high):
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        raise ValueError("must be a number")
    return min(max(value, low), high)


def normalize_duration(value: Any, default: int = DEFAULT_STEP_SECONDS) -> int:
    """
    Turn whatever the model (or a client) sent as a step duration into a
    positive whole number of seconds. Anything unusable becomes ``default``.
    """
    if isinstance(value, bool):
        return default
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(seconds) or math.isinf(seconds) or seconds < 1:
        return default
    return int(round(seconds))


# --------------------------------------------------------------------
# Request models
# --------------------------------------------------------------------


class DailyState(BaseModel):
    """
    Self-reported check-in. Numeric levels (whole or fractional) are clamped
    into their domain; unknown focus values are rejected.
    """
    model_config = ConfigDict(extra="ignore")

    date: Optional[Date] = None
    energy: Level
    stress: Level
    sleep_hours: float = 7.0
    focus: FocusArea
    relationship_intensity: Optional[Level] = None
    work_intensity: Optional[Level] = None
    notes: Optional[str] = None

    @field_validator("energy", "stress", "relationship_intensity", "work_intensity")
    @classmethod
    def _clamp_level(cls, v):
        return _clamp_number(v, 1, 10)

    @field_validator("sleep_hours")
    @classmethod
    def _clamp_sleep(cls, v):
        return _clamp_number(v, 0.0, 24.0)


class UserPreferences(BaseModel):
    """Partial user profile; every field is optional."""
    model_config = ConfigDict(extra="ignore")

    values: List[UserValue] = Field(default_factory=list)
    triggers: List[TriggerType] = Field(default_factory=list)
    preferred_tone: Optional[TonePreference] = None
    trust_anchor_word: Optional[str] = None
    boundaries_style: Optional[BoundariesStyle] = None


class MemorySignals(BaseModel):
    model_config = ConfigDict(extra="ignore")

    what_worked: Dict[str, int] = Field(default_factory=dict)
    what_failed: Dict[str, int] = Field(default_factory=dict)
    preferred_quest_types: List[QuestCategory] = Field(default_factory=list)


class QuestRequest(BaseModel):
    daily_state: DailyState
    user_profile: UserPreferences = Field(default_factory=UserPreferences)
    memory_signals: Optional[MemorySignals] = None

    def free_text(self) -> Optional[str]:
        return self.daily_state.notes


class ScriptRequest(BaseModel):
    scenario_type: ScenarioType
    context_summary: Optional[str] = None
    user_profile: UserPreferences = Field(default_factory=UserPreferences)

    def free_text(self) -> Optional[str]:
        return self.context_summary


class ResetRequest(BaseModel):
    trigger: TriggerType
    context_summary: Optional[str] = None
    use_fallback: bool = False

    def free_text(self) -> Optional[str]:
        return self.context_summary


class SafetyCheckRequest(BaseModel):
    text: str = Field(..., min_length=1)

    def free_text(self) -> Optional[str]:
        return self.text


# --------------------------------------------------------------------
# Response models
# --------------------------------------------------------------------


class StateAssessment(BaseModel):
    state: MindState
    notes: str = ""


class Quest(BaseModel):
    type: QuestType
    category: QuestCategory
    title: str = Field(..., min_length=1)
    why: str
    steps: List[str] = Field(..., min_length=1)
    fail_safe: str


class QuestSet(BaseModel):
    state_assessment: StateAssessment
    quests: List[Quest] = Field(default_factory=list)
    safety_flags: List[str] = Field(default_factory=list)
    followups: List[str] = Field(default_factory=list)
    intervention: bool = False
    message: Optional[str] = None
    source: ContentSource = ContentSource.model
    prompt_version: Optional[str] = None

    @model_validator(mode="after")
    def _require_quests(self):
        if not self.intervention and not self.quests:
            raise ValueError("quest set must contain at least one quest")
        return self


class ScriptVariants(BaseModel):
    short: str = Field(..., min_length=1)
    neutral: str = Field(..., min_length=1)
    boundary: str = Field(..., min_length=1)
    exit: str = Field(..., min_length=1)


class ScriptSet(BaseModel):
    scenario: ScenarioType
    variants: Optional[ScriptVariants] = None
    tone_notes: str = ""
    safety_flags: List[str] = Field(default_factory=list)
    intervention: bool = False
    message: Optional[str] = None
    source: ContentSource = ContentSource.model
    prompt_version: Optional[str] = None

    @model_validator(mode="after")
    def _require_variants(self):
        if not self.intervention and self.variants is None:
            raise ValueError("script set must contain variants")
        return self


class ProtocolStep(BaseModel):
    kind: StepKind
    title: str
    content: str
    duration_seconds: int = Field(default=None, validate_default=True)

    @field_validator("duration_seconds", mode="before")
    @classmethod
    def _positive_duration(cls, v, info: ValidationInfo):
        # callers may pass {"default_step_seconds": n} as validation context
        default = (info.context or {}).get("default_step_seconds", DEFAULT_STEP_SECONDS)
        return normalize_duration(v, default)


class ResetProtocol(BaseModel):
    trigger: TriggerType
    steps: List[ProtocolStep] = Field(default_factory=list)
    trust_anchor: str = ""
    intervention: bool = False
    message: Optional[str] = None
    source: ContentSource = ContentSource.model
    prompt_version: Optional[str] = None

    @model_validator(mode="after")
    def _require_steps(self):
        if not self.intervention and not self.steps:
            raise ValueError("protocol must contain at least one step")
        return self

    def total_seconds(self) -> int:
        return sum(step.duration_seconds for step in self.steps)


class SafetyVerdict(BaseModel):
    """
    Output of the safety gate.

    - flags: set of FlagKind (duplicates collapsed, order kept)
    - requires_intervention: forced False when flags are empty or only "none"
    - keyword_hits: pre-filter matches, kept even when the classifier failed
    """
    flags: List[FlagKind] = Field(default_factory=lambda: [FlagKind.none])
    requires_intervention: bool = False
    crisis_resources_needed: bool = False
    message: Optional[str] = None
    keyword_hits: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _normalize(self):
        unique: List[FlagKind] = []
        for flag in self.flags:
            if flag not in unique:
                unique.append(flag)
        real = [f for f in unique if f is not FlagKind.none]
        self.flags = real or [FlagKind.none]
        if not real:
            self.requires_intervention = False
        return self

    @property
    def is_clear(self) -> bool:
        return not self.requires_intervention


# --------------------------------------------------------------------
# Structural validation entry point
# --------------------------------------------------------------------

T = TypeVar("T", bound=BaseModel)


@dataclass
class ValidationOutcome(Generic[T]):
    ok: bool
    value: Optional[T] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


def validate(shape: Type[T], raw: Any, context: Optional[Dict[str, Any]] = None) -> ValidationOutcome[T]:
    """
    Validate ``raw`` against ``shape`` without raising. ``context`` is handed
    to the model validators (e.g. ``{"default_step_seconds": 25}``).

    Returns ValidationOutcome(ok=True, value=...) or
    ValidationOutcome(ok=False, errors=[{loc, msg, type}, ...]).
    """
    try:
        return ValidationOutcome(ok=True, value=shape.model_validate(raw, context=context))
    except ValidationError as exc:
        errors = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        return ValidationOutcome(ok=False, errors=errors)
