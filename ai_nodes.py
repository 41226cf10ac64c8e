# ai_nodes.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from config import Settings, get_settings
from fallbacks import FallbackCatalog
from json_extractor import extract_json
from prompts import (
    PROMPT_VERSIONS,
    QUEST_SYSTEM_PROMPT,
    RESET_SYSTEM_PROMPT,
    SAFETY_INTERVENTION_MESSAGE,
    SCRIPT_SYSTEM_PROMPT,
    build_quest_user_prompt,
    build_reset_user_prompt,
    build_script_user_prompt,
)
from safety import SafetyGate
from schemas import (
    ContentSource,
    FlagKind,
    QuestRequest,
    QuestSet,
    ResetProtocol,
    ResetRequest,
    SafetyVerdict,
    ScriptRequest,
    ScriptSet,
    validate,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# keys only the pipeline may set; stripped from model output before validation
_PIPELINE_KEYS = ("source", "prompt_version", "intervention", "keyword_hits")


# ---------- Model client ----------


class ModelUnavailable(Exception):
    """Network error, timeout, missing key, or empty text from the model."""


@dataclass(frozen=True)
class SamplingParams:
    temperature: float
    top_p: float = 0.95
    max_tokens: int = 2048


class ChatModelClient:
    """
    Thin LangChain wrapper: system instruction + user instruction + sampling
    parameters in, free text out.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _llm(self, params: SamplingParams) -> ChatOpenAI:
        return ChatOpenAI(
            model=self.settings.openai_model,
            api_key=self.settings.openai_api_key,
            temperature=params.temperature,
            top_p=params.top_p,
            max_tokens=params.max_tokens,
            timeout=self.settings.model_timeout_seconds,
            max_retries=self.settings.model_max_retries,
        )

    def complete(self, system_instruction: str, user_prompt: str, params: SamplingParams) -> str:
        if not self.settings.openai_api_key:
            raise ModelUnavailable("OPENAI_API_KEY not configured")

        try:
            resp = self._llm(params).invoke(
                [SystemMessage(content=system_instruction), HumanMessage(content=user_prompt)]
            )
        except Exception as exc:
            raise ModelUnavailable(f"{type(exc).__name__}: {exc}") from exc

        content = resp.content
        if isinstance(content, list):
            # content blocks: keep only the text parts
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )

        if not content or not str(content).strip():
            raise ModelUnavailable("empty response from model")
        return str(content)


# ---------- Generation orchestrator ----------


class GenerationErrorKind(str, Enum):
    model_unavailable = "model_unavailable"
    extraction_failed = "extraction_failed"
    schema_mismatch = "schema_mismatch"


@dataclass
class GenerationError:
    kind: GenerationErrorKind
    detail: str = ""


@dataclass
class Generation(Generic[T]):
    value: T
    source: ContentSource
    error: Optional[GenerationError] = None


class ContentGenerator(Generic[T]):
    """
    One instance per content type.

    generate() never raises: every failure (model down, no JSON, wrong shape)
    degrades to the supplied fallback, which must satisfy the same schema.
    """

    def __init__(
        self,
        kind: str,
        response_model: Type[T],
        sampling: SamplingParams,
        client,
        prompt_version: Optional[str] = None,
        validation_context: Optional[Dict[str, Any]] = None,
    ):
        self.kind = kind
        self.response_model = response_model
        self.sampling = sampling
        self.client = client
        self.prompt_version = prompt_version
        self.validation_context = validation_context

        self._reserved = set(_PIPELINE_KEYS)
        if "intervention" in response_model.model_fields:
            # content responses only carry a message under intervention
            self._reserved.add("message")

    def generate(self, system_instruction: str, user_prompt: str, fallback: Callable[[], T]) -> Generation[T]:
        # 1) model
        try:
            text = self.client.complete(system_instruction, user_prompt, self.sampling)
        except ModelUnavailable as exc:
            return self._degrade(fallback, GenerationErrorKind.model_unavailable, str(exc))
        except Exception as exc:
            return self._degrade(fallback, GenerationErrorKind.model_unavailable, f"{type(exc).__name__}: {exc}")

        # 2) extract
        payload = extract_json(text)
        if payload is None:
            return self._degrade(fallback, GenerationErrorKind.extraction_failed, f"text_len={len(text)}")

        if isinstance(payload, dict):
            payload = {k: v for k, v in payload.items() if k not in self._reserved}

        # 3) validate
        outcome = validate(self.response_model, payload, context=self.validation_context)
        if not outcome.ok:
            return self._degrade(fallback, GenerationErrorKind.schema_mismatch, str(outcome.errors[:3]))

        value = outcome.value
        if "source" in self.response_model.model_fields:
            value = value.model_copy(
                update={"source": ContentSource.model, "prompt_version": self.prompt_version}
            )
        return Generation(value=value, source=ContentSource.model)

    def _degrade(self, fallback: Callable[[], T], kind: GenerationErrorKind, detail: str) -> Generation[T]:
        logger.warning("generation_fallback | kind=%s | reason=%s | detail=%.300s", self.kind, kind.value, detail)
        return Generation(
            value=fallback(),
            source=ContentSource.fallback,
            error=GenerationError(kind=kind, detail=detail),
        )


# ---------- Coach nodes ----------


def _extra_flags(verdict: Optional[SafetyVerdict]):
    if verdict is None:
        return []
    return [f.value for f in verdict.flags if f is not FlagKind.none]


class CoachNodes:
    """
    Prompt building + orchestrated generation for every content type.

    The *_node methods follow the graph convention: take the pipeline state,
    return a partial dict of fields to update.
    """

    def __init__(
        self,
        client=None,
        catalog: Optional[FallbackCatalog] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.client = client if client is not None else ChatModelClient(self.settings)
        self.catalog = catalog or FallbackCatalog()

        self.quest_generator = ContentGenerator(
            "quests", QuestSet, SamplingParams(temperature=0.7, top_p=0.95, max_tokens=2048),
            self.client, PROMPT_VERSIONS["quests"],
        )
        self.script_generator = ContentGenerator(
            "scripts", ScriptSet, SamplingParams(temperature=0.7, top_p=0.95, max_tokens=1536),
            self.client, PROMPT_VERSIONS["scripts"],
        )
        self.reset_generator = ContentGenerator(
            "reset", ResetProtocol, SamplingParams(temperature=0.6, top_p=0.9, max_tokens=1536),
            self.client, PROMPT_VERSIONS["reset"],
            validation_context={"default_step_seconds": self.settings.default_step_seconds},
        )
        self.safety_generator = ContentGenerator(
            "safety", SafetyVerdict, SamplingParams(temperature=0.1, top_p=0.8, max_tokens=512),
            self.client, PROMPT_VERSIONS["safety"],
        )
        self.gate = SafetyGate(
            self.safety_generator,
            catalog=self.catalog,
            escalate_on_classifier_failure=self.settings.safety_escalate_on_classifier_failure,
        )

    # ---------- Generation ----------

    def generate_quests(self, request: QuestRequest, verdict: Optional[SafetyVerdict] = None) -> QuestSet:
        daily = request.daily_state
        signals = request.memory_signals

        user_prompt = build_quest_user_prompt(
            energy=daily.energy,
            stress=daily.stress,
            sleep_hours=daily.sleep_hours,
            focus=daily.focus.value,
            relationship_intensity=daily.relationship_intensity,
            work_intensity=daily.work_intensity,
            notes=daily.notes,
            preferred_categories=[c.value for c in signals.preferred_quest_types] if signals else None,
            what_worked=signals.what_worked if signals else None,
        )

        result = self.quest_generator.generate(
            QUEST_SYSTEM_PROMPT,
            user_prompt,
            fallback=lambda: self.catalog.quests(daily.energy, daily.stress),
        ).value
        return self._merge_flags(result, verdict)

    def generate_scripts(self, request: ScriptRequest, verdict: Optional[SafetyVerdict] = None) -> ScriptSet:
        style = request.user_profile.boundaries_style
        style_value = style.value if style else None

        user_prompt = build_script_user_prompt(
            scenario_type=request.scenario_type.value,
            context_summary=request.context_summary,
            boundaries_style=style_value,
        )

        result = self.script_generator.generate(
            SCRIPT_SYSTEM_PROMPT,
            user_prompt,
            fallback=lambda: self.catalog.script(request.scenario_type, style_value),
        ).value

        # the model may answer a different scenario than the one asked for
        if result.scenario != request.scenario_type:
            result = result.model_copy(update={"scenario": request.scenario_type})
        return self._merge_flags(result, verdict)

    def generate_reset(self, request: ResetRequest, verdict: Optional[SafetyVerdict] = None) -> ResetProtocol:
        if request.use_fallback:
            return self.catalog.reset_protocol(request.trigger)

        user_prompt = build_reset_user_prompt(
            trigger=request.trigger.value,
            context_summary=request.context_summary,
        )

        result = self.reset_generator.generate(
            RESET_SYSTEM_PROMPT,
            user_prompt,
            fallback=lambda: self.catalog.reset_protocol(request.trigger),
        ).value

        if result.trigger != request.trigger:
            result = result.model_copy(update={"trigger": request.trigger})
        if not result.trust_anchor:
            result = result.model_copy(update={"trust_anchor": self.catalog.trust_anchor})
        return result

    def check_safety(self, text: Optional[str]) -> SafetyVerdict:
        return self.gate.check(text)

    # ---------- Intervention ----------

    def intervention_response(self, kind: str, request, verdict: SafetyVerdict):
        """
        Fixed supportive message + empty content. Generation is not attempted.
        """
        flags = _extra_flags(verdict)
        message = SAFETY_INTERVENTION_MESSAGE

        if kind == "quests":
            return QuestSet(
                state_assessment={"state": "triggered", "notes": message},
                quests=[],
                safety_flags=flags,
                followups=[],
                intervention=True,
                message=message,
                source=ContentSource.intervention,
            )
        if kind == "scripts":
            return ScriptSet(
                scenario=request.scenario_type,
                variants=None,
                safety_flags=flags,
                intervention=True,
                message=message,
                source=ContentSource.intervention,
            )
        if kind == "reset":
            return ResetProtocol(
                trigger=request.trigger,
                steps=[],
                trust_anchor=self.catalog.trust_anchor,
                intervention=True,
                message=message,
                source=ContentSource.intervention,
            )
        raise ValueError(f"Unknown content kind: {kind}")

    # ---------- Graph nodes ----------

    def safety_node(self, state) -> Dict[str, Any]:
        """Run the gate over the request's free text (if any)."""
        return {"verdict": self.check_safety(state.request.free_text())}

    def intervene_node(self, state) -> Dict[str, Any]:
        return {"response": self.intervention_response(state.kind, state.request, state.verdict)}

    def generate_node(self, state) -> Dict[str, Any]:
        if state.kind == "quests":
            response = self.generate_quests(state.request, state.verdict)
        elif state.kind == "scripts":
            response = self.generate_scripts(state.request, state.verdict)
        elif state.kind == "reset":
            response = self.generate_reset(state.request, state.verdict)
        else:
            raise ValueError(f"Unknown content kind: {state.kind}")
        return {"response": response}

    @staticmethod
    def _merge_flags(result, verdict: Optional[SafetyVerdict]):
        extra = [f for f in _extra_flags(verdict) if f not in result.safety_flags]
        if not extra:
            return result
        return result.model_copy(update={"safety_flags": list(result.safety_flags) + extra})
