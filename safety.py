"""
Two-stage safety gate.

Stage 1 is a local phrase scan with no network dependency; it is the common
path and returns immediately when nothing matches. Stage 2 runs only on a
match and asks the model-backed classifier for a full SafetyVerdict.
"""

import logging
from typing import Dict, List, Optional

from fallbacks import FallbackCatalog
from prompts import SAFETY_INTERVENTION_MESSAGE, SAFETY_SYSTEM_PROMPT, build_safety_user_prompt
from schemas import ContentSource, FlagKind, SafetyVerdict

logger = logging.getLogger(__name__)


SAFETY_KEYWORDS: Dict[FlagKind, List[str]] = {
    FlagKind.self_harm_risk: [
        "kill myself",
        "end my life",
        "suicide",
        "suicidal",
        "don't want to live",
        "do not want to live",
        "want to die",
        "better off without me",
        "no reason to live",
        "hurt myself",
        "cut myself",
        "end it all",
    ],
    FlagKind.crisis_detected: [
        "can't breathe",
        "cannot breathe",
        "panic attack",
        "losing my mind",
        "can't take it anymore",
        "everything is falling apart",
        "can't function",
        "breaking down",
    ],
    FlagKind.substance_mention: [
        "got drunk",
        "drinking again",
        "relapsed",
        "using again",
        "overdose",
        "can't stop drinking",
        "high again",
    ],
}


def _normalize(text: str) -> str:
    return text.lower().replace("’", "'")


def scan_keywords(text: Optional[str]) -> List[str]:
    """Return every risk phrase contained in *text* (case-insensitive)."""
    if not text:
        return []
    lowered = _normalize(text)
    return [
        phrase
        for phrases in SAFETY_KEYWORDS.values()
        for phrase in phrases
        if phrase in lowered
    ]


def contains_safety_keywords(text: Optional[str]) -> bool:
    return bool(scan_keywords(text))


def flags_for_hits(hits: List[str]) -> List[FlagKind]:
    return [
        flag
        for flag, phrases in SAFETY_KEYWORDS.items()
        if any(hit in phrases for hit in hits)
    ]


class SafetyGate:
    """
    check(text) -> SafetyVerdict

    ``classifier`` is a ContentGenerator[SafetyVerdict] (see ai_nodes).
    """

    def __init__(
        self,
        classifier,
        catalog: Optional[FallbackCatalog] = None,
        escalate_on_classifier_failure: bool = False,
    ):
        self.classifier = classifier
        self.catalog = catalog or FallbackCatalog()
        self.escalate_on_classifier_failure = escalate_on_classifier_failure

    def check(self, text: Optional[str]) -> SafetyVerdict:
        hits = scan_keywords(text)
        if not hits:
            return SafetyVerdict(flags=[FlagKind.none], requires_intervention=False)

        generation = self.classifier.generate(
            SAFETY_SYSTEM_PROMPT,
            build_safety_user_prompt(text),
            fallback=lambda: self._classifier_failed(hits),
        )

        verdict = generation.value
        if generation.source is ContentSource.model:
            update = {"keyword_hits": hits}
            if verdict.requires_intervention and not verdict.message:
                update["message"] = SAFETY_INTERVENTION_MESSAGE
            verdict = verdict.model_copy(update=update)

        logger.info(
            "safety_check | hits=%d | source=%s | intervention=%s | flags=%s",
            len(hits),
            generation.source.value,
            verdict.requires_intervention,
            [f.value for f in verdict.flags],
        )
        return verdict

    def _classifier_failed(self, hits: List[str]) -> SafetyVerdict:
        logger.warning(
            "safety_classifier_failed | keyword_hits=%s | escalate=%s",
            hits,
            self.escalate_on_classifier_failure,
        )
        if self.escalate_on_classifier_failure:
            return self.catalog.safety_default(
                keyword_hits=hits,
                flags=flags_for_hits(hits),
                message=SAFETY_INTERVENTION_MESSAGE,
            )
        return self.catalog.safety_default(keyword_hits=hits)
