"""Matching free-form speech onto the flow map.

All functions here are pure: same input, same output. The heuristics are plain
case-insensitive substring tests, so they tolerate filler words ("yeah that's
right") but not paraphrase. The remote matcher exists for the paraphrase case.
"""

import logging
import string
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from carecall.flow import FlowMap, FlowStep

logger = logging.getLogger(__name__)

FINAL_PHRASES = (
    "goodbye",
    "bye",
    "take care",
    "adiós",
    "adios",
    "cuídese",
    "cuidese",
)

# Canonical answer -> ways a patient says it. Consulted only for options
# that carry no keywords of their own.
RESPONSE_SYNONYMS = {
    "english": ("english", "inglés", "ingles"),
    "español": ("español", "spanish", "espanol"),
    "yes": ("yes", "yeah", "yep", "correct", "that's right", "si", "sí"),
    "no": ("no", "nope", "incorrect", "wrong"),
    "as expected": ("as expected", "expected", "fine", "good", "okay", "ok", "como esperaba"),
    "have a concern": ("concern", "worried", "not good", "preocupación", "preocupacion"),
    "wait was too long": ("wait", "waiting", "too long", "espera", "larga"),
    "i felt better": ("better", "felt better", "mejor"),
    "i felt worse": ("worse", "felt worse", "peor"),
    "went home": ("home", "went home", "casa"),
    "went to another er": ("another er", "other er", "different er", "otra sala"),
    "went somewhere else": ("somewhere else", "other", "else", "otro lugar"),
}

# Topic hints used when no step question overlaps the assistant's words.
# Each hint only applies if the flow map has a step with that id.
TOPIC_HINTS = (
    (("english", "español"), "language"),
    (("correct", "records show"), "confirm"),
    (("feeling", "concern"), "general_status"),
    (("why did you leave",), "reason"),
    (("where did you go",), "disposition"),
)

QUESTION_WORDS_SCANNED = 5
MIN_WORD_LENGTH = 4
MIN_QUESTION_OVERLAP = 2

_PUNCTUATION = string.punctuation + "¿¡“”‘’"


def contains_final_phrase(text: str) -> bool:
    lower = (text or "").lower()
    return any(phrase in lower for phrase in FINAL_PHRASES)


def match_option(utterance: str, step: FlowStep) -> Optional[str]:
    """Return the label of the first option (declaration order) the utterance matches."""
    lower = (utterance or "").lower()
    if not lower.strip():
        return None

    for option in step.options:
        label = option.label.lower()
        if label in lower:
            return option.label
        if option.keywords:
            if any(k.lower() in lower for k in option.keywords):
                return option.label
            continue
        synonyms = RESPONSE_SYNONYMS.get(label, ())
        if any(s in lower for s in synonyms):
            return option.label
    return None


def match_user_response(utterance: str, step_id: str, flow_map: FlowMap) -> Optional[str]:
    step = flow_map.get_step(step_id)
    if step is None:
        return None
    return match_option(utterance, step)


def _question_keywords(question: str) -> list[str]:
    words = question.lower().split()[:QUESTION_WORDS_SCANNED]
    cleaned = (w.strip(_PUNCTUATION) for w in words)
    return [w for w in cleaned if len(w) >= MIN_WORD_LENGTH]


def _last_assistant_text(transcript: Iterable) -> Optional[str]:
    last = None
    for entry in transcript:
        if entry.role == "assistant":
            last = entry.text
    return last


def infer_flow_step(
    transcript: Iterable,
    flow_map: FlowMap,
    min_overlap: int = MIN_QUESTION_OVERLAP,
) -> Optional[str]:
    """Guess which step the conversation is on from the latest assistant utterance.

    Each step scores one point per leading question word found in the utterance;
    the best score at or above ``min_overlap`` wins, earlier steps winning ties.
    """
    text = _last_assistant_text(transcript)
    if text is None:
        return flow_map.first_step.id
    text = text.lower()

    best_id, best_score = None, 0
    for step in flow_map.steps:
        score = sum(1 for w in _question_keywords(step.question) if w in text)
        if score >= min_overlap and score > best_score:
            best_id, best_score = step.id, score
    if best_id:
        return best_id

    if contains_final_phrase(text):
        closing = flow_map.terminal_step()
        if closing:
            return closing.id

    for keywords, step_id in TOPIC_HINTS:
        if any(k in text for k in keywords) and flow_map.has_step(step_id):
            return step_id

    return None


@dataclass(frozen=True)
class MatchResult:
    label: Optional[str] = None
    confidence: float = 0.0

    @property
    def matched(self) -> bool:
        return self.label is not None


NO_MATCH = MatchResult()


class AnswerMatcher(Protocol):
    async def match(self, step: FlowStep, utterance: str) -> MatchResult:
        ...


class LocalMatcher:
    """Deterministic substring matcher."""

    async def match(self, step: FlowStep, utterance: str) -> MatchResult:
        label = match_option(utterance, step)
        if label is None:
            return NO_MATCH
        return MatchResult(label=label, confidence=1.0)


class RemoteMatcher:
    """Delegates to the backend's language-model matcher.

    The backend client already degrades to no-match on any failure, so a
    remote outage leaves the tracked answer unset for that turn and nothing more.
    """

    def __init__(self, backend):
        self.backend = backend

    async def match(self, step: FlowStep, utterance: str) -> MatchResult:
        if not step.options:
            return NO_MATCH
        result = await self.backend.match_answer(step.question, utterance, step.options)
        if result.label is not None and step.option(result.label) is None:
            logger.warning("Remote matcher returned unknown option %r for step %s", result.label, step.id)
            return NO_MATCH
        return result
