"""Reply intent classification.

Classifies what a contact meant (accept, counter-propose, decline, ...)
and deliberately extracts no times; that is the time parser's job. The
model's JSON goes through ``IntentPayload`` before anything downstream
sees it. Phrase lists for confusion, delegation and out-of-office act as a
safety net: they can raise those flags but never clear them.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from parley.core.tracing import get_tracer, safe_span_attributes
from parley.integrations.completion_client import CompletionClient
from parley.models.enums import ConfidenceTier
from parley.scheduler.time_parser import ProposedTime
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class Intent(str, Enum):
    ACCEPT = "accept"
    COUNTER_PROPOSE = "counter_propose"
    DECLINE = "decline"
    QUESTION = "question"
    RESCHEDULE = "reschedule"
    DELEGATE = "delegate"
    CONFUSED = "confused"
    UNCLEAR = "unclear"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


CONFUSION_INDICATORS = [
    "wrong time", "wrong date", "that's not what", "i didn't say", "i meant", "i said",
    "confused", "misunderstood", "that's incorrect", "no, i", "already told you",
    "didn't work", "something went wrong", "technical issue", "i never", "we already",
    "frustrated", "this is the third", "again?",
]

DELEGATION_INDICATORS = [
    "my assistant", "my ea", "executive assistant", "please work with", "cc'd",
    "copied on this", "adding", "loop in", "looping in", "forwarding to", "will handle",
    "better person", "colleague", "team member",
]

OUT_OF_OFFICE_INDICATORS = [
    "out of office", "ooo", "on vacation", "on holiday", "traveling", "away from",
    "not available until", "back on", "returning", "limited availability",
]

_ACCEPT_PHRASES = ["works for me", "sounds good", "see you then", "that works", "confirmed", "book it"]
_DECLINE_PHRASES = ["not interested", "no thanks", "no thank you", "unsubscribe", "remove me", "please stop"]
_RESCHEDULE_PHRASES = ["reschedule", "push our meeting", "move our meeting", "push it back", "need to move"]


def _phrase_pattern(phrases: list[str]) -> re.Pattern:
    # Word boundaries only where the phrase edge is a word character
    parts = []
    for phrase in phrases:
        escaped = re.escape(phrase)
        start = r"\b" if phrase[0].isalnum() else ""
        end = r"\b" if phrase[-1].isalnum() else ""
        parts.append(f"{start}{escaped}{end}")
    return re.compile("|".join(parts), re.IGNORECASE)


_CONFUSION_RE = _phrase_pattern(CONFUSION_INDICATORS)
_DELEGATION_RE = _phrase_pattern(DELEGATION_INDICATORS)
_OOO_RE = _phrase_pattern(OUT_OF_OFFICE_INDICATORS)
_ACCEPT_RE = _phrase_pattern(_ACCEPT_PHRASES)
_DECLINE_RE = _phrase_pattern(_DECLINE_PHRASES)
_RESCHEDULE_RE = _phrase_pattern(_RESCHEDULE_PHRASES)


class IntentPayload(BaseModel):
    """Shape the classifier must return. Anything else is treated as unclear."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    intent: Intent
    confidence: ConfidenceTier
    sentiment: Sentiment = Sentiment.NEUTRAL
    reasoning: str = ""
    is_confused: bool = Field(default=False, alias="isConfused")
    confusion_reason: str | None = Field(default=None, alias="confusionReason")
    is_delegating: bool = Field(default=False, alias="isDelegating")
    delegate_to: str | None = Field(default=None, alias="delegateTo")
    has_question: bool = Field(default=False, alias="hasQuestion")
    question: str | None = None
    is_out_of_office: bool = Field(default=False, alias="isOutOfOffice")
    ooo_until: str | None = Field(default=None, alias="oooUntil")


@dataclass
class IntentAnalysis:
    intent: Intent
    confidence: ConfidenceTier
    sentiment: Sentiment
    reasoning: str
    is_confused: bool = False
    confusion_reason: str | None = None
    is_delegating: bool = False
    delegate_to: str | None = None
    has_question: bool = False
    question: str | None = None
    is_out_of_office: bool = False
    ooo_until: date | None = None

    @classmethod
    def unclear(cls, reasoning: str) -> "IntentAnalysis":
        return cls(
            intent=Intent.UNCLEAR,
            confidence=ConfidenceTier.LOW,
            sentiment=Sentiment.NEUTRAL,
            reasoning=reasoning,
        )


@dataclass(frozen=True)
class PatternSignals:
    confusion_phrase: str | None = None
    delegation_phrase: str | None = None
    ooo_phrase: str | None = None


def detect_patterns(text: str) -> PatternSignals:
    def first(pattern: re.Pattern) -> str | None:
        match = pattern.search(text)
        return match.group(0).lower() if match else None

    return PatternSignals(
        confusion_phrase=first(_CONFUSION_RE),
        delegation_phrase=first(_DELEGATION_RE),
        ooo_phrase=first(_OOO_RE),
    )


def quick_intent_check(text: str) -> Intent | None:
    """Keyword-only read of unambiguous replies. Never used on its own to act."""
    if _DECLINE_RE.search(text):
        return Intent.DECLINE
    if _RESCHEDULE_RE.search(text):
        return Intent.RESCHEDULE
    if _ACCEPT_RE.search(text):
        return Intent.ACCEPT
    return None


def requires_time_extraction(intent: Intent) -> bool:
    return intent in (Intent.ACCEPT, Intent.COUNTER_PROPOSE, Intent.RESCHEDULE)


def should_escalate(analysis: IntentAnalysis) -> bool:
    return (
        analysis.is_confused
        or analysis.confidence is ConfidenceTier.LOW
        or analysis.intent in (Intent.UNCLEAR, Intent.CONFUSED)
        or (analysis.is_delegating and not analysis.delegate_to)
    )


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def build_classification_prompt(body: str, proposed_times: list[ProposedTime], timezone: str) -> str:
    offered = "\n".join(f"- {p.display}" for p in proposed_times) or "- none yet"
    return f"""Classify the intent of this reply to a meeting-scheduling email.

We offered these times ({timezone}):
{offered}

Intents:
- accept: agrees to one of the offered times or confirms a meeting
- counter_propose: suggests a different time
- decline: does not want to meet (now or ever)
- question: asks something that must be answered before scheduling
- reschedule: wants to move a meeting that was already booked
- delegate: hands scheduling to someone else
- confused: the sender is correcting us or says something went wrong
- unclear: none of the above can be determined

Do NOT convert or output any times; only classify.

Respond with JSON only:
{{"intent": "...", "confidence": "high"|"medium"|"low", "sentiment": "positive"|"neutral"|"negative",
"reasoning": "...", "isConfused": bool, "confusionReason": str|null, "isDelegating": bool,
"delegateTo": str|null, "hasQuestion": bool, "question": str|null,
"isOutOfOffice": bool, "oooUntil": "YYYY-MM-DD"|null}}

Reply:
\"\"\"{body}\"\"\""""


class IntentDetector:
    def __init__(self, completion: CompletionClient):
        self.completion = completion

    async def detect_intent(
        self,
        body: str,
        proposed_times: list[ProposedTime] | None = None,
        timezone: str = "UTC",
    ) -> IntentAnalysis:
        """Classify ``body``.

        A reply that fails schema validation comes back as unclear/low so the
        caller escalates. A collaborator that cannot be reached raises
        CompletionServiceError.
        """
        text = body.strip()
        if not text:
            return IntentAnalysis.unclear("empty reply")

        with tracer.start_as_current_span("intent_detector.detect_intent") as span:
            span.set_attributes(safe_span_attributes(body=text, proposed_count=len(proposed_times or [])))

            raw = await self.completion.classify(build_classification_prompt(text, proposed_times or [], timezone))
            try:
                payload = IntentPayload.model_validate(raw)
            except ValidationError as e:
                logger.warning("Intent payload failed validation", extra={"error_count": e.error_count()})
                span.set_status(Status(StatusCode.ERROR, "invalid payload"))
                return IntentAnalysis.unclear("classification response failed validation")

            analysis = self._merge(payload, text)
            span.set_attributes({
                "intent": analysis.intent.value,
                "confidence": analysis.confidence.value,
                "is_confused": analysis.is_confused,
                "is_delegating": analysis.is_delegating,
            })
            span.set_status(Status(StatusCode.OK))

            logger.info(
                "Reply intent detected",
                extra={
                    "intent": analysis.intent.value,
                    "confidence": analysis.confidence.value,
                    "is_confused": analysis.is_confused,
                    "is_delegating": analysis.is_delegating,
                    "is_out_of_office": analysis.is_out_of_office,
                },
            )
            return analysis

    def _merge(self, payload: IntentPayload, text: str) -> IntentAnalysis:
        signals = detect_patterns(text)
        reasoning = [payload.reasoning] if payload.reasoning else []
        confidence = payload.confidence

        quick = quick_intent_check(text)
        if quick and {quick, payload.intent} == {Intent.ACCEPT, Intent.DECLINE}:
            confidence = ConfidenceTier.LOW
            reasoning.append(f"wording reads as {quick.value} but classifier said {payload.intent.value}")

        confusion_reason = payload.confusion_reason
        if signals.confusion_phrase and not confusion_reason:
            confusion_reason = f"reply contains '{signals.confusion_phrase}'"

        if signals.delegation_phrase and not payload.is_delegating:
            reasoning.append(f"delegation phrase '{signals.delegation_phrase}'")

        return IntentAnalysis(
            intent=payload.intent,
            confidence=confidence,
            sentiment=payload.sentiment,
            reasoning="; ".join(reasoning) or f"classified as {payload.intent.value}",
            is_confused=payload.is_confused or signals.confusion_phrase is not None,
            confusion_reason=confusion_reason,
            is_delegating=payload.is_delegating or signals.delegation_phrase is not None,
            delegate_to=payload.delegate_to,
            has_question=payload.has_question,
            question=payload.question,
            is_out_of_office=payload.is_out_of_office or signals.ooo_phrase is not None,
            ooo_until=_parse_date(payload.ooo_until),
        )
