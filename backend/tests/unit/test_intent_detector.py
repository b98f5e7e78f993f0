"""Unit tests for reply intent detection."""

from datetime import date

import pytest

from parley.core.errors import CompletionServiceError
from parley.models.enums import ConfidenceTier
from parley.scheduler.intent_detector import (
    Intent,
    IntentAnalysis,
    IntentDetector,
    Sentiment,
    detect_patterns,
    quick_intent_check,
    requires_time_extraction,
    should_escalate,
)

from conftest import FakeCompletion


class TestPatternDetection:

    def test_confusion_phrase(self):
        assert detect_patterns("No, I said Thursday, wrong time").confusion_phrase is not None

    def test_delegation_phrase(self):
        assert detect_patterns("Sam is my assistant and can help").delegation_phrase == "my assistant"

    def test_out_of_office_phrase(self):
        assert detect_patterns("I am out of office until the 12th").ooo_phrase == "out of office"

    def test_plain_reply_has_no_signals(self):
        signals = detect_patterns("Tuesday works")
        assert signals.confusion_phrase is None
        assert signals.delegation_phrase is None
        assert signals.ooo_phrase is None


class TestQuickIntentCheck:

    def test_accept(self):
        assert quick_intent_check("That works for me!") is Intent.ACCEPT

    def test_decline_wins_over_accept(self):
        assert quick_intent_check("No thanks, that works for nobody") is Intent.DECLINE

    def test_reschedule(self):
        assert quick_intent_check("We need to move our meeting") is Intent.RESCHEDULE

    def test_nothing_obvious(self):
        assert quick_intent_check("Who else is joining?") is None


class TestEscalationRules:

    def _analysis(self, **overrides) -> IntentAnalysis:
        values = {
            "intent": Intent.ACCEPT,
            "confidence": ConfidenceTier.HIGH,
            "sentiment": Sentiment.POSITIVE,
            "reasoning": "picked a slot",
        }
        values.update(overrides)
        return IntentAnalysis(**values)

    def test_confident_accept_does_not_escalate(self):
        assert not should_escalate(self._analysis())

    def test_low_confidence_escalates(self):
        assert should_escalate(self._analysis(confidence=ConfidenceTier.LOW))

    def test_unnamed_delegate_escalates(self):
        assert should_escalate(self._analysis(is_delegating=True))

    def test_time_extraction_intents(self):
        assert requires_time_extraction(Intent.COUNTER_PROPOSE)
        assert not requires_time_extraction(Intent.DECLINE)


@pytest.mark.asyncio
class TestIntentDetector:

    async def test_valid_payload(self):
        completion = FakeCompletion()
        completion.classify_result = {
            "intent": "accept",
            "confidence": "high",
            "sentiment": "positive",
            "reasoning": "picked Monday",
        }
        analysis = await IntentDetector(completion).detect_intent("Monday works for me", timezone="America/New_York")
        assert analysis.intent is Intent.ACCEPT
        assert analysis.confidence is ConfidenceTier.HIGH
        assert "America/New_York" in completion.classify_prompts[0]

    async def test_schema_violation_becomes_unclear(self):
        completion = FakeCompletion()
        completion.classify_result = {"intent": "maybe", "confidence": "very"}
        analysis = await IntentDetector(completion).detect_intent("hmm")
        assert analysis.intent is Intent.UNCLEAR
        assert analysis.confidence is ConfidenceTier.LOW
        assert should_escalate(analysis)

    async def test_empty_reply_skips_the_model(self):
        completion = FakeCompletion()
        analysis = await IntentDetector(completion).detect_intent("   ")
        assert analysis.intent is Intent.UNCLEAR
        assert completion.classify_prompts == []

    async def test_accept_decline_disagreement_lowers_confidence(self):
        completion = FakeCompletion()
        completion.classify_result = {"intent": "accept", "confidence": "high", "sentiment": "neutral"}
        analysis = await IntentDetector(completion).detect_intent("Not interested, please stop emailing")
        assert analysis.confidence is ConfidenceTier.LOW

    async def test_local_patterns_override_payload_flags(self):
        completion = FakeCompletion()
        completion.classify_result = {"intent": "accept", "confidence": "high"}
        analysis = await IntentDetector(completion).detect_intent("I'm on vacation, back on Monday")
        assert analysis.is_out_of_office is True

    async def test_out_of_office_date_parsed(self):
        completion = FakeCompletion()
        completion.classify_result = {
            "intent": "unclear",
            "confidence": "medium",
            "isOutOfOffice": True,
            "oooUntil": "2026-01-12",
        }
        analysis = await IntentDetector(completion).detect_intent("Auto-reply")
        assert analysis.ooo_until == date(2026, 1, 12)

    async def test_unreachable_collaborator_propagates(self):
        completion = FakeCompletion()
        completion.error = CompletionServiceError("classify call failed: timeout")
        with pytest.raises(CompletionServiceError):
            await IntentDetector(completion).detect_intent("Tuesday works")
