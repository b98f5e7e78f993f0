"""Unit tests for time parsing and proposed-time matching."""

from datetime import datetime, timedelta, timezone

import pytest

from parley.models.enums import ConfidenceTier
from parley.scheduler.time_parser import (
    ExtractedTime,
    ParseContext,
    ProposedTime,
    extract_times_from_text,
    find_clock_times,
    match_to_proposed_time,
    parse_time,
    resolve_extracted,
    validate_parsed_time,
)
from parley.scheduler.time_utils import format_for_display, to_instant, to_local

from conftest import OFFERED_SLOTS, FakeCompletion

UTC = timezone.utc
NY = "America/New_York"
RECEIVED = datetime(2026, 1, 2, 16, 0, tzinfo=UTC)


def _context(proposed: list[datetime] | None = None) -> ParseContext:
    slots = OFFERED_SLOTS if proposed is None else proposed
    return ParseContext(
        timezone=NY,
        reference_instant=RECEIVED,
        proposed_times=[ProposedTime(s, format_for_display(s, NY), "calendar") for s in slots],
    )


class TestToInstant:

    def test_bare_local_timestamp_uses_zone(self):
        instant, converted = to_instant("2026-01-05T10:30:00", NY)
        assert instant == datetime(2026, 1, 5, 15, 30, tzinfo=UTC)
        assert converted is True

    def test_explicit_offset_is_honoured(self):
        instant, converted = to_instant("2026-01-05T10:30:00Z", NY)
        assert instant == datetime(2026, 1, 5, 10, 30, tzinfo=UTC)
        assert converted is False

    def test_display_names_the_zone(self):
        assert format_for_display(OFFERED_SLOTS[0], NY) == "Monday, January 5 at 10:30 AM EST"


class TestFindClockTimes:

    def test_meridiem_forms(self):
        clocks = find_clock_times("either 2pm or 3:45 p.m. is fine")
        assert [(c.hour, c.minute) for c in clocks] == [(14, 0), (15, 45)]

    def test_bare_24h_clock_is_ambiguous(self):
        (clock,) = find_clock_times("10:30 works")
        assert clock.hours() == {10, 22}

    def test_noon(self):
        (clock,) = find_clock_times("how about noon")
        assert (clock.hour, clock.minute) == (12, 0)


class TestMatchToProposedTime:
    """Replies resolved against the offered slots without a model call."""

    def test_clock_time_matches_offered_slot(self):
        match = match_to_proposed_time("10:30 works for me", _context())
        assert match is not None
        assert match.proposed.instant == OFFERED_SLOTS[0]
        assert match.confidence is ConfidenceTier.HIGH

    def test_option_number(self):
        match = match_to_proposed_time("Option 2 please", _context())
        assert match.proposed.instant == OFFERED_SLOTS[1]
        assert match.confidence is ConfidenceTier.HIGH

    def test_ordinal(self):
        match = match_to_proposed_time("The last one is best for us", _context())
        assert match.proposed.instant == OFFERED_SLOTS[2]

    def test_weekday_alone_is_medium(self):
        match = match_to_proposed_time("Wednesday is good", _context())
        assert match.proposed.instant == OFFERED_SLOTS[2]
        assert match.confidence is ConfidenceTier.MEDIUM

    def test_negation_never_matches(self):
        assert match_to_proposed_time("Not Tuesday, sorry", _context()) is None

    def test_clock_that_matches_nothing(self):
        assert match_to_proposed_time("3pm works", _context()) is None

    def test_general_acceptance_of_single_slot(self):
        match = match_to_proposed_time("Sounds good, see you then", _context([OFFERED_SLOTS[0]]))
        assert match.proposed.instant == OFFERED_SLOTS[0]
        assert match.confidence is ConfidenceTier.MEDIUM

    def test_general_acceptance_with_several_slots(self):
        assert match_to_proposed_time("Sounds good", _context()) is None

    def test_no_candidates(self):
        assert match_to_proposed_time("10:30 works", _context([])) is None


class TestResolveExtracted:

    def test_explicit_time_keeps_confidence(self):
        item = ExtractedTime(text="Tuesday at 2pm", timestamp="2026-01-06T14:00:00", hasExplicitTime=True, confidence="high")
        parsed = resolve_extracted(item, _context())
        assert parsed.instant == datetime(2026, 1, 6, 19, 0, tzinfo=UTC)
        assert parsed.confidence is ConfidenceTier.HIGH
        assert parsed.was_converted is True
        assert "America/New_York" in parsed.reasoning

    def test_part_of_day_is_low(self):
        item = ExtractedTime(text="Tuesday afternoon", timestamp="2026-01-06T14:00:00", confidence="medium")
        parsed = resolve_extracted(item, _context())
        assert parsed.success
        assert parsed.confidence is ConfidenceTier.LOW
        assert "no specific clock time" in parsed.reasoning

    def test_clock_disagreement_is_low(self):
        item = ExtractedTime(text="Tuesday at 3pm", timestamp="2026-01-06T14:00:00", confidence="high")
        parsed = resolve_extracted(item, _context())
        assert parsed.confidence is ConfidenceTier.LOW

    def test_weekday_and_day_realigned(self):
        item = ExtractedTime(text="Monday the 12th at 10am", timestamp="2026-02-12T10:00:00", confidence="high")
        parsed = resolve_extracted(item, _context())
        assert parsed.instant == datetime(2026, 1, 12, 15, 0, tzinfo=UTC)
        assert "weekday and date agree" in parsed.reasoning

    def test_missing_timestamp_fails(self):
        parsed = resolve_extracted(ExtractedTime(text="sometime soon"), _context())
        assert parsed.success is False
        assert parsed.instant is None


class TestValidateParsedTime:

    def _parsed(self, instant: datetime):
        item = ExtractedTime(text="at the time", timestamp=instant.isoformat(), confidence="high")
        return resolve_extracted(item, _context())

    def test_bookable_time(self):
        assert validate_parsed_time(self._parsed(OFFERED_SLOTS[0]), _context()).is_valid

    def test_weekend(self):
        result = validate_parsed_time(self._parsed(datetime(2026, 1, 3, 15, 0, tzinfo=UTC)), _context())
        assert any("Saturday" in e for e in result.errors)

    def test_outside_business_hours(self):
        result = validate_parsed_time(self._parsed(datetime(2026, 1, 6, 1, 0, tzinfo=UTC)), _context())
        assert any("outside business hours" in e for e in result.errors)

    def test_holiday(self):
        # Martin Luther King Jr. Day
        result = validate_parsed_time(self._parsed(datetime(2026, 1, 19, 15, 0, tzinfo=UTC)), _context())
        assert any("Martin Luther King" in e for e in result.errors)

    def test_past(self):
        result = validate_parsed_time(self._parsed(RECEIVED - timedelta(days=1)), _context())
        assert "time is in the past" in result.errors

    def test_soon_is_only_a_warning(self):
        result = validate_parsed_time(self._parsed(RECEIVED + timedelta(minutes=30)), _context())
        assert result.is_valid
        assert result.warnings


@pytest.mark.asyncio
class TestModelBackedParsing:

    async def test_iso_input_skips_the_model(self):
        completion = FakeCompletion()
        parsed = await parse_time("2026-01-05T10:30:00", _context(), completion)
        assert parsed.instant == OFFERED_SLOTS[0]
        assert parsed.confidence is ConfidenceTier.HIGH
        assert completion.extract_prompts == []

    async def test_extract_collapses_duplicates(self):
        completion = FakeCompletion()
        completion.extract_result = {"times": [
            {"text": "Tuesday at 2pm", "timestamp": "2026-01-06T14:00:00", "hasExplicitTime": True, "confidence": "high"},
            {"text": "2pm Tuesday", "timestamp": "2026-01-06T14:00:00", "hasExplicitTime": True, "confidence": "high"},
        ]}
        parsed = await extract_times_from_text("Tuesday at 2pm? 2pm Tuesday works.", _context(), completion)
        assert len(parsed) == 1
        assert "America/New_York" in completion.extract_prompts[0]

    async def test_invalid_payload_yields_nothing(self):
        completion = FakeCompletion()
        completion.extract_result = {"times": "tuesday"}
        assert await extract_times_from_text("Tuesday?", _context(), completion) == []

    async def test_empty_body(self):
        completion = FakeCompletion()
        assert await extract_times_from_text("   ", _context(), completion) == []
        assert completion.extract_prompts == []

    async def test_offered_slots_survive_a_round_trip(self):
        """Each offered instant, written back as local or UTC ISO text, parses to itself."""
        completion = FakeCompletion()
        for slot in OFFERED_SLOTS:
            local = to_local(slot, NY).replace(tzinfo=None).isoformat()
            for text in (local, slot.isoformat()):
                parsed = await parse_time(text, _context(), completion)
                assert parsed.instant == slot
                assert parsed.display == format_for_display(slot, NY)
        assert completion.extract_prompts == []
