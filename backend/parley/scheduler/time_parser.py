"""Natural-language time expressions to absolute instants.

Two layers:

* ``parse_time`` / ``parse_times`` / ``extract_times_from_text`` call the
  text-completion collaborator's ``extract`` contract, validate its JSON
  against ``ExtractionPayload`` and then sanity-check every timestamp
  locally (stated clock time, weekday/day-of-month agreement).
* ``match_to_proposed_time`` never calls a model. It resolves replies such
  as "the first one" or "10:30 works" against the candidates we already
  sent, comparing absolute instants in the request's timezone.

Nothing here raises for ambiguity. An unresolvable expression returns
``success=False``; a doubtful one returns ``confidence=low``.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from parley.core.tracing import get_tracer, safe_span_attributes
from parley.integrations.completion_client import CompletionClient
from parley.models.enums import ConfidenceTier
from parley.scheduler.time_utils import (
    MONTH_NAMES,
    WEEKDAY_NAMES,
    build_date_context,
    format_clock,
    format_for_display,
    holiday_name,
    local_datetime,
    normalize_timezone,
    to_instant,
    to_local,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass(frozen=True)
class ProposedTime:
    """A candidate slot we offered: absolute instant plus how it was shown."""

    instant: datetime
    display: str
    source: str = "generated"

    def to_record(self) -> dict[str, str]:
        return {"utc": self.instant.isoformat(), "display": self.display, "source": self.source}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ProposedTime":
        instant, _ = to_instant(record["utc"], "UTC")
        return cls(instant=instant, display=record.get("display", ""), source=record.get("source", "generated"))


@dataclass
class ParseContext:
    timezone: str
    reference_instant: datetime
    email_body_excerpt: str | None = None
    proposed_times: list[ProposedTime] = field(default_factory=list)
    business_hours_start: int = 9
    business_hours_end: int = 17


@dataclass
class ParsedTime:
    raw: str
    instant: datetime | None
    display: str
    timezone: str
    confidence: ConfidenceTier
    reasoning: str
    was_converted: bool = False
    success: bool = True
    errors: list[str] = field(default_factory=list)

    def to_proposed(self, source: str) -> ProposedTime:
        if self.instant is None:
            raise ValueError("Cannot propose an unparsed time")
        return ProposedTime(instant=self.instant, display=self.display, source=source)


@dataclass
class TimeMatch:
    proposed: ProposedTime
    confidence: ConfidenceTier
    reasoning: str


@dataclass
class TimeValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class ExtractedTime(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    text: str
    timestamp: str | None = None
    has_explicit_time: bool = Field(default=False, alias="hasExplicitTime")
    confidence: ConfidenceTier = ConfidenceTier.LOW
    reasoning: str = ""


class ExtractionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    times: list[ExtractedTime] = Field(default_factory=list)


# --- text patterns -------------------------------------------------------

_CLOCK_RE = re.compile(
    r"\b(?P<hour>1[0-2]|0?[1-9])(?::(?P<minute>[0-5]\d))?\s*(?P<meridiem>[ap])\.?\s?m\b\.?"
    r"|\b(?P<hour24>[01]?\d|2[0-3]):(?P<minute24>[0-5]\d)\b"
    r"|\b(?P<named>noon|midday|midnight)\b",
    re.IGNORECASE,
)
_WEEKDAY_RE = re.compile(
    r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday|mon|tues|tue|wed|thurs|thur|thu|fri)\b",
    re.IGNORECASE,
)
_MONTH_DAY_RE = re.compile(
    r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b(?![:\d]|\s*[ap]\.?m)",
    re.IGNORECASE,
)
_DAY_ORDINAL_RE = re.compile(r"\b(?:the\s+)?(\d{1,2})(?:st|nd|rd|th)\b(?!\s+(?:one|option|choice|slot|time))", re.IGNORECASE)
_OPTION_RE = re.compile(
    r"(?:\b(?:option|choice|slot|number)\s*#?\s*|#\s*)(\d|one|two|three|four|five)\b",
    re.IGNORECASE,
)
_ORDINAL_RE = re.compile(
    r"\b(first|second|third|fourth|fifth|last|1st|2nd|3rd|4th|5th)\s+(?:one|option|choice|slot|time|proposal)\b",
    re.IGNORECASE,
)
_NEGATION_RE = re.compile(
    r"\b(?:not|isn't|isnt|aren't|won't|wont|can't|cant|cannot|couldn't|don't|dont|doesn't|doesnt|unable|"
    r"no longer|none of|neither|instead|no good|wrong)\b",
    re.IGNORECASE,
)
_ACCEPTANCE_RE = re.compile(
    r"\b(works|work for me|sounds good|sounds great|perfect|great|confirmed|see you|that time|"
    r"that's fine|fine by me|yes|yep|sure|book it|let's do it|good for me)\b",
    re.IGNORECASE,
)

_NUMBER_WORDS = {"one": 1, "two": 2, "three": 3, "four": 4, "five": 5}
_ORDINAL_INDEX = {
    "first": 0, "1st": 0, "second": 1, "2nd": 1, "third": 2, "3rd": 2,
    "fourth": 3, "4th": 3, "fifth": 4, "5th": 4, "last": -1,
}


@dataclass(frozen=True)
class StatedClock:
    hour: int
    minute: int
    meridiem_known: bool

    def hours(self) -> set[int]:
        if self.meridiem_known or self.hour > 12:
            return {self.hour}
        base = self.hour % 12
        return {base, base + 12}

    def matches(self, local: datetime) -> bool:
        return local.minute == self.minute and local.hour in self.hours()


def find_clock_times(text: str) -> list[StatedClock]:
    clocks = []
    for match in _CLOCK_RE.finditer(text):
        if match.group("named"):
            named = match.group("named").lower()
            clocks.append(StatedClock(0 if named == "midnight" else 12, 0, True))
        elif match.group("meridiem"):
            hour = int(match.group("hour")) % 12
            if match.group("meridiem").lower() == "p":
                hour += 12
            clocks.append(StatedClock(hour, int(match.group("minute") or 0), True))
        else:
            hour = int(match.group("hour24"))
            clocks.append(StatedClock(hour, int(match.group("minute24")), hour > 12 or hour == 0))
    return clocks


def find_weekdays(text: str) -> set[int]:
    found = set()
    for match in _WEEKDAY_RE.finditer(text):
        prefix = match.group(1).lower()[:3]
        found.add(next(i for i, name in enumerate(WEEKDAY_NAMES) if name.startswith(prefix)))
    return found


def find_month_days(text: str) -> list[tuple[int, int]]:
    found = []
    for match in _MONTH_DAY_RE.finditer(text):
        month = next(i for i, name in enumerate(MONTH_NAMES, start=1) if name.startswith(match.group(1).lower()[:3]))
        day = int(match.group(2))
        if 1 <= day <= 31:
            found.append((month, day))
    return found


def find_day_ordinals(text: str) -> set[int]:
    """Bare day-of-month references such as 'the 5th'."""
    without_months = _MONTH_DAY_RE.sub(" ", text)
    return {int(m.group(1)) for m in _DAY_ORDINAL_RE.finditer(without_months) if 1 <= int(m.group(1)) <= 31}


def has_negation(text: str) -> bool:
    return _NEGATION_RE.search(text) is not None


# --- model-backed parsing ------------------------------------------------

def build_extraction_prompt(text: str, context: ParseContext) -> str:
    tz = normalize_timezone(context.timezone)
    date_context = build_date_context(context.reference_instant, tz)
    offered = "\n".join(f"- {p.display}" for p in context.proposed_times) or "- none"
    return f"""Extract every meeting date/time the sender proposes, accepts or asks about.

{date_context.describe()}

Times the sender was offered:
{offered}

Rules:
- Give timestamps as local wall-clock time in {tz} WITHOUT an offset: YYYY-MM-DDTHH:MM:SS.
- If the sender names only a day or a part of the day ("Tuesday afternoon", "next week"),
  still give your best timestamp but set hasExplicitTime to false and confidence to "low".
- If the sender refers to one of the offered times, return that time.
- Use null for timestamp when no date can be determined at all.
- "text" must quote the expression exactly as the sender wrote it.

Respond with JSON only:
{{"times": [{{"text": "...", "timestamp": "YYYY-MM-DDTHH:MM:SS" or null, "hasExplicitTime": true|false,
"confidence": "high"|"medium"|"low", "reasoning": "..."}}]}}

Email:
\"\"\"{text}\"\"\""""


def _failure(raw: str, tz: str, error: str, reasoning: str | None = None) -> ParsedTime:
    return ParsedTime(
        raw=raw,
        instant=None,
        display="",
        timezone=tz,
        confidence=ConfidenceTier.LOW,
        reasoning=reasoning or error,
        success=False,
        errors=[error],
    )


def _align_weekday_and_date(text: str, local: datetime, context: ParseContext, tz: str) -> tuple[datetime | None, str | None]:
    """Check "Monday the 5th" style phrases.

    Returns ``(adjusted_instant, None)`` when exactly one of the reference
    month or the following month has that weekday on that date,
    ``(None, problem)`` when none or both do, and ``(None, None)`` when the
    phrase is absent or the resolved date already agrees.
    """
    weekdays = find_weekdays(text)
    days = find_day_ordinals(text)
    if len(weekdays) != 1 or len(days) != 1:
        return None, None
    weekday, day = next(iter(weekdays)), next(iter(days))
    if local.weekday() == weekday and local.day == day:
        return None, None

    reference = to_local(context.reference_instant, tz).date()
    aligned: list[date] = []
    for offset in (0, 1):
        month_index = reference.month - 1 + offset
        year, month = reference.year + month_index // 12, month_index % 12 + 1
        try:
            candidate = date(year, month, day)
        except ValueError:
            continue
        if candidate.weekday() == weekday and candidate >= reference:
            aligned.append(candidate)

    if len(aligned) == 1:
        return local_datetime(aligned[0], local.time(), tz), None
    return None, f"{WEEKDAY_NAMES[weekday].title()} and day {day} do not line up in a single upcoming month"


def resolve_extracted(item: ExtractedTime, context: ParseContext) -> ParsedTime:
    """Turn one validated extraction into a ParsedTime, downgrading doubtful ones."""
    tz = normalize_timezone(context.timezone)
    if not item.timestamp:
        return _failure(item.text, tz, "no concrete date or time could be determined", item.reasoning or None)
    try:
        instant, converted = to_instant(item.timestamp, tz)
    except ValueError:
        return _failure(item.text, tz, f"unparseable timestamp '{item.timestamp}'")

    confidence = item.confidence
    notes = [item.reasoning] if item.reasoning else []
    local = to_local(instant, tz)

    adjusted, problem = _align_weekday_and_date(item.text, local, context, tz)
    if adjusted is not None:
        instant, local = adjusted, to_local(adjusted, tz)
        notes.append("moved to the month where the weekday and date agree")
    elif problem:
        confidence = ConfidenceTier.LOW
        notes.append(problem)

    clocks = find_clock_times(item.text)
    if not clocks:
        confidence = ConfidenceTier.LOW
        notes.append("no specific clock time stated")
    elif not any(clock.matches(local) for clock in clocks):
        confidence = ConfidenceTier.LOW
        notes.append(f"stated time does not match resolved {format_clock(local)}")

    notes.append(f"interpreted in {tz}")
    return ParsedTime(
        raw=item.text,
        instant=instant,
        display=format_for_display(instant, tz),
        timezone=tz,
        confidence=confidence,
        reasoning="; ".join(notes),
        was_converted=converted,
    )


def _validated_items(payload: dict[str, Any]) -> list[ExtractedTime] | None:
    try:
        return ExtractionPayload.model_validate(payload).times
    except ValidationError as e:
        logger.warning("Time extraction payload failed validation", extra={"error_count": e.error_count()})
        return None


async def parse_time(text: str, context: ParseContext, completion: CompletionClient) -> ParsedTime:
    """Parse a single time expression.

    ISO-8601 input is handled locally; anything else goes through
    ``extract``. Collaborator failures propagate as CompletionServiceError.
    """
    tz = normalize_timezone(context.timezone)
    raw = text.strip()
    if not raw:
        return _failure(raw, tz, "empty time expression")

    try:
        instant, converted = to_instant(raw, tz)
    except ValueError:
        pass
    else:
        return ParsedTime(
            raw=raw,
            instant=instant,
            display=format_for_display(instant, tz),
            timezone=tz,
            confidence=ConfidenceTier.HIGH,
            reasoning=f"explicit ISO-8601 timestamp; interpreted in {tz}" if converted else "explicit ISO-8601 timestamp",
            was_converted=converted,
        )

    with tracer.start_as_current_span("time_parser.parse_time") as span:
        span.set_attributes(safe_span_attributes(timezone=tz, content=raw))
        items = _validated_items(await completion.extract(build_extraction_prompt(raw, context)))
        if items is None:
            return _failure(raw, tz, "time extraction response failed validation")
        if not items:
            return _failure(raw, tz, "no date or time found")
        parsed = resolve_extracted(items[0], context)
        span.set_attribute("confidence", parsed.confidence.value)
        return parsed


async def parse_times(texts: list[str], context: ParseContext, completion: CompletionClient) -> list[ParsedTime]:
    return [await parse_time(text, context, completion) for text in texts]


async def extract_times_from_text(body: str, context: ParseContext, completion: CompletionClient) -> list[ParsedTime]:
    """Find every time expression in a free-text reply.

    Returns an empty list when nothing usable was found or the model reply
    did not validate. Duplicate instants are collapsed.
    """
    tz = normalize_timezone(context.timezone)
    if not body.strip():
        return []

    with tracer.start_as_current_span("time_parser.extract_times_from_text") as span:
        span.set_attributes(safe_span_attributes(timezone=tz, body=body))
        items = _validated_items(await completion.extract(build_extraction_prompt(body, context)))
        if not items:
            span.set_attribute("times_found", 0)
            return []

        results: list[ParsedTime] = []
        seen: set[datetime] = set()
        for item in items:
            parsed = resolve_extracted(item, context)
            if parsed.instant is not None:
                if parsed.instant in seen:
                    continue
                seen.add(parsed.instant)
            results.append(parsed)

        span.set_attribute("times_found", len(results))
        logger.info(
            "Extracted times from reply",
            extra={"times_found": len(results), "timezone": tz},
        )
        return results


# --- deterministic matching ---------------------------------------------

def _option_index(text: str, count: int) -> int | None:
    match = _OPTION_RE.search(text)
    if match:
        token = match.group(1).lower()
        index = (int(token) if token.isdigit() else _NUMBER_WORDS[token]) - 1
        return index if 0 <= index < count else None
    match = _ORDINAL_RE.search(text)
    if match:
        index = _ORDINAL_INDEX[match.group(1).lower()]
        index = count - 1 if index == -1 else index
        return index if 0 <= index < count else None
    return None


def match_to_proposed_time(text: str, context: ParseContext) -> TimeMatch | None:
    """Resolve a reply against the times we offered without calling a model.

    Returns None when there is nothing to match, when the reply contains a
    correction or negation ("not Tuesday", "that doesn't work"), or when the
    reply's clock time or weekday contradicts every candidate.
    """
    candidates = context.proposed_times
    if not candidates or not text.strip():
        return None
    if has_negation(text):
        return None

    tz = normalize_timezone(context.timezone)
    locals_ = [to_local(c.instant, tz) for c in candidates]

    index = _option_index(text, len(candidates))
    if index is not None:
        chosen = candidates[index]
        return TimeMatch(chosen, ConfidenceTier.HIGH, f"reply picks option {index + 1}: {chosen.display}")

    clocks = find_clock_times(text)
    weekdays = find_weekdays(text)
    month_days = find_month_days(text)
    days = {d for _, d in month_days} | find_day_ordinals(text)

    pool = list(range(len(candidates)))
    if weekdays:
        pool = [i for i in pool if locals_[i].weekday() in weekdays]
    if days:
        pool = [i for i in pool if locals_[i].day in days]
    if month_days:
        pool = [i for i in pool if (locals_[i].month, locals_[i].day) in month_days]

    if clocks:
        hits = [i for i in pool if any(clock.matches(locals_[i]) for clock in clocks)]
        if len(hits) == 1:
            chosen = candidates[hits[0]]
            return TimeMatch(chosen, ConfidenceTier.HIGH, f"stated time matches proposed {chosen.display}")
        return None

    if (weekdays or days) and len(pool) == 1:
        chosen = candidates[pool[0]]
        return TimeMatch(chosen, ConfidenceTier.MEDIUM, f"day reference matches proposed {chosen.display}")

    if len(candidates) == 1 and not (weekdays or days) and _ACCEPTANCE_RE.search(text):
        chosen = candidates[0]
        return TimeMatch(chosen, ConfidenceTier.MEDIUM, f"general acceptance of the only proposed time {chosen.display}")

    return None


def validate_parsed_time(
    parsed: ParsedTime,
    context: ParseContext,
    *,
    now: datetime | None = None,
    min_lead: timedelta = timedelta(hours=1),
) -> TimeValidation:
    """Check that a parsed time is bookable: future, weekday, business hours, not a holiday."""
    result = TimeValidation()
    if not parsed.success or parsed.instant is None:
        result.errors.append("time was not parsed")
        return result

    tz = normalize_timezone(context.timezone)
    reference = now or context.reference_instant
    local = to_local(parsed.instant, tz)

    if parsed.instant <= reference:
        result.errors.append("time is in the past")
    elif parsed.instant - reference < min_lead:
        result.warnings.append("time is less than an hour away")

    if local.weekday() >= 5:
        result.errors.append(f"falls on a {WEEKDAY_NAMES[local.weekday()].title()}")
    if not context.business_hours_start <= local.hour < context.business_hours_end:
        result.errors.append(
            f"{format_clock(local)} is outside business hours "
            f"({context.business_hours_start}:00-{context.business_hours_end}:00 {tz})"
        )
    holiday = holiday_name(local.date())
    if holiday:
        result.errors.append(f"falls on {holiday}")

    return result
