"""Google Calendar API service layer.

Free/busy lookups and slot generation for proposals, plus event insert,
patch and delete for bookings.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo
import httpx

from parley.core.errors import ProviderError
from parley.core.tracing import get_tracer, safe_span_attributes
from parley.scheduler.time_utils import holiday_name
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"


class CalendarServiceError(ProviderError):
    """Base exception for Calendar service errors."""

    def __init__(self, message: str, status_code: int = 502, error_code: str = "calendar_service_error"):
        super().__init__(message=message, status_code=status_code, error_code=error_code)


class CalendarNotFoundError(CalendarServiceError):
    """Raised when a calendar or event is not found."""

    def __init__(self, message: str = "Calendar not found"):
        super().__init__(message=message, status_code=404, error_code="calendar_not_found")


def generate_time_slots(
    busy_periods: list[dict[str, Any]],
    start_time: datetime,
    end_time: datetime,
    timezone: str,
    slot_duration_minutes: int = 30,
    working_hours_start: int = 9,
    working_hours_end: int = 17,
    max_slots: int = 3,
    step_minutes: int = 15,
) -> list[dict[str, str]]:
    """Free slots inside working hours, skipping weekends and US holidays.

    Args:
        busy_periods: ``[{"start": iso, "end": iso}, ...]`` from free/busy
        start_time: Start of the search window (timezone-aware)
        end_time: End of the search window (timezone-aware)
        timezone: Zone whose working hours apply, e.g. "America/New_York"
        step_minutes: Granularity of candidate start times

    Returns:
        ``[{"start": iso, "end": iso}, ...]`` in local time with offsets

    Example:
        >>> busy = [{"start": "2026-01-05T14:00:00Z", "end": "2026-01-05T15:00:00Z"}]
        >>> generate_time_slots(busy, datetime(2026, 1, 5, 13, tzinfo=ZoneInfo("UTC")),
        ...                     datetime(2026, 1, 6, 13, tzinfo=ZoneInfo("UTC")), "America/New_York")[0]
        {"start": "2026-01-05T10:00:00-05:00", "end": "2026-01-05T10:30:00-05:00"}
    """
    with tracer.start_as_current_span("calendar.generate_time_slots") as span:
        span.set_attributes(safe_span_attributes(
            timezone=timezone,
            slot_duration_minutes=slot_duration_minutes,
            working_hours_start=working_hours_start,
            working_hours_end=working_hours_end,
            busy_periods_count=len(busy_periods)
        ))

        try:
            tz = ZoneInfo(timezone)
        except Exception as e:
            logger.warning(f"Invalid timezone '{timezone}', falling back to UTC: {e}")
            tz = ZoneInfo("UTC")
            timezone = "UTC"

        busy_ranges = []
        for period in busy_periods:
            try:
                busy_start = datetime.fromisoformat(period["start"].replace("Z", "+00:00"))
                busy_end = datetime.fromisoformat(period["end"].replace("Z", "+00:00"))
                busy_ranges.append((busy_start, busy_end))
            except (KeyError, ValueError) as e:
                logger.warning(f"Invalid busy period: {period}, error: {e}")
        busy_ranges.sort(key=lambda x: x[0])

        available_slots: list[dict[str, str]] = []
        current_time = start_time.astimezone(tz)
        search_end = end_time.astimezone(tz)
        duration = timedelta(minutes=slot_duration_minutes)

        while current_time < search_end and len(available_slots) < max_slots:
            next_day = (current_time + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)

            if current_time.weekday() >= 5 or holiday_name(current_time.date()):
                current_time = next_day
                continue

            day_start = current_time.replace(hour=working_hours_start, minute=0, second=0, microsecond=0)
            day_end = current_time.replace(hour=working_hours_end, minute=0, second=0, microsecond=0)

            slot_start = max(current_time, day_start)
            # Align to the step grid so slots land on :00/:15/:30/:45
            misalignment = (slot_start.minute % step_minutes, slot_start.second, slot_start.microsecond)
            if misalignment != (0, 0, 0):
                slot_start = slot_start.replace(second=0, microsecond=0) + timedelta(
                    minutes=step_minutes - slot_start.minute % step_minutes
                )

            while slot_start + duration <= min(day_end, search_end):
                slot_end = slot_start + duration
                overlaps = any(
                    not (slot_end <= busy_start or slot_start >= busy_end)
                    for busy_start, busy_end in busy_ranges
                )
                if not overlaps:
                    available_slots.append({"start": slot_start.isoformat(), "end": slot_end.isoformat()})
                    if len(available_slots) >= max_slots:
                        break
                    # Spread proposals out instead of offering back-to-back slots
                    slot_start = slot_end + timedelta(minutes=step_minutes * 3)
                    continue
                slot_start += timedelta(minutes=step_minutes)

            current_time = next_day

        logger.info(
            "Generated candidate slots",
            extra={"timezone": timezone, "slots": len(available_slots), "busy_periods": len(busy_ranges)},
        )
        span.set_attribute("slots_generated", len(available_slots))
        span.set_status(Status(StatusCode.OK))
        return available_slots


async def _calendar_request(
    method: str,
    url: str,
    user_token: str,
    operation: str,
    json: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    with tracer.start_as_current_span(f"calendar.{operation}") as span:
        span.set_attributes(safe_span_attributes(operation=operation, method=method))
        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method,
                    url,
                    headers={
                        "Authorization": f"Bearer {user_token}",
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                    },
                    json=json,
                    params=params,
                    timeout=15.0,
                )
        except httpx.TimeoutException:
            logger.error("Calendar API timeout", extra={"operation": operation})
            span.set_status(Status(StatusCode.ERROR, "Timeout"))
            raise CalendarServiceError("Calendar API request timeout", status_code=504, error_code="calendar_timeout")
        except httpx.RequestError as e:
            logger.error("Calendar API network error", extra={"operation": operation, "error": str(e)})
            span.set_status(Status(StatusCode.ERROR, "Network error"))
            raise CalendarServiceError(
                f"Unable to connect to Calendar API: {e}", status_code=503, error_code="calendar_unreachable"
            )

        if response.status_code == 404:
            logger.warning("Calendar resource not found", extra={"operation": operation})
            span.set_status(Status(StatusCode.ERROR, "Not found"))
            raise CalendarNotFoundError(f"Calendar {operation}: resource not found")

        if response.status_code >= 400:
            error_data = response.json() if response.content else {}
            error_message = error_data.get("error", {}).get("message", "Unknown error")
            logger.error(
                "Calendar API error",
                extra={"operation": operation, "status_code": response.status_code, "error": error_message},
            )
            span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
            raise CalendarServiceError(
                message=f"Calendar {operation} failed: {error_message}",
                status_code=response.status_code,
                error_code=f"{operation}_error",
            )

        span.set_status(Status(StatusCode.OK))
        return response.json() if response.content else {}


async def get_freebusy(
    user_token: str,
    time_min: datetime,
    time_max: datetime,
    timezone: str = "UTC",
    calendar_ids: list[str] | None = None,
) -> dict[str, Any]:
    """Free/busy for one or more calendars (defaults to the primary calendar).

    Example response:
        {"calendars": {"primary": {"busy": [{"start": "...Z", "end": "...Z"}]}}}
    """
    ids = calendar_ids or ["primary"]
    logger.info(
        "Fetching Calendar free/busy data",
        extra={"calendars": len(ids), "time_min": time_min.isoformat(), "time_max": time_max.isoformat()},
    )
    return await _calendar_request(
        "POST",
        f"{CALENDAR_API_BASE}/freeBusy",
        user_token,
        "get_freebusy",
        json={
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "timeZone": timezone,
            "items": [{"id": calendar_id} for calendar_id in ids],
        },
    )


def busy_periods(freebusy: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten busy ranges across every calendar in a free/busy response."""
    periods: list[dict[str, Any]] = []
    for calendar in freebusy.get("calendars", {}).values():
        periods.extend(calendar.get("busy", []))
    return periods


def _event_body(
    start: datetime,
    duration_minutes: int,
    timezone: str,
    title: str | None = None,
    attendees: list[str] | None = None,
    with_meet_link: bool = False,
) -> dict[str, Any]:
    end = start + timedelta(minutes=duration_minutes)
    body: dict[str, Any] = {
        "start": {"dateTime": start.isoformat(), "timeZone": timezone},
        "end": {"dateTime": end.isoformat(), "timeZone": timezone},
    }
    if title is not None:
        body["summary"] = title
    if attendees is not None:
        body["attendees"] = [{"email": email} for email in attendees]
    if with_meet_link:
        body["conferenceData"] = {
            "createRequest": {"requestId": f"parley-{int(start.timestamp())}", "conferenceSolutionKey": {"type": "hangoutsMeet"}}
        }
    return body


async def create_event(
    user_token: str,
    start: datetime,
    duration_minutes: int,
    attendees: list[str],
    title: str,
    timezone: str = "UTC",
    calendar_id: str = "primary",
) -> dict[str, Any]:
    """Insert an event with a Meet link and email invites to attendees."""
    logger.info("Creating calendar event", extra={"attendees": len(attendees), "start": start.isoformat()})
    return await _calendar_request(
        "POST",
        f"{CALENDAR_API_BASE}/calendars/{calendar_id}/events",
        user_token,
        "create_event",
        json=_event_body(start, duration_minutes, timezone, title, attendees, with_meet_link=True),
        params={"conferenceDataVersion": 1, "sendUpdates": "all"},
    )


async def update_event_time(
    user_token: str,
    event_id: str,
    start: datetime,
    duration_minutes: int,
    timezone: str = "UTC",
    calendar_id: str = "primary",
) -> dict[str, Any]:
    logger.info("Moving calendar event", extra={"event_id": event_id, "start": start.isoformat()})
    return await _calendar_request(
        "PATCH",
        f"{CALENDAR_API_BASE}/calendars/{calendar_id}/events/{event_id}",
        user_token,
        "update_event",
        json=_event_body(start, duration_minutes, timezone),
        params={"sendUpdates": "all"},
    )


async def delete_event(user_token: str, event_id: str, calendar_id: str = "primary") -> None:
    logger.info("Cancelling calendar event", extra={"event_id": event_id})
    await _calendar_request(
        "DELETE",
        f"{CALENDAR_API_BASE}/calendars/{calendar_id}/events/{event_id}",
        user_token,
        "delete_event",
        params={"sendUpdates": "all"},
    )
