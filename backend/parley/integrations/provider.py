"""Email/calendar provider used by the draft executor and proposal builder.

The scheduling core only sees ``EmailCalendarProvider``. The Google
implementation delegates to ``gmail_service`` and ``calendar_service``.
Thread and message ids returned by ``send`` are persisted by the caller
straight after the call.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from parley.integrations import calendar_service, gmail_service
from parley.scheduler.time_utils import to_instant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    message_id: str
    thread_id: str


@dataclass(frozen=True)
class BookingResult:
    event_id: str
    meeting_link: str | None = None


class EmailCalendarProvider(Protocol):
    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        reply_to_id: str | None = None,
        thread_id: str | None = None,
    ) -> SendResult: ...

    async def book(
        self,
        start: datetime,
        duration_minutes: int,
        attendees: list[str],
        title: str,
        timezone: str = "UTC",
    ) -> BookingResult: ...

    async def update_event(self, event_id: str, start: datetime, duration_minutes: int, timezone: str = "UTC") -> BookingResult: ...

    async def cancel_event(self, event_id: str) -> None: ...

    async def check_availability(self, start: datetime, duration_minutes: int, attendee_emails: list[str]) -> bool: ...

    async def find_free_slots(
        self,
        window_start: datetime,
        window_end: datetime,
        timezone: str,
        duration_minutes: int,
        max_slots: int = 3,
        business_hours_start: int = 9,
        business_hours_end: int = 17,
    ) -> list[datetime]: ...


def _meeting_link(event: dict) -> str | None:
    if event.get("hangoutLink"):
        return event["hangoutLink"]
    for entry in event.get("conferenceData", {}).get("entryPoints", []):
        if entry.get("entryPointType") == "video":
            return entry.get("uri")
    return None


class GoogleWorkspaceProvider:
    """Gmail + Google Calendar for a single connected account."""

    def __init__(self, access_token: str, calendar_id: str = "primary"):
        self.access_token = access_token
        self.calendar_id = calendar_id

    async def send(self, to, subject, body, reply_to_id=None, thread_id=None) -> SendResult:
        sent = await gmail_service.send_message(
            self.access_token,
            to_address=to,
            subject=subject,
            body=body,
            thread_id=thread_id,
            reply_to_msg_id=reply_to_id,
        )
        return SendResult(message_id=sent["id"], thread_id=sent.get("threadId") or thread_id or sent["id"])

    async def book(self, start, duration_minutes, attendees, title, timezone="UTC") -> BookingResult:
        event = await calendar_service.create_event(
            self.access_token,
            start=start,
            duration_minutes=duration_minutes,
            attendees=attendees,
            title=title,
            timezone=timezone,
            calendar_id=self.calendar_id,
        )
        return BookingResult(event_id=event["id"], meeting_link=_meeting_link(event))

    async def update_event(self, event_id, start, duration_minutes, timezone="UTC") -> BookingResult:
        event = await calendar_service.update_event_time(
            self.access_token, event_id, start, duration_minutes, timezone, calendar_id=self.calendar_id
        )
        return BookingResult(event_id=event.get("id", event_id), meeting_link=_meeting_link(event))

    async def cancel_event(self, event_id) -> None:
        await calendar_service.delete_event(self.access_token, event_id, calendar_id=self.calendar_id)

    async def check_availability(self, start, duration_minutes, attendee_emails) -> bool:
        end = start + timedelta(minutes=duration_minutes)
        freebusy = await calendar_service.get_freebusy(
            self.access_token,
            time_min=start,
            time_max=end,
            calendar_ids=[self.calendar_id, *attendee_emails],
        )
        for period in calendar_service.busy_periods(freebusy):
            busy_start, _ = to_instant(period["start"], "UTC")
            busy_end, _ = to_instant(period["end"], "UTC")
            if busy_start < end and start < busy_end:
                logger.info("Requested slot overlaps a busy period", extra={"start": start.isoformat()})
                return False
        return True

    async def find_free_slots(
        self,
        window_start,
        window_end,
        timezone,
        duration_minutes,
        max_slots=3,
        business_hours_start=9,
        business_hours_end=17,
    ) -> list[datetime]:
        freebusy = await calendar_service.get_freebusy(
            self.access_token,
            time_min=window_start,
            time_max=window_end,
            timezone=timezone,
            calendar_ids=[self.calendar_id],
        )
        slots = calendar_service.generate_time_slots(
            calendar_service.busy_periods(freebusy),
            window_start,
            window_end,
            timezone,
            slot_duration_minutes=duration_minutes,
            working_hours_start=business_hours_start,
            working_hours_end=business_hours_end,
            max_slots=max_slots,
        )
        return [to_instant(slot["start"], timezone)[0] for slot in slots]
