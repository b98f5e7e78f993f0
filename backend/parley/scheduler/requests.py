"""Scheduling request lifecycle operations that do not start from a reply.

Creating a request, proposing times, resuming after review, cancelling and
the no-show recovery ladder. Every operation works inside the caller's
session and leaves the commit to the caller.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlmodel import Session, select

from parley.core.errors import (
    InvalidRequestError,
    InvalidTransitionError,
    ProviderError,
    RequestNotFoundError,
)
from parley.core.rules import SlaPolicy
from parley.integrations.calendar_service import generate_time_slots
from parley.integrations.provider import EmailCalendarProvider
from parley.models.drafts import Draft
from parley.models.enums import (
    ActionType,
    Actor,
    AttendeeSide,
    DraftType,
    MeetingType,
    RequestStatus,
    Urgency,
    WorkItemStatus,
    WorkItemType,
)
from parley.models.scheduling import Attendee, SchedulingAction, SchedulingRequest
from parley.models.types import utcnow
from parley.models.work_items import HumanWorkItem
from parley.scheduler.draft_manager import DraftManager
from parley.scheduler.escalation import EscalationCode, build_escalation, escalate_to_human_review
from parley.scheduler.sla import primary_contact, start_updates, window_for_request
from parley.scheduler.state_machine import (
    CONFIRMED_STATES,
    apply_updates,
    is_terminal,
    record_action,
    resume_request,
    transition,
)
from parley.scheduler.templates import proposal_email
from parley.scheduler.time_parser import ProposedTime
from parley.scheduler.time_utils import format_for_display, normalize_timezone, to_instant

logger = logging.getLogger(__name__)

S = RequestStatus

PROPOSAL_LEAD = timedelta(hours=2)


@dataclass
class AttendeeSpec:
    email: str
    side: AttendeeSide = AttendeeSide.EXTERNAL
    name: str | None = None
    title: str | None = None
    is_primary_contact: bool = False
    is_organizer: bool = False


@dataclass
class RequestDetail:
    request: SchedulingRequest
    attendees: list[Attendee]
    actions: list[SchedulingAction]
    drafts: list[Draft]


def get_request(session: Session, request_id: uuid.UUID) -> SchedulingRequest:
    request = session.get(SchedulingRequest, request_id)
    if request is None:
        raise RequestNotFoundError(f"Request {request_id} not found")
    return request


def get_request_detail(session: Session, request_id: uuid.UUID) -> RequestDetail:
    request = get_request(session, request_id)
    return RequestDetail(
        request=request,
        attendees=list(session.exec(select(Attendee).where(Attendee.request_id == request_id)).all()),
        actions=list(session.exec(
            select(SchedulingAction).where(SchedulingAction.request_id == request_id).order_by(SchedulingAction.id)
        ).all()),
        drafts=list(session.exec(
            select(Draft).where(Draft.request_id == request_id).order_by(Draft.created_at)
        ).all()),
    )


def _close_review_items(session: Session, request_id: uuid.UUID, resolution: str, resolved_by: str, now: datetime) -> int:
    items = session.exec(
        select(HumanWorkItem).where(
            HumanWorkItem.request_id == request_id,
            HumanWorkItem.item_type == WorkItemType.SCHEDULING_REVIEW.value,
            HumanWorkItem.status == WorkItemStatus.OPEN.value,
        )
    ).all()
    for item in items:
        item.status = WorkItemStatus.RESOLVED.value
        item.resolved_at = now
        item.resolved_by = resolved_by
        item.resolution = resolution
        session.add(item)
    session.flush()
    return len(items)


class RequestService:
    def __init__(
        self,
        provider: EmailCalendarProvider,
        drafts: DraftManager,
        sla_policy: SlaPolicy,
        *,
        slot_count: int = 3,
        window_days: int = 7,
        business_hours_start: int = 9,
        business_hours_end: int = 17,
    ):
        self.provider = provider
        self.drafts = drafts
        self.sla_policy = sla_policy
        self.slot_count = slot_count
        self.window_days = window_days
        self.business_hours_start = business_hours_start
        self.business_hours_end = business_hours_end

    def create_request(
        self,
        session: Session,
        *,
        user_id: str,
        title: str,
        attendees: list[AttendeeSpec],
        timezone: str | None = None,
        duration_minutes: int = 30,
        meeting_type: MeetingType = MeetingType.DISCOVERY,
        urgency: Urgency = Urgency.MEDIUM,
        context: str | None = None,
        date_range_start: datetime | None = None,
        date_range_end: datetime | None = None,
        deal_stage: str | None = None,
        contact_persona: str | None = None,
        email_thread_id: str | None = None,
        source_message_id: str | None = None,
        now: datetime | None = None,
    ) -> SchedulingRequest:
        external = [a for a in attendees if a.side is AttendeeSide.EXTERNAL]
        if not external:
            raise InvalidRequestError("A scheduling request needs at least one external attendee")
        if any(a.is_primary_contact for a in attendees if a.side is AttendeeSide.INTERNAL):
            raise InvalidRequestError("Only external attendees can be the primary contact")
        primaries = [a for a in external if a.is_primary_contact]
        if len(primaries) > 1:
            raise InvalidRequestError("At most one external attendee may be the primary contact")
        if duration_minutes <= 0:
            raise InvalidRequestError("duration_minutes must be positive")
        if date_range_start and date_range_end and date_range_end <= date_range_start:
            raise InvalidRequestError("date_range_end must be after date_range_start")

        now = now or utcnow()
        request = SchedulingRequest(
            user_id=user_id,
            title=title,
            context=context,
            meeting_type=meeting_type.value,
            duration_minutes=duration_minutes,
            urgency=urgency.value,
            timezone=normalize_timezone(timezone),
            date_range_start=date_range_start,
            date_range_end=date_range_end,
            deal_stage=deal_stage,
            contact_persona=contact_persona,
            email_thread_id=email_thread_id,
            source_message_id=source_message_id,
            next_action_type="propose_times",
            next_action_at=now,
            last_action_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(request)
        session.flush()

        primary_email = (primaries[0] if primaries else external[0]).email
        for spec in attendees:
            session.add(Attendee(
                request_id=request.id,
                side=spec.side.value,
                name=spec.name,
                email=spec.email.lower(),
                title=spec.title,
                is_primary_contact=spec.side is AttendeeSide.EXTERNAL and spec.email == primary_email,
                is_organizer=spec.is_organizer,
                created_at=now,
            ))
        session.flush()

        record_action(
            session,
            request,
            ActionType.CREATED,
            actor=Actor.HUMAN,
            new_status=request.status,
            reasoning=f"{meeting_type.value} meeting requested",
            details={"attendees": len(attendees), "timezone": request.timezone},
        )
        logger.info("Scheduling request created", extra={"request_id": str(request.id), "attendees": len(attendees)})
        return request

    async def candidate_times(self, request: SchedulingRequest, now: datetime) -> list[ProposedTime]:
        """Free slots from the calendar, or generated business-hour slots if free/busy is unavailable."""
        window_start = max(request.date_range_start or now, now + PROPOSAL_LEAD)
        window_end = request.date_range_end or window_start + timedelta(days=self.window_days)
        if window_end <= window_start:
            return []

        try:
            instants = await self.provider.find_free_slots(
                window_start,
                window_end,
                request.timezone,
                request.duration_minutes,
                max_slots=self.slot_count,
                business_hours_start=self.business_hours_start,
                business_hours_end=self.business_hours_end,
            )
            source = "calendar"
        except ProviderError as e:
            logger.warning(
                "Free/busy unavailable, generating slots without calendar data",
                extra={"request_id": str(request.id), "error": e.message},
            )
            slots = generate_time_slots(
                [],
                window_start,
                window_end,
                request.timezone,
                slot_duration_minutes=request.duration_minutes,
                working_hours_start=self.business_hours_start,
                working_hours_end=self.business_hours_end,
                max_slots=self.slot_count,
            )
            instants = [to_instant(slot["start"], request.timezone)[0] for slot in slots]
            source = "generated"

        return [ProposedTime(i, format_for_display(i, request.timezone), source) for i in instants]

    async def propose_times(self, session: Session, request_id: uuid.UUID, now: datetime | None = None) -> Draft | None:
        """Queue a proposal email with fresh candidate times and move to proposing.

        Returns None when no slot is free; the request is escalated instead.
        """
        now = now or utcnow()
        request = get_request(session, request_id)
        current = S(request.status)
        if current not in (S.INITIATED, S.NO_SHOW):
            raise InvalidTransitionError(f"Cannot propose times while request is {current.value}")

        times = await self.candidate_times(request, now)
        session.refresh(request)

        if not times:
            escalate_to_human_review(
                session,
                request,
                build_escalation(EscalationCode.NO_AVAILABILITY, details="no free slot in the requested window"),
                now=now,
            )
            return None

        contact = primary_contact(session, request)
        draft, _ = self.drafts.create_draft(
            session,
            request=request,
            draft_type=DraftType.PROPOSAL_EMAIL,
            payload={
                "to": contact.email,
                "subject": request.title,
                "body": proposal_email(contact.name, request.title, times, request.duration_minutes),
                "reply_to_id": request.source_message_id,
                "thread_id": request.email_thread_id,
                "proposed_times": [t.to_record() for t in times],
            },
            idempotency_key=f"proposal:{request.id}:{request.no_show_count}",
            reasoning=f"{len(times)} {times[0].source} slots offered",
            now=now,
        )
        transition(
            session,
            request,
            S.PROPOSING,
            action_type=ActionType.RESCHEDULING_STARTED if current is S.NO_SHOW else ActionType.TIMES_PROPOSED,
            reasoning=f"proposal drafted with {len(times)} candidate times",
            updates={
                "proposed_times": [t.to_record() for t in times],
                "next_action_type": "approve_proposal",
                "next_action_at": now,
            },
            draft_id=draft.id,
            details={"times": [t.display for t in times]},
            now=now,
        )
        return draft

    def resume(
        self,
        session: Session,
        request_id: uuid.UUID,
        *,
        resumed_by: str,
        target: RequestStatus | None = None,
        reasoning: str | None = None,
        now: datetime | None = None,
    ) -> SchedulingRequest:
        now = now or utcnow()
        request = get_request(session, request_id)
        resume_request(
            session,
            request,
            reasoning=reasoning or f"resumed by {resumed_by}",
            target=target,
            now=now,
        )
        if request.status == S.AWAITING_RESPONSE.value:
            apply_updates(session, request, start_updates(window_for_request(session, request, self.sla_policy, now)), now=now)
        _close_review_items(session, request.id, "request resumed", resumed_by, now)
        return request

    def cancel(
        self,
        session: Session,
        request_id: uuid.UUID,
        *,
        reason: str,
        actor: Actor = Actor.HUMAN,
        outcome: str = "cancelled",
        now: datetime | None = None,
    ) -> SchedulingRequest:
        """Cancel, reject open drafts and queue removal of any booked event."""
        now = now or utcnow()
        request = get_request(session, request_id)
        event_id = request.calendar_event_id
        transition(
            session,
            request,
            S.CANCELLED,
            action_type=ActionType.CANCELLED,
            actor=actor,
            reasoning=reason,
            updates={"outcome": outcome, "next_action_type": None, "next_action_at": None, "sla_status": None},
            now=now,
        )
        rejected = self.drafts.reject_open_drafts_for_request(session, request.id, f"request cancelled: {reason}", now=now)
        if event_id:
            self.drafts.create_draft(
                session,
                request=request,
                draft_type=DraftType.CALENDAR_CANCEL,
                payload={"event_id": event_id},
                idempotency_key=f"calendar_cancel:{request.id}:{event_id}",
                reasoning=reason,
                now=now,
            )
        _close_review_items(session, request.id, "request cancelled", actor.value, now)
        logger.info("Scheduling request cancelled", extra={"request_id": str(request.id), "drafts_rejected": rejected})
        return request

    def report_no_show(
        self, session: Session, request_id: uuid.UUID, *, reported_by: str, now: datetime | None = None
    ) -> SchedulingRequest:
        """Flag that the contact missed the meeting. The no-show check applies it."""
        now = now or utcnow()
        request = get_request(session, request_id)
        if S(request.status) not in (S.CONFIRMED, S.REMINDER_SENT):
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; no meeting to miss")
        if request.confirmed_time is None or request.confirmed_time > now:
            raise InvalidRequestError("The meeting has not started yet")
        apply_updates(session, request, {"no_show_reported_at": now}, now=now)
        record_action(
            session,
            request,
            ActionType.NO_SHOW_REPORTED,
            actor=Actor.HUMAN,
            reasoning=f"reported by {reported_by}",
        )
        return request

    def complete(self, session: Session, request: SchedulingRequest, now: datetime | None = None) -> None:
        now = now or utcnow()
        transition(
            session,
            request,
            S.COMPLETED,
            action_type=ActionType.COMPLETED,
            reasoning="meeting time passed without a no-show report",
            updates={"completed_at": now, "outcome": "held", "next_action_type": None, "next_action_at": None},
            now=now,
        )

    def record_no_show(self, session: Session, request: SchedulingRequest, now: datetime | None = None) -> str:
        """Move to no_show and climb the recovery ladder.

        1st miss: back to proposing (the caller runs ``propose_times``).
        2nd miss: escalate. 3rd and later: cancel.
        Returns ``"repropose"``, ``"escalated"`` or ``"cancelled"``.
        """
        now = now or utcnow()
        count = request.no_show_count + 1
        transition(
            session,
            request,
            S.NO_SHOW,
            action_type=ActionType.NO_SHOW_DETECTED,
            reasoning=f"no-show #{count} reported for {request.confirmed_time.isoformat() if request.confirmed_time else 'meeting'}",
            updates={"no_show_count": count, "next_action_type": None, "next_action_at": None},
            now=now,
        )
        if count == 1:
            apply_updates(session, request, {"next_action_type": "propose_times", "next_action_at": now}, now=now)
            return "repropose"
        if count == 2:
            escalate_to_human_review(
                session,
                request,
                build_escalation(EscalationCode.NO_SHOW_REPEAT, details=f"{count} missed meetings"),
                now=now,
            )
            return "escalated"
        transition(
            session,
            request,
            S.CANCELLED,
            action_type=ActionType.CANCELLED,
            reasoning=f"cancelled after {count} no-shows",
            updates={"outcome": "no_show"},
            now=now,
        )
        self.drafts.reject_open_drafts_for_request(session, request.id, "request cancelled after repeated no-shows", now=now)
        if request.calendar_event_id:
            self.drafts.create_draft(
                session,
                request=request,
                draft_type=DraftType.CALENDAR_CANCEL,
                payload={"event_id": request.calendar_event_id},
                idempotency_key=f"calendar_cancel:{request.id}:{request.calendar_event_id}",
                reasoning=f"cancelled after {count} no-shows",
                now=now,
            )
        return "cancelled"


def meeting_has_passed(request: SchedulingRequest, grace: timedelta, now: datetime) -> bool:
    return (
        S(request.status) in CONFIRMED_STATES
        and not is_terminal(request.status)
        and request.confirmed_time is not None
        and request.confirmed_time + timedelta(minutes=request.duration_minutes) + grace <= now
    )
