"""SLA window arithmetic shared by the draft executor and the SLA monitor."""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, date
from typing import Any

from sqlmodel import Session, select

from parley.core.rules import SlaPolicy
from parley.models.contacts import ContactEmailPattern
from parley.models.enums import AttendeeSide, SlaStatus
from parley.models.scheduling import Attendee, SchedulingRequest
from parley.scheduler.response_patterns import get_pattern
from parley.scheduler.time_utils import local_datetime


@dataclass(frozen=True)
class SlaWindow:
    started_at: datetime
    due_at: datetime
    hours: float
    reasoning: str


def primary_contact(session: Session, request: SchedulingRequest) -> Attendee | None:
    attendees = session.exec(
        select(Attendee)
        .where(Attendee.request_id == request.id, Attendee.side == AttendeeSide.EXTERNAL.value)
        .order_by(Attendee.is_primary_contact.desc(), Attendee.created_at)
    ).all()
    return attendees[0] if attendees else None


def compute_window(
    started_at: datetime,
    policy: SlaPolicy,
    *,
    deal_stage: str | None,
    persona: str | None,
    pattern: ContactEmailPattern | None = None,
) -> SlaWindow:
    """Rule-table hours, widened to ``adaptive_multiplier`` x the contact's
    average reply time once enough replies are on record."""
    hours = policy.hours_for(deal_stage, persona)
    reasoning = f"{hours:g}h from rule table (stage={deal_stage or '*'}, persona={persona or '*'})"
    if (
        pattern is not None
        and pattern.response_count >= policy.adaptive_min_responses
        and pattern.avg_response_hours
    ):
        adaptive = pattern.avg_response_hours * policy.adaptive_multiplier
        if adaptive > hours:
            reasoning = (
                f"{adaptive:.1f}h = {policy.adaptive_multiplier:g}x contact average "
                f"{pattern.avg_response_hours:.1f}h over {pattern.response_count} replies"
            )
            hours = adaptive
    return SlaWindow(started_at=started_at, due_at=started_at + timedelta(hours=hours), hours=hours, reasoning=reasoning)


def window_for_request(session: Session, request: SchedulingRequest, policy: SlaPolicy, started_at: datetime) -> SlaWindow:
    contact = primary_contact(session, request)
    pattern = get_pattern(session, contact.email) if contact else None
    return compute_window(
        started_at,
        policy,
        deal_stage=request.deal_stage,
        persona=request.contact_persona,
        pattern=pattern,
    )


def start_updates(window: SlaWindow) -> dict[str, Any]:
    """Request fields to set when a request (re)enters awaiting_response."""
    return {
        "sla_started_at": window.started_at,
        "sla_due_at": window.due_at,
        "sla_status": SlaStatus.ON_TRACK.value,
        "next_action_type": "await_reply",
        "next_action_at": window.due_at,
    }


def percent_elapsed(started_at: datetime, due_at: datetime, now: datetime) -> float:
    total = (due_at - started_at).total_seconds()
    if total <= 0:
        return 100.0
    return max(0.0, (now - started_at).total_seconds() / total * 100)


def status_for(percent: float, policy: SlaPolicy) -> SlaStatus:
    if percent >= 100:
        return SlaStatus.OVERDUE
    if percent >= policy.warning_fraction * 100:
        return SlaStatus.WARNING
    return SlaStatus.ON_TRACK


def out_of_office_window(
    return_day: date,
    policy: SlaPolicy,
    request: SchedulingRequest,
    business_start: int,
) -> SlaWindow:
    """Restart the clock at the start of business on the contact's return day."""
    started = local_datetime(return_day, time(hour=business_start), request.timezone)
    hours = policy.hours_for(request.deal_stage, request.contact_persona)
    return SlaWindow(
        started_at=started,
        due_at=started + timedelta(hours=hours),
        hours=hours,
        reasoning=f"contact out of office until {return_day.isoformat()}; clock restarts on return",
    )
