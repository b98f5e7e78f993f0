"""Database models for scheduling requests, their attendees and audit trail."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel, Column, JSON, String

from parley.models.enums import RequestStatus, MeetingType, Urgency, InviteStatus
from parley.models.types import utc_column, utcnow


class SchedulingRequest(SQLModel, table=True):
    """One meeting negotiation, from first outbound intent to a booked meeting.

    Mutated only through ``parley.scheduler.state_machine``; every update is
    guarded by ``version`` so concurrent jobs cannot overwrite each other.
    Rows are never deleted, cancellation is a terminal status.
    """

    __tablename__ = "scheduling_requests"
    __table_args__ = (
        UniqueConstraint("user_id", "email_thread_id", name="uq_scheduling_requests_user_thread"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: str = Field(index=True)
    title: str
    context: str | None = None

    meeting_type: str = Field(default=MeetingType.DISCOVERY.value)
    duration_minutes: int = Field(default=30)
    meeting_platform: str | None = None
    status: str = Field(
        default=RequestStatus.INITIATED.value, sa_column=Column(String, index=True, nullable=False)
    )
    version: int = Field(default=1)

    # Time window
    timezone: str = Field(default="America/New_York")
    date_range_start: datetime | None = Field(default=None, sa_column=utc_column())
    date_range_end: datetime | None = Field(default=None, sa_column=utc_column())

    # [{"utc": iso8601, "display": str, "source": "calendar"|"generated"|"reply"|...}]
    proposed_times: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    confirmed_time: datetime | None = Field(default=None, sa_column=utc_column())

    attempt_count: int = Field(default=0)
    no_show_count: int = Field(default=0)
    urgency: str = Field(default=Urgency.MEDIUM.value)
    current_channel: str = Field(default="email")
    next_action_type: str | None = None
    next_action_at: datetime | None = Field(default=None, sa_column=utc_column(index=True))

    # CRM links (set by the confidence linker or manually)
    company_id: str | None = Field(default=None, index=True)
    contact_id: str | None = Field(default=None, index=True)
    deal_id: str | None = Field(default=None, index=True)
    deal_stage: str | None = None
    contact_persona: str | None = None
    link_confidence: int | None = None
    link_method: str | None = None
    link_reasoning: str | None = None
    previous_link: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    # Email threading
    source_message_id: str | None = None
    email_thread_id: str | None = Field(default=None, index=True)
    last_message_id: str | None = None
    last_outbound_at: datetime | None = Field(default=None, sa_column=utc_column())
    last_inbound_at: datetime | None = Field(default=None, sa_column=utc_column())

    # Pause / escalation
    pause_reason: str | None = None
    pause_details: str | None = None
    paused_from_status: str | None = None
    paused_confirmed_time: datetime | None = Field(default=None, sa_column=utc_column())
    delegate_to: str | None = None
    ooo_until: datetime | None = Field(default=None, sa_column=utc_column())

    # SLA tracking
    sla_started_at: datetime | None = Field(default=None, sa_column=utc_column())
    sla_due_at: datetime | None = Field(default=None, sa_column=utc_column(index=True))
    sla_status: str | None = None

    # Booking
    calendar_event_id: str | None = None
    meeting_link: str | None = None
    no_show_reported_at: datetime | None = Field(default=None, sa_column=utc_column())
    completed_at: datetime | None = Field(default=None, sa_column=utc_column())
    outcome: str | None = None

    last_action_at: datetime | None = Field(default=None, sa_column=utc_column())
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))


class Attendee(SQLModel, table=True):
    """A meeting participant. At most one external attendee per request is the primary contact."""

    __tablename__ = "scheduling_attendees"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    request_id: uuid.UUID = Field(foreign_key="scheduling_requests.id", index=True)
    side: str
    name: str | None = None
    email: str = Field(index=True)
    title: str | None = None
    is_primary_contact: bool = Field(default=False)
    is_organizer: bool = Field(default=False)
    invite_status: str = Field(default=InviteStatus.PENDING.value)
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))


class SchedulingAction(SQLModel, table=True):
    """Append-only audit row. The autoincrement id gives causal order per request."""

    __tablename__ = "scheduling_actions"

    id: int | None = Field(default=None, primary_key=True)
    request_id: uuid.UUID = Field(foreign_key="scheduling_requests.id", index=True)
    action_type: str = Field(sa_column=Column(String, index=True, nullable=False))
    actor: str
    previous_status: str | None = None
    new_status: str | None = None
    message_subject: str | None = None
    message_id: str | None = None
    draft_id: uuid.UUID | None = None
    reasoning: str | None = None
    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
