"""Closed vocabularies for the scheduling tables.

Columns store the plain string value; code compares against these members.
"""

from enum import Enum


class RequestStatus(str, Enum):
    INITIATED = "initiated"
    PROPOSING = "proposing"
    AWAITING_RESPONSE = "awaiting_response"
    NEGOTIATING = "negotiating"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    REMINDER_SENT = "reminder_sent"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class MeetingType(str, Enum):
    DISCOVERY = "discovery"
    DEMO = "demo"
    FOLLOW_UP = "follow_up"
    TECHNICAL = "technical"
    EXECUTIVE = "executive"
    CUSTOM = "custom"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]

    def at_least(self, other: "ConfidenceTier") -> bool:
        return self.rank >= other.rank

    def lowered(self) -> "ConfidenceTier":
        return ConfidenceTier.LOW if self is not ConfidenceTier.HIGH else ConfidenceTier.MEDIUM


class Actor(str, Enum):
    HUMAN = "human"
    AUTOMATION = "automation"


class ActionType(str, Enum):
    CREATED = "created"
    EMAIL_SENT = "email_sent"
    EMAIL_RECEIVED = "email_received"
    TIMES_PROPOSED = "times_proposed"
    TIME_SELECTED = "time_selected"
    INVITE_SENT = "invite_sent"
    REMINDER_SENT = "reminder_sent"
    NO_SHOW_DETECTED = "no_show_detected"
    NO_SHOW_REPORTED = "no_show_reported"
    RESCHEDULING_STARTED = "rescheduling_started"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FOLLOW_UP_SENT = "follow_up_sent"
    PAUSED = "paused"
    RESUMED = "resumed"
    STATUS_CHANGED = "status_changed"
    ESCALATED_TO_HUMAN = "escalated_to_human"
    DRAFT_CREATED = "draft_created"
    DRAFT_APPROVED = "draft_approved"
    DRAFT_REJECTED = "draft_rejected"
    DRAFT_FAILED = "draft_failed"
    DRAFT_RETRIED = "draft_retried"
    SLA_WARNING = "sla_warning"
    SLA_OVERDUE = "sla_overdue"
    SLA_EXTENDED = "sla_extended"
    ENTITY_LINKED = "entity_linked"
    LINK_SUGGESTED = "link_suggested"
    LINK_UNDONE = "link_undone"


class AttendeeSide(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class InviteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"


class SlaStatus(str, Enum):
    ON_TRACK = "on_track"
    WARNING = "warning"
    OVERDUE = "overdue"
    PAUSED = "paused"


class DraftType(str, Enum):
    PROPOSAL_EMAIL = "proposal_email"
    EMAIL_RESPONSE = "email_response"
    FOLLOW_UP = "follow_up"
    REMINDER = "reminder"
    AVAILABILITY_CHECK = "availability_check"
    CALENDAR_BOOK = "calendar_book"
    CALENDAR_UPDATE = "calendar_update"
    CALENDAR_CANCEL = "calendar_cancel"

    @property
    def is_email(self) -> bool:
        return self in EMAIL_DRAFT_TYPES


EMAIL_DRAFT_TYPES = frozenset({
    DraftType.PROPOSAL_EMAIL,
    DraftType.EMAIL_RESPONSE,
    DraftType.FOLLOW_UP,
    DraftType.REMINDER,
    DraftType.AVAILABILITY_CHECK,
})


class DraftStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    EXECUTED = "executed"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"


class WorkItemType(str, Enum):
    SCHEDULING_REVIEW = "scheduling_review"
    LINK_SUGGESTION = "link_suggestion"


class WorkItemStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"
