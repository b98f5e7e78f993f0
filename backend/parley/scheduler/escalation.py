"""Escalation: the single exit hatch for anything automation should not decide.

``escalate_to_human_review`` pauses the request, stores why, opens a human
work item and writes an audit row, all inside the caller's session.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlmodel import Session

from parley.core.errors import ConcurrencyConflictError
from parley.models.enums import (
    ActionType,
    Actor,
    RequestStatus,
    SlaStatus,
    Urgency,
    WorkItemType,
)
from parley.models.scheduling import SchedulingRequest
from parley.models.types import utcnow
from parley.models.work_items import HumanWorkItem
from parley.scheduler.intent_detector import Intent, IntentAnalysis, Sentiment
from parley.scheduler.state_machine import apply_updates, is_terminal, record_action, transition

logger = logging.getLogger(__name__)


class EscalationCode(str, Enum):
    CONFUSION_DETECTED = "confusion_detected"
    LOW_CONFIDENCE = "low_confidence"
    UNCLEAR_INTENT = "unclear_intent"
    DELEGATION = "delegation"
    TIME_UNCLEAR = "time_unclear"
    AMBIGUOUS_COUNTER_PROPOSAL = "ambiguous_counter_proposal"
    INVALID_PROPOSED_TIME = "invalid_proposed_time"
    SLOT_CONFLICT = "slot_conflict"
    NO_AVAILABILITY = "no_availability"
    NEGATIVE_SENTIMENT = "negative_sentiment"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    NO_SHOW_REPEAT = "no_show_repeat"
    UNEXPECTED_INTENT = "unexpected_intent"
    MANUAL_REVIEW_REQUESTED = "manual_review_requested"


# code -> (priority, default reason, suggested action)
ESCALATION_DEFAULTS: dict[EscalationCode, tuple[Urgency, str, str]] = {
    EscalationCode.CONFUSION_DETECTED: (
        Urgency.HIGH, "contact appears confused or is correcting us",
        "Read the thread and reply personally; check what was sent previously.",
    ),
    EscalationCode.LOW_CONFIDENCE: (
        Urgency.MEDIUM, "reply could not be interpreted with confidence",
        "Read the reply and choose the next step manually.",
    ),
    EscalationCode.UNCLEAR_INTENT: (
        Urgency.MEDIUM, "reply intent is unclear",
        "Read the reply and choose the next step manually.",
    ),
    EscalationCode.DELEGATION: (
        Urgency.MEDIUM, "contact delegated scheduling to someone else",
        "Confirm the delegate and restart scheduling with them.",
    ),
    EscalationCode.TIME_UNCLEAR: (
        Urgency.MEDIUM, "accepted but time unclear",
        "Confirm which time the contact accepted, then approve a booking.",
    ),
    EscalationCode.AMBIGUOUS_COUNTER_PROPOSAL: (
        Urgency.MEDIUM, "ambiguous counter-proposal time",
        "Ask the contact for a specific time or pick one from the reply.",
    ),
    EscalationCode.INVALID_PROPOSED_TIME: (
        Urgency.MEDIUM, "counter-proposed time is not bookable",
        "Check the proposed time against business hours and holidays.",
    ),
    EscalationCode.SLOT_CONFLICT: (
        Urgency.HIGH, "accepted time now conflicts with an existing booking",
        "Offer new times; do not rebook over the conflicting event.",
    ),
    EscalationCode.NO_AVAILABILITY: (
        Urgency.MEDIUM, "no free slots in the requested window",
        "Widen the date range or free up calendar time.",
    ),
    EscalationCode.NEGATIVE_SENTIMENT: (
        Urgency.HIGH, "reply is negative",
        "Review the relationship before any further outreach.",
    ),
    EscalationCode.MAX_ATTEMPTS_REACHED: (
        Urgency.LOW, "no reply after the maximum number of follow-ups",
        "Decide whether to try another channel or close the request.",
    ),
    EscalationCode.NO_SHOW_REPEAT: (
        Urgency.HIGH, "contact missed the meeting again",
        "Reach out personally before rescheduling.",
    ),
    EscalationCode.UNEXPECTED_INTENT: (
        Urgency.MEDIUM, "reply does not fit the current stage of scheduling",
        "Read the reply and choose the next step manually.",
    ),
    EscalationCode.MANUAL_REVIEW_REQUESTED: (
        Urgency.MEDIUM, "manual review requested",
        "Review the request.",
    ),
}

_DUE_WINDOWS = {
    Urgency.CRITICAL: timedelta(hours=1),
    Urgency.HIGH: timedelta(hours=4),
    Urgency.MEDIUM: timedelta(hours=24),
    Urgency.LOW: timedelta(hours=72),
}


@dataclass(frozen=True)
class Escalation:
    code: EscalationCode
    reason: str
    details: str | None = None
    priority: Urgency = Urgency.MEDIUM
    suggested_action: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class EscalationResult:
    success: bool
    work_item_id: uuid.UUID | None = None
    action_id: int | None = None
    error: str | None = None


def build_escalation(
    code: EscalationCode,
    *,
    reason: str | None = None,
    details: str | None = None,
    priority: Urgency | None = None,
    context: dict[str, Any] | None = None,
) -> Escalation:
    default_priority, default_reason, suggested = ESCALATION_DEFAULTS[code]
    return Escalation(
        code=code,
        reason=reason or default_reason,
        details=details,
        priority=priority or default_priority,
        suggested_action=suggested,
        context=context or {},
    )


def build_escalation_from_intent(analysis: IntentAnalysis) -> Escalation:
    """Pick the escalation that explains why an interpreted reply was not acted on."""
    context = {"intent": analysis.intent.value, "confidence": analysis.confidence.value}
    if analysis.is_confused or analysis.intent is Intent.CONFUSED:
        return build_escalation(
            EscalationCode.CONFUSION_DETECTED,
            details=analysis.confusion_reason or analysis.reasoning,
            context=context,
        )
    if analysis.is_delegating or analysis.intent is Intent.DELEGATE:
        who = analysis.delegate_to or "an unnamed delegate"
        return build_escalation(
            EscalationCode.DELEGATION,
            details=f"Scheduling handed to {who}. {analysis.reasoning}".strip(),
            context={**context, "delegate_to": analysis.delegate_to},
        )
    if analysis.intent is Intent.UNCLEAR:
        return build_escalation(EscalationCode.UNCLEAR_INTENT, details=analysis.reasoning, context=context)
    if analysis.sentiment is Sentiment.NEGATIVE and analysis.intent is Intent.DECLINE:
        return build_escalation(EscalationCode.NEGATIVE_SENTIMENT, details=analysis.reasoning, context=context)
    return build_escalation(EscalationCode.LOW_CONFIDENCE, details=analysis.reasoning, context=context)


def escalate_to_human_review(
    session: Session,
    request: SchedulingRequest,
    escalation: Escalation,
    *,
    actor: Actor = Actor.AUTOMATION,
    now: datetime | None = None,
) -> EscalationResult:
    """Pause ``request`` and hand it to a human.

    A request that is already paused stays paused; the new reason is stored
    and a further work item is opened. Terminal requests are left alone and
    reported as a failed escalation. The caller commits.
    """
    if is_terminal(request.status):
        logger.info(
            "Skipping escalation for terminal request",
            extra={"request_id": str(request.id), "status": request.status, "code": escalation.code.value},
        )
        return EscalationResult(success=False, error=f"request is {request.status}")

    now = now or utcnow()
    pause_fields = {
        "pause_reason": escalation.reason,
        "pause_details": escalation.details,
        "next_action_type": f"human_review_{escalation.code.value}",
        "next_action_at": now,
        "sla_status": SlaStatus.PAUSED.value,
    }
    details = {"code": escalation.code.value, **escalation.context}

    try:
        if request.status == RequestStatus.PAUSED.value:
            apply_updates(session, request, pause_fields, now=now)
            action = record_action(
                session,
                request,
                ActionType.ESCALATED_TO_HUMAN,
                actor=actor,
                reasoning=escalation.reason,
                previous_status=request.status,
                new_status=request.status,
                details=details,
            )
        else:
            action = transition(
                session,
                request,
                RequestStatus.PAUSED,
                action_type=ActionType.ESCALATED_TO_HUMAN,
                actor=actor,
                reasoning=escalation.reason,
                updates=pause_fields,
                details=details,
                now=now,
            )
    except ConcurrencyConflictError as e:
        logger.warning(
            "Escalation lost a race with another update",
            extra={"request_id": str(request.id), "code": escalation.code.value},
        )
        return EscalationResult(success=False, error=e.message)

    work_item = HumanWorkItem(
        request_id=request.id,
        user_id=request.user_id,
        item_type=WorkItemType.SCHEDULING_REVIEW.value,
        priority=escalation.priority.value,
        title=f"{request.title}: {escalation.reason}",
        description=escalation.details,
        reason_code=escalation.code.value,
        suggested_action=escalation.suggested_action,
        context={**details, "request_status_before": action.previous_status},
        due_at=now + _DUE_WINDOWS[escalation.priority],
    )
    session.add(work_item)
    session.flush()

    logger.info(
        "Scheduling request escalated to human review",
        extra={
            "request_id": str(request.id),
            "code": escalation.code.value,
            "priority": escalation.priority.value,
            "work_item_id": str(work_item.id),
        },
    )
    return EscalationResult(success=True, work_item_id=work_item.id, action_id=action.id)
