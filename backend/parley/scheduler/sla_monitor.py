"""Response SLA tracking for requests waiting on the contact.

Each check recomputes percent elapsed: 75% marks the request ``warning``,
100% marks it ``overdue`` and queues a follow-up Draft (never a direct send).
Once the follow-up attempts run out, or a follow-up expires unsent, the
request escalates instead.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlmodel import Session, select

from parley.core.errors import RequestNotFoundError
from parley.core.rules import SlaPolicy
from parley.models.enums import ActionType, DraftStatus, DraftType, RequestStatus, SlaStatus
from parley.models.scheduling import SchedulingRequest
from parley.models.types import utcnow
from parley.scheduler.draft_manager import DraftManager
from parley.scheduler.escalation import EscalationCode, build_escalation, escalate_to_human_review
from parley.scheduler.sla import out_of_office_window, percent_elapsed, primary_contact, status_for
from parley.scheduler.state_machine import apply_updates, record_action
from parley.scheduler.templates import follow_up_email, reply_subject
from parley.scheduler.time_parser import ProposedTime
from parley.scheduler.time_utils import local_datetime

logger = logging.getLogger(__name__)

OOO_FALLBACK_DAYS = 7
SETTLED_UNSENT = frozenset({DraftStatus.EXPIRED.value, DraftStatus.REJECTED.value})


@dataclass
class SlaCheck:
    request_id: uuid.UUID
    action: str
    sla_status: str | None = None
    percent_elapsed: float = 0.0
    draft_id: uuid.UUID | None = None
    draft_created: bool = False
    work_item_id: uuid.UUID | None = None


def follow_up_key(request: SchedulingRequest) -> str:
    return f"follow_up:{request.id}:{request.attempt_count}"


class SlaMonitor:
    def __init__(self, drafts: DraftManager, policy: SlaPolicy, business_hours_start: int = 9):
        self.drafts = drafts
        self.policy = policy
        self.business_hours_start = business_hours_start

    def due_for_check(self, session: Session, limit: int = 50) -> list[uuid.UUID]:
        return list(session.exec(
            select(SchedulingRequest.id)
            .where(
                SchedulingRequest.status == RequestStatus.AWAITING_RESPONSE.value,
                SchedulingRequest.sla_due_at.is_not(None),
            )
            .order_by(SchedulingRequest.sla_due_at)
            .limit(limit)
        ).all())

    def check_request(self, session: Session, request_id: uuid.UUID, now: datetime | None = None) -> SlaCheck:
        """Evaluate one request. The caller commits.

        Raises:
            ConcurrencyConflictError: another worker updated the request first.
        """
        now = now or utcnow()
        request = session.get(SchedulingRequest, request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found")
        if request.status != RequestStatus.AWAITING_RESPONSE.value or not request.sla_due_at:
            return SlaCheck(request_id, "skipped", request.sla_status)

        percent = percent_elapsed(request.sla_started_at or request.last_outbound_at or now, request.sla_due_at, now)
        status = status_for(percent, self.policy)

        if status is SlaStatus.ON_TRACK:
            if request.sla_status != SlaStatus.ON_TRACK.value:
                apply_updates(session, request, {"sla_status": SlaStatus.ON_TRACK.value}, now=now)
            return SlaCheck(request_id, "none", status.value, percent)

        if status is SlaStatus.WARNING:
            if request.sla_status == SlaStatus.WARNING.value:
                return SlaCheck(request_id, "none", status.value, percent)
            apply_updates(session, request, {"sla_status": SlaStatus.WARNING.value}, now=now)
            record_action(
                session,
                request,
                ActionType.SLA_WARNING,
                reasoning=f"{percent:.0f}% of the reply window elapsed",
                details={"percent_elapsed": round(percent, 1), "due_at": request.sla_due_at.isoformat()},
            )
            logger.info("SLA warning", extra={"request_id": str(request_id), "percent_elapsed": round(percent, 1)})
            return SlaCheck(request_id, "warning", status.value, percent)

        return self._handle_overdue(session, request, percent, now)

    def _handle_overdue(self, session: Session, request: SchedulingRequest, percent: float, now: datetime) -> SlaCheck:
        if request.attempt_count >= self.policy.max_follow_up_attempts:
            result = escalate_to_human_review(
                session,
                request,
                build_escalation(
                    EscalationCode.MAX_ATTEMPTS_REACHED,
                    details=f"{request.attempt_count} outbound attempts without a reply",
                    context={"attempt_count": request.attempt_count},
                ),
                now=now,
            )
            return SlaCheck(request.id, "escalated", SlaStatus.PAUSED.value, percent, work_item_id=result.work_item_id)

        contact = primary_contact(session, request)
        if contact is None:
            result = escalate_to_human_review(
                session,
                request,
                build_escalation(EscalationCode.MANUAL_REVIEW_REQUESTED, reason="overdue with no contact to follow up"),
                now=now,
            )
            return SlaCheck(request.id, "escalated", SlaStatus.PAUSED.value, percent, work_item_id=result.work_item_id)

        times = [ProposedTime.from_record(record) for record in request.proposed_times or []]
        draft, created = self.drafts.create_draft(
            session,
            request=request,
            draft_type=DraftType.FOLLOW_UP,
            payload={
                "to": contact.email,
                "subject": reply_subject(None, request.title),
                "body": follow_up_email(contact.name, [t for t in times if t.instant > now], request.attempt_count),
                "reply_to_id": request.last_message_id,
                "thread_id": request.email_thread_id,
                "attempt": request.attempt_count,
            },
            idempotency_key=follow_up_key(request),
            reasoning=f"no reply after {percent:.0f}% of the reply window",
            now=now,
        )
        if not created and draft.status in SETTLED_UNSENT:
            # The key is spent for this attempt, so a human picks the request up
            result = escalate_to_human_review(
                session,
                request,
                build_escalation(
                    EscalationCode.MANUAL_REVIEW_REQUESTED,
                    reason=f"follow-up draft was {draft.status} without being sent",
                    context={"draft_id": str(draft.id), "attempt_count": request.attempt_count},
                ),
                now=now,
            )
            return SlaCheck(
                request.id, "escalated", SlaStatus.PAUSED.value, percent, draft.id, work_item_id=result.work_item_id
            )


        if request.sla_status != SlaStatus.OVERDUE.value:
            apply_updates(
                session,
                request,
                {"sla_status": SlaStatus.OVERDUE.value, "next_action_type": "approve_follow_up", "next_action_at": now},
                now=now,
            )
            record_action(
                session,
                request,
                ActionType.SLA_OVERDUE,
                reasoning="reply window elapsed; follow-up drafted for approval",
                draft_id=draft.id,
                details={"attempt_count": request.attempt_count},
            )
            logger.info(
                "SLA overdue, follow-up drafted",
                extra={"request_id": str(request.id), "draft_id": str(draft.id), "draft_created": created},
            )
        return SlaCheck(request.id, "follow_up_drafted", SlaStatus.OVERDUE.value, percent, draft.id, created)

    def extend_for_out_of_office(
        self,
        session: Session,
        request: SchedulingRequest,
        return_day: date | None,
        now: datetime | None = None,
        message_id: str | None = None,
    ) -> datetime:
        """Restart the reply window once the contact is back. The caller commits."""
        now = now or utcnow()
        stated = return_day is not None
        if return_day is None:
            return_day = (now + timedelta(days=OOO_FALLBACK_DAYS)).date()

        window = out_of_office_window(return_day, self.policy, request, self.business_hours_start)
        apply_updates(
            session,
            request,
            {
                "ooo_until": local_datetime(return_day, time(hour=self.business_hours_start), request.timezone),
                "sla_started_at": window.started_at,
                "sla_due_at": window.due_at,
                "sla_status": SlaStatus.ON_TRACK.value,
                "next_action_type": "await_reply",
                "next_action_at": window.due_at,
            },
            now=now,
        )
        reasoning = window.reasoning if stated else f"{window.reasoning} (no return date given, assumed {OOO_FALLBACK_DAYS} days)"
        record_action(
            session,
            request,
            ActionType.SLA_EXTENDED,
            reasoning=reasoning,
            message_id=message_id,
            details={"return_day": return_day.isoformat(), "due_at": window.due_at.isoformat()},
        )
        logger.info("SLA extended for out-of-office contact", extra={"request_id": str(request.id)})
        return window.due_at
