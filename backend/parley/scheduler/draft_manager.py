"""Draft queue: create, approve, reject, retry, expire and execute.

Nothing outbound happens without a Draft. Creation is keyed by a
caller-chosen idempotency key so re-running producers return the existing
row. Execution claims the draft (approved -> executing) and commits that
claim before any provider call, which is what makes two concurrent
executors send at most once. The request's state only moves after the
provider call succeeds.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from parley.core.db import conditional_update
from parley.core.errors import (
    ConcurrencyConflictError,
    DraftExpiredError,
    DraftNotFoundError,
    DraftStateError,
    InvalidRequestError,
    InvalidTransitionError,
    RequestNotFoundError,
    SchedulerError,
    SlotUnavailableError,
    TerminalStateError,
)
from parley.core.rules import SlaPolicy
from parley.core.tracing import get_tracer, safe_span_attributes
from parley.integrations.provider import EmailCalendarProvider
from parley.models.drafts import Draft
from parley.models.enums import (
    ActionType,
    Actor,
    ConfidenceTier,
    DraftStatus,
    DraftType,
    RequestStatus,
)
from parley.models.scheduling import SchedulingRequest
from parley.models.types import utcnow
from parley.scheduler.sla import start_updates, window_for_request
from parley.scheduler.state_machine import apply_updates, is_terminal, record_action, transition
from parley.scheduler.time_utils import to_instant

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

_EMAIL_EDIT_KEYS = frozenset({"to", "subject", "body"})

EDITABLE_FIELDS: dict[DraftType, frozenset[str]] = {
    DraftType.PROPOSAL_EMAIL: _EMAIL_EDIT_KEYS,
    DraftType.EMAIL_RESPONSE: _EMAIL_EDIT_KEYS,
    DraftType.FOLLOW_UP: _EMAIL_EDIT_KEYS,
    DraftType.REMINDER: _EMAIL_EDIT_KEYS,
    DraftType.AVAILABILITY_CHECK: _EMAIL_EDIT_KEYS,
    DraftType.CALENDAR_BOOK: frozenset({"start", "duration_minutes", "title", "attendees"}),
    DraftType.CALENDAR_UPDATE: frozenset({"start", "duration_minutes"}),
    DraftType.CALENDAR_CANCEL: frozenset(),
}

OPEN_STATUSES = (DraftStatus.PENDING.value, DraftStatus.APPROVED.value, DraftStatus.FAILED.value)


@dataclass
class ExecutionOutcome:
    draft_id: uuid.UUID
    status: str
    skipped: bool = False
    result: dict[str, Any] | None = None
    error: str | None = None


class DraftManager:
    def __init__(
        self,
        engine: Engine,
        provider: EmailCalendarProvider,
        sla_policy: SlaPolicy,
        *,
        expiry_hours: int = 48,
        max_retries: int = 3,
    ):
        self.engine = engine
        self.provider = provider
        self.sla_policy = sla_policy
        self.expiry_hours = expiry_hours
        self.max_retries = max_retries

    # --- lookups ---------------------------------------------------------

    def _find_by_key(self, session: Session, idempotency_key: str) -> Draft | None:
        return session.exec(select(Draft).where(Draft.idempotency_key == idempotency_key)).first()

    def get_draft(self, session: Session, draft_id: uuid.UUID) -> Draft:
        draft = session.get(Draft, draft_id)
        if draft is None:
            raise DraftNotFoundError(f"Draft {draft_id} not found")
        return draft

    def list_drafts(
        self,
        session: Session,
        status: DraftStatus | None = None,
        request_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[Draft]:
        statement = select(Draft)
        if status is not None:
            statement = statement.where(Draft.status == status.value)
        if request_id is not None:
            statement = statement.where(Draft.request_id == request_id)
        return list(session.exec(statement.order_by(Draft.created_at.desc()).limit(limit)).all())

    # --- create ----------------------------------------------------------

    def create_draft(
        self,
        session: Session,
        *,
        request: SchedulingRequest,
        draft_type: DraftType,
        payload: dict[str, Any],
        idempotency_key: str,
        confidence: ConfidenceTier = ConfidenceTier.MEDIUM,
        reasoning: str | None = None,
        now: datetime | None = None,
    ) -> tuple[Draft, bool]:
        """Return ``(draft, created)``. An existing draft with the same key
        is returned untouched with ``created=False``. The caller commits."""
        if is_terminal(request.status) and draft_type is not DraftType.CALENDAR_CANCEL:
            raise TerminalStateError(f"Request {request.id} is {request.status}; no new outbound work")

        existing = self._find_by_key(session, idempotency_key)
        if existing is not None:
            logger.info(
                "Draft already exists for idempotency key",
                extra={"draft_id": str(existing.id), "draft_type": existing.draft_type},
            )
            return existing, False

        now = now or utcnow()
        draft = Draft(
            request_id=request.id,
            draft_type=draft_type.value,
            idempotency_key=idempotency_key,
            payload=payload,
            confidence=confidence.value,
            reasoning=reasoning,
            expires_at=now + timedelta(hours=self.expiry_hours),
            max_retries=self.max_retries,
            created_at=now,
            updated_at=now,
        )
        try:
            with session.begin_nested():
                session.add(draft)
                session.flush()
        except IntegrityError:
            # A concurrent producer inserted the same key first
            existing = self._find_by_key(session, idempotency_key)
            if existing is None:
                raise
            logger.info(
                "Draft key collided with a concurrent insert",
                extra={"draft_id": str(existing.id), "draft_type": existing.draft_type},
            )
            return existing, False

        record_action(
            session,
            request,
            ActionType.DRAFT_CREATED,
            reasoning=reasoning,
            draft_id=draft.id,
            details={"draft_type": draft_type.value, "confidence": confidence.value},
        )
        logger.info(
            "Draft created",
            extra={"draft_id": str(draft.id), "draft_type": draft_type.value, "request_id": str(request.id)},
        )
        return draft, True

    # --- human actions ---------------------------------------------------

    def _request_for(self, session: Session, draft: Draft) -> SchedulingRequest:
        request = session.get(SchedulingRequest, draft.request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {draft.request_id} for draft {draft.id} not found")
        return request

    def _validate_edits(self, draft: Draft, edits: dict[str, Any] | None) -> dict[str, Any] | None:
        if not edits:
            return None
        allowed = EDITABLE_FIELDS[DraftType(draft.draft_type)]
        unknown = sorted(set(edits) - allowed)
        if unknown:
            raise InvalidRequestError(f"Fields {unknown} cannot be edited on a {draft.draft_type} draft")
        if "start" in edits:
            try:
                to_instant(str(edits["start"]), "UTC")
            except ValueError:
                raise InvalidRequestError(f"'start' must be an ISO-8601 timestamp, got {edits['start']!r}")
        return edits

    def approve(
        self,
        session: Session,
        draft_id: uuid.UUID,
        *,
        approved_by: str,
        edits: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Draft:
        """pending -> approved, storing ``edits`` as an overlay on the payload.

        Raises:
            DraftStateError: the draft is not pending.
            DraftExpiredError: the approval window has passed.
            TerminalStateError: the request was closed in the meantime.
        """
        now = now or utcnow()
        draft = self.get_draft(session, draft_id)
        if draft.status != DraftStatus.PENDING.value:
            raise DraftStateError(f"Draft {draft_id} is {draft.status}; only pending drafts can be approved")
        if draft.expires_at <= now:
            raise DraftExpiredError(f"Draft {draft_id} expired at {draft.expires_at.isoformat()}")

        request = self._request_for(session, draft)
        if is_terminal(request.status) and draft.draft_type != DraftType.CALENDAR_CANCEL.value:
            raise TerminalStateError(f"Request {request.id} is {request.status}")

        overlay = self._validate_edits(draft, edits)
        approved = conditional_update(
            session,
            Draft,
            [Draft.id == draft_id, Draft.status == DraftStatus.PENDING.value],
            {
                "status": DraftStatus.APPROVED.value,
                "user_edits": overlay,
                "approved_by": approved_by,
                "approved_at": now,
                "updated_at": now,
            },
        )
        if not approved:
            raise ConcurrencyConflictError(f"Draft {draft_id} changed while approving")
        session.refresh(draft)

        record_action(
            session,
            request,
            ActionType.DRAFT_APPROVED,
            actor=Actor.HUMAN,
            draft_id=draft.id,
            details={"approved_by": approved_by, "edited_fields": sorted(overlay or {})},
        )
        logger.info("Draft approved", extra={"draft_id": str(draft_id), "edited": bool(overlay)})
        return draft

    def reject(
        self,
        session: Session,
        draft_id: uuid.UUID,
        *,
        reason: str,
        rejected_by: str,
        actor: Actor = Actor.HUMAN,
        now: datetime | None = None,
    ) -> Draft:
        now = now or utcnow()
        draft = self.get_draft(session, draft_id)
        if draft.status not in OPEN_STATUSES:
            raise DraftStateError(f"Draft {draft_id} is {draft.status} and cannot be rejected")

        rejected = conditional_update(
            session,
            Draft,
            [Draft.id == draft_id, Draft.status == draft.status],
            {
                "status": DraftStatus.REJECTED.value,
                "rejection_reason": reason,
                "rejected_by": rejected_by,
                "rejected_at": now,
                "updated_at": now,
            },
        )
        if not rejected:
            raise ConcurrencyConflictError(f"Draft {draft_id} changed while rejecting")
        session.refresh(draft)

        record_action(
            session,
            self._request_for(session, draft),
            ActionType.DRAFT_REJECTED,
            actor=actor,
            reasoning=reason,
            draft_id=draft.id,
            details={"rejected_by": rejected_by},
        )
        logger.info("Draft rejected", extra={"draft_id": str(draft_id), "actor": actor.value})
        return draft

    def retry_draft(
        self,
        session: Session,
        draft_id: uuid.UUID,
        *,
        approved_by: str,
        edits: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Draft:
        """failed -> approved after a human re-approval. Confidence drops a tier."""
        now = now or utcnow()
        draft = self.get_draft(session, draft_id)
        if draft.status != DraftStatus.FAILED.value:
            raise DraftStateError(f"Draft {draft_id} is {draft.status}; only failed drafts can be retried")
        if draft.retry_count >= draft.max_retries:
            raise DraftStateError(
                f"Draft {draft_id} already failed {draft.retry_count} times (max {draft.max_retries})",
                status_code=422,
            )

        request = self._request_for(session, draft)
        if is_terminal(request.status) and draft.draft_type != DraftType.CALENDAR_CANCEL.value:
            raise TerminalStateError(f"Request {request.id} is {request.status}")

        overlay = self._validate_edits(draft, edits)
        lowered = ConfidenceTier(draft.confidence).lowered()
        values: dict[str, Any] = {
            "status": DraftStatus.APPROVED.value,
            "confidence": lowered.value,
            "approved_by": approved_by,
            "approved_at": now,
            "error": None,
            "updated_at": now,
        }
        if overlay:
            values["user_edits"] = {**(draft.user_edits or {}), **overlay}
        retried = conditional_update(
            session, Draft, [Draft.id == draft_id, Draft.status == DraftStatus.FAILED.value], values
        )
        if not retried:
            raise ConcurrencyConflictError(f"Draft {draft_id} changed while retrying")
        session.refresh(draft)

        record_action(
            session,
            request,
            ActionType.DRAFT_RETRIED,
            actor=Actor.HUMAN,
            draft_id=draft.id,
            reasoning=f"re-approved after failure; confidence lowered to {lowered.value}",
            details={"retry_count": draft.retry_count},
        )
        return draft

    # --- sweeps ----------------------------------------------------------

    def expire_stale_drafts(self, session: Session, now: datetime | None = None, limit: int = 100) -> int:
        """Mark pending drafts past their deadline expired. The caller commits."""
        now = now or utcnow()
        stale = session.exec(
            select(Draft)
            .where(Draft.status == DraftStatus.PENDING.value, Draft.expires_at <= now)
            .limit(limit)
        ).all()
        expired = 0
        for draft in stale:
            if conditional_update(
                session,
                Draft,
                [Draft.id == draft.id, Draft.status == DraftStatus.PENDING.value],
                {"status": DraftStatus.EXPIRED.value, "updated_at": now},
            ):
                expired += 1
                logger.info(
                    "Draft expired without approval",
                    extra={"draft_id": str(draft.id), "draft_type": draft.draft_type},
                )
        return expired

    def reject_open_drafts_for_request(
        self, session: Session, request_id: uuid.UUID, reason: str, now: datetime | None = None
    ) -> int:
        now = now or utcnow()
        open_drafts = session.exec(
            select(Draft).where(
                Draft.request_id == request_id,
                Draft.status.in_(OPEN_STATUSES),
                Draft.draft_type != DraftType.CALENDAR_CANCEL.value,
            )
        ).all()
        rejected = 0
        for draft in open_drafts:
            if conditional_update(
                session,
                Draft,
                [Draft.id == draft.id, Draft.status == draft.status],
                {
                    "status": DraftStatus.REJECTED.value,
                    "rejection_reason": reason,
                    "rejected_by": Actor.AUTOMATION.value,
                    "rejected_at": now,
                    "updated_at": now,
                },
            ):
                rejected += 1
        return rejected

    def approved_draft_ids(self, session: Session, limit: int) -> list[uuid.UUID]:
        return list(session.exec(
            select(Draft.id)
            .where(Draft.status == DraftStatus.APPROVED.value)
            .order_by(Draft.approved_at)
            .limit(limit)
        ).all())

    # --- execution -------------------------------------------------------

    def _finish(self, session: Session, draft: Draft, status: DraftStatus, values: dict[str, Any], now: datetime) -> bool:
        return conditional_update(
            session,
            Draft,
            [Draft.id == draft.id, Draft.status == DraftStatus.EXECUTING.value],
            {**values, "status": status.value, "updated_at": now},
        )

    async def execute_draft(self, draft_id: uuid.UUID, now: datetime | None = None) -> ExecutionOutcome:
        """Claim, execute and settle one approved draft.

        Provider failures mark the draft failed and come back in the outcome.
        Anything unexpected marks it failed and is re-raised for the job runner.
        """
        now = now or utcnow()
        with Session(self.engine) as session:
            draft = self.get_draft(session, draft_id)
            if draft.status != DraftStatus.APPROVED.value:
                return ExecutionOutcome(draft_id, draft.status, skipped=True, error=f"draft is {draft.status}")

            claimed = conditional_update(
                session,
                Draft,
                [Draft.id == draft_id, Draft.status == DraftStatus.APPROVED.value],
                {"status": DraftStatus.EXECUTING.value, "updated_at": now},
            )
            if not claimed:
                session.rollback()
                logger.info("Draft already claimed by another executor", extra={"draft_id": str(draft_id)})
                return ExecutionOutcome(draft_id, DraftStatus.EXECUTING.value, skipped=True, error="already claimed")
            session.commit()
            session.refresh(draft)

            request = self._request_for(session, draft)
            draft_type = DraftType(draft.draft_type)

            if is_terminal(request.status) and draft_type is not DraftType.CALENDAR_CANCEL:
                reason = f"request is {request.status}; aborted before execution"
                self._finish(
                    session,
                    draft,
                    DraftStatus.REJECTED,
                    {"rejection_reason": reason, "rejected_by": Actor.AUTOMATION.value, "rejected_at": now},
                    now,
                )
                record_action(session, request, ActionType.DRAFT_REJECTED, reasoning=reason, draft_id=draft.id)
                session.commit()
                logger.info("Draft aborted for terminal request", extra={"draft_id": str(draft_id)})
                return ExecutionOutcome(draft_id, DraftStatus.REJECTED.value, error=reason)

            payload = draft.effective_payload()
            with tracer.start_as_current_span("draft_manager.execute") as span:
                span.set_attributes(safe_span_attributes(draft_id=str(draft_id), draft_type=draft_type.value))
                try:
                    result = await self._apply(draft_type, payload, request)
                except SchedulerError as e:
                    self._mark_failed(session, draft, request, e.message, now)
                    session.commit()
                    return ExecutionOutcome(draft_id, DraftStatus.FAILED.value, error=e.message)
                except asyncio.CancelledError:
                    # The provider may already have acted; only a human retry sends it again
                    self._mark_failed(session, draft, request, "execution cancelled; provider outcome unknown", now)
                    session.commit()
                    raise
                except Exception as e:
                    self._mark_failed(session, draft, request, str(e), now)
                    session.commit()
                    raise

            self._finish(session, draft, DraftStatus.EXECUTED, {"result": result, "executed_at": now}, now)
            session.refresh(request)
            try:
                self._after_success(session, request, draft, draft_type, payload, result, now)
            except SchedulerError as e:
                # The side effect happened; the request just could not follow
                logger.warning(
                    "Draft executed but request update failed",
                    extra={"draft_id": str(draft_id), "request_id": str(request.id), "error": e.message},
                )
                session.rollback()
                self._finish(session, draft, DraftStatus.EXECUTED, {"result": result, "executed_at": now}, now)
                record_action(
                    session,
                    request,
                    ActionType.STATUS_CHANGED,
                    reasoning=f"draft executed but request not updated: {e.message}",
                    draft_id=draft.id,
                    details={"error_code": e.error_code},
                )
            session.commit()

            logger.info(
                "Draft executed",
                extra={"draft_id": str(draft_id), "draft_type": draft_type.value, "request_id": str(request.id)},
            )
            return ExecutionOutcome(draft_id, DraftStatus.EXECUTED.value, result=result)

    def _mark_failed(self, session: Session, draft: Draft, request: SchedulingRequest, error: str, now: datetime) -> None:
        self._finish(session, draft, DraftStatus.FAILED, {"error": error, "retry_count": draft.retry_count + 1}, now)
        record_action(
            session,
            request,
            ActionType.DRAFT_FAILED,
            reasoning=error,
            draft_id=draft.id,
            details={"retry_count": draft.retry_count + 1},
        )
        logger.warning(
            "Draft execution failed",
            extra={"draft_id": str(draft.id), "draft_type": draft.draft_type, "error": error},
        )

    async def _apply(self, draft_type: DraftType, payload: dict[str, Any], request: SchedulingRequest) -> dict[str, Any]:
        if draft_type is DraftType.AVAILABILITY_CHECK:
            attendees = payload.get("attendees", [])
            for record in payload.get("proposed_times", []):
                start, _ = to_instant(record["utc"], "UTC")
                if not await self.provider.check_availability(start, request.duration_minutes, attendees):
                    raise SlotUnavailableError(f"{record.get('display') or record['utc']} is no longer free")

        if draft_type.is_email:
            sent = await self.provider.send(
                to=payload["to"],
                subject=payload["subject"],
                body=payload["body"],
                reply_to_id=payload.get("reply_to_id"),
                thread_id=payload.get("thread_id"),
            )
            return {"message_id": sent.message_id, "thread_id": sent.thread_id}

        if draft_type is DraftType.CALENDAR_CANCEL:
            await self.provider.cancel_event(payload["event_id"])
            return {"event_id": payload["event_id"], "cancelled": True}

        start, _ = to_instant(str(payload["start"]), request.timezone)
        duration = int(payload.get("duration_minutes") or request.duration_minutes)
        timezone = payload.get("timezone") or request.timezone

        if draft_type is DraftType.CALENDAR_UPDATE:
            booked = await self.provider.update_event(payload["event_id"], start, duration, timezone)
        else:
            if not await self.provider.check_availability(start, duration, payload.get("attendees", [])):
                raise SlotUnavailableError(f"{start.isoformat()} is no longer free")
            booked = await self.provider.book(
                start, duration, payload.get("attendees", []), payload.get("title") or request.title, timezone
            )
        return {"event_id": booked.event_id, "meeting_link": booked.meeting_link, "start": start.isoformat()}

    def _outbound(self, request: SchedulingRequest, result: dict[str, Any], now: datetime) -> dict[str, Any]:
        return {
            "email_thread_id": request.email_thread_id or result["thread_id"],
            "last_message_id": result["message_id"],
            "last_outbound_at": now,
        }

    def _after_success(
        self,
        session: Session,
        request: SchedulingRequest,
        draft: Draft,
        draft_type: DraftType,
        payload: dict[str, Any],
        result: dict[str, Any],
        now: datetime,
    ) -> None:
        status = RequestStatus(request.status)
        subject = payload.get("subject")

        if draft_type is DraftType.CALENDAR_CANCEL:
            if not is_terminal(status):
                apply_updates(session, request, {"calendar_event_id": None, "meeting_link": None}, now=now)
            record_action(
                session, request, ActionType.CANCELLED, reasoning="calendar event cancelled",
                draft_id=draft.id, details={"event_id": result["event_id"]},
            )
            return

        if draft_type in (DraftType.CALENDAR_BOOK, DraftType.CALENDAR_UPDATE):
            start, _ = to_instant(result["start"], "UTC")
            booking = {
                "calendar_event_id": result["event_id"],
                "meeting_link": result.get("meeting_link") or request.meeting_link,
                "next_action_type": "send_reminder",
                "next_action_at": start,
                "sla_status": None,
            }
            if status is not RequestStatus.CONFIRMING:
                raise InvalidTransitionError(f"Request {request.id} is {status.value}, expected confirming")
            transition(
                session,
                request,
                RequestStatus.CONFIRMED,
                action_type=ActionType.INVITE_SENT,
                reasoning=f"calendar invite sent for {result['start']}",
                confirmed_time=start,
                updates=booking,
                draft_id=draft.id,
                details={"event_id": result["event_id"], "draft_type": draft_type.value},
                now=now,
            )
            return

        outbound = self._outbound(request, result, now)

        if draft_type is DraftType.PROPOSAL_EMAIL and status is RequestStatus.PROPOSING:
            window = window_for_request(session, request, self.sla_policy, now)
            transition(
                session,
                request,
                RequestStatus.AWAITING_RESPONSE,
                action_type=ActionType.EMAIL_SENT,
                reasoning=f"proposal sent; reply expected within {window.reasoning}",
                updates={**outbound, **start_updates(window), "attempt_count": request.attempt_count + 1},
                message_id=result["message_id"],
                draft_id=draft.id,
                details={"subject": subject},
                now=now,
            )
            return

        if draft_type is DraftType.AVAILABILITY_CHECK and status is RequestStatus.NEGOTIATING:
            window = window_for_request(session, request, self.sla_policy, now)
            transition(
                session,
                request,
                RequestStatus.AWAITING_RESPONSE,
                action_type=ActionType.TIMES_PROPOSED,
                reasoning="counter-proposed times checked and offered back",
                updates={
                    **outbound,
                    **start_updates(window),
                    "proposed_times": payload.get("proposed_times", []),
                    "attempt_count": request.attempt_count + 1,
                },
                message_id=result["message_id"],
                draft_id=draft.id,
                now=now,
            )
            return

        if draft_type is DraftType.REMINDER and status is RequestStatus.CONFIRMED:
            transition(
                session,
                request,
                RequestStatus.REMINDER_SENT,
                action_type=ActionType.REMINDER_SENT,
                reasoning="meeting reminder sent",
                updates={**outbound, "next_action_type": "check_no_show", "next_action_at": request.confirmed_time},
                message_id=result["message_id"],
                draft_id=draft.id,
                now=now,
            )
            return

        updates = dict(outbound)
        action_type = ActionType.EMAIL_SENT
        if draft_type is DraftType.FOLLOW_UP:
            window = window_for_request(session, request, self.sla_policy, now)
            updates.update(start_updates(window), attempt_count=request.attempt_count + 1)
            action_type = ActionType.FOLLOW_UP_SENT
        if not is_terminal(status):
            apply_updates(session, request, updates, now=now)
        record_action(
            session,
            request,
            action_type,
            reasoning=f"{draft_type.value} sent",
            message_subject=subject,
            message_id=result["message_id"],
            draft_id=draft.id,
        )
