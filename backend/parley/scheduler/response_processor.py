"""Interprets a contact's reply and moves the request forward.

Processing happens in two phases. The first reads a snapshot of the
request and does every slow call (intent classification, time extraction,
availability) without holding any writes. It returns one ``Decision``
variant. The second phase re-reads the request in a fresh session, checks
that nobody changed it meanwhile, and applies the decision with an audit
row explaining it.

Anything ambiguous becomes an escalation; automation never guesses.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from parley.core.db import conditional_update
from parley.core.errors import ConcurrencyConflictError, RequestNotFoundError
from parley.core.tracing import get_tracer, safe_span_attributes
from parley.integrations.completion_client import CompletionClient
from parley.integrations.provider import EmailCalendarProvider
from parley.models.enums import (
    ActionType,
    AttendeeSide,
    ConfidenceTier,
    DraftType,
    MessageStatus,
    RequestStatus,
    SlaStatus,
)
from parley.models.messages import InboundMessage
from parley.models.scheduling import Attendee, SchedulingRequest
from parley.models.types import utcnow
from parley.scheduler.confidence_linker import ConfidenceLinker
from parley.scheduler.draft_manager import DraftManager
from parley.scheduler.escalation import (
    Escalation,
    EscalationCode,
    build_escalation,
    build_escalation_from_intent,
    escalate_to_human_review,
)
from parley.scheduler.intent_detector import Intent, IntentAnalysis, IntentDetector, Sentiment, should_escalate
from parley.scheduler.response_patterns import record_response
from parley.scheduler.sla_monitor import SlaMonitor
from parley.scheduler.state_machine import apply_updates, is_terminal, record_action, transition
from parley.scheduler.templates import clean_email_body, counter_proposal_ack, question_response, reply_subject
from parley.scheduler.time_parser import (
    ParseContext,
    ParsedTime,
    ProposedTime,
    extract_times_from_text,
    match_to_proposed_time,
    validate_parsed_time,
)
from parley.scheduler.time_utils import format_for_display

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

S = RequestStatus

# "not now" rather than "never"
_SALVAGEABLE_RE = re.compile(
    r"\b(?:not right now|not now|not at the moment|maybe later|later this year|next quarter|next month|"
    r"reach out (?:again )?(?:in|after|next)|circle back|check back|touch base (?:in|after)|after the holidays|"
    r"too busy right now|revisit)\b",
    re.IGNORECASE,
)
FUTURE_SCHEDULING_DELAY = timedelta(days=7)

ACCEPT_STATES = frozenset({S.AWAITING_RESPONSE, S.NEGOTIATING})
ALREADY_BOOKING_STATES = frozenset({S.CONFIRMING, S.CONFIRMED, S.REMINDER_SENT})
COUNTER_STATES = frozenset({S.AWAITING_RESPONSE, S.NEGOTIATING, S.CONFIRMING, S.CONFIRMED, S.REMINDER_SENT})
ACTIONABLE_INTENTS = frozenset({Intent.ACCEPT, Intent.COUNTER_PROPOSE, Intent.RESCHEDULE, Intent.QUESTION, Intent.DECLINE})


@dataclass
class InboundReply:
    request_id: uuid.UUID
    message_id: str
    body: str
    received_at: datetime
    from_email: str
    from_name: str | None = None
    subject: str | None = None
    thread_id: str | None = None


@dataclass(frozen=True)
class RequestSnapshot:
    id: uuid.UUID
    version: int
    status: RequestStatus
    timezone: str
    duration_minutes: int
    proposed_times: list[ProposedTime]
    internal_emails: list[str]
    external_emails: list[str]


class Outcome(str, Enum):
    ESCALATED = "escalated"
    CONFIRMING = "confirming"
    NEGOTIATING = "negotiating"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    DRAFTED_RESPONSE = "drafted_response"
    SLA_EXTENDED = "sla_extended"
    RECORDED = "recorded"


# --- decision variants ---------------------------------------------------

@dataclass(frozen=True)
class Escalate:
    escalation: Escalation
    delegate_to: str | None = None


@dataclass(frozen=True)
class Confirm:
    time: ProposedTime
    confidence: ConfidenceTier
    reasoning: str


@dataclass(frozen=True)
class Negotiate:
    times: list[ProposedTime]
    reschedule: bool
    reasoning: str


@dataclass(frozen=True)
class Decline:
    salvageable: bool
    reasoning: str


@dataclass(frozen=True)
class AnswerQuestion:
    question: str | None


@dataclass(frozen=True)
class ExtendSla:
    return_day: date | None


@dataclass(frozen=True)
class Acknowledge:
    reasoning: str


Decision = Escalate | Confirm | Negotiate | Decline | AnswerQuestion | ExtendSla | Acknowledge


@dataclass
class ProcessingResult:
    request_id: uuid.UUID
    outcome: Outcome
    reasoning: str
    intent: Intent | None = None
    confidence: ConfidenceTier | None = None
    new_status: str | None = None
    draft_id: uuid.UUID | None = None
    work_item_id: uuid.UUID | None = None
    details: dict = field(default_factory=dict)


def _escalate(code: EscalationCode, details: str | None = None, **context) -> Escalate:
    return Escalate(build_escalation(code, details=details, context=context))


class ResponseProcessor:
    def __init__(
        self,
        engine: Engine,
        completion: CompletionClient,
        provider: EmailCalendarProvider,
        drafts: DraftManager,
        sla_monitor: SlaMonitor,
        linker: ConfidenceLinker | None = None,
        *,
        business_hours_start: int = 9,
        business_hours_end: int = 17,
    ):
        self.engine = engine
        self.completion = completion
        self.intent_detector = IntentDetector(completion)
        self.provider = provider
        self.drafts = drafts
        self.sla_monitor = sla_monitor
        self.linker = linker
        self.business_hours_start = business_hours_start
        self.business_hours_end = business_hours_end

    # --- phase 1: read and decide ----------------------------------------

    def _snapshot(self, session: Session, request_id: uuid.UUID) -> RequestSnapshot:
        request = session.get(SchedulingRequest, request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found")
        attendees = session.exec(select(Attendee).where(Attendee.request_id == request_id)).all()
        return RequestSnapshot(
            id=request.id,
            version=request.version,
            status=S(request.status),
            timezone=request.timezone,
            duration_minutes=request.duration_minutes,
            proposed_times=[ProposedTime.from_record(r) for r in request.proposed_times or []],
            internal_emails=[a.email for a in attendees if a.side == AttendeeSide.INTERNAL.value],
            external_emails=[a.email for a in attendees if a.side == AttendeeSide.EXTERNAL.value],
        )

    def _context(self, snapshot: RequestSnapshot, reply: InboundReply, text: str) -> ParseContext:
        return ParseContext(
            timezone=snapshot.timezone,
            reference_instant=reply.received_at,
            email_body_excerpt=text[:500],
            proposed_times=snapshot.proposed_times,
            business_hours_start=self.business_hours_start,
            business_hours_end=self.business_hours_end,
        )

    async def decide(
        self, snapshot: RequestSnapshot, analysis: IntentAnalysis, text: str, reply: InboundReply
    ) -> Decision:
        if analysis.is_confused or analysis.intent is Intent.CONFUSED:
            return Escalate(build_escalation_from_intent(analysis))
        if analysis.is_delegating or analysis.intent is Intent.DELEGATE:
            return Escalate(build_escalation_from_intent(analysis), delegate_to=analysis.delegate_to)

        # An auto-reply carries no answer; a reply that mentions travel and still answers is handled below
        if analysis.is_out_of_office and analysis.intent not in ACTIONABLE_INTENTS:
            if snapshot.status is S.AWAITING_RESPONSE:
                return ExtendSla(analysis.ooo_until)
            return Acknowledge("out-of-office reply; no reply window running")

        if should_escalate(analysis):
            return Escalate(build_escalation_from_intent(analysis))

        context = self._context(snapshot, reply, text)
        intent = analysis.intent

        if intent is Intent.ACCEPT:
            if snapshot.status in ALREADY_BOOKING_STATES:
                return Acknowledge(f"acceptance while already {snapshot.status.value}")
            if snapshot.status not in ACCEPT_STATES:
                return _escalate(EscalationCode.UNEXPECTED_INTENT, f"accept while {snapshot.status.value}")
            return await self._decide_accept(snapshot, context, text, reply)

        if intent in (Intent.COUNTER_PROPOSE, Intent.RESCHEDULE):
            if snapshot.status not in COUNTER_STATES:
                return _escalate(EscalationCode.UNEXPECTED_INTENT, f"{intent.value} while {snapshot.status.value}")
            return await self._decide_counter(snapshot, context, text, reschedule=intent is Intent.RESCHEDULE)

        if intent is Intent.DECLINE:
            salvageable = bool(_SALVAGEABLE_RE.search(text)) and analysis.sentiment is not Sentiment.NEGATIVE
            reasoning = "contact asked to reconnect later" if salvageable else "contact declined the meeting"
            return Decline(salvageable, f"{reasoning}: {analysis.reasoning}")

        if intent is Intent.QUESTION:
            return AnswerQuestion(analysis.question)

        return _escalate(EscalationCode.UNEXPECTED_INTENT, analysis.reasoning)

    async def _decide_accept(
        self, snapshot: RequestSnapshot, context: ParseContext, text: str, reply: InboundReply
    ) -> Decision:
        match = match_to_proposed_time(text, context)
        if match is not None and match.confidence.at_least(ConfidenceTier.MEDIUM):
            chosen, confidence, reasoning = match.proposed, match.confidence, match.reasoning
        else:
            extracted = await extract_times_from_text(text, context, self.completion)
            confident = [p for p in extracted if p.success and p.confidence.at_least(ConfidenceTier.MEDIUM)]
            if len(confident) != 1:
                found = ", ".join(p.display for p in extracted if p.success) or "none"
                return _escalate(EscalationCode.TIME_UNCLEAR, f"times found in reply: {found}")
            parsed = confident[0]
            chosen, confidence, reasoning = parsed.to_proposed("reply"), parsed.confidence, parsed.reasoning

        validation = validate_parsed_time(self._as_parsed(chosen, confidence, snapshot.timezone), context)
        if not validation.is_valid:
            return _escalate(EscalationCode.INVALID_PROPOSED_TIME, "; ".join(validation.errors), time=chosen.display)

        free = await self.provider.check_availability(
            chosen.instant, snapshot.duration_minutes, snapshot.internal_emails
        )
        if not free:
            return _escalate(EscalationCode.SLOT_CONFLICT, f"{chosen.display} is already booked", time=chosen.display)
        return Confirm(chosen, confidence, reasoning)

    async def _decide_counter(
        self, snapshot: RequestSnapshot, context: ParseContext, text: str, *, reschedule: bool
    ) -> Decision:
        extracted = await extract_times_from_text(text, context, self.completion)
        parsed = [p for p in extracted if p.success]
        if not parsed or any(p.confidence is ConfidenceTier.LOW for p in parsed):
            detail = "; ".join(f"{p.raw}: {p.reasoning}" for p in extracted) or "no specific time given"
            return _escalate(EscalationCode.AMBIGUOUS_COUNTER_PROPOSAL, detail)

        for p in parsed:
            validation = validate_parsed_time(p, context)
            if not validation.is_valid:
                return _escalate(
                    EscalationCode.INVALID_PROPOSED_TIME, f"{p.display}: {'; '.join(validation.errors)}", time=p.display
                )

        times = [p.to_proposed("reply") for p in parsed]
        listed = ", ".join(t.display for t in times)
        verb = "asked to reschedule to" if reschedule else "counter-proposed"
        return Negotiate(times, reschedule, f"contact {verb} {listed}")

    @staticmethod
    def _as_parsed(time: ProposedTime, confidence: ConfidenceTier, tz: str) -> ParsedTime:
        return ParsedTime(
            raw=time.display,
            instant=time.instant,
            display=time.display,
            timezone=tz,
            confidence=confidence,
            reasoning="",
        )

    # --- entry points ----------------------------------------------------

    async def process_reply(self, reply: InboundReply, now: datetime | None = None) -> ProcessingResult:
        """Interpret ``reply`` and apply the outcome in one commit.

        Raises:
            RequestNotFoundError: unknown request.
            ConcurrencyConflictError: the request changed while the reply was being interpreted.
            CompletionServiceError / ProviderError: a collaborator was unreachable.
        """
        now = now or utcnow()
        with Session(self.engine) as session:
            snapshot = self._snapshot(session, reply.request_id)

        text = clean_email_body(reply.body)

        with tracer.start_as_current_span("response_processor.process_reply") as span:
            span.set_attributes(safe_span_attributes(request_id=str(reply.request_id), status=snapshot.status.value))

            if is_terminal(snapshot.status) or snapshot.status is S.PAUSED:
                analysis = None
                decision: Decision = Acknowledge(f"request is {snapshot.status.value}; reply left for the reviewer")
            else:
                analysis = await self.intent_detector.detect_intent(
                    text, snapshot.proposed_times, snapshot.timezone
                )
                decision = await self.decide(snapshot, analysis, text, reply)
            span.set_attribute("decision", type(decision).__name__)

        with Session(self.engine) as session:
            request = session.get(SchedulingRequest, reply.request_id)
            if request.version != snapshot.version:
                raise ConcurrencyConflictError(f"Request {request.id} changed while its reply was processed")

            result = self._apply(session, request, reply, analysis, decision, now)
            session.commit()

        logger.info(
            "Reply processed",
            extra={
                "request_id": str(reply.request_id),
                "outcome": result.outcome.value,
                "intent": result.intent.value if result.intent else None,
                "new_status": result.new_status,
            },
        )
        return result

    def bind_message(self, session: Session, message: InboundMessage) -> SchedulingRequest | None:
        if message.request_id is not None:
            return session.get(SchedulingRequest, message.request_id)
        if not message.thread_id:
            return None
        return session.exec(
            select(SchedulingRequest).where(
                SchedulingRequest.user_id == message.user_id,
                SchedulingRequest.email_thread_id == message.thread_id,
            )
        ).first()

    async def process_message(self, message_id: uuid.UUID, now: datetime | None = None) -> ProcessingResult | None:
        """Claim a pending inbound message, bind it to its request and process it.

        Returns None when another worker claimed it or it matches no request.
        """
        now = now or utcnow()
        with Session(self.engine) as session:
            claimed = conditional_update(
                session,
                InboundMessage,
                [InboundMessage.id == message_id, InboundMessage.processing_status == MessageStatus.PENDING.value],
                {"processing_status": MessageStatus.PROCESSING.value},
            )
            if not claimed:
                session.rollback()
                return None
            session.commit()
            message = session.get(InboundMessage, message_id)

            request = self.bind_message(session, message)
            if request is None:
                self._settle(session, message, MessageStatus.IGNORED, now, outcome="no matching request")
                return None
            reply = InboundReply(
                request_id=request.id,
                message_id=message.provider_message_id,
                body=message.body,
                received_at=message.received_at,
                from_email=message.from_email,
                from_name=message.from_name,
                subject=message.subject,
                thread_id=message.thread_id,
            )

        try:
            result = await self.process_reply(reply, now=now)
        except (ConcurrencyConflictError, asyncio.CancelledError):
            # Nothing was applied; the next run picks the message up again
            with Session(self.engine) as session:
                self._settle(session, session.get(InboundMessage, message_id), MessageStatus.PENDING, None)
            raise
        except Exception as e:
            with Session(self.engine) as session:
                self._settle(session, session.get(InboundMessage, message_id), MessageStatus.FAILED, now, error=str(e))
            raise

        with Session(self.engine) as session:
            message = session.get(InboundMessage, message_id)
            message.request_id = result.request_id
            self._settle(session, message, MessageStatus.PROCESSED, now, outcome=result.outcome.value)
        return result

    def _settle(
        self,
        session: Session,
        message: InboundMessage,
        status: MessageStatus,
        now: datetime | None,
        outcome: str | None = None,
        error: str | None = None,
    ) -> None:
        message.processing_status = status.value
        message.processed_at = now
        message.outcome = outcome
        message.processing_error = error
        session.add(message)
        session.commit()

    # --- phase 2: apply --------------------------------------------------

    def _apply(
        self,
        session: Session,
        request: SchedulingRequest,
        reply: InboundReply,
        analysis: IntentAnalysis | None,
        decision: Decision,
        now: datetime,
    ) -> ProcessingResult:
        intent = analysis.intent if analysis else None
        confidence = analysis.confidence if analysis else None
        reasoning = getattr(decision, "reasoning", type(decision).__name__)

        record_action(
            session,
            request,
            ActionType.EMAIL_RECEIVED,
            reasoning=analysis.reasoning if analysis else reasoning,
            message_subject=reply.subject,
            message_id=reply.message_id,
            details={
                "intent": intent.value if intent else None,
                "confidence": confidence.value if confidence else None,
                "sentiment": analysis.sentiment.value if analysis else None,
                "decision": type(decision).__name__,
            },
        )

        if request.last_outbound_at is not None:
            record_response(
                session,
                reply.from_email,
                sent_at=request.last_outbound_at,
                replied_at=reply.received_at,
                timezone=request.timezone,
                contact_id=request.contact_id,
                new_thread=request.last_inbound_at is None,
            )

        result = ProcessingResult(request.id, Outcome.RECORDED, reasoning, intent, confidence)
        if is_terminal(request.status):
            result.new_status = request.status
            return result

        inbound = {"last_inbound_at": reply.received_at}
        if not request.email_thread_id and reply.thread_id:
            inbound["email_thread_id"] = reply.thread_id
        apply_updates(session, request, inbound, now=now)

        if self.linker is not None and self.linker.should_link(session, request):
            self.linker.link_request(
                session, request, sender_email=reply.from_email, subject=reply.subject, thread_id=reply.thread_id, now=now
            )

        if isinstance(decision, Escalate):
            if decision.delegate_to:
                apply_updates(session, request, {"delegate_to": decision.delegate_to}, now=now)
            escalated = escalate_to_human_review(session, request, decision.escalation, now=now)
            if not escalated.success:
                raise ConcurrencyConflictError(f"Escalation of request {request.id} failed: {escalated.error}")
            result.outcome = Outcome.ESCALATED
            result.reasoning = decision.escalation.reason
            result.work_item_id = escalated.work_item_id
            result.details = {"code": decision.escalation.code.value}
        elif isinstance(decision, ExtendSla):
            due = self.sla_monitor.extend_for_out_of_office(
                session, request, decision.return_day, now=now, message_id=reply.message_id
            )
            result.outcome = Outcome.SLA_EXTENDED
            result.reasoning = f"out of office; reply window now ends {due.isoformat()}"
        elif isinstance(decision, Confirm):
            self._apply_confirm(session, request, reply, decision, result, now)
        elif isinstance(decision, Negotiate):
            self._apply_negotiate(session, request, reply, decision, result, now)
        elif isinstance(decision, Decline):
            self._apply_decline(session, request, reply, decision, result, now)
        elif isinstance(decision, AnswerQuestion):
            draft, _ = self.drafts.create_draft(
                session,
                request=request,
                draft_type=DraftType.EMAIL_RESPONSE,
                payload=self._reply_payload(
                    request, reply, question_response(reply.from_name, decision.question)
                ),
                idempotency_key=f"email_response:{request.id}:{reply.message_id}",
                reasoning=f"contact asked: {decision.question or 'a question'}",
                now=now,
            )
            apply_updates(session, request, {"next_action_type": "answer_question", "next_action_at": now}, now=now)
            result.outcome = Outcome.DRAFTED_RESPONSE
            result.draft_id = draft.id
            result.reasoning = "question drafted for a human answer"

        result.new_status = request.status
        return result

    def _reply_payload(self, request: SchedulingRequest, reply: InboundReply, body: str) -> dict:
        return {
            "to": reply.from_email,
            "subject": reply_subject(reply.subject, request.title),
            "body": body,
            "reply_to_id": reply.message_id,
            "thread_id": request.email_thread_id or reply.thread_id,
        }

    def _attendee_emails(self, session: Session, request: SchedulingRequest) -> list[str]:
        attendees = session.exec(select(Attendee).where(Attendee.request_id == request.id)).all()
        return [a.email for a in attendees if not a.is_organizer]

    def _apply_confirm(self, session, request, reply, decision: Confirm, result: ProcessingResult, now) -> None:
        instant = decision.time.instant
        transition(
            session,
            request,
            S.CONFIRMING,
            action_type=ActionType.TIME_SELECTED,
            reasoning=decision.reasoning,
            updates={"next_action_type": "approve_booking", "next_action_at": now, "sla_status": None},
            message_id=reply.message_id,
            details={"selected_time": instant.isoformat(), "confidence": decision.confidence.value},
            now=now,
        )
        payload = {
            "start": instant.isoformat(),
            "duration_minutes": request.duration_minutes,
            "attendees": self._attendee_emails(session, request),
            "title": request.title,
            "timezone": request.timezone,
            "display": format_for_display(instant, request.timezone),
        }
        if request.calendar_event_id:
            draft_type = DraftType.CALENDAR_UPDATE
            payload["event_id"] = request.calendar_event_id
        else:
            draft_type = DraftType.CALENDAR_BOOK
        draft, _ = self.drafts.create_draft(
            session,
            request=request,
            draft_type=draft_type,
            payload=payload,
            idempotency_key=f"{draft_type.value}:{request.id}:{instant.isoformat()}",
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            now=now,
        )
        result.outcome = Outcome.CONFIRMING
        result.draft_id = draft.id
        result.reasoning = decision.reasoning
        result.details = {"selected_time": instant.isoformat()}

    def _apply_negotiate(self, session, request, reply, decision: Negotiate, result: ProcessingResult, now) -> None:
        if request.status != S.NEGOTIATING.value:
            transition(
                session,
                request,
                S.NEGOTIATING,
                action_type=ActionType.RESCHEDULING_STARTED if decision.reschedule else ActionType.STATUS_CHANGED,
                reasoning=decision.reasoning,
                updates={"next_action_type": "approve_availability_check", "next_action_at": now, "sla_status": None},
                message_id=reply.message_id,
                now=now,
            )
        internal = [
            a.email for a in session.exec(select(Attendee).where(Attendee.request_id == request.id)).all()
            if a.side == AttendeeSide.INTERNAL.value
        ]
        payload = self._reply_payload(request, reply, counter_proposal_ack(reply.from_name, decision.times))
        payload.update(proposed_times=[t.to_record() for t in decision.times], attendees=internal)
        draft, _ = self.drafts.create_draft(
            session,
            request=request,
            draft_type=DraftType.AVAILABILITY_CHECK,
            payload=payload,
            idempotency_key=f"availability_check:{request.id}:{reply.message_id}",
            confidence=ConfidenceTier.MEDIUM,
            reasoning=decision.reasoning,
            now=now,
        )
        result.outcome = Outcome.NEGOTIATING
        result.draft_id = draft.id
        result.reasoning = decision.reasoning
        result.details = {"times": [t.to_record() for t in decision.times]}

    def _apply_decline(self, session, request, reply, decision: Decline, result: ProcessingResult, now) -> None:
        if decision.salvageable:
            transition(
                session,
                request,
                S.PAUSED,
                action_type=ActionType.PAUSED,
                reasoning=decision.reasoning,
                updates={
                    "pause_reason": "contact asked to reconnect later",
                    "pause_details": decision.reasoning,
                    "next_action_type": "offer_future_scheduling",
                    "next_action_at": now + FUTURE_SCHEDULING_DELAY,
                    "sla_status": SlaStatus.PAUSED.value,
                },
                message_id=reply.message_id,
                now=now,
            )
            result.outcome = Outcome.PAUSED
            result.reasoning = decision.reasoning
            return

        event_id = request.calendar_event_id
        transition(
            session,
            request,
            S.CANCELLED,
            action_type=ActionType.CANCELLED,
            reasoning=decision.reasoning,
            updates={"outcome": "declined", "next_action_type": None, "next_action_at": None, "sla_status": None},
            message_id=reply.message_id,
            now=now,
        )
        self.drafts.reject_open_drafts_for_request(session, request.id, "request cancelled: contact declined", now=now)
        if event_id:
            draft, _ = self.drafts.create_draft(
                session,
                request=request,
                draft_type=DraftType.CALENDAR_CANCEL,
                payload={"event_id": event_id},
                idempotency_key=f"calendar_cancel:{request.id}:{event_id}",
                reasoning="meeting declined after booking",
                now=now,
            )
            result.draft_id = draft.id
        result.outcome = Outcome.CANCELLED
        result.reasoning = decision.reasoning
