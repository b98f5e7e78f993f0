"""The six scheduling jobs, each one bounded batch per run."""

import logging
from datetime import datetime, timedelta

from sqlmodel import Session, select

from parley.models.enums import DraftStatus, DraftType, MessageStatus, RequestStatus
from parley.models.messages import InboundMessage
from parley.models.scheduling import SchedulingRequest
from parley.jobs.runner import ScheduledJob, SkipItem
from parley.scheduler.sla import primary_contact
from parley.scheduler.requests import meeting_has_passed
from parley.scheduler.templates import reminder_email, reply_subject
from parley.scheduler.time_utils import format_for_display

logger = logging.getLogger(__name__)


class ProcessResponsesJob(ScheduledJob):
    """Interpret pending inbound replies."""

    job_id = "process-responses"

    async def execute(self, now: datetime) -> None:
        with Session(self.services.engine) as session:
            message_ids = list(session.exec(
                select(InboundMessage.id)
                .where(InboundMessage.processing_status == MessageStatus.PENDING.value)
                .order_by(InboundMessage.received_at)
                .limit(self.batch_size)
            ).all())

        for message_id in message_ids:
            async def handle(message_id=message_id):
                result = await self.services.processor.process_message(message_id, now=now)
                if result is None:
                    return "unmatched"
                return result.outcome.value

            await self.process_item(message_id, handle)


class SendFollowUpsJob(ScheduledJob):
    """Check reply windows and draft follow-ups for overdue requests."""

    job_id = "send-follow-ups"

    async def execute(self, now: datetime) -> None:
        monitor = self.services.sla_monitor
        with Session(self.services.engine) as session:
            request_ids = monitor.due_for_check(session, limit=self.batch_size)

        for request_id in request_ids:
            async def handle(request_id=request_id):
                with Session(self.services.engine) as session:
                    check = monitor.check_request(session, request_id, now=now)
                    session.commit()
                if check.draft_created:
                    self.metrics.increment("drafts_created")
                return check.action

            await self.process_item(request_id, handle)


class SendRemindersJob(ScheduledJob):
    """Draft a reminder for confirmed meetings starting within the lead window."""

    job_id = "send-reminders"

    async def execute(self, now: datetime) -> None:
        horizon = now + timedelta(hours=self.services.config.REMINDER_LEAD_HOURS)
        with Session(self.services.engine) as session:
            request_ids = list(session.exec(
                select(SchedulingRequest.id)
                .where(
                    SchedulingRequest.status == RequestStatus.CONFIRMED.value,
                    SchedulingRequest.confirmed_time.is_not(None),
                    SchedulingRequest.confirmed_time > now,
                    SchedulingRequest.confirmed_time <= horizon,
                )
                .order_by(SchedulingRequest.confirmed_time)
                .limit(self.batch_size)
            ).all())

        for request_id in request_ids:
            await self.process_item(request_id, lambda request_id=request_id: self._draft_reminder(request_id, now))

    async def _draft_reminder(self, request_id, now: datetime) -> str:
        with Session(self.services.engine) as session:
            request = session.get(SchedulingRequest, request_id)
            if request is None or request.status != RequestStatus.CONFIRMED.value:
                return "not_confirmed"
            contact = primary_contact(session, request)
            if contact is None:
                return "no_contact"
            when = format_for_display(request.confirmed_time, request.timezone)
            _, created = self.services.drafts.create_draft(
                session,
                request=request,
                draft_type=DraftType.REMINDER,
                payload={
                    "to": contact.email,
                    "subject": reply_subject(None, f"Reminder: {request.title}"),
                    "body": reminder_email(contact.name, when, request.meeting_link),
                    "reply_to_id": request.last_message_id,
                    "thread_id": request.email_thread_id,
                },
                idempotency_key=f"reminder:{request.id}:{request.confirmed_time.isoformat()}",
                reasoning=f"meeting starts {when}",
                now=now,
            )
            session.commit()
        return "drafted" if created else "already_drafted"


class CheckNoShowsJob(ScheduledJob):
    """Complete meetings that have passed, or run the no-show ladder when one was reported."""

    job_id = "check-no-shows"

    async def execute(self, now: datetime) -> None:
        grace = timedelta(minutes=self.services.config.NO_SHOW_GRACE_MINUTES)
        with Session(self.services.engine) as session:
            candidates = session.exec(
                select(SchedulingRequest)
                .where(
                    SchedulingRequest.status.in_([RequestStatus.CONFIRMED.value, RequestStatus.REMINDER_SENT.value]),
                    SchedulingRequest.confirmed_time.is_not(None),
                    SchedulingRequest.confirmed_time <= now - grace,
                )
                .order_by(SchedulingRequest.confirmed_time)
                .limit(self.batch_size)
            ).all()
            request_ids = [r.id for r in candidates if meeting_has_passed(r, grace, now)]

        for request_id in request_ids:
            await self.process_item(request_id, lambda request_id=request_id: self._settle(request_id, now))

    async def _settle(self, request_id, now: datetime) -> str:
        requests = self.services.requests
        with Session(self.services.engine) as session:
            request = session.get(SchedulingRequest, request_id)
            if request.no_show_reported_at is None:
                requests.complete(session, request, now=now)
                session.commit()
                return "completed"

            step = requests.record_no_show(session, request, now=now)
            session.commit()
            if step == "repropose":
                await requests.propose_times(session, request_id, now=now)
                session.commit()
            return f"no_show_{step}"


class ExecuteDraftsJob(ScheduledJob):
    """Execute approved drafts against the email/calendar provider."""

    job_id = "execute-drafts"

    async def execute(self, now: datetime) -> None:
        if not self.services.config.SCHEDULER_AUTOMATION_ENABLED:
            logger.warning("Scheduler automation disabled, approved drafts left queued")
            self.metrics.increment("automation_disabled")
            return

        drafts = self.services.drafts
        with Session(self.services.engine) as session:
            draft_ids = drafts.approved_draft_ids(session, limit=self.batch_size)

        for draft_id in draft_ids:
            async def handle(draft_id=draft_id):
                outcome = await drafts.execute_draft(draft_id, now=now)
                if outcome.skipped:
                    raise SkipItem("claimed")
                if outcome.status == DraftStatus.FAILED.value:
                    raise RuntimeError(outcome.error or "draft execution failed")
                return outcome.status

            await self.process_item(draft_id, handle)


class ExpireDraftsJob(ScheduledJob):
    """Expire pending drafts nobody approved in time."""

    job_id = "expire-drafts"

    async def execute(self, now: datetime) -> None:
        with Session(self.services.engine) as session:
            expired = self.services.drafts.expire_stale_drafts(session, now=now, limit=self.batch_size)
            session.commit()
        self.metrics.processed += expired
        self.metrics.succeeded += expired
        self.metrics.increment("expired", expired)

