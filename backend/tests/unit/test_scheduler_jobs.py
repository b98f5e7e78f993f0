"""Unit tests for the six scheduling jobs, run through the registry."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from parley.core.errors import ProviderError
from parley.jobs.registry import JOB_DEFINITIONS, UnknownJobError, get_job, run_job
from parley.jobs.scheduler_jobs import ExecuteDraftsJob, ProcessResponsesJob
from parley.models.enums import DraftStatus, DraftType, MessageStatus, RequestStatus
from parley.models.messages import InboundMessage
from parley.models.scheduling import SchedulingRequest

from conftest import OFFERED_SLOTS, PROPOSAL_NOW

NOW = PROPOSAL_NOW
MEETING = OFFERED_SLOTS[0]


class TestRegistry:

    def test_catalogue(self):
        assert set(JOB_DEFINITIONS) == {
            "process-responses",
            "send-follow-ups",
            "send-reminders",
            "check-no-shows",
            "execute-drafts",
            "expire-drafts",
        }
        assert not JOB_DEFINITIONS["expire-drafts"].alert_on_failure
        assert JOB_DEFINITIONS["execute-drafts"].alert_on_failure

    def test_unknown_job(self, services):
        with pytest.raises(UnknownJobError) as exc_info:
            get_job("reindex-everything", services)
        assert exc_info.value.status_code == 404

    def test_instance_cached_per_services(self, services, test_settings):
        job = get_job("expire-drafts", services)
        assert get_job("expire-drafts", services) is job
        assert job.batch_size == test_settings.JOB_BATCH_SIZE


@pytest.mark.asyncio
class TestDraftJobs:

    async def test_expire_drafts(self, engine, services, flow):
        request_id = flow.create()
        draft_id = await flow.propose(request_id)

        result = await run_job("expire-drafts", services, now=NOW + timedelta(hours=49))

        assert result.success
        assert result.metrics["expired"] == 1
        assert result.metrics["succeeded"] == 1
        (draft,) = flow.drafts(request_id)
        assert draft.id == draft_id
        assert draft.status == DraftStatus.EXPIRED.value

    async def test_execute_drafts_sends_approved(self, services, provider, flow):
        request_id = flow.create()
        draft_id = await flow.propose(request_id)
        flow.approve(draft_id)

        result = await run_job("execute-drafts", services, now=NOW)

        assert result.success
        assert result.metrics["executed"] == 1
        assert len(provider.sent) == 1
        assert provider.sent[0]["to"] == "dana@acme.example"

    async def test_execute_drafts_counts_failures(self, services, provider, flow):
        provider.send_error = ProviderError("smtp relay down")
        request_id = flow.create()
        draft_id = await flow.propose(request_id)
        flow.approve(draft_id)

        result = await run_job("execute-drafts", services, now=NOW)

        assert not result.success
        assert result.metrics["failed"] == 1
        assert "smtp relay down" in result.errors[0]["error"]

    async def test_kill_switch_leaves_drafts_queued(self, services, provider, test_settings, flow):
        test_settings.SCHEDULER_AUTOMATION_ENABLED = False
        request_id = flow.create()
        draft_id = await flow.propose(request_id)
        flow.approve(draft_id)

        result = await run_job("execute-drafts", services, now=NOW)

        assert result.success
        assert result.metrics["automation_disabled"] == 1
        assert provider.sent == []
        (draft,) = flow.drafts(request_id)
        assert draft.status == DraftStatus.APPROVED.value

    async def test_timed_out_send_is_settled_failed(self, services, provider, flow):
        async def stalled_send(*args, **kwargs):
            await asyncio.sleep(5)

        request_id = flow.create()
        draft_id = await flow.propose(request_id)
        flow.approve(draft_id)
        provider.send = stalled_send

        result = await ExecuteDraftsJob(services, timeout_seconds=0.05).run(now=NOW)

        assert result.timed_out
        (draft,) = flow.drafts(request_id)
        assert draft.status == DraftStatus.FAILED.value
        assert "outcome unknown" in draft.error
        assert draft.retry_count == 1


@pytest.mark.asyncio
class TestConversationJobs:

    async def test_process_responses(self, engine, services, completion, flow):
        request_id = await flow.awaiting_response()
        completion.classify_result = {"intent": "accept", "confidence": "high", "sentiment": "positive"}
        received = NOW + timedelta(hours=3)
        with Session(engine) as session:
            session.add(InboundMessage(
                user_id="rep-1",
                provider_message_id="gmail-1",
                thread_id="thread-1",
                from_email="dana@acme.example",
                subject="Re: Intro call",
                body="Monday at 10:30 works for me",
                received_at=received,
            ))
            session.commit()

        result = await run_job("process-responses", services, now=received)

        assert result.metrics["confirming"] == 1
        with Session(engine) as session:
            assert session.get(SchedulingRequest, request_id).status == RequestStatus.CONFIRMING.value

    async def test_timed_out_reply_is_released(self, engine, services, completion, flow):
        async def stalled_classify(prompt):
            await asyncio.sleep(5)

        request_id = await flow.awaiting_response()
        completion.classify = stalled_classify
        with Session(engine) as session:
            message = InboundMessage(
                user_id="rep-1",
                provider_message_id="gmail-2",
                thread_id="thread-1",
                from_email="dana@acme.example",
                body="Monday at 10:30 works for me",
                received_at=NOW + timedelta(hours=3),
            )
            session.add(message)
            session.commit()
            message_id = message.id

        result = await ProcessResponsesJob(services, timeout_seconds=0.05).run(now=NOW + timedelta(hours=3))

        assert result.timed_out
        with Session(engine) as session:
            assert session.get(InboundMessage, message_id).processing_status == MessageStatus.PENDING.value
            assert session.get(SchedulingRequest, request_id).status == RequestStatus.AWAITING_RESPONSE.value

    async def test_send_follow_ups(self, engine, services, flow):
        request_id = await flow.awaiting_response()

        result = await run_job("send-follow-ups", services, now=NOW + timedelta(hours=25))

        assert result.metrics["drafts_created"] == 1
        assert result.metrics["follow_up_drafted"] == 1
        assert len(flow.drafts(request_id, DraftType.FOLLOW_UP)) == 1

    async def test_send_follow_ups_within_window(self, services, flow):
        await flow.awaiting_response()

        result = await run_job("send-follow-ups", services, now=NOW + timedelta(hours=2))

        assert result.metrics["processed"] == 1
        assert "drafts_created" not in result.metrics


@pytest.mark.asyncio
class TestMeetingJobs:
    """Reminders, completion and the no-show ladder around a booked meeting."""

    async def test_reminder_drafted_once(self, services, flow):
        request_id = await flow.confirmed()
        day_before = datetime(2026, 1, 4, 16, 0, tzinfo=timezone.utc)

        first = await run_job("send-reminders", services, now=day_before)
        second = await run_job("send-reminders", services, now=day_before + timedelta(hours=1))

        assert first.metrics["drafted"] == 1
        assert second.metrics["already_drafted"] == 1
        (reminder,) = flow.drafts(request_id, DraftType.REMINDER)
        assert reminder.payload["to"] == "dana@acme.example"
        assert reminder.idempotency_key == f"reminder:{request_id}:{MEETING.isoformat()}"

    async def test_reminder_outside_lead_window(self, services, flow):
        await flow.confirmed()

        result = await run_job("send-reminders", services, now=NOW)

        assert result.metrics["processed"] == 0

    async def test_passed_meeting_completed(self, engine, services, flow):
        request_id = await flow.confirmed()

        result = await run_job("check-no-shows", services, now=datetime(2026, 1, 5, 17, 0, tzinfo=timezone.utc))

        assert result.metrics["completed"] == 1
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            assert request.status == RequestStatus.COMPLETED.value
            assert request.outcome == "held"

    async def test_reported_no_show_reproposes(self, engine, services, flow):
        request_id = await flow.confirmed()
        with Session(engine) as session:
            services.requests.report_no_show(session, request_id, reported_by="rep-1", now=MEETING + timedelta(hours=1))
            session.commit()

        result = await run_job("check-no-shows", services, now=datetime(2026, 1, 5, 17, 0, tzinfo=timezone.utc))

        assert result.metrics["no_show_repropose"] == 1
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            assert request.status == RequestStatus.PROPOSING.value
            assert request.no_show_count == 1
        proposals = flow.drafts(request_id, DraftType.PROPOSAL_EMAIL)
        assert {d.idempotency_key for d in proposals} == {f"proposal:{request_id}:0", f"proposal:{request_id}:1"}

    async def test_meeting_not_over(self, services, flow):
        await flow.confirmed()

        result = await run_job("check-no-shows", services, now=MEETING + timedelta(minutes=10))

        assert result.metrics["processed"] == 0
