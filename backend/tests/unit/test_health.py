"""Unit tests for scheduler health diagnostics."""

from datetime import timedelta

import pytest
from sqlmodel import Session

from parley.models.jobs import JobRun
from parley.monitoring.health import HealthChecker

from conftest import PROPOSAL_NOW

NOW = PROPOSAL_NOW


@pytest.fixture
def checker(engine, test_settings) -> HealthChecker:
    return HealthChecker(engine, test_settings)


def _failed_runs(engine, job_id: str, count: int = 3) -> None:
    with Session(engine) as session:
        for _ in range(count):
            session.add(JobRun(job_id=job_id, started_at=NOW, success=False))
        session.commit()


def _codes(health) -> list[str]:
    return [issue.code for issue in health.issues]


class TestHealthChecker:

    def test_empty_database_is_healthy(self, checker):
        health = checker.check(NOW)

        assert health.status == "healthy"
        assert health.issues == []
        assert health.metrics["total_active"] == 0
        assert health.metrics["avg_time_to_booking_hours"] is None
        assert set(health.metrics["job_statuses"]) == {
            "process-responses",
            "send-follow-ups",
            "send-reminders",
            "check-no-shows",
            "execute-drafts",
            "expire-drafts",
        }

    def test_stuck_request_degrades(self, checker, flow):
        request_id = flow.create()

        health = checker.check(NOW + timedelta(days=3))

        assert health.status == "degraded"
        assert _codes(health) == ["STUCK_REQUESTS"]
        assert health.issues[0].affected_ids == [str(request_id)]
        assert health.metrics["by_status"] == {"initiated": 1}

    def test_many_stuck_requests_critical(self, checker, flow):
        for _ in range(6):
            flow.create()

        health = checker.check(NOW + timedelta(days=3))

        assert health.status == "critical"
        assert _codes(health) == ["STUCK_REQUESTS_HIGH"]
        assert health.issues[0].count == 6

    def test_unhealthy_alerting_job_is_critical(self, engine, checker):
        _failed_runs(engine, "execute-drafts")

        health = checker.check(NOW)

        assert health.status == "critical"
        (issue,) = health.issues
        assert issue.code == "JOB_UNHEALTHY"
        assert issue.severity == "critical"
        assert "execute-drafts" in issue.message

    def test_unhealthy_quiet_job_is_warning(self, engine, checker):
        _failed_runs(engine, "expire-drafts")

        health = checker.check(NOW)

        assert health.status == "degraded"
        assert health.issues[0].severity == "warning"

    def test_two_failures_still_healthy(self, engine, checker):
        _failed_runs(engine, "execute-drafts", count=2)

        assert checker.check(NOW).status == "healthy"

    def test_to_dict(self, engine, checker):
        _failed_runs(engine, "execute-drafts")

        data = checker.check(NOW).to_dict()

        assert data["status"] == "critical"
        assert data["checked_at"] == NOW.isoformat()
        assert data["recommendations"] == ["Check cron logs and investigate job failures"]


@pytest.mark.asyncio
class TestDraftQueue:

    async def test_large_approval_queue_is_informational(self, checker, flow):
        for _ in range(11):
            await flow.propose(flow.create())

        health = checker.check(NOW)

        assert _codes(health) == ["PENDING_DRAFTS"]
        assert health.issues[0].severity == "info"
        assert health.status == "healthy"
        assert health.metrics["pending_drafts"] == 11


class TestSummaries:

    def test_quick_health_check(self, engine, checker, flow):
        flow.create()
        _failed_runs(engine, "check-no-shows")

        quick = checker.quick_health_check(NOW + timedelta(days=3))

        assert quick == {"status": "critical", "critical_count": 1, "warning_count": 1}

    def test_summary(self, checker, flow):
        flow.create()

        summary = checker.get_health_summary(NOW + timedelta(days=3))

        assert summary["status"] == "degraded"
        assert summary["active_requests"] == 1
        assert summary["issue_count"] == 1
        assert "no activity for 48h" in summary["top_issue"]

    def test_is_request_stuck(self, engine, services, checker, flow):
        request_id = flow.create()

        assert not checker.is_request_stuck(request_id, NOW + timedelta(hours=47))
        assert checker.is_request_stuck(request_id, NOW + timedelta(hours=49))

        with Session(engine) as session:
            services.requests.cancel(session, request_id, reason="duplicate", now=NOW)
            session.commit()
        assert not checker.is_request_stuck(request_id, NOW + timedelta(days=5))
