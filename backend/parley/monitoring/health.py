"""
Read-only diagnostics over the scheduling tables.

Nothing here mutates state. The checker counts active requests by status,
looks for requests that stopped moving, summarises the draft queue and
reads the durable job-run history, then turns those numbers into issues
with a severity and a recommendation.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from parley.core.config import Settings
from parley.jobs.registry import JOB_DEFINITIONS
from parley.jobs.runner import get_job_status
from parley.models.drafts import Draft
from parley.models.enums import DraftStatus, RequestStatus
from parley.models.scheduling import SchedulingRequest
from parley.models.types import utcnow
from parley.scheduler.state_machine import TERMINAL_STATES

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATES]

STUCK_HIGH_COUNT = 5
PENDING_DRAFTS_THRESHOLD = 10
FAILED_DRAFTS_HIGH_COUNT = 5


@dataclass
class HealthIssue:
    severity: str  # critical | warning | info
    code: str
    message: str
    recommendation: str
    affected_ids: list[str] = field(default_factory=list)
    count: int | None = None


@dataclass
class SchedulerHealth:
    status: str  # healthy | degraded | critical
    checked_at: datetime
    metrics: dict[str, Any]
    issues: list[HealthIssue]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "checked_at": self.checked_at.isoformat(),
            "metrics": self.metrics,
            "issues": [asdict(i) for i in self.issues],
            "recommendations": sorted({i.recommendation for i in self.issues}),
        }


def _is_stuck(request: SchedulingRequest, cutoff: datetime) -> bool:
    return request.last_action_at is None or request.last_action_at < cutoff


class HealthChecker:
    def __init__(self, engine: Engine, config: Settings):
        self.engine = engine
        self.config = config

    def check(self, now: datetime | None = None) -> SchedulerHealth:
        now = now or utcnow()
        stuck_cutoff = now - timedelta(hours=self.config.STUCK_REQUEST_HOURS)
        day_ago = now - timedelta(hours=24)
        high_attempts_at = self.config.MAX_FOLLOW_UP_ATTEMPTS + 1

        with Session(self.engine) as session:
            active = session.exec(
                select(SchedulingRequest).where(SchedulingRequest.status.not_in(_TERMINAL_VALUES))
            ).all()
            pending_drafts = len(session.exec(select(Draft.id).where(Draft.status == DraftStatus.PENDING.value)).all())
            approved_drafts = len(session.exec(select(Draft.id).where(Draft.status == DraftStatus.APPROVED.value)).all())
            failed_drafts = session.exec(
                select(Draft.id).where(Draft.status == DraftStatus.FAILED.value, Draft.updated_at >= day_ago)
            ).all()
            completed = session.exec(
                select(SchedulingRequest).where(
                    SchedulingRequest.status == RequestStatus.COMPLETED.value,
                    SchedulingRequest.completed_at >= day_ago,
                )
            ).all()
            job_statuses = {job_id: get_job_status(session, job_id) for job_id in JOB_DEFINITIONS}

        by_status: dict[str, int] = {}
        for r in active:
            by_status[r.status] = by_status.get(r.status, 0) + 1
        stuck = [r for r in active if _is_stuck(r, stuck_cutoff)]
        missing_thread = [
            r for r in active if r.status == RequestStatus.AWAITING_RESPONSE.value and not r.email_thread_id
        ]
        high_attempts = [r for r in active if r.attempt_count >= high_attempts_at]

        booking_hours = [
            (r.confirmed_time - r.created_at).total_seconds() / 3600
            for r in completed
            if r.confirmed_time is not None
        ]

        issues: list[HealthIssue] = []
        if len(stuck) > STUCK_HIGH_COUNT:
            issues.append(HealthIssue(
                "critical",
                "STUCK_REQUESTS_HIGH",
                f"{len(stuck)} requests have had no activity for {self.config.STUCK_REQUEST_HOURS}h",
                "Check that the process-responses and send-follow-ups jobs are running",
                [str(r.id) for r in stuck[:10]],
                len(stuck),
            ))
        elif stuck:
            issues.append(HealthIssue(
                "warning",
                "STUCK_REQUESTS",
                f"{len(stuck)} request(s) have had no activity for {self.config.STUCK_REQUEST_HOURS}h",
                "Review the stuck requests and resume or cancel them",
                [str(r.id) for r in stuck],
                len(stuck),
            ))
        if missing_thread:
            issues.append(HealthIssue(
                "warning",
                "MISSING_THREAD_ID",
                f"{len(missing_thread)} awaiting request(s) have no email thread id; replies cannot be matched",
                "Re-send the proposal or link the thread manually",
                [str(r.id) for r in missing_thread],
                len(missing_thread),
            ))
        if high_attempts:
            issues.append(HealthIssue(
                "warning",
                "HIGH_ATTEMPT_COUNT",
                f"{len(high_attempts)} request(s) have {high_attempts_at}+ outbound attempts",
                "Consider another channel or cancelling these requests",
                [str(r.id) for r in high_attempts],
                len(high_attempts),
            ))
        if pending_drafts > PENDING_DRAFTS_THRESHOLD:
            issues.append(HealthIssue(
                "info",
                "PENDING_DRAFTS",
                f"{pending_drafts} drafts are waiting for approval",
                "Review the approval queue",
                count=pending_drafts,
            ))
        if len(failed_drafts) > FAILED_DRAFTS_HIGH_COUNT:
            issues.append(HealthIssue(
                "critical",
                "FAILED_DRAFTS_HIGH",
                f"{len(failed_drafts)} drafts failed in the last 24h",
                "Check provider credentials and connectivity",
                count=len(failed_drafts),
            ))
        elif failed_drafts:
            issues.append(HealthIssue(
                "warning",
                "FAILED_DRAFTS",
                f"{len(failed_drafts)} draft(s) failed in the last 24h",
                "Retry or reject the failed drafts",
                count=len(failed_drafts),
            ))
        for job_id, job_status in job_statuses.items():
            if not job_status["healthy"]:
                failures = job_status["consecutive_failures"]
                issues.append(HealthIssue(
                    "critical" if JOB_DEFINITIONS[job_id].alert_on_failure else "warning",
                    "JOB_UNHEALTHY",
                    f"Job {job_id} is unhealthy ({failures} consecutive failures)",
                    "Check cron logs and investigate job failures",
                    count=failures,
                ))

        if any(i.severity == "critical" for i in issues):
            status = "critical"
        elif any(i.severity == "warning" for i in issues):
            status = "degraded"
        else:
            status = "healthy"

        metrics = {
            "total_active": len(active),
            "by_status": by_status,
            "stuck_requests": len(stuck),
            "missing_thread_id": len(missing_thread),
            "high_attempt_count": len(high_attempts),
            "pending_drafts": pending_drafts,
            "approved_drafts": approved_drafts,
            "failed_drafts_24h": len(failed_drafts),
            "avg_time_to_booking_hours": round(sum(booking_hours) / len(booking_hours), 1) if booking_hours else None,
            "job_statuses": job_statuses,
        }
        if status != "healthy":
            logger.warning("Scheduler health degraded", extra={"status": status, "issue_count": len(issues)})
        return SchedulerHealth(status, now, metrics, issues)

    def get_health_summary(self, now: datetime | None = None) -> dict[str, Any]:
        health = self.check(now)
        return {
            "status": health.status,
            "active_requests": health.metrics["total_active"],
            "pending_drafts": health.metrics["pending_drafts"],
            "issue_count": len(health.issues),
            "top_issue": health.issues[0].message if health.issues else None,
        }

    def quick_health_check(self, now: datetime | None = None) -> dict[str, Any]:
        health = self.check(now)
        return {
            "status": health.status,
            "critical_count": sum(1 for i in health.issues if i.severity == "critical"),
            "warning_count": sum(1 for i in health.issues if i.severity == "warning"),
        }

    def is_request_stuck(self, request_id: uuid.UUID, now: datetime | None = None) -> bool:
        now = now or utcnow()
        with Session(self.engine) as session:
            request = session.get(SchedulingRequest, request_id)
        if request is None or request.status in _TERMINAL_VALUES:
            return False
        return _is_stuck(request, now - timedelta(hours=self.config.STUCK_REQUEST_HOURS))
