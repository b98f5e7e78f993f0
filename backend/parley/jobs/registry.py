"""Job catalogue and the single entry point used by the cron route and the worker."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlmodel import Session

from parley.core.errors import SchedulerError
from parley.jobs.runner import JobResult, ScheduledJob, consecutive_failures
from parley.jobs.scheduler_jobs import (
    CheckNoShowsJob,
    ExecuteDraftsJob,
    ExpireDraftsJob,
    ProcessResponsesJob,
    SendFollowUpsJob,
    SendRemindersJob,
)
from parley.scheduler.services import SchedulerServices, get_services

logger = logging.getLogger(__name__)


class UnknownJobError(SchedulerError):
    def __init__(self, job_id: str):
        super().__init__(
            f"Unknown job '{job_id}'. Available jobs: {', '.join(JOB_DEFINITIONS)}",
            status_code=404,
            error_code="unknown_job",
        )


@dataclass(frozen=True)
class JobDefinition:
    job_id: str
    description: str
    schedule: str
    timeout_seconds: float
    alert_on_failure: bool
    factory: Callable[..., ScheduledJob]


JOB_DEFINITIONS: dict[str, JobDefinition] = {
    d.job_id: d
    for d in (
        JobDefinition("process-responses", "Interpret pending inbound replies", "*/5 * * * *", 240, True, ProcessResponsesJob),
        JobDefinition("send-follow-ups", "Draft follow-ups for overdue replies", "*/15 * * * *", 120, True, SendFollowUpsJob),
        JobDefinition("send-reminders", "Draft reminders before confirmed meetings", "0 * * * *", 120, False, SendRemindersJob),
        JobDefinition("check-no-shows", "Complete held meetings and handle no-shows", "*/30 * * * *", 120, True, CheckNoShowsJob),
        JobDefinition("execute-drafts", "Execute approved drafts", "* * * * *", 50, True, ExecuteDraftsJob),
        JobDefinition("expire-drafts", "Expire unapproved drafts", "0 * * * *", 60, False, ExpireDraftsJob),
    )
}


def get_job(job_id: str, services: SchedulerServices | None = None) -> ScheduledJob:
    definition = JOB_DEFINITIONS.get(job_id)
    if definition is None:
        raise UnknownJobError(job_id)
    services = services or get_services()
    if job_id not in services.jobs:
        services.jobs[job_id] = definition.factory(
            services,
            batch_size=services.config.JOB_BATCH_SIZE,
            timeout_seconds=definition.timeout_seconds,
        )
    return services.jobs[job_id]


async def run_job(job_id: str, services: SchedulerServices | None = None, now: datetime | None = None) -> JobResult:
    job = get_job(job_id, services)
    result = await job.run(now)
    if not result.success and JOB_DEFINITIONS[job_id].alert_on_failure:
        logger.error(
            "Scheduled job failed",
            extra={"job_id": job_id, "timed_out": result.timed_out, "errors": result.errors[:5]},
        )
    return result


def is_job_healthy(session: Session, job_id: str, max_consecutive_failures: int = 3) -> bool:
    return consecutive_failures(session, job_id) < max_consecutive_failures
