"""Cron trigger and health routes for the background jobs."""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException

from parley.jobs.registry import JOB_DEFINITIONS, run_job
from parley.monitoring.health import HealthChecker
from parley.scheduler.services import SchedulerServices, get_services

logger = logging.getLogger(__name__)

jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])
health_router = APIRouter(prefix="/scheduler", tags=["health"])


def require_cron_secret(
    x_cron_secret: str | None = Header(None),
    services: SchedulerServices = Depends(get_services),
) -> None:
    expected = services.config.CRON_SECRET
    if not expected or not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        logger.warning("Rejected job trigger with bad cron secret")
        raise HTTPException(status_code=403, detail="Invalid cron secret")


@jobs_router.get("")
async def list_jobs():
    return {
        "jobs": [
            {
                "job_id": d.job_id,
                "description": d.description,
                "schedule": d.schedule,
                "timeout_seconds": d.timeout_seconds,
                "alert_on_failure": d.alert_on_failure,
            }
            for d in JOB_DEFINITIONS.values()
        ]
    }


@jobs_router.post("/{job_id}/run", dependencies=[Depends(require_cron_secret)])
async def trigger_job(job_id: str, services: SchedulerServices = Depends(get_services)):
    """Run one job batch now and return its structured result."""
    result = await run_job(job_id, services)
    return result.to_dict()


@health_router.get("/health")
async def scheduler_health(services: SchedulerServices = Depends(get_services)):
    return HealthChecker(services.engine, services.config).check().to_dict()
