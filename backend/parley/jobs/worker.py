"""
Background worker entrypoint.

Reads the job id from CLI args or the WORKER_JOB environment variable and
runs that job once. ``all`` runs every job in catalogue order. Meant to be
invoked by cron or a platform scheduler, one process per trigger.
"""

import asyncio
import logging
import os
import sys

from parley.core.config import settings
from parley.core.tracing import setup_tracing
from parley.jobs.registry import JOB_DEFINITIONS, run_job

logger = logging.getLogger(__name__)


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "all").strip().lower()


async def run_worker(job_name: str | None = None, services=None) -> bool:
    """Run the requested job(s). Returns True when every run succeeded."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name != "all" and name not in JOB_DEFINITIONS:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: all, {', '.join(JOB_DEFINITIONS)}"
        )

    job_ids = list(JOB_DEFINITIONS) if name == "all" else [name]
    logger.info("Starting background worker", extra={"jobs": job_ids})

    ok = True
    for job_id in job_ids:
        result = await run_job(job_id, services)
        ok = ok and result.success
    return ok


def main() -> None:
    """CLI entrypoint."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    setup_tracing("parley-worker")
    job_name = _resolve_job_name()
    ok = asyncio.run(run_worker(job_name))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
