"""Base class for the scheduling background jobs.

Each job processes one bounded batch per run under a wall-clock timeout.
Items are isolated from each other: one failing item is recorded and the
batch moves on, and a lost optimistic race counts as skipped rather than
failed. Every run, skipped runs included, is persisted as a ``JobRun``.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlmodel import Session, select

from parley.core.errors import ConcurrencyConflictError
from parley.core.tracing import get_tracer
from parley.models.jobs import JobRun
from parley.models.types import utcnow
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

MAX_RECORDED_ERRORS = 50


class SkipItem(Exception):
    """Raised by an item handler when the item needs no work this run."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class JobMetrics:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    counters: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def increment(self, name: str, amount: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + amount

    def record_success(self, counter: str | None = None) -> None:
        self.processed += 1
        self.succeeded += 1
        if counter:
            self.increment(counter)

    def record_skip(self, reason: str) -> None:
        self.processed += 1
        self.skipped += 1
        self.increment(f"skipped_{reason}")

    def record_failure(self, item: Any, error: BaseException | str) -> None:
        self.processed += 1
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append({
                "item": str(item),
                "error": str(error),
                "type": type(error).__name__ if isinstance(error, BaseException) else "error",
            })

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            **self.counters,
        }


@dataclass
class JobResult:
    job_id: str
    success: bool
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    metrics: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    timed_out: bool = False
    skipped: bool = False
    skip_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat()
        return data


class ScheduledJob:
    """Subclasses set ``job_id`` and implement ``execute``."""

    job_id: str = ""

    def __init__(self, services, *, batch_size: int = 50, timeout_seconds: float = 120.0):
        self.services = services
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds
        self.is_running = False
        self.metrics = JobMetrics()

    async def execute(self, now: datetime) -> None:
        raise NotImplementedError

    async def process_item(self, item_id: Any, handler: Callable[[], Awaitable[str | None]]) -> None:
        """Run ``handler`` for one item. Its return value names a success counter."""
        try:
            counter = await handler()
        except SkipItem as skip:
            self.metrics.record_skip(skip.reason)
        except ConcurrencyConflictError:
            logger.info("Item changed concurrently, skipping", extra={"job_id": self.job_id, "item": str(item_id)})
            self.metrics.record_skip("conflict")
        except Exception as e:
            logger.warning(
                "Job item failed",
                extra={"job_id": self.job_id, "item": str(item_id), "error": str(e)},
                exc_info=True,
            )
            self.metrics.record_failure(item_id, e)
        else:
            self.metrics.record_success(counter)

    async def run(self, now: datetime | None = None) -> JobResult:
        started = utcnow()
        if self.is_running:
            logger.warning("Job already running, skipping", extra={"job_id": self.job_id})
            result = JobResult(
                job_id=self.job_id,
                success=True,
                started_at=started,
                finished_at=started,
                duration_ms=0,
                skipped=True,
                skip_reason="already_running",
            )
            self._persist(result)
            return result

        self.is_running = True
        self.metrics = JobMetrics()
        run_errors: list[dict[str, Any]] = []
        timed_out = False

        with tracer.start_as_current_span(f"job.{self.job_id}") as span:
            span.set_attribute("job_id", self.job_id)
            logger.info("Starting job", extra={"job_id": self.job_id, "batch_size": self.batch_size})
            try:
                await asyncio.wait_for(self.execute(now or started), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                timed_out = True
                run_errors.append({"item": None, "error": f"timed out after {self.timeout_seconds}s", "type": "timeout"})
                logger.error("Job timed out", extra={"job_id": self.job_id, "timeout_seconds": self.timeout_seconds})
                span.set_status(Status(StatusCode.ERROR, "timeout"))
            except Exception as e:
                run_errors.append({"item": None, "error": str(e), "type": type(e).__name__})
                logger.exception("Job failed", extra={"job_id": self.job_id})
                span.set_status(Status(StatusCode.ERROR, str(e)))
            finally:
                self.is_running = False

            finished = utcnow()
            result = JobResult(
                job_id=self.job_id,
                success=not run_errors and self.metrics.failed == 0,
                started_at=started,
                finished_at=finished,
                duration_ms=int((finished - started).total_seconds() * 1000),
                metrics=self.metrics.to_dict(),
                errors=run_errors + self.metrics.errors,
                timed_out=timed_out,
            )
            span.set_attribute("success", result.success)

        self._persist(result)
        logger.info(
            "Job completed",
            extra={
                "job_id": self.job_id,
                "success": result.success,
                "duration_ms": result.duration_ms,
                "metrics": result.metrics,
            },
        )
        return result

    def _persist(self, result: JobResult) -> None:
        with Session(self.services.engine) as session:
            session.add(JobRun(
                job_id=result.job_id,
                started_at=result.started_at,
                finished_at=result.finished_at,
                duration_ms=result.duration_ms,
                success=result.success,
                timed_out=result.timed_out,
                skipped=result.skipped,
                skip_reason=result.skip_reason,
                metrics=result.metrics,
                errors=result.errors,
            ))
            session.commit()


def recent_runs(session: Session, job_id: str, limit: int = 10) -> list[JobRun]:
    return list(session.exec(
        select(JobRun).where(JobRun.job_id == job_id).order_by(JobRun.started_at.desc(), JobRun.id.desc()).limit(limit)
    ).all())


def consecutive_failures(session: Session, job_id: str, limit: int = 10) -> int:
    count = 0
    for run in recent_runs(session, job_id, limit):
        if run.skipped:
            continue
        if run.success:
            break
        count += 1
    return count


def get_job_status(session: Session, job_id: str, max_consecutive_failures: int = 3) -> dict[str, Any]:
    runs = recent_runs(session, job_id)
    failures = consecutive_failures(session, job_id)
    last = runs[0] if runs else None
    return {
        "job_id": job_id,
        "last_run_at": last.started_at.isoformat() if last else None,
        "last_success": last.success if last else None,
        "last_duration_ms": last.duration_ms if last else None,
        "consecutive_failures": failures,
        "healthy": failures < max_consecutive_failures,
    }
