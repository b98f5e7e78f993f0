"""Database model for durable job-run metrics."""

from datetime import datetime
from typing import Any

from sqlmodel import Field, SQLModel, Column, JSON

from parley.models.types import utc_column, utcnow


class JobRun(SQLModel, table=True):
    __tablename__ = "job_runs"

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    started_at: datetime = Field(sa_column=utc_column(nullable=False, index=True))
    finished_at: datetime | None = Field(default=None, sa_column=utc_column())
    duration_ms: int = Field(default=0)

    success: bool = Field(default=False)
    timed_out: bool = Field(default=False)
    skipped: bool = Field(default=False)
    skip_reason: str | None = None

    metrics: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    errors: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
