"""Database model for the outbound draft/approval queue."""

import uuid
from datetime import datetime
from typing import Any

from sqlmodel import Field, SQLModel, Column, JSON, String

from parley.models.enums import DraftStatus, ConfidenceTier
from parley.models.types import utc_column, utcnow


class Draft(SQLModel, table=True):
    """A pending unit of outbound work: an email send or a calendar operation.

    ``payload`` is written once at creation. Human edits live in
    ``user_edits`` and are overlaid at execution time, so the original
    proposal stays auditable. ``idempotency_key`` is unique: retried
    producers get the existing row back instead of a duplicate.
    """

    __tablename__ = "scheduling_drafts"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    request_id: uuid.UUID = Field(foreign_key="scheduling_requests.id", index=True)

    draft_type: str = Field(sa_column=Column(String, index=True, nullable=False))
    status: str = Field(
        default=DraftStatus.PENDING.value, sa_column=Column(String, index=True, nullable=False)
    )
    idempotency_key: str = Field(sa_column=Column(String, unique=True, nullable=False))

    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    user_edits: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    confidence: str = Field(default=ConfidenceTier.MEDIUM.value)
    reasoning: str | None = None

    expires_at: datetime = Field(sa_column=utc_column(nullable=False, index=True))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)

    result: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    error: str | None = None
    rejection_reason: str | None = None

    approved_by: str | None = None
    approved_at: datetime | None = Field(default=None, sa_column=utc_column())
    rejected_by: str | None = None
    rejected_at: datetime | None = Field(default=None, sa_column=utc_column())
    executed_at: datetime | None = Field(default=None, sa_column=utc_column())

    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))

    def effective_payload(self) -> dict[str, Any]:
        """Original payload with the approver's edits laid over it."""
        return {**(self.payload or {}), **(self.user_edits or {})}
