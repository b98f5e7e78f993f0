"""Database model for the human work-item queue."""

import uuid
from datetime import datetime
from typing import Any

from sqlmodel import Field, SQLModel, Column, JSON, String

from parley.models.enums import WorkItemStatus
from parley.models.types import utc_column, utcnow


class HumanWorkItem(SQLModel, table=True):
    """Something a rep has to look at: an escalated request or a suggested CRM link."""

    __tablename__ = "human_work_items"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    request_id: uuid.UUID | None = Field(default=None, foreign_key="scheduling_requests.id", index=True)
    user_id: str | None = Field(default=None, index=True)

    item_type: str
    status: str = Field(
        default=WorkItemStatus.OPEN.value, sa_column=Column(String, index=True, nullable=False)
    )
    priority: str = Field(default="medium")
    title: str
    description: str | None = None
    reason_code: str | None = None
    suggested_action: str | None = None
    context: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    due_at: datetime | None = Field(default=None, sa_column=utc_column())
    resolved_at: datetime | None = Field(default=None, sa_column=utc_column())
    resolved_by: str | None = None
    resolution: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
