"""Database model for per-contact response velocity."""

import uuid
from datetime import datetime

from sqlmodel import Field, SQLModel, Column, JSON

from parley.models.types import utc_column, utcnow


class ContactEmailPattern(SQLModel, table=True):
    """How quickly a contact usually replies.

    Recomputed after every reply from the rolling ``latencies_hours``
    window; the SLA monitor widens its window from ``avg_response_hours``
    once enough replies are on record.
    """

    __tablename__ = "contact_email_patterns"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    contact_email: str = Field(index=True, unique=True)
    contact_id: str | None = None

    thread_count: int = Field(default=0)
    response_count: int = Field(default=0)
    latencies_hours: list[float] = Field(default_factory=list, sa_column=Column(JSON))
    reply_hours: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    reply_weekdays: list[int] = Field(default_factory=list, sa_column=Column(JSON))

    avg_response_hours: float | None = None
    median_response_hours: float | None = None
    fastest_response_hours: float | None = None
    slowest_response_hours: float | None = None
    typical_response_hours: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    typical_response_days: list[int] = Field(default_factory=list, sa_column=Column(JSON))
    deviation: str = Field(default="normal")

    last_response_at: datetime | None = Field(default=None, sa_column=utc_column())
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
