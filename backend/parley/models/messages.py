"""Database model for inbound replies waiting to be interpreted."""

import uuid
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel, Column, JSON, String

from parley.models.enums import MessageStatus
from parley.models.types import utc_column, utcnow


class InboundMessage(SQLModel, table=True):
    """A reply fetched from the mailbox. The process-responses job claims
    rows by moving them from pending to processing."""

    __tablename__ = "inbound_messages"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_message_id", name="uq_inbound_messages_user_message"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: str = Field(index=True)
    provider_message_id: str
    thread_id: str | None = Field(default=None, index=True)

    from_email: str
    from_name: str | None = None
    to_emails: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    subject: str | None = None
    body: str
    received_at: datetime = Field(sa_column=utc_column(nullable=False))

    request_id: uuid.UUID | None = Field(default=None, foreign_key="scheduling_requests.id", index=True)
    processing_status: str = Field(
        default=MessageStatus.PENDING.value, sa_column=Column(String, index=True, nullable=False)
    )
    processing_error: str | None = None
    outcome: str | None = None
    processed_at: datetime | None = Field(default=None, sa_column=utc_column())
    created_at: datetime = Field(default_factory=utcnow, sa_column=utc_column(nullable=False))
