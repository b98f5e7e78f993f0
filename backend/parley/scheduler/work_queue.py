"""Human work-item queue: listing and resolving escalations and link suggestions."""

import logging
import uuid
from datetime import datetime

from sqlmodel import Session, select

from parley.core.errors import InvalidRequestError, WorkItemNotFoundError
from parley.models.enums import WorkItemStatus, WorkItemType
from parley.models.types import utcnow
from parley.models.work_items import HumanWorkItem
from parley.scheduler.confidence_linker import ConfidenceLinker

logger = logging.getLogger(__name__)

_PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def list_work_items(
    session: Session,
    status: WorkItemStatus | None = WorkItemStatus.OPEN,
    user_id: str | None = None,
    request_id: uuid.UUID | None = None,
    limit: int = 100,
) -> list[HumanWorkItem]:
    """Open items first by priority, then by due date."""
    statement = select(HumanWorkItem)
    if status is not None:
        statement = statement.where(HumanWorkItem.status == status.value)
    if user_id is not None:
        statement = statement.where(HumanWorkItem.user_id == user_id)
    if request_id is not None:
        statement = statement.where(HumanWorkItem.request_id == request_id)
    items = list(session.exec(statement.order_by(HumanWorkItem.created_at).limit(limit)).all())
    return sorted(items, key=lambda i: (_PRIORITY_ORDER.get(i.priority, 9), i.due_at or i.created_at))


def resolve_work_item(
    session: Session,
    item_id: uuid.UUID,
    *,
    resolved_by: str,
    resolution: str,
    accept_link: bool = False,
    linker: ConfidenceLinker | None = None,
    now: datetime | None = None,
) -> HumanWorkItem:
    now = now or utcnow()
    item = session.get(HumanWorkItem, item_id)
    if item is None:
        raise WorkItemNotFoundError(f"Work item {item_id} not found")
    if item.status != WorkItemStatus.OPEN.value:
        raise InvalidRequestError(f"Work item {item_id} is already {item.status}")

    if accept_link:
        if item.item_type != WorkItemType.LINK_SUGGESTION.value or linker is None:
            raise InvalidRequestError("Only link suggestions can be accepted")
        linker.accept_suggestion(session, item, accepted_by=resolved_by, now=now)

    # A link suggestion resolved without accepting it is a dismissal
    dismissed = item.item_type == WorkItemType.LINK_SUGGESTION.value and not accept_link
    item.status = (WorkItemStatus.DISMISSED if dismissed else WorkItemStatus.RESOLVED).value
    item.resolved_at = now
    item.resolved_by = resolved_by
    item.resolution = resolution
    session.add(item)
    session.flush()
    logger.info("Work item resolved", extra={"work_item_id": str(item_id), "status": item.status})
    return item
