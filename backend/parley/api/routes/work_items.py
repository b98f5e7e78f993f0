"""Human work queue API routes."""

import uuid

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlmodel import Session

from parley.core.db import get_session
from parley.models.enums import WorkItemStatus
from parley.scheduler.services import SchedulerServices, get_services
from parley.scheduler.work_queue import list_work_items, resolve_work_item

work_items_router = APIRouter(prefix="/work-items", tags=["work-items"])


class ResolveBody(BaseModel):
    resolved_by: str
    resolution: str
    accept_link: bool = False


@work_items_router.get("")
async def list_items(
    status: WorkItemStatus | None = Query(WorkItemStatus.OPEN),
    user_id: str | None = None,
    request_id: uuid.UUID | None = None,
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(get_session),
):
    items = list_work_items(session, status=status, user_id=user_id, request_id=request_id, limit=limit)
    return {"items": [i.model_dump(mode="json") for i in items], "count": len(items)}


@work_items_router.post("/{item_id}/resolve")
async def resolve_item(
    item_id: uuid.UUID,
    body: ResolveBody,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    item = resolve_work_item(
        session,
        item_id,
        resolved_by=body.resolved_by,
        resolution=body.resolution,
        accept_link=body.accept_link,
        linker=services.linker,
    )
    session.commit()
    session.refresh(item)
    return item.model_dump(mode="json")
