"""Approval queue API routes."""

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlmodel import Session

from parley.core.db import get_session
from parley.models.enums import DraftStatus
from parley.scheduler.services import SchedulerServices, get_services

drafts_router = APIRouter(prefix="/drafts", tags=["drafts"])


class ApproveBody(BaseModel):
    approved_by: str
    edits: dict[str, Any] | None = Field(None, description="Overlay on the draft payload, e.g. a new subject or start")


class RejectBody(BaseModel):
    rejected_by: str
    reason: str


def _draft_out(draft) -> dict[str, Any]:
    data = draft.model_dump(mode="json")
    data["effective_payload"] = draft.effective_payload()
    return data


@drafts_router.get("")
async def list_drafts(
    status: DraftStatus | None = Query(DraftStatus.PENDING),
    request_id: uuid.UUID | None = None,
    limit: int = Query(100, ge=1, le=500),
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    drafts = services.drafts.list_drafts(session, status=status, request_id=request_id, limit=limit)
    return {"drafts": [_draft_out(d) for d in drafts], "count": len(drafts)}


@drafts_router.get("/{draft_id}")
async def get_draft(
    draft_id: uuid.UUID,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    return _draft_out(services.drafts.get_draft(session, draft_id))


@drafts_router.post("/{draft_id}/approve")
async def approve_draft(
    draft_id: uuid.UUID,
    body: ApproveBody,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    """Approve a pending draft. Execution happens on the next execute-drafts run."""
    draft = services.drafts.approve(session, draft_id, approved_by=body.approved_by, edits=body.edits)
    session.commit()
    session.refresh(draft)
    return _draft_out(draft)


@drafts_router.post("/{draft_id}/reject")
async def reject_draft(
    draft_id: uuid.UUID,
    body: RejectBody,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    draft = services.drafts.reject(session, draft_id, reason=body.reason, rejected_by=body.rejected_by)
    session.commit()
    session.refresh(draft)
    return _draft_out(draft)


@drafts_router.post("/{draft_id}/retry")
async def retry_draft(
    draft_id: uuid.UUID,
    body: ApproveBody,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    draft = services.drafts.retry_draft(session, draft_id, approved_by=body.approved_by, edits=body.edits)
    session.commit()
    session.refresh(draft)
    return _draft_out(draft)
