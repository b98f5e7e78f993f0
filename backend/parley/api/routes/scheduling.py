"""Scheduling request API routes: create, inspect and steer a negotiation."""

import logging
import uuid
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlmodel import Session

from parley.core.db import get_session
from parley.models.enums import Actor, AttendeeSide, MeetingType, RequestStatus, Urgency
from parley.scheduler.requests import AttendeeSpec, get_request, get_request_detail
from parley.scheduler.services import SchedulerServices, get_services

logger = logging.getLogger(__name__)

scheduling_router = APIRouter(prefix="/scheduling/requests", tags=["scheduling"])


class AttendeeIn(BaseModel):
    email: str
    side: AttendeeSide = AttendeeSide.EXTERNAL
    name: str | None = None
    title: str | None = None
    is_primary_contact: bool = False
    is_organizer: bool = False


class CreateRequestBody(BaseModel):
    user_id: str
    title: str = Field(..., min_length=1)
    attendees: list[AttendeeIn] = Field(..., min_length=1)
    timezone: str | None = None
    duration_minutes: int = 30
    meeting_type: MeetingType = MeetingType.DISCOVERY
    urgency: Urgency = Urgency.MEDIUM
    context: str | None = None
    date_range_start: datetime | None = None
    date_range_end: datetime | None = None
    deal_stage: str | None = None
    contact_persona: str | None = None
    email_thread_id: str | None = None
    source_message_id: str | None = None
    propose: bool = Field(False, description="Draft the first proposal right away")


class ResumeBody(BaseModel):
    resumed_by: str
    target_status: RequestStatus | None = None
    reasoning: str | None = None


class CancelBody(BaseModel):
    reason: str
    outcome: Literal["cancelled", "declined", "no_show"] = "cancelled"


class NoShowBody(BaseModel):
    reported_by: str


def _request_out(request) -> dict[str, Any]:
    return request.model_dump(mode="json")


@scheduling_router.post("", status_code=201)
async def create_request(
    body: CreateRequestBody,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    request = services.requests.create_request(
        session,
        user_id=body.user_id,
        title=body.title,
        attendees=[AttendeeSpec(**a.model_dump()) for a in body.attendees],
        timezone=body.timezone,
        duration_minutes=body.duration_minutes,
        meeting_type=body.meeting_type,
        urgency=body.urgency,
        context=body.context,
        date_range_start=body.date_range_start,
        date_range_end=body.date_range_end,
        deal_stage=body.deal_stage,
        contact_persona=body.contact_persona,
        email_thread_id=body.email_thread_id,
        source_message_id=body.source_message_id,
    )
    session.commit()
    draft = None
    if body.propose:
        draft = await services.requests.propose_times(session, request.id)
        session.commit()
    session.refresh(request)
    logger.info("Scheduling request created via API", extra={"request_id": str(request.id)})
    return {
        "request": _request_out(request),
        "proposal_draft_id": str(draft.id) if draft else None,
    }


@scheduling_router.get("/{request_id}")
async def get_request_route(request_id: uuid.UUID, session: Session = Depends(get_session)):
    """Request with attendees, drafts and the ordered audit trail."""
    detail = get_request_detail(session, request_id)
    return {
        "request": _request_out(detail.request),
        "attendees": [a.model_dump(mode="json") for a in detail.attendees],
        "drafts": [d.model_dump(mode="json") for d in detail.drafts],
        "actions": [a.model_dump(mode="json") for a in detail.actions],
    }


@scheduling_router.post("/{request_id}/propose")
async def propose_times(
    request_id: uuid.UUID,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    draft = await services.requests.propose_times(session, request_id)
    session.commit()
    request = get_request(session, request_id)
    return {"request": _request_out(request), "draft_id": str(draft.id) if draft else None}


@scheduling_router.post("/{request_id}/resume")
async def resume_request(
    request_id: uuid.UUID,
    body: ResumeBody,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    request = services.requests.resume(
        session, request_id, resumed_by=body.resumed_by, target=body.target_status, reasoning=body.reasoning
    )
    session.commit()
    session.refresh(request)
    return _request_out(request)


@scheduling_router.post("/{request_id}/cancel")
async def cancel_request(
    request_id: uuid.UUID,
    body: CancelBody,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    request = services.requests.cancel(session, request_id, reason=body.reason, outcome=body.outcome)
    session.commit()
    session.refresh(request)
    return _request_out(request)


@scheduling_router.post("/{request_id}/no-show")
async def report_no_show(
    request_id: uuid.UUID,
    body: NoShowBody,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    request = services.requests.report_no_show(session, request_id, reported_by=body.reported_by)
    session.commit()
    session.refresh(request)
    return _request_out(request)


@scheduling_router.post("/{request_id}/undo-link")
async def undo_link(
    request_id: uuid.UUID,
    session: Session = Depends(get_session),
    services: SchedulerServices = Depends(get_services),
):
    request = get_request(session, request_id)
    services.linker.undo_link(session, request, actor=Actor.HUMAN)
    session.commit()
    session.refresh(request)
    return _request_out(request)
