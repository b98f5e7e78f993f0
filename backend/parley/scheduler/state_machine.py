"""SchedulingRequest state machine.

The status column is a closed enum and every change goes through
``transition``: the move must be in ``TRANSITIONS``, terminal requests
reject everything, and the write is a single-row conditional update on
``(id, version, status)`` so two jobs racing on one request cannot both win.
Each successful transition appends a ``SchedulingAction``.
"""

import logging
from datetime import datetime
from typing import Any

from sqlmodel import Session

from parley.core.db import conditional_update
from parley.core.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    TerminalStateError,
)
from parley.models.enums import ActionType, Actor, RequestStatus
from parley.models.scheduling import SchedulingAction, SchedulingRequest
from parley.models.types import utcnow

logger = logging.getLogger(__name__)

S = RequestStatus

TERMINAL_STATES = frozenset({S.CANCELLED, S.COMPLETED})
CONFIRMED_STATES = frozenset({S.CONFIRMED, S.REMINDER_SENT, S.COMPLETED})
ACTIVE_STATES = frozenset(set(S) - TERMINAL_STATES)

_FORWARD: dict[RequestStatus, frozenset[RequestStatus]] = {
    S.INITIATED: frozenset({S.PROPOSING}),
    S.PROPOSING: frozenset({S.AWAITING_RESPONSE}),
    S.AWAITING_RESPONSE: frozenset({S.NEGOTIATING, S.CONFIRMING}),
    S.NEGOTIATING: frozenset({S.AWAITING_RESPONSE, S.CONFIRMING}),
    S.CONFIRMING: frozenset({S.CONFIRMED, S.NEGOTIATING}),
    S.CONFIRMED: frozenset({S.REMINDER_SENT, S.COMPLETED, S.NO_SHOW, S.NEGOTIATING}),
    S.REMINDER_SENT: frozenset({S.COMPLETED, S.NO_SHOW, S.NEGOTIATING}),
    S.NO_SHOW: frozenset({S.PROPOSING}),
    # Resuming returns to wherever the request was paused from
    S.PAUSED: frozenset(ACTIVE_STATES - {S.PAUSED}),
    S.CANCELLED: frozenset(),
    S.COMPLETED: frozenset(),
}


def _build_transitions() -> dict[RequestStatus, frozenset[RequestStatus]]:
    table = {}
    for status, targets in _FORWARD.items():
        if status in TERMINAL_STATES:
            table[status] = targets
        elif status is S.PAUSED:
            table[status] = targets | {S.CANCELLED}
        else:
            table[status] = targets | {S.PAUSED, S.CANCELLED}
    return table


TRANSITIONS = _build_transitions()


def coerce_status(value: str | RequestStatus) -> RequestStatus:
    try:
        return RequestStatus(value)
    except ValueError:
        raise InvalidTransitionError(f"Unknown request status '{value}'")


def is_terminal(status: str | RequestStatus) -> bool:
    return coerce_status(status) in TERMINAL_STATES


def can_transition(current: str | RequestStatus, target: str | RequestStatus) -> bool:
    return coerce_status(target) in TRANSITIONS[coerce_status(current)]


def record_action(
    session: Session,
    request: SchedulingRequest,
    action_type: ActionType,
    *,
    actor: Actor = Actor.AUTOMATION,
    reasoning: str | None = None,
    previous_status: str | None = None,
    new_status: str | None = None,
    message_subject: str | None = None,
    message_id: str | None = None,
    draft_id=None,
    details: dict[str, Any] | None = None,
) -> SchedulingAction:
    """Append an audit row. Rows are never updated after insert."""
    action = SchedulingAction(
        request_id=request.id,
        action_type=action_type.value,
        actor=actor.value,
        previous_status=previous_status,
        new_status=new_status,
        message_subject=message_subject,
        message_id=message_id,
        draft_id=draft_id,
        reasoning=reasoning,
        details=details or {},
    )
    session.add(action)
    session.flush()
    return action


def apply_updates(session: Session, request: SchedulingRequest, values: dict[str, Any], now: datetime | None = None) -> None:
    """Optimistically update fields without changing status.

    Raises:
        TerminalStateError: the request is cancelled or completed.
        ConcurrencyConflictError: someone else updated the row first.
    """
    if is_terminal(request.status):
        raise TerminalStateError(f"Request {request.id} is {request.status}")
    if "status" in values or "confirmed_time" in values:
        raise InvalidTransitionError("status and confirmed_time change only through transition()")

    now = now or utcnow()
    updated = conditional_update(
        session,
        SchedulingRequest,
        [
            SchedulingRequest.id == request.id,
            SchedulingRequest.version == request.version,
            SchedulingRequest.status == request.status,
        ],
        {**values, "version": request.version + 1, "updated_at": now},
    )
    if not updated:
        raise ConcurrencyConflictError(f"Request {request.id} changed while updating")
    session.refresh(request)


def transition(
    session: Session,
    request: SchedulingRequest,
    target: RequestStatus,
    *,
    action_type: ActionType = ActionType.STATUS_CHANGED,
    actor: Actor = Actor.AUTOMATION,
    reasoning: str,
    confirmed_time: datetime | None = None,
    updates: dict[str, Any] | None = None,
    details: dict[str, Any] | None = None,
    draft_id=None,
    message_id: str | None = None,
    now: datetime | None = None,
) -> SchedulingAction:
    """Move ``request`` to ``target`` and audit it.

    ``confirmed_time`` is required when entering confirmed, reminder_sent or
    completed (the current value is kept if omitted) and is cleared on any
    other target. Pausing remembers the prior status and confirmed time so
    ``resume_request`` can restore them.

    Raises:
        TerminalStateError: the request is cancelled or completed.
        InvalidTransitionError: the move is not in the transition table.
        ConcurrencyConflictError: the request changed underneath us.
    """
    current = coerce_status(request.status)
    if current in TERMINAL_STATES:
        raise TerminalStateError(f"Request {request.id} is {current.value}; no further transitions allowed")
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(f"Transition {current.value} -> {target.value} is not allowed")

    now = now or utcnow()
    values: dict[str, Any] = dict(updates or {})

    if target in CONFIRMED_STATES:
        new_confirmed = confirmed_time or request.confirmed_time
        if new_confirmed is None:
            raise InvalidTransitionError(f"Entering {target.value} requires a confirmed time")
        values["confirmed_time"] = new_confirmed
    else:
        values["confirmed_time"] = None

    if target is S.PAUSED:
        values.setdefault("paused_from_status", current.value)
        values.setdefault("paused_confirmed_time", request.confirmed_time)
    elif current is S.PAUSED:
        values.setdefault("paused_from_status", None)
        values.setdefault("paused_confirmed_time", None)
        values.setdefault("pause_reason", None)
        values.setdefault("pause_details", None)

    values.update(
        status=target.value,
        version=request.version + 1,
        updated_at=now,
        last_action_at=now,
    )
    moved = conditional_update(
        session,
        SchedulingRequest,
        [
            SchedulingRequest.id == request.id,
            SchedulingRequest.version == request.version,
            SchedulingRequest.status == current.value,
        ],
        values,
    )
    if not moved:
        raise ConcurrencyConflictError(
            f"Request {request.id} changed before {current.value} -> {target.value} could apply"
        )
    session.refresh(request)

    logger.info(
        "Scheduling request transitioned",
        extra={
            "request_id": str(request.id),
            "from_status": current.value,
            "to_status": target.value,
            "actor": actor.value,
        },
    )
    return record_action(
        session,
        request,
        action_type,
        actor=actor,
        reasoning=reasoning,
        previous_status=current.value,
        new_status=target.value,
        draft_id=draft_id,
        message_id=message_id,
        details=details,
    )


def resume_request(
    session: Session,
    request: SchedulingRequest,
    *,
    actor: Actor = Actor.HUMAN,
    reasoning: str = "Resumed after human review",
    target: RequestStatus | None = None,
    now: datetime | None = None,
) -> SchedulingAction:
    """Return a paused request to the status it was paused from (or ``target``)."""
    if coerce_status(request.status) is not S.PAUSED:
        raise InvalidTransitionError(f"Request {request.id} is {request.status}, not paused")

    destination = target or (
        coerce_status(request.paused_from_status) if request.paused_from_status else S.AWAITING_RESPONSE
    )
    confirmed = request.paused_confirmed_time if destination in CONFIRMED_STATES else None
    return transition(
        session,
        request,
        destination,
        action_type=ActionType.RESUMED,
        actor=actor,
        reasoning=reasoning,
        confirmed_time=confirmed,
        updates={"next_action_type": None, "next_action_at": None},
        now=now,
    )
