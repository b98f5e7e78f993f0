"""Unit tests for the scheduling request state machine."""

from datetime import datetime, timezone

import pytest
from sqlmodel import Session, select

from parley.core.db import conditional_update
from parley.core.errors import ConcurrencyConflictError, InvalidTransitionError, TerminalStateError
from parley.models.enums import ActionType, RequestStatus
from parley.models.scheduling import SchedulingAction, SchedulingRequest
from parley.scheduler.state_machine import (
    TRANSITIONS,
    apply_updates,
    can_transition,
    is_terminal,
    resume_request,
    transition,
)

S = RequestStatus
NOW = datetime(2026, 1, 2, 14, 0, tzinfo=timezone.utc)
MEETING = datetime(2026, 1, 5, 15, 30, tzinfo=timezone.utc)


def _walk(session: Session, request: SchedulingRequest, *targets: RequestStatus) -> None:
    for target in targets:
        confirmed = MEETING if target is S.CONFIRMED else None
        transition(session, request, target, reasoning=f"to {target.value}", confirmed_time=confirmed, now=NOW)


class TestTransitionTable:
    """Static checks on the allowed moves."""

    def test_terminal_states_have_no_exits(self):
        assert TRANSITIONS[S.CANCELLED] == frozenset()
        assert TRANSITIONS[S.COMPLETED] == frozenset()

    def test_every_active_state_can_pause_and_cancel(self):
        for status in S:
            if is_terminal(status) or status is S.PAUSED:
                continue
            assert can_transition(status, S.PAUSED), status
            assert can_transition(status, S.CANCELLED), status

    def test_paused_cannot_pause_again(self):
        assert not can_transition(S.PAUSED, S.PAUSED)
        assert can_transition(S.PAUSED, S.AWAITING_RESPONSE)

    def test_forward_path(self):
        assert can_transition("initiated", "proposing")
        assert can_transition("awaiting_response", "confirming")
        assert not can_transition("initiated", "confirmed")

    def test_unknown_status_rejected(self):
        with pytest.raises(InvalidTransitionError):
            can_transition("initiated", "teleported")


class TestTransition:
    """Conditional, audited status changes."""

    def test_transition_bumps_version_and_audits(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            version = request.version
            action = transition(session, request, S.PROPOSING, reasoning="slots found", now=NOW)
            session.commit()

            assert request.status == S.PROPOSING.value
            assert request.version == version + 1
            assert action.previous_status == "initiated"
            assert action.new_status == "proposing"

    def test_invalid_transition_raises_and_leaves_row(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            with pytest.raises(InvalidTransitionError):
                transition(session, request, S.CONFIRMED, reasoning="skip ahead", confirmed_time=MEETING)
            assert request.status == S.INITIATED.value

    def test_confirmed_requires_time(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            _walk(session, request, S.PROPOSING, S.AWAITING_RESPONSE, S.CONFIRMING)
            with pytest.raises(InvalidTransitionError):
                transition(session, request, S.CONFIRMED, reasoning="no time")

    def test_confirmed_time_cleared_when_leaving_confirmed_states(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            _walk(session, request, S.PROPOSING, S.AWAITING_RESPONSE, S.CONFIRMING, S.CONFIRMED)
            assert request.confirmed_time == MEETING
            _walk(session, request, S.NEGOTIATING)
            assert request.confirmed_time is None

    def test_terminal_request_rejects_everything(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            _walk(session, request, S.CANCELLED)
            with pytest.raises(TerminalStateError):
                transition(session, request, S.PROPOSING, reasoning="revive")
            with pytest.raises(TerminalStateError):
                apply_updates(session, request, {"context": "late edit"})

    def test_stale_version_loses(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            # another writer got there first
            conditional_update(session, SchedulingRequest, [SchedulingRequest.id == request_id], {"version": request.version + 1})
            with pytest.raises(ConcurrencyConflictError):
                transition(session, request, S.PROPOSING, reasoning="late")

    def test_status_cannot_change_through_apply_updates(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            with pytest.raises(InvalidTransitionError):
                apply_updates(session, request, {"status": "confirmed"})

    def test_audit_order_follows_transitions(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            _walk(session, request, S.PROPOSING, S.AWAITING_RESPONSE)
            session.commit()
            actions = session.exec(
                select(SchedulingAction)
                .where(SchedulingAction.request_id == request_id)
                .order_by(SchedulingAction.id)
            ).all()
            assert [a.action_type for a in actions][0] == ActionType.CREATED.value
            assert [a.new_status for a in actions[1:]] == ["proposing", "awaiting_response"]


class TestPauseAndResume:

    def test_resume_returns_to_paused_from_status(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            _walk(session, request, S.PROPOSING, S.AWAITING_RESPONSE, S.PAUSED)
            assert request.paused_from_status == S.AWAITING_RESPONSE.value

            resume_request(session, request, reasoning="reviewed", now=NOW)
            assert request.status == S.AWAITING_RESPONSE.value
            assert request.paused_from_status is None
            assert request.pause_reason is None

    def test_resume_restores_confirmed_time(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            _walk(session, request, S.PROPOSING, S.AWAITING_RESPONSE, S.CONFIRMING, S.CONFIRMED, S.PAUSED)
            assert request.confirmed_time is None

            resume_request(session, request, now=NOW)
            assert request.status == S.CONFIRMED.value
            assert request.confirmed_time == MEETING

    def test_resume_requires_paused(self, engine, flow):
        request_id = flow.create()
        with Session(engine) as session:
            request = session.get(SchedulingRequest, request_id)
            with pytest.raises(InvalidTransitionError):
                resume_request(session, request)
