"""Unit tests for trip lifecycle transitions (State Pattern)."""

import pytest

from taxi_dispatch.domain.entities import ensure_transition
from taxi_dispatch.domain.enums import TRIP_TRANSITIONS, TripStatus
from taxi_dispatch.domain.errors import InvalidTransition


class TestTripStateMachine:
    # ── Valid transitions ─────────────────────────────────────────

    def test_pending_to_active(self):
        ensure_transition(TripStatus.PENDING, TripStatus.ACTIVE)

    def test_pending_to_cancelled(self):
        ensure_transition(TripStatus.PENDING, TripStatus.CANCELLED)

    def test_active_to_completed(self):
        ensure_transition(TripStatus.ACTIVE, TripStatus.COMPLETED)

    def test_active_to_cancelled(self):
        ensure_transition(TripStatus.ACTIVE, TripStatus.CANCELLED)

    def test_accepts_raw_values(self):
        ensure_transition("pending", "active")

    # ── Invalid transitions ───────────────────────────────────────

    def test_pending_to_completed_fails(self):
        with pytest.raises(InvalidTransition):
            ensure_transition(TripStatus.PENDING, TripStatus.COMPLETED)

    def test_active_back_to_pending_fails(self):
        with pytest.raises(InvalidTransition):
            ensure_transition(TripStatus.ACTIVE, TripStatus.PENDING)

    @pytest.mark.parametrize("terminal", [TripStatus.COMPLETED, TripStatus.CANCELLED])
    def test_terminal_states_are_final(self, terminal):
        assert TRIP_TRANSITIONS[terminal] == set()
        for target in TripStatus:
            with pytest.raises(InvalidTransition):
                ensure_transition(terminal, target)

    def test_error_names_both_states(self):
        with pytest.raises(InvalidTransition, match="completed to active"):
            ensure_transition(TripStatus.COMPLETED, TripStatus.ACTIVE)
