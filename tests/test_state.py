"""Tests for Ingress lifecycle phases."""

import pytest

from vipingress.errors import InvariantViolation
from vipingress.state import IngressPhase, StateTracker, can_transition, transition

P = IngressPhase


class TestTransitions:

    @pytest.mark.parametrize("current,target", [
        (P.UNVALIDATED, P.RECONCILING),
        (P.UNVALIDATED, P.REJECTED),
        (P.RECONCILING, P.PENDING),
        (P.RECONCILING, P.REJECTED),
        (P.PENDING, P.READY),
        (P.READY, P.CLEANING_UP),
        (P.CLEANING_UP, P.GONE),
        (P.GONE, P.UNVALIDATED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)
        assert transition(current, target) == target

    @pytest.mark.parametrize("current,target", [
        (P.UNVALIDATED, P.READY),
        (P.REJECTED, P.READY),
        (P.READY, P.PENDING),
        (P.CLEANING_UP, P.READY),
    ])
    def test_refused(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvariantViolation):
            transition(current, target)


class TestStateTracker:

    def test_unknown_key_is_unvalidated(self):
        assert StateTracker().get("default/x").phase == P.UNVALIDATED

    def test_advance_keeps_service_name_and_generation(self):
        tracker = StateTracker()
        tracker.advance("default/x", P.RECONCILING, generation=3, service_name="svc:x")
        state = tracker.advance("default/x", P.PENDING, message="waiting")

        assert state.phase == P.PENDING
        assert state.generation == 3
        assert state.service_name == "svc:x"
        assert state.message == "waiting"
        assert state.updated_at.tzinfo is not None

    def test_illegal_advance_leaves_state(self):
        tracker = StateTracker()

        with pytest.raises(InvariantViolation):
            tracker.advance("default/x", P.READY)
        assert tracker.get("default/x").phase == P.UNVALIDATED

    def test_all_and_forget(self):
        tracker = StateTracker()
        tracker.advance("b/y", P.GONE)
        tracker.advance("a/x", P.REJECTED, message="bad")

        assert [s.key for s in tracker.all()] == ["a/x", "b/y"]
        tracker.forget("a/x")
        assert [s.key for s in tracker.all()] == ["b/y"]
