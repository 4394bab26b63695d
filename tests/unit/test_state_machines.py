"""Unit tests for the instance, signup, squad and quest state machines."""

from __future__ import annotations

import pytest

from questline.errors import InvalidTransition, SquadLocked
from questline.lifecycle.states import (
    INSTANCE_TRANSITIONS,
    QUEST_TRANSITIONS,
    REVIEW_TRANSITIONS,
    validate_quest_transition,
    validate_review_transition,
)
from questline.lifecycle.states import validate_transition as validate_instance
from questline.signups.states import VALID_TRANSITIONS as SIGNUP_TRANSITIONS
from questline.signups.states import validate_transition as validate_signup
from questline.squads.states import VALID_TRANSITIONS as SQUAD_TRANSITIONS
from questline.squads.states import ensure_roster_mutable
from questline.squads.states import validate_transition as validate_squad


class TestInstanceStateMachine:
    """Instance status transitions."""

    def test_all_states_defined(self):
        assert set(INSTANCE_TRANSITIONS) == {
            "draft", "recruiting", "locked", "live", "paused", "completed", "cancelled", "archived",
        }

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            ("draft", "recruiting"),
            ("recruiting", "locked"),
            ("locked", "recruiting"),
            ("locked", "live"),
            ("live", "completed"),
            ("completed", "archived"),
            ("cancelled", "archived"),
            ("paused", "live"),
        ],
    )
    def test_valid_transitions(self, current, target):
        validate_instance(current, target)  # Should not raise

    def test_archived_is_terminal(self):
        """archived has no outgoing transitions."""
        assert INSTANCE_TRANSITIONS["archived"] == []

    def test_skipping_lock_rejected(self):
        """recruiting -> live skips the lock."""
        with pytest.raises(InvalidTransition, match="Invalid transition"):
            validate_instance("recruiting", "live")

    def test_completed_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransition):
            validate_instance("completed", "cancelled")

    def test_every_non_terminal_state_can_cancel(self):
        for state in ("draft", "recruiting", "locked", "live", "paused"):
            assert "cancelled" in INSTANCE_TRANSITIONS[state]


class TestInvalidTransitionError:
    """Message and attributes of InvalidTransition."""

    def test_message_lists_valid_targets(self):
        with pytest.raises(InvalidTransition) as exc:
            validate_instance("draft", "live")
        assert str(exc.value).startswith("Invalid transition: instance draft -> live.")
        assert exc.value.allowed == ["recruiting", "cancelled"]

    def test_reason_replaces_valid_list(self):
        err = InvalidTransition("instance", "locked", "live", reason="Squads are not locked yet.")
        assert str(err) == "Invalid transition: instance locked -> live. Squads are not locked yet."

    def test_is_value_error_with_conflict_status(self):
        err = InvalidTransition("squad", "draft", "confirmed", [])
        assert isinstance(err, ValueError)
        assert err.status_code == 409
        assert err.code == "invalid_transition"


class TestSignupStateMachine:
    """Signup status transitions."""

    def test_standby_promotes_to_confirmed(self):
        validate_signup("standby", "confirmed")

    def test_dropped_row_can_be_reused(self):
        """A dropped signup re-enters as standby on a new request."""
        assert "standby" in SIGNUP_TRANSITIONS["dropped"]

    @pytest.mark.parametrize("state", ["no_show", "completed"])
    def test_terminal_states(self, state):
        assert SIGNUP_TRANSITIONS[state] == []

    def test_pending_cannot_complete(self):
        with pytest.raises(InvalidTransition, match="signup pending -> completed"):
            validate_signup("pending", "completed")


class TestSquadStateMachine:
    """Squad warm-up transitions."""

    def test_happy_path(self):
        for current, target in [
            ("draft", "warming_up"),
            ("warming_up", "ready_for_review"),
            ("ready_for_review", "confirmed"),
            ("confirmed", "active"),
            ("active", "completed"),
        ]:
            validate_squad(current, target)

    def test_ready_can_fall_back_to_warming_up(self):
        assert "warming_up" in SQUAD_TRANSITIONS["ready_for_review"]

    def test_draft_cannot_be_confirmed(self):
        with pytest.raises(InvalidTransition):
            validate_squad("draft", "confirmed")

    @pytest.mark.parametrize("state", ["confirmed", "active", "completed", "cancelled"])
    def test_locked_rosters(self, state):
        with pytest.raises(SquadLocked):
            ensure_roster_mutable(state, 7)

    @pytest.mark.parametrize("state", ["draft", "warming_up", "ready_for_review"])
    def test_open_rosters(self, state):
        ensure_roster_mutable(state, 7)


class TestQuestStateMachines:
    """Quest status and review transitions."""

    def test_draft_opens(self):
        validate_quest_transition("draft", "open")

    def test_revoked_is_terminal(self):
        assert QUEST_TRANSITIONS["revoked"] == []

    def test_review_cycle(self):
        validate_review_transition("draft", "pending_review")
        validate_review_transition("pending_review", "needs_changes")
        validate_review_transition("needs_changes", "pending_review")
        validate_review_transition("pending_review", "approved")

    def test_rejected_is_final(self):
        assert REVIEW_TRANSITIONS["rejected"] == []
        with pytest.raises(InvalidTransition, match="quest review"):
            validate_review_transition("rejected", "pending_review")
