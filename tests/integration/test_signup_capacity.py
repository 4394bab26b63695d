"""Integration tests for capacity, standby promotion and counter reconciliation."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from questline.database import get_session_factory
from questline.db.models import OpsEvent, QuestInstance
from questline.errors import (
    AlreadySignedUp,
    CheckInWindowClosed,
    InconsistentLedger,
    InstanceNotOpen,
    InvalidTransition,
    ProofNotAllowed,
    QuestlineError,
)
from questline.lifecycle import service as lifecycle
from questline.signups import service as signups
from questline.signups.service import count_counted_signups
from questline.squads.formation import get_active_membership


async def _refresh(db, instance: QuestInstance) -> QuestInstance:
    await db.refresh(instance)
    return instance


class TestCapacity:
    """Seat accounting on a recruiting instance."""

    async def test_signups_beyond_capacity_go_to_standby(self, db_session, make_instance):
        instance = await make_instance(capacity=2)
        results = [await signups.request_signup(db_session, instance.id, uid) for uid in (1, 2, 3, 4)]

        assert [s.status for s in results] == ["confirmed", "confirmed", "standby", "standby"]
        await _refresh(db_session, instance)
        assert instance.current_signup_count == 2
        assert await count_counted_signups(db_session, instance.id) == 2

    async def test_duplicate_signup_rejected(self, db_session, make_instance):
        instance = await make_instance()
        await signups.request_signup(db_session, instance.id, 1)
        with pytest.raises(AlreadySignedUp):
            await signups.request_signup(db_session, instance.id, 1)

    async def test_draft_instance_rejects_signups(self, db_session, make_instance):
        instance = await make_instance(publish=False)
        with pytest.raises(InstanceNotOpen):
            await signups.request_signup(db_session, instance.id, 1)

    async def test_approval_quest_admits_pending(self, db_session, make_instance):
        """Pending signups hold a seat until approved."""
        instance = await make_instance(capacity=1, requires_approval=True)
        pending = await signups.request_signup(db_session, instance.id, 1)
        waiting = await signups.request_signup(db_session, instance.id, 2)

        assert pending.status == "pending"
        assert waiting.status == "standby"
        await _refresh(db_session, instance)
        assert instance.current_signup_count == 1

        approved = await signups.approve_signup(db_session, None, pending.id, operator_id=77)
        assert approved.status == "confirmed"
        await _refresh(db_session, instance)
        assert instance.current_signup_count == 1

    async def test_approve_requires_pending(self, db_session, make_instance):
        instance = await make_instance()
        confirmed = await signups.request_signup(db_session, instance.id, 1)
        with pytest.raises(InvalidTransition):
            await signups.approve_signup(db_session, None, confirmed.id, operator_id=77)


class TestStandbyPromotion:
    """FIFO promotion when seats free up."""

    async def test_cancel_promotes_oldest_standby(self, db_session, make_instance):
        instance = await make_instance(capacity=2)
        first = await signups.request_signup(db_session, instance.id, 1)
        await signups.request_signup(db_session, instance.id, 2)
        third = await signups.request_signup(db_session, instance.id, 3)
        fourth = await signups.request_signup(db_session, instance.id, 4)

        promoted = await signups.cancel_signup(db_session, None, first.id, reason="busy")

        assert [s.id for s in promoted] == [third.id]
        assert third.status == "confirmed"
        assert fourth.status == "standby"
        assert first.status == "dropped"
        await _refresh(db_session, instance)
        assert instance.current_signup_count == 2

    async def test_cancelling_standby_frees_no_seat(self, db_session, make_instance):
        instance = await make_instance(capacity=1)
        await signups.request_signup(db_session, instance.id, 1)
        standby = await signups.request_signup(db_session, instance.id, 2)

        promoted = await signups.cancel_signup(db_session, None, standby.id)

        assert promoted == []
        await _refresh(db_session, instance)
        assert instance.current_signup_count == 1

    async def test_resignup_reuses_dropped_row(self, db_session, make_instance):
        """A user who dropped can sign up again; the same row is reused."""
        instance = await make_instance(capacity=1)
        first = await signups.request_signup(db_session, instance.id, 1)
        await signups.cancel_signup(db_session, None, first.id)
        await signups.request_signup(db_session, instance.id, 2)

        again = await signups.request_signup(db_session, instance.id, 1)

        assert again.id == first.id
        assert again.status == "standby"
        assert again.cancel_reason is None

    async def test_locked_instance_with_free_seats_admits_through_standby(self, db_session, make_instance):
        """A late signup on a locked instance with room is promoted and placed at once."""
        instance = await make_instance(capacity=4, target_squad_size=2)
        await signups.request_signup(db_session, instance.id, 1)
        await signups.request_signup(db_session, instance.id, 2)
        await lifecycle.lock(db_session, None, instance.id)

        late = await signups.request_signup(db_session, instance.id, 3)

        assert late.status == "confirmed"
        assert (await _refresh(db_session, instance)).current_signup_count == 3
        assert await get_active_membership(db_session, instance.id, 3) is not None
        events = (
            await db_session.execute(select(OpsEvent).where(OpsEvent.event_type == "signup_promoted"))
        ).scalars().all()
        assert [e.target_user_id for e in events] == [3]

    async def test_full_locked_instance_takes_standby_only(self, db_session, make_instance):
        """Without free seats a locked instance fills only by promotion on cancel."""
        instance = await make_instance(capacity=2, target_squad_size=2)
        first = await signups.request_signup(db_session, instance.id, 1)
        await signups.request_signup(db_session, instance.id, 2)
        await lifecycle.lock(db_session, None, instance.id)

        late = await signups.request_signup(db_session, instance.id, 3)
        assert late.status == "standby"

        promoted = await signups.cancel_signup(db_session, None, first.id)
        assert [s.user_id for s in promoted] == [3]
        membership = await get_active_membership(db_session, instance.id, 3)
        assert membership is not None
        assert await get_active_membership(db_session, instance.id, 1) is None


class TestConcurrentLastSeat:
    """Two requests racing for the final seat."""

    async def test_stale_reader_lands_on_standby(self, db_session, make_instance):
        """A request that read the instance before the last seat was taken still cannot overbook."""
        instance = await make_instance(capacity=1)

        async with get_session_factory()() as other:
            stale = await signups.get_instance(other, instance.id)
            assert stale.current_signup_count == 0

            winner = await signups.request_signup(db_session, instance.id, 1)
            await db_session.commit()

            loser = await signups.request_signup(other, instance.id, 2)
            await other.commit()

        assert winner.status == "confirmed"
        assert loser.status == "standby"
        await _refresh(db_session, instance)
        assert instance.current_signup_count == 1
        assert await count_counted_signups(db_session, instance.id) == 1


class TestReconciliation:
    """Counter drift detection and operator repair."""

    async def test_drift_freezes_instance(self, db_session, make_instance):
        instance = await make_instance(capacity=5)
        await signups.request_signup(db_session, instance.id, 1)
        instance.current_signup_count = 4
        await db_session.commit()

        drifts = await signups.reconcile_signup_counts(db_session)

        assert drifts == [{"instance_id": instance.id, "current_signup_count": 4, "actual": 1}]
        assert instance.ledger_frozen is True
        events = (
            await db_session.execute(select(OpsEvent).where(OpsEvent.event_type == "ledger_drift_detected"))
        ).scalars().all()
        assert len(events) == 1
        # The counter itself is never rewritten by reconciliation.
        assert instance.current_signup_count == 4

        with pytest.raises(InconsistentLedger):
            await signups.request_signup(db_session, instance.id, 2)

    async def test_repair_resets_counter(self, db_session, make_instance):
        instance = await make_instance(capacity=5)
        await signups.request_signup(db_session, instance.id, 1)
        instance.current_signup_count = 3
        await db_session.flush()
        await signups.reconcile_signup_counts(db_session, instance.id)

        repaired = await signups.repair_signup_count(db_session, instance.id, operator_id=9)

        assert repaired.current_signup_count == 1
        assert repaired.ledger_frozen is False
        admitted = await signups.request_signup(db_session, instance.id, 2)
        assert admitted.status == "confirmed"

    async def test_consistent_counters_report_nothing(self, db_session, make_instance):
        instance = await make_instance(capacity=3)
        for uid in (1, 2, 3, 4):
            await signups.request_signup(db_session, instance.id, uid)
        assert await signups.reconcile_signup_counts(db_session) == []


class TestCheckInAndProof:
    """Check-in window and proof submission on a solo quest."""

    async def test_check_in_outside_window(self, db_session, make_instance):
        instance = await make_instance(is_solo=True, start_in=timedelta(hours=6))
        signup = await signups.request_signup(db_session, instance.id, 1)
        await lifecycle.lock(db_session, None, instance.id)

        with pytest.raises(CheckInWindowClosed):
            await signups.check_in(db_session, signup.id)

    async def test_check_in_requires_locked_instance(self, db_session, make_instance):
        instance = await make_instance(is_solo=True, start_in=timedelta(minutes=30))
        signup = await signups.request_signup(db_session, instance.id, 1)
        with pytest.raises(CheckInWindowClosed):
            await signups.check_in(db_session, signup.id)

    async def test_proof_needs_check_in(self, db_session, make_instance):
        instance = await make_instance(is_solo=True, requires_proof=True, start_in=timedelta(minutes=30))
        signup = await signups.request_signup(db_session, instance.id, 1)
        await lifecycle.lock(db_session, None, instance.id)

        with pytest.raises(ProofNotAllowed):
            await signups.submit_proof(db_session, signup.id, "photo", file_url="s3://bucket/a.jpg")

        checked = await signups.check_in(db_session, signup.id)
        assert checked.checked_in_at is not None

        with pytest.raises(QuestlineError, match="Unknown proof type"):
            await signups.submit_proof(db_session, signup.id, "hologram", text="hi")
        with pytest.raises(QuestlineError, match="file reference or text"):
            await signups.submit_proof(db_session, signup.id, "photo")

        proof = await signups.submit_proof(db_session, signup.id, "photo", file_url="s3://bucket/a.jpg")
        assert proof.status == "pending"

    async def test_no_show_sweep(self, db_session, make_instance):
        """Unchecked confirmed signups become no-shows once check-in closes."""
        instance = await make_instance(is_solo=True, capacity=3, start_in=timedelta(minutes=30))
        present = await signups.request_signup(db_session, instance.id, 1)
        absent = await signups.request_signup(db_session, instance.id, 2)
        await lifecycle.lock(db_session, None, instance.id)
        await signups.check_in(db_session, present.id)

        marked = await signups.mark_no_shows(db_session, None, now=instance.check_in_closes_at + timedelta(minutes=1))

        assert marked == 1
        assert absent.status == "no_show"
        assert present.status == "confirmed"
        await _refresh(db_session, instance)
        assert instance.current_signup_count == 1
