"""Capacity & signup controller.

``current_signup_count`` counts pending + confirmed signups. Every change
to it happens through a conditional UPDATE in the same transaction as the
signup row change, so concurrent requests for the last seat serialize on
the instance row: exactly one claims it, the rest fall to standby.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.models import ParticipantProof, Quest, QuestInstance, QuestSignup, QuestSquad, SquadMember
from questline.errors import (
    AlreadySignedUp,
    CheckInWindowClosed,
    InconsistentLedger,
    InstanceNotOpen,
    InvalidTransition,
    NotFound,
    ProofNotAllowed,
    QuestlineError,
)
from questline.events.service import log_event, queue_notification
from questline.events.types import ActorType, EventType
from questline.lifecycle.states import SIGNUP_OPEN_STATUSES, InstanceStatus
from questline.progression.consumer import apply_progression
from questline.signups.completion import MemberOutcome, select_completers
from questline.signups.states import (
    ACTIVE_STATUSES,
    COUNTED_STATUSES,
    INSTANCE_CANCELLED_REASON,
    ProofStatus,
    SignupStatus,
    validate_transition,
)
from questline.squads.formation import place_displaced_member, release_member
from questline.squads.states import MemberStatus, SquadStatus

logger = logging.getLogger(__name__)

PROOF_TYPES = {"photo", "video", "text", "link"}


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_instance(db: AsyncSession, instance_id: int, *, for_update: bool = False) -> QuestInstance:
    query = select(QuestInstance).where(QuestInstance.id == instance_id)
    if for_update:
        query = query.with_for_update()
    instance = (await db.execute(query)).scalar_one_or_none()
    if instance is None:
        raise NotFound(f"Instance {instance_id} not found")
    return instance


async def get_signup(db: AsyncSession, signup_id: int, *, for_update: bool = False) -> QuestSignup:
    query = select(QuestSignup).where(QuestSignup.id == signup_id)
    if for_update:
        query = query.with_for_update()
    signup = (await db.execute(query)).scalar_one_or_none()
    if signup is None:
        raise NotFound(f"Signup {signup_id} not found")
    return signup


async def list_signups(db: AsyncSession, instance_id: int, status: str | None = None) -> list[QuestSignup]:
    query = select(QuestSignup).where(QuestSignup.instance_id == instance_id)
    if status is not None:
        query = query.where(QuestSignup.status == status)
    result = await db.execute(query.order_by(QuestSignup.signed_up_at, QuestSignup.id))
    return list(result.scalars().all())


async def count_counted_signups(db: AsyncSession, instance_id: int) -> int:
    """Source-of-truth count behind ``current_signup_count``."""
    return (
        await db.execute(
            select(func.count())
            .select_from(QuestSignup)
            .where(QuestSignup.instance_id == instance_id, QuestSignup.status.in_(COUNTED_STATUSES))
        )
    ).scalar_one()


# ---------------------------------------------------------------------------
# Seat accounting
# ---------------------------------------------------------------------------


async def _claim_seat(db: AsyncSession, instance: QuestInstance, allowed_statuses: frozenset[str]) -> bool:
    """Atomically take one seat if capacity allows."""
    result = await db.execute(
        update(QuestInstance)
        .where(
            QuestInstance.id == instance.id,
            QuestInstance.current_signup_count < QuestInstance.capacity,
            QuestInstance.status.in_(allowed_statuses),
        )
        .values(current_signup_count=QuestInstance.current_signup_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(instance)
    return result.rowcount == 1


async def _release_seat(db: AsyncSession, instance: QuestInstance) -> None:
    result = await db.execute(
        update(QuestInstance)
        .where(QuestInstance.id == instance.id, QuestInstance.current_signup_count > 0)
        .values(current_signup_count=QuestInstance.current_signup_count - 1)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(instance)
    if result.rowcount != 1:
        # The whole operation rolls back; the reconciliation sweep freezes the instance.
        logger.error("Seat counter for instance %d would go negative", instance.id)
        raise InconsistentLedger(f"Signup counter for instance {instance.id} is inconsistent")


def _ensure_ledger_ok(instance: QuestInstance) -> None:
    if instance.ledger_frozen:
        raise InconsistentLedger(f"Signup counter for instance {instance.id} is frozen pending reconciliation")


# ---------------------------------------------------------------------------
# Signup requests
# ---------------------------------------------------------------------------


async def request_signup(
    db: AsyncSession,
    instance_id: int,
    user_id: int,
    referred_by_user_id: int | None = None,
    *,
    redis: object = None,
) -> QuestSignup:
    """Claim a seat on an instance.

    Confirmed (or pending when the quest requires approval) while seats
    remain on a recruiting instance, otherwise standby. Locked instances
    admit through the standby queue only: the signup joins it, and any
    free seats are then filled in FIFO order with squad placement.
    """
    instance = await get_instance(db, instance_id)
    if instance.status not in SIGNUP_OPEN_STATUSES:
        raise InstanceNotOpen(f"Instance {instance_id} is {instance.status}")
    _ensure_ledger_ok(instance)
    quest = await db.get(Quest, instance.quest_id)

    existing = (
        await db.execute(
            select(QuestSignup).where(QuestSignup.instance_id == instance_id, QuestSignup.user_id == user_id)
        )
    ).scalar_one_or_none()
    if existing is not None and existing.status != SignupStatus.DROPPED:
        raise AlreadySignedUp(f"User {user_id} already holds a {existing.status} signup on instance {instance_id}")

    now = datetime.now(timezone.utc)
    before = None
    if existing is None:
        signup = QuestSignup(
            instance_id=instance_id,
            user_id=user_id,
            status=SignupStatus.STANDBY.value,
            signed_up_at=now,
            referred_by_user_id=referred_by_user_id,
        )
        db.add(signup)
        try:
            await db.flush()
        except IntegrityError as e:
            # A concurrent request for the same user won the unique constraint.
            raise AlreadySignedUp(f"User {user_id} already signed up for instance {instance_id}") from e
    else:
        signup = existing
        before = {"status": signup.status}
        validate_transition(signup.status, SignupStatus.STANDBY.value)
        signup.status = SignupStatus.STANDBY.value
        signup.signed_up_at = now
        signup.dropped_at = None
        signup.cancel_reason = None
        signup.checked_in_at = None
        signup.proof_submitted_at = None
        if referred_by_user_id is not None:
            signup.referred_by_user_id = referred_by_user_id
        await db.flush()

    admitted = await _claim_seat(db, instance, frozenset({InstanceStatus.RECRUITING.value}))
    if admitted:
        signup.status = (
            SignupStatus.PENDING.value if quest and quest.requires_approval else SignupStatus.CONFIRMED.value
        )
        await db.flush()

    await log_event(
        db,
        EventType.SIGNUP,
        actor_type=ActorType.USER,
        actor_id=user_id,
        instance_id=instance_id,
        target_user_id=user_id,
        before_state=before,
        after_state={"status": signup.status},
        payload={"admitted": admitted, "signup_count": instance.current_signup_count},
    )
    if not admitted and instance.status == InstanceStatus.LOCKED:
        await promote_from_standby(db, redis, instance)
    logger.info("User %d signup on instance %d -> %s", user_id, instance_id, signup.status)
    return signup


async def approve_signup(db: AsyncSession, redis: object, signup_id: int, operator_id: int) -> QuestSignup:
    """Operator approval: pending -> confirmed (seat already counted)."""
    signup = await get_signup(db, signup_id, for_update=True)
    validate_transition(signup.status, SignupStatus.CONFIRMED.value)
    if signup.status != SignupStatus.PENDING:
        raise InvalidTransition("signup", signup.status, SignupStatus.CONFIRMED.value, [])

    signup.status = SignupStatus.CONFIRMED.value
    await db.flush()
    await log_event(
        db,
        EventType.SIGNUP_APPROVED,
        actor_type=ActorType.ADMIN,
        actor_id=operator_id,
        instance_id=signup.instance_id,
        target_user_id=signup.user_id,
        before_state={"status": SignupStatus.PENDING.value},
        after_state={"status": signup.status},
    )
    await queue_notification(
        db, redis, signup.user_id, "signup_approved",
        "You're in!", "Your signup was approved.",
        instance_id=signup.instance_id,
    )
    return signup


async def cancel_signup(
    db: AsyncSession,
    redis: object,
    signup_id: int,
    reason: str | None = None,
    actor_id: int | None = None,
) -> list[QuestSignup]:
    """Drop a signup and promote from standby. Returns the promoted signups."""
    signup = await get_signup(db, signup_id, for_update=True)
    previous = signup.status
    validate_transition(previous, SignupStatus.DROPPED.value)

    instance = await get_instance(db, signup.instance_id)
    if previous in COUNTED_STATUSES:
        _ensure_ledger_ok(instance)

    signup.status = SignupStatus.DROPPED.value
    signup.dropped_at = datetime.now(timezone.utc)
    signup.cancel_reason = reason
    await db.flush()

    event = await log_event(
        db,
        EventType.SIGNUP_CANCELLED,
        actor_type=ActorType.ADMIN if actor_id and actor_id != signup.user_id else ActorType.USER,
        actor_id=actor_id if actor_id is not None else signup.user_id,
        instance_id=instance.id,
        target_user_id=signup.user_id,
        before_state={"status": previous},
        after_state={"status": signup.status},
        payload={"reason": reason},
    )
    await release_member(db, signup, "signup_cancelled")

    promoted: list[QuestSignup] = []
    if previous in COUNTED_STATUSES:
        await _release_seat(db, instance)
        promoted = await promote_from_standby(db, redis, instance)

    await apply_progression(db, redis, event)
    return promoted


async def drop_all_signups(db: AsyncSession, instance: QuestInstance, actor_id: int | None = None) -> list[int]:
    """Drop every pending, confirmed and standby signup of a cancelled Instance.

    Seats are released one by one so the counter ends at zero. No standby
    promotion and no progression penalty. Returns the affected user ids.
    """
    now = datetime.now(timezone.utc)
    dropped: list[int] = []
    for signup in await list_signups(db, instance.id):
        if signup.status not in ACTIVE_STATUSES:
            continue
        previous = signup.status
        signup.status = SignupStatus.DROPPED.value
        signup.dropped_at = now
        signup.cancel_reason = INSTANCE_CANCELLED_REASON
        await db.flush()
        if previous in COUNTED_STATUSES:
            await _release_seat(db, instance)
        await log_event(
            db,
            EventType.SIGNUP_CANCELLED,
            actor_type=ActorType.ADMIN if actor_id is not None else ActorType.SYSTEM,
            actor_id=actor_id,
            instance_id=instance.id,
            target_user_id=signup.user_id,
            before_state={"status": previous},
            after_state={"status": signup.status},
            payload={"reason": INSTANCE_CANCELLED_REASON},
        )
        dropped.append(signup.user_id)
    return dropped


async def promote_from_standby(db: AsyncSession, redis: object, instance: QuestInstance) -> list[QuestSignup]:
    """Fill free seats from standby, strictly FIFO by signed_up_at."""
    if instance.status not in SIGNUP_OPEN_STATUSES:
        return []

    quest = await db.get(Quest, instance.quest_id)
    promoted: list[QuestSignup] = []
    while True:
        # Take the seat first; the standby row is only chosen once it is ours.
        if not await _claim_seat(db, instance, SIGNUP_OPEN_STATUSES):
            break
        candidate = (
            await db.execute(
                select(QuestSignup)
                .where(
                    QuestSignup.instance_id == instance.id,
                    QuestSignup.status == SignupStatus.STANDBY.value,
                )
                .order_by(QuestSignup.signed_up_at, QuestSignup.id)
                .limit(1)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if candidate is None:
            await _release_seat(db, instance)
            break

        candidate.status = SignupStatus.CONFIRMED.value
        await db.flush()
        promoted.append(candidate)

        await log_event(
            db,
            EventType.SIGNUP_PROMOTED,
            instance_id=instance.id,
            target_user_id=candidate.user_id,
            before_state={"status": SignupStatus.STANDBY.value},
            after_state={"status": candidate.status},
        )
        await queue_notification(
            db, redis, candidate.user_id, "standby_promoted",
            "A spot opened up!", "You've been moved from the waitlist to confirmed.",
            instance_id=instance.id,
        )
        if instance.status == InstanceStatus.LOCKED and quest is not None and not quest.is_solo:
            await place_displaced_member(db, instance, candidate)

    return promoted


# ---------------------------------------------------------------------------
# Check-in & proofs
# ---------------------------------------------------------------------------


async def check_in(db: AsyncSession, signup_id: int, now: datetime | None = None) -> QuestSignup:
    """Record attendance. Only valid inside the instance's check-in window."""
    now = now or datetime.now(timezone.utc)
    signup = await get_signup(db, signup_id, for_update=True)
    if signup.status != SignupStatus.CONFIRMED:
        raise InvalidTransition("signup", signup.status, "checked_in", [])
    if signup.checked_in_at is not None:
        return signup

    instance = await get_instance(db, signup.instance_id)
    if instance.status not in (InstanceStatus.LOCKED, InstanceStatus.LIVE):
        raise CheckInWindowClosed(f"Instance {instance.id} is {instance.status}")
    if not instance.check_in_opens_at <= now <= instance.check_in_closes_at:
        raise CheckInWindowClosed(
            f"Check-in for instance {instance.id} is open "
            f"{instance.check_in_opens_at.isoformat()} - {instance.check_in_closes_at.isoformat()}"
        )

    signup.checked_in_at = now
    await db.flush()
    await log_event(
        db,
        EventType.CHECK_IN,
        actor_type=ActorType.USER,
        actor_id=signup.user_id,
        instance_id=instance.id,
        target_user_id=signup.user_id,
        payload={"checked_in_at": now.isoformat()},
    )
    return signup


async def submit_proof(
    db: AsyncSession,
    signup_id: int,
    proof_type: str,
    file_url: str | None = None,
    text: str | None = None,
) -> ParticipantProof:
    """Attach a proof (pending review). Requires a prior check-in."""
    signup = await get_signup(db, signup_id, for_update=True)
    if signup.status != SignupStatus.CONFIRMED or signup.checked_in_at is None:
        raise ProofNotAllowed(f"Signup {signup_id} must be checked in before submitting proof")
    if proof_type not in PROOF_TYPES:
        raise QuestlineError(f"Unknown proof type: {proof_type}")
    if not file_url and not text:
        raise QuestlineError("A proof needs a file reference or text")

    now = datetime.now(timezone.utc)
    proof = ParticipantProof(
        signup_id=signup.id,
        proof_type=proof_type,
        file_url=file_url,
        text=text,
        status=ProofStatus.PENDING.value,
        created_at=now,
    )
    db.add(proof)
    signup.proof_submitted_at = now
    await db.flush()

    await log_event(
        db,
        EventType.PROOF_SUBMITTED,
        actor_type=ActorType.USER,
        actor_id=signup.user_id,
        instance_id=signup.instance_id,
        target_user_id=signup.user_id,
        payload={"proof_id": proof.id, "proof_type": proof_type},
    )
    return proof


async def review_proof(
    db: AsyncSession,
    redis: object,
    proof_id: int,
    approved: bool,
    reviewer_id: int,
    notes: str | None = None,
) -> ParticipantProof:
    """Approve or reject a pending proof.

    Approval on a live or completed instance re-runs completion for the
    signup's squad.
    """
    proof = (
        await db.execute(select(ParticipantProof).where(ParticipantProof.id == proof_id).with_for_update())
    ).scalar_one_or_none()
    if proof is None:
        raise NotFound(f"Proof {proof_id} not found")
    if proof.status != ProofStatus.PENDING:
        target = ProofStatus.APPROVED if approved else ProofStatus.REJECTED
        raise InvalidTransition("proof", proof.status, target.value, [])

    proof.status = (ProofStatus.APPROVED if approved else ProofStatus.REJECTED).value
    proof.reviewed_by = reviewer_id
    proof.reviewed_at = datetime.now(timezone.utc)
    proof.review_notes = notes
    await db.flush()

    signup = await get_signup(db, proof.signup_id)
    await log_event(
        db,
        EventType.PROOF_APPROVED if approved else EventType.PROOF_REJECTED,
        actor_type=ActorType.ADMIN,
        actor_id=reviewer_id,
        instance_id=signup.instance_id,
        target_user_id=signup.user_id,
        payload={"proof_id": proof.id, "notes": notes},
    )

    if approved:
        instance = await get_instance(db, signup.instance_id)
        if instance.status in (InstanceStatus.LIVE, InstanceStatus.COMPLETED):
            await evaluate_completion(db, redis, instance, only_signup_id=signup.id)
    return proof


# ---------------------------------------------------------------------------
# Completion & no-shows
# ---------------------------------------------------------------------------


async def _approved_proof_signups(db: AsyncSession, signup_ids: list[int]) -> set[int]:
    if not signup_ids:
        return set()
    result = await db.execute(
        select(ParticipantProof.signup_id).where(
            ParticipantProof.signup_id.in_(signup_ids),
            ParticipantProof.status == ProofStatus.APPROVED.value,
        )
    )
    return set(result.scalars())


async def _completion_groups(db: AsyncSession, instance: QuestInstance) -> list[tuple[QuestSquad | None, list[QuestSignup]]]:
    """Signups grouped by squad; unsquadded signups are each their own group."""
    signups = {s.id: s for s in await list_signups(db, instance.id)}
    groups: list[tuple[QuestSquad | None, list[QuestSignup]]] = []
    grouped: set[int] = set()

    squads = (
        await db.execute(
            select(QuestSquad)
            .where(QuestSquad.instance_id == instance.id, QuestSquad.status != SquadStatus.CANCELLED.value)
            .order_by(QuestSquad.id)
        )
    ).scalars().all()
    for squad in squads:
        member_signup_ids = (
            await db.execute(
                select(SquadMember.signup_id).where(
                    SquadMember.squad_id == squad.id,
                    SquadMember.status == MemberStatus.ACTIVE.value,
                    SquadMember.signup_id.is_not(None),
                )
            )
        ).scalars().all()
        members = [signups[sid] for sid in member_signup_ids if sid in signups]
        grouped.update(s.id for s in members)
        groups.append((squad, members))

    for signup in signups.values():
        if signup.id not in grouped:
            groups.append((None, [signup]))
    return groups


async def evaluate_completion(
    db: AsyncSession,
    redis: object,
    instance: QuestInstance,
    only_signup_id: int | None = None,
) -> list[QuestSignup]:
    """Apply the quest's completion rule per squad. Returns newly completed signups.

    With ``only_signup_id`` only the group containing that signup is
    evaluated.
    """
    quest = await db.get(Quest, instance.quest_id)
    completed: list[QuestSignup] = []

    for squad, members in await _completion_groups(db, instance):
        if only_signup_id is not None and only_signup_id not in {m.id for m in members}:
            continue
        rule = quest.completion_rule if squad is not None else "per_member"
        proofs = await _approved_proof_signups(db, [m.id for m in members])
        outcomes = [MemberOutcome(m.id, m.status, m.id in proofs) for m in members]
        to_complete = set(select_completers(rule, outcomes, quest.requires_proof))
        for signup in members:
            if signup.id in to_complete:
                await mark_completed(db, redis, signup, quest, instance)
                completed.append(signup)

    return completed


async def mark_completed(
    db: AsyncSession,
    redis: object,
    signup: QuestSignup,
    quest: Quest,
    instance: QuestInstance,
) -> QuestSignup:
    """confirmed -> completed, then hand the event to the progression engine."""
    validate_transition(signup.status, SignupStatus.COMPLETED.value)
    signup.status = SignupStatus.COMPLETED.value
    signup.completed_at = datetime.now(timezone.utc)
    await db.flush()
    await _release_seat(db, instance)

    event = await log_event(
        db,
        EventType.SIGNUP_COMPLETED,
        instance_id=instance.id,
        target_user_id=signup.user_id,
        before_state={"status": SignupStatus.CONFIRMED.value},
        after_state={"status": signup.status},
        payload={"base_xp": quest.base_xp, "quest_title": quest.title},
    )
    await apply_progression(db, redis, event)
    return signup


async def mark_no_show(db: AsyncSession, redis: object, signup: QuestSignup, instance: QuestInstance) -> QuestSignup:
    validate_transition(signup.status, SignupStatus.NO_SHOW.value)
    signup.status = SignupStatus.NO_SHOW.value
    signup.no_show_at = datetime.now(timezone.utc)
    await db.flush()
    await _release_seat(db, instance)
    await release_member(db, signup, "no_show")

    event = await log_event(
        db,
        EventType.NO_SHOW_MARKED,
        instance_id=instance.id,
        target_user_id=signup.user_id,
        before_state={"status": SignupStatus.CONFIRMED.value},
        after_state={"status": signup.status},
    )
    await apply_progression(db, redis, event)
    return signup


async def mark_no_shows(db: AsyncSession, redis: object, now: datetime | None = None) -> int:
    """Sweep: confirmed signups without check-in once the window has closed."""
    now = now or datetime.now(timezone.utc)
    rows = (
        await db.execute(
            select(QuestSignup, QuestInstance)
            .join(QuestInstance, QuestInstance.id == QuestSignup.instance_id)
            .where(
                QuestInstance.status.in_([InstanceStatus.LOCKED.value, InstanceStatus.LIVE.value]),
                QuestInstance.check_in_closes_at < now,
                QuestSignup.status == SignupStatus.CONFIRMED.value,
                QuestSignup.checked_in_at.is_(None),
            )
            .order_by(QuestSignup.id)
        )
    ).all()

    for signup, instance in rows:
        await mark_no_show(db, redis, signup, instance)

    if rows:
        logger.info("Marked %d no-shows", len(rows))
    return len(rows)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def reconcile_signup_counts(db: AsyncSession, instance_id: int | None = None) -> list[dict]:
    """Compare each instance's counter with its signup rows.

    Drift freezes the instance and is reported; the counter is never
    overwritten here.
    """
    query = select(QuestInstance).where(QuestInstance.status != InstanceStatus.ARCHIVED.value)
    if instance_id is not None:
        query = select(QuestInstance).where(QuestInstance.id == instance_id)

    drifts: list[dict] = []
    for instance in (await db.execute(query)).scalars().all():
        actual = await count_counted_signups(db, instance.id)
        if actual == instance.current_signup_count:
            continue
        report = {
            "instance_id": instance.id,
            "current_signup_count": instance.current_signup_count,
            "actual": actual,
        }
        logger.error(
            "Signup counter drift on instance %d: counter=%d actual=%d",
            instance.id, instance.current_signup_count, actual,
        )
        instance.ledger_frozen = True
        await log_event(
            db,
            EventType.LEDGER_DRIFT_DETECTED,
            instance_id=instance.id,
            payload={"aggregate": "current_signup_count", **report},
        )
        drifts.append(report)

    await db.flush()
    return drifts


async def repair_signup_count(db: AsyncSession, instance_id: int, operator_id: int) -> QuestInstance:
    """Operator action: reset the counter from signup rows and unfreeze."""
    instance = await get_instance(db, instance_id, for_update=True)
    actual = await count_counted_signups(db, instance_id)
    before = {"current_signup_count": instance.current_signup_count, "ledger_frozen": instance.ledger_frozen}
    instance.current_signup_count = actual
    instance.ledger_frozen = False
    await db.flush()
    await log_event(
        db,
        EventType.ADMIN_OVERRIDE,
        actor_type=ActorType.ADMIN,
        actor_id=operator_id,
        instance_id=instance_id,
        before_state=before,
        after_state={"current_signup_count": actual, "ledger_frozen": False},
        payload={"action": "repair_signup_count"},
    )
    return instance
