"""Signup, check-in and proof endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from questline.database import get_session, unit_of_work
from questline.dependencies import get_redis_dep
from questline.lifecycle.service import maybe_auto_lock
from questline.signups import service as signups
from questline.signups.schemas import (
    CancelSignupRequest,
    CancelSignupResponse,
    CounterDriftResponse,
    OperatorRequest,
    ProofResponse,
    ReviewProofRequest,
    SignupRequest,
    SignupResponse,
    SubmitProofRequest,
)

router = APIRouter(prefix="/api/v1", tags=["Signups"])


# ── Signups ──


@router.post("/instances/{instance_id}/signups", response_model=SignupResponse, status_code=201)
async def request_signup_endpoint(
    instance_id: int,
    body: SignupRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Request a seat. Full instances return a standby signup, not an error."""
    async with unit_of_work(db):
        signup = await signups.request_signup(db, instance_id, body.user_id, body.referred_by_user_id, redis=redis)
    # Auto-lock runs in its own transaction so a formation failure never undoes the signup.
    async with unit_of_work(db):
        await maybe_auto_lock(db, redis, instance_id)
    return SignupResponse.model_validate(signup)


@router.get("/instances/{instance_id}/signups", response_model=list[SignupResponse])
async def list_signups_endpoint(
    instance_id: int,
    status: str | None = Query(None),
    db: AsyncSession = Depends(get_session),
):
    await signups.get_instance(db, instance_id)
    return [SignupResponse.model_validate(s) for s in await signups.list_signups(db, instance_id, status)]


@router.get("/signups/{signup_id}", response_model=SignupResponse)
async def get_signup_endpoint(signup_id: int, db: AsyncSession = Depends(get_session)):
    return SignupResponse.model_validate(await signups.get_signup(db, signup_id))


@router.post("/signups/{signup_id}/cancel", response_model=CancelSignupResponse)
async def cancel_signup_endpoint(
    signup_id: int,
    body: CancelSignupRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Drop a signup; freed seats go to standby in FIFO order."""
    async with unit_of_work(db):
        promoted = await signups.cancel_signup(db, redis, signup_id, body.reason, body.actor_id)
        signup = await signups.get_signup(db, signup_id)
    return CancelSignupResponse(
        signup=SignupResponse.model_validate(signup),
        promoted=[SignupResponse.model_validate(s) for s in promoted],
    )


@router.post("/signups/{signup_id}/approve", response_model=SignupResponse)
async def approve_signup_endpoint(
    signup_id: int,
    body: OperatorRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    async with unit_of_work(db):
        signup = await signups.approve_signup(db, redis, signup_id, body.operator_id)
    async with unit_of_work(db):
        await maybe_auto_lock(db, redis, signup.instance_id)
    return SignupResponse.model_validate(signup)


@router.post("/signups/{signup_id}/check-in", response_model=SignupResponse)
async def check_in_endpoint(signup_id: int, db: AsyncSession = Depends(get_session)):
    async with unit_of_work(db):
        signup = await signups.check_in(db, signup_id)
    return SignupResponse.model_validate(signup)


# ── Proofs ──


@router.post("/signups/{signup_id}/proofs", response_model=ProofResponse, status_code=201)
async def submit_proof_endpoint(
    signup_id: int,
    body: SubmitProofRequest,
    db: AsyncSession = Depends(get_session),
):
    """Attach a proof reference; it waits for review."""
    async with unit_of_work(db):
        proof = await signups.submit_proof(db, signup_id, body.proof_type, body.file_url, body.text)
    return ProofResponse.model_validate(proof)


@router.post("/proofs/{proof_id}/review", response_model=ProofResponse)
async def review_proof_endpoint(
    proof_id: int,
    body: ReviewProofRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    async with unit_of_work(db):
        proof = await signups.review_proof(db, redis, proof_id, body.approved, body.reviewer_id, body.notes)
    return ProofResponse.model_validate(proof)


# ── Counter reconciliation (operators) ──


@router.post("/instances/{instance_id}/reconcile", response_model=list[CounterDriftResponse])
async def reconcile_endpoint(instance_id: int, db: AsyncSession = Depends(get_session)):
    """Check the signup counter; drift freezes the instance."""
    async with unit_of_work(db):
        drifts = await signups.reconcile_signup_counts(db, instance_id)
    return [CounterDriftResponse(**d) for d in drifts]


@router.post("/instances/{instance_id}/repair-count", response_model=CounterDriftResponse)
async def repair_count_endpoint(
    instance_id: int,
    body: OperatorRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        before = (await signups.get_instance(db, instance_id)).current_signup_count
        instance = await signups.repair_signup_count(db, instance_id, body.operator_id)
    return CounterDriftResponse(
        instance_id=instance.id,
        current_signup_count=before,
        actual=instance.current_signup_count,
    )
