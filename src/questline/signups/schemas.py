"""Pydantic schemas for signup endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class SignupRequest(BaseModel):
    user_id: int
    referred_by_user_id: int | None = None


class CancelSignupRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)
    actor_id: int | None = None


class OperatorRequest(BaseModel):
    operator_id: int


class SubmitProofRequest(BaseModel):
    proof_type: str = Field(..., pattern="^(photo|video|text|link)$")
    file_url: str | None = Field(None, max_length=2048)
    text: str | None = Field(None, max_length=5000)


class ReviewProofRequest(BaseModel):
    reviewer_id: int
    approved: bool
    notes: str | None = Field(None, max_length=1000)


class SignupResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    instance_id: int
    user_id: int
    status: str
    signed_up_at: datetime
    referred_by_user_id: int | None = None
    checked_in_at: datetime | None = None
    proof_submitted_at: datetime | None = None
    completed_at: datetime | None = None
    dropped_at: datetime | None = None
    cancel_reason: str | None = None


class CancelSignupResponse(BaseModel):
    signup: SignupResponse
    promoted: list[SignupResponse] = []


class ProofResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    signup_id: int
    proof_type: str
    file_url: str | None = None
    text: str | None = None
    status: str
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    created_at: datetime


class CounterDriftResponse(BaseModel):
    instance_id: int
    current_signup_count: int
    actual: int
