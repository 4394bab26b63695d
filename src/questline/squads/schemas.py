"""Pydantic schemas for squad endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ActorRequest(BaseModel):
    actor_id: int | None = None


class AdoptSquadRequest(BaseModel):
    persistent_squad_id: int
    actor_id: int | None = None


class PromptResponseRequest(BaseModel):
    user_id: int
    response: str = Field(..., min_length=1, max_length=2000)


class ReadinessRequest(BaseModel):
    user_id: int


class ApproveSquadRequest(BaseModel):
    operator_id: int
    notes: str | None = Field(None, max_length=1000)
    force: bool = False


class RemovalVoteRequest(BaseModel):
    voter_id: int
    target_user_id: int
    reason: str | None = Field(None, max_length=500)


class RemoveMemberRequest(BaseModel):
    operator_id: int
    reason: str | None = Field(None, max_length=500)
    force: bool = False


class SquadMemberResponse(BaseModel):
    model_config = {"from_attributes": True}

    user_id: int
    signup_id: int | None = None
    role: str
    status: str
    prompt_response: str | None = None
    readiness_confirmed_at: datetime | None = None
    joined_at: datetime


class SquadResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    instance_id: int
    name: str
    status: str
    compatibility_score: float | None = None
    persistent_squad_id: int | None = None
    warm_up_started_at: datetime | None = None
    ready_at: datetime | None = None
    locked_at: datetime | None = None
    locked_by: int | None = None
    approval_notes: str | None = None
    cancel_reason: str | None = None
    members: list[SquadMemberResponse] = []


class ReadinessResponse(BaseModel):
    squad_id: int
    status: str
    ready_count: int
    total: int
    ready_pct: float
    threshold_pct: int
    is_ready: bool


class RemovalOutcomeResponse(BaseModel):
    votes: int
    quorum: int
    removed: bool
    new_squad_id: int | None = None


# --- Persistent squads ---


class CreatePersistentSquadRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=64)
    leader_id: int
    member_ids: list[int] = []


class AddPersistentMemberRequest(BaseModel):
    leader_id: int
    user_id: int


class LeavePersistentSquadRequest(BaseModel):
    user_id: int


class LeaderActionRequest(BaseModel):
    actor_id: int


class TransferLeadershipRequest(BaseModel):
    leader_id: int
    new_leader_id: int


class PersistentMemberResponse(BaseModel):
    model_config = {"from_attributes": True}

    user_id: int
    role: str
    status: str
    joined_at: datetime


class PersistentSquadResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    name: str
    leader_id: int
    created_at: datetime
    archived_at: datetime | None = None
    members: list[PersistentMemberResponse] = []
