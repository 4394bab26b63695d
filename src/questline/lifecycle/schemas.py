"""Pydantic schemas for quest and instance endpoints."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Any

from pydantic import BaseModel, Field

# --- Quests ---


class CreateQuestRequest(BaseModel):
    title: str = Field(..., min_length=2, max_length=256)
    creator_id: int | None = None
    slug: str | None = Field(None, max_length=128)
    description: str | None = None
    constraints: dict[str, Any] = {}
    objectives: list[Any] = []
    default_capacity: int | None = Field(None, ge=1)
    default_squad_size: int | None = Field(None, ge=1)
    default_duration_minutes: int = Field(120, ge=1)
    base_xp: int | None = Field(None, ge=0)
    completion_rule: str = "per_member"
    requires_approval: bool = False
    requires_proof: bool = False
    is_solo: bool = False
    warm_up_prompt: str | None = None


class ReviewQuestRequest(BaseModel):
    reviewer_id: int
    decision: str = Field(..., pattern="^(approved|needs_changes|rejected)$")
    notes: str | None = None


class QuestStatusRequest(BaseModel):
    status: str
    actor_id: int | None = None


class ActorRequest(BaseModel):
    actor_id: int | None = None


class QuestResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    slug: str
    title: str
    description: str | None = None
    creator_id: int | None = None
    default_capacity: int | None = None
    default_squad_size: int | None = None
    default_duration_minutes: int
    base_xp: int
    completion_rule: str
    requires_approval: bool
    requires_proof: bool
    is_solo: bool
    status: str
    review_status: str
    review_notes: str | None = None


# --- Instances ---


class CreateInstanceRequest(BaseModel):
    quest_id: int
    scheduled_date: date
    start_time: time
    end_time: time | None = None
    meeting_point: str | None = Field(None, max_length=256)
    capacity: int | None = Field(None, ge=1)
    target_squad_size: int | None = Field(None, ge=1)
    squad_formation_threshold: int | None = Field(None, ge=1)
    warm_up_min_ready_pct: int | None = Field(None, ge=1, le=100)


class LockRequest(BaseModel):
    actor_id: int | None = None


class CompleteRequest(BaseModel):
    actor_id: int | None = None
    force: bool = False


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    actor_id: int | None = None


class InstanceResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    quest_id: int
    instance_slug: str
    scheduled_date: date
    start_at: datetime
    end_at: datetime
    meeting_point: str | None = None
    capacity: int
    current_signup_count: int
    target_squad_size: int
    squad_formation_threshold: int | None = None
    status: str
    previous_status: str | None = None
    paused_reason: str | None = None
    cancelled_reason: str | None = None
    check_in_opens_at: datetime
    check_in_closes_at: datetime
    squads_locked: bool
    ledger_frozen: bool


# --- Event log ---


class EventResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    event_type: str
    actor_type: str
    actor_id: int | None = None
    instance_id: int | None = None
    squad_id: int | None = None
    target_user_id: int | None = None
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    payload: dict[str, Any] | None = None
    correlation_id: str | None = None
    created_at: datetime
