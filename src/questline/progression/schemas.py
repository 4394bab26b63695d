"""Pydantic models for progression endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


# --- XP ---


class AwardXPRequest(BaseModel):
    amount: int
    source: str = Field(..., min_length=1, max_length=32)
    source_id: str | None = Field(None, max_length=128)
    description: str | None = Field(None, max_length=256)


class AwardXPResponse(BaseModel):
    user_id: int
    total_xp: int
    granted: bool


class LevelResponse(BaseModel):
    user_id: int
    level: int
    name: str
    current_xp: int
    level_min_xp: int
    next_level_xp: int | None = None
    progress: float


class XPTransactionResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    amount: int
    source: str
    source_id: str
    description: str | None = None
    created_at: datetime


class XPDriftResponse(BaseModel):
    user_id: int
    total_xp: int
    ledger_total: int
    drift: int


class RepairRequest(BaseModel):
    operator_id: int


# --- Streaks ---


class StreakResponse(BaseModel):
    rule: str
    interval: str
    current_count: int
    longest_count: int
    grace_remaining: int
    last_activity_at: datetime | None = None
    streak_started_at: datetime | None = None


# --- Achievements ---


class AchievementResponse(BaseModel):
    slug: str
    name: str
    description: str | None = None
    xp_reward: int
    unlocked_at: datetime


class AchievementCheckResponse(BaseModel):
    unlocked: list[int]


# --- Trust ---


class TrustResponse(BaseModel):
    model_config = {"from_attributes": True}

    entity_type: str
    entity_id: int
    score: float
    successful_quests: int
    cancelled_quests: int
    no_show_quests: int
    flags_received: int
    warnings_issued: int
    ratings_count: int
    avg_rating: float | None = None
    last_calculated_at: datetime | None = None


class OperatorActionRequest(BaseModel):
    operator_id: int


class RatingRequest(BaseModel):
    rating: float = Field(..., ge=1, le=5)
