"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]


class ReputationResponse(BaseModel):
    """Response model for GET /users/{user_id}/reputation."""

    model_config = ConfigDict(extra="forbid")
    user_id: str
    reputation_score: int
