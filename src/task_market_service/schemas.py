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
    background_tasks: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class AccountResponse(BaseModel):
    """Response model for the caller's account."""

    model_config = ConfigDict(extra="forbid")
    account_id: str
    wallet_address: str | None
    total_earnings: str
    completed_tests: int
    verified_at: str | None
    created_at: str


class ChallengeResponse(BaseModel):
    """Response model for a newly issued verification challenge."""

    model_config = ConfigDict(extra="forbid")
    challenge_id: str
    type: str
    prompt: str
    expires_at: str
