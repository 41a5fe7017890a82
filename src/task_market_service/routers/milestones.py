"""Milestone endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import (
    authenticate,
    extract_optional_string,
    extract_string,
    parse_json_body,
)

router = APIRouter()


@router.post("/milestones/{milestone_id}/submit")
async def submit_milestone(milestone_id: str, request: Request) -> dict[str, Any]:
    """Submit a milestone deliverable for review."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())

    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return await state.task_manager.submit_milestone(milestone_id, actor, data.get("deliverable"))


@router.post("/milestones/{milestone_id}/review")
async def review_milestone(milestone_id: str, request: Request) -> dict[str, Any]:
    """Approve and pay a milestone, or request changes."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    decision = extract_string(data, "decision")
    feedback = extract_optional_string(data, "feedback")

    state = get_app_state()
    if state.payout_orchestrator is None:
        msg = "PayoutOrchestrator not initialized"
        raise RuntimeError(msg)
    return await state.payout_orchestrator.review_milestone(milestone_id, decision, feedback, actor)
