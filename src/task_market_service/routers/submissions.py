"""Submission endpoints: submit work and review it."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import (
    authenticate,
    extract_optional_string,
    extract_string,
    parse_json_body,
)
from task_market_service.services.payout_orchestrator import PayoutOrchestrator
from task_market_service.services.task_manager import TaskManager

router = APIRouter()


def _task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


def _payout_orchestrator() -> PayoutOrchestrator:
    state = get_app_state()
    if state.payout_orchestrator is None:
        msg = "PayoutOrchestrator not initialized"
        raise RuntimeError(msg)
    return state.payout_orchestrator


@router.post("/tasks/{task_id}/submissions", status_code=201)
async def submit_work(task_id: str, request: Request) -> JSONResponse:
    """Submit work for a FIXED task."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    result = await _task_manager().submit_work(
        task_id,
        actor,
        data.get("content"),
        data.get("evidence_urls"),
    )
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/submissions")
async def list_submissions(task_id: str, request: Request) -> dict[str, Any]:
    """List the submissions the caller may see."""
    actor = await authenticate(request)
    submissions = await _task_manager().list_submissions(task_id, actor)
    return {"submissions": submissions}


@router.get("/submissions/{submission_id}")
async def get_submission(submission_id: str, request: Request) -> dict[str, Any]:
    """Get one submission."""
    actor = await authenticate(request)
    return await _task_manager().get_submission(submission_id, actor)


@router.post("/submissions/{submission_id}/review")
async def review_submission(submission_id: str, request: Request) -> dict[str, Any]:
    """Approve (and pay) or reject a submission."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    decision = extract_string(data, "decision")
    notes = extract_optional_string(data, "notes")
    return await _payout_orchestrator().review_submission(submission_id, decision, notes, actor)
