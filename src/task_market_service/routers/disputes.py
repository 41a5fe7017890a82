"""Dispute endpoints: filing, jury re-drive and human resolution."""

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
from task_market_service.services.dispute_adjudicator import DisputeAdjudicator

router = APIRouter()


def _adjudicator() -> DisputeAdjudicator:
    state = get_app_state()
    if state.dispute_adjudicator is None:
        msg = "DisputeAdjudicator not initialized"
        raise RuntimeError(msg)
    return state.dispute_adjudicator


@router.post("/disputes", status_code=201)
async def open_dispute(request: Request) -> JSONResponse:
    """Dispute a rejected submission; the jury review starts in the background."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    submission_id = extract_string(data, "submission_id")
    reason = extract_string(data, "reason")
    result = await _adjudicator().open_dispute(submission_id, reason, actor)
    return JSONResponse(status_code=201, content=result)


@router.get("/disputes")
async def list_disputes(request: Request) -> dict[str, Any]:
    """List the disputes the caller is party to (all of them for admins)."""
    actor = await authenticate(request)
    return {"disputes": _adjudicator().list_disputes(actor)}


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Get a dispute with its jury votes."""
    actor = await authenticate(request)
    return _adjudicator().get_dispute(dispute_id, actor)


@router.post("/disputes/{dispute_id}/jury")
async def retry_jury_review(dispute_id: str, request: Request) -> dict[str, Any]:
    """Re-run a jury review that never finished."""
    actor = await authenticate(request)
    return await _adjudicator().retry_jury_review(dispute_id, actor)


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Record the final human decision on a dispute."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    decision = extract_string(data, "decision")
    notes = extract_optional_string(data, "notes")
    return await _adjudicator().resolve_dispute(dispute_id, actor, decision, notes)
