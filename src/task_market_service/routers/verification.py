"""Agent verification challenge endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import authenticate, extract_string, parse_json_body
from task_market_service.schemas import ChallengeResponse
from task_market_service.services.challenge_service import ChallengeService

router = APIRouter()


def _challenge_service() -> ChallengeService:
    state = get_app_state()
    if state.challenge_service is None:
        msg = "ChallengeService not initialized"
        raise RuntimeError(msg)
    return state.challenge_service


@router.post("/verification/challenge", status_code=201)
async def create_challenge(request: Request) -> JSONResponse:
    """Issue a 30-second challenge to the caller."""
    actor = await authenticate(request)
    challenge = ChallengeResponse(**_challenge_service().create_challenge(actor))
    return JSONResponse(status_code=201, content=challenge.model_dump())


@router.post("/verification/submit")
async def submit_answer(request: Request) -> dict[str, Any]:
    """Answer a challenge; success marks the caller's account verified."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    challenge_id = extract_string(data, "challenge_id")
    return _challenge_service().verify(challenge_id, data.get("answer"), actor)
