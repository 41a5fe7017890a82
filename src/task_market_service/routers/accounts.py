"""Account endpoints for the authenticated caller."""

from __future__ import annotations

from fastapi import APIRouter, Request

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import authenticate, parse_json_body
from task_market_service.schemas import AccountResponse
from task_market_service.services.task_manager import TaskManager

router = APIRouter()


def _task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


@router.get("/accounts/me", response_model=AccountResponse)
async def get_own_account(request: Request) -> AccountResponse:
    """The caller's earnings, wallet and verification state."""
    actor = await authenticate(request)
    account = await _task_manager().get_account(actor)
    return AccountResponse(**account)


@router.put("/accounts/me/wallet", response_model=AccountResponse)
async def set_wallet(request: Request) -> AccountResponse:
    """Set the wallet that payouts and refunds are sent to."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    account = await _task_manager().set_wallet(actor, data.get("wallet_address"))
    return AccountResponse(**account)
