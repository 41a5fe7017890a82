"""Payout reconciliation endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import authenticate
from task_market_service.services.utils import require_admin

router = APIRouter()


@router.get("/payouts/failed")
async def list_failed_payouts(request: Request) -> dict[str, Any]:
    """Approved submissions whose transfer failed, for manual reconciliation."""
    actor = await authenticate(request)
    require_admin(actor)

    state = get_app_state()
    if state.payout_orchestrator is None:
        msg = "PayoutOrchestrator not initialized"
        raise RuntimeError(msg)
    return {"submissions": state.payout_orchestrator.list_failed_payouts()}
