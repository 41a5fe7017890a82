"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import (
    authenticate,
    parse_json_body,
    parse_non_negative_int,
    read_body,
)
from task_market_service.services.task_manager import TaskManager

router = APIRouter()


def _task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


# ---------------------------------------------------------------------------
# POST /tasks, GET /tasks (before /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a DRAFT task."""
    actor = await authenticate(request)
    data = parse_json_body(await request.body())
    result = await _task_manager().create_task(actor, data)
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional status and creator filters."""
    status = request.query_params.get("status")
    creator_id = request.query_params.get("creator_id")
    offset = parse_non_negative_int(request.query_params.get("offset"), "offset", minimum=0)
    limit = parse_non_negative_int(request.query_params.get("limit"), "limit", minimum=1)

    tasks = await _task_manager().list_tasks(
        status=status,
        creator_id=creator_id,
        limit=limit,
        offset=offset,
    )
    return {"tasks": tasks}


# ---------------------------------------------------------------------------
# Single task
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get a task with its milestones."""
    return await _task_manager().get_task(task_id)


@router.patch("/tasks/{task_id}")
async def edit_task(task_id: str, request: Request) -> dict[str, Any]:
    """Edit a task; budget fields only while DRAFT."""
    actor = await authenticate(request)
    updates = parse_json_body(await request.body())
    return await _task_manager().edit_task(task_id, actor, updates)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, request: Request) -> dict[str, Any]:
    """Delete a DRAFT task."""
    actor = await authenticate(request)
    return await _task_manager().delete_task(task_id, actor)


@router.post("/tasks/{task_id}/activate")
async def activate_task(task_id: str, request: Request) -> dict[str, Any]:
    """Record verified escrow funding and open the task."""
    actor = await authenticate(request)
    data = await read_body(request)
    return await _task_manager().activate_task(task_id, actor, data)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> dict[str, Any]:
    """Cancel an ACTIVE task and refund its escrow minus the platform fee."""
    actor = await authenticate(request)
    return await _task_manager().cancel_task(task_id, actor)
