"""Application endpoints: apply, accept, reject, release and withdraw."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_market_service.core.state import get_app_state
from task_market_service.routers.validation import authenticate, read_body
from task_market_service.services.slot_allocator import SlotAllocator
from task_market_service.services.task_manager import TaskManager

router = APIRouter()


def _task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


def _slot_allocator() -> SlotAllocator:
    state = get_app_state()
    if state.slot_allocator is None:
        msg = "SlotAllocator not initialized"
        raise RuntimeError(msg)
    return state.slot_allocator


@router.post("/tasks/{task_id}/applications", status_code=201)
async def apply(task_id: str, request: Request) -> JSONResponse:
    """Apply to work on a task."""
    actor = await authenticate(request)
    data = await read_body(request)
    result = await _task_manager().apply(task_id, actor, data.get("message"))
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/applications")
async def list_applications(task_id: str, request: Request) -> dict[str, Any]:
    """List the applications the caller may see."""
    actor = await authenticate(request)
    applications = await _task_manager().list_applications(task_id, actor)
    return {"applications": applications}


@router.post("/tasks/{task_id}/applications/{application_id}/accept")
async def accept_application(task_id: str, application_id: str, request: Request) -> dict[str, Any]:
    """Accept an application if a worker slot is free."""
    actor = await authenticate(request)
    return await _slot_allocator().try_accept_application(task_id, application_id, actor)


@router.post("/tasks/{task_id}/applications/{application_id}/reject")
async def reject_application(task_id: str, application_id: str, request: Request) -> dict[str, Any]:
    """Reject a pending application."""
    actor = await authenticate(request)
    return await _slot_allocator().reject_application(task_id, application_id, actor)


@router.post("/tasks/{task_id}/applications/{application_id}/release")
async def release_worker(task_id: str, application_id: str, request: Request) -> dict[str, Any]:
    """Release a worker whose submission was rejected."""
    actor = await authenticate(request)
    return await _slot_allocator().release_worker(task_id, application_id, actor)


@router.post("/tasks/{task_id}/withdraw")
async def withdraw_application(task_id: str, request: Request) -> dict[str, Any]:
    """Withdraw the caller's own application."""
    actor = await authenticate(request)
    return await _slot_allocator().withdraw_application(task_id, actor)
