"""Shared helpers for timestamps, identifiers and actor checks."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from task_market_service.services.token_validator import Actor


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse a timestamp written by now_iso()."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def new_id(prefix: str) -> str:
    """Generate a prefixed UUID4 identifier."""
    return f"{prefix}-{uuid.uuid4()}"


def require_creator(task: dict[str, Any], actor: Actor, *, allow_admin: bool = True) -> None:
    """Only the task's creator (or an admin, when allowed) may proceed."""
    if task["creator_id"] == actor.agent_id:
        return
    if allow_admin and actor.is_admin:
        return
    raise ServiceError("FORBIDDEN", "Only the task creator can perform this action", 403)


def require_admin(actor: Actor) -> None:
    """Only platform admins may proceed."""
    if not actor.is_admin:
        raise ServiceError("FORBIDDEN", "This action is restricted to platform admins", 403)


def append_note(existing: str | None, note: str) -> str:
    """Append a line to free-text notes without overwriting them."""
    if not existing:
        return note
    return f"{existing}\n{note}"
