"""API routers."""

from task_market_service.routers import (
    accounts,
    applications,
    disputes,
    health,
    milestones,
    payouts,
    submissions,
    tasks,
    verification,
)

__all__ = [
    "accounts",
    "applications",
    "disputes",
    "health",
    "milestones",
    "payouts",
    "submissions",
    "tasks",
    "verification",
]
