"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from task_market_service.config import get_settings
from task_market_service.core.exceptions import register_exception_handlers
from task_market_service.core.lifespan import lifespan
from task_market_service.core.middleware import RequestValidationMiddleware
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


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(tasks.router, tags=["Tasks"])
    app.include_router(applications.router, tags=["Applications"])
    app.include_router(submissions.router, tags=["Submissions"])
    app.include_router(milestones.router, tags=["Milestones"])
    app.include_router(disputes.router, tags=["Disputes"])
    app.include_router(payouts.router, tags=["Payouts"])
    app.include_router(accounts.router, tags=["Accounts"])
    app.include_router(verification.router, tags=["Verification"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
