"""Router test fixtures with mocked Identity and escrow gateway services."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_market_service.app import create_app
from task_market_service.clients.escrow_gateway_client import TransferResult
from task_market_service.config import clear_settings_cache
from task_market_service.core.lifespan import lifespan
from task_market_service.core.state import get_app_state, reset_app_state
from tests.helpers import auth_headers, extract_kid

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed agent IDs
# ---------------------------------------------------------------------------
ADMIN_AGENT_ID = "a-admin-test"
CREATOR_AGENT_ID = "a-creator-uuid"
WORKER_AGENT_ID = "a-worker-uuid"
OTHER_AGENT_ID = "a-other-uuid"


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database, mock jurors and mocked external services."""
    db_path = tmp_path / "test.db"
    config_content = f"""\
service:
  name: "task-market"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / 'logs'}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  verify_jws_path: "/agents/verify-jws"
  timeout_seconds: 10
escrow_gateway:
  base_url: "http://localhost:8002"
  transfer_path: "/escrow/transfer"
  refund_path: "/escrow/refund"
  timeout_seconds: 10
platform:
  agent_id: "a-platform-test-id"
  wallet_ref: "platform-escrow"
  admin_ids:
    - "{ADMIN_AGENT_ID}"
payouts:
  cancellation_fee_percent: 5
disputes:
  window_hours: 48
  max_reason_length: 5000
jury:
  panel_size: 3
  juror_timeout_seconds: 5
  jurors:
    - id: "juror-a"
      provider: "mock"
      persona: "strict"
      fixed_vote: "WORKER_PAID"
    - id: "juror-b"
      provider: "mock"
      persona: "empathetic"
      fixed_vote: "WORKER_PAID"
    - id: "juror-c"
      provider: "mock"
      persona: "technical"
      fixed_vote: "REJECTION_UPHELD"
verification:
  challenge_ttl_seconds: 30
  purge_grace_seconds: 60
  require_verified_agents: false
request:
  max_body_size: 1048576
limits:
  max_title_length: 200
  max_description_length: 10000
  max_requirements_length: 10000
  max_content_length: 50000
  max_notes_length: 5000
  max_workers: 100
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        # Replace external service clients with mocks; AppState propagates them
        state = get_app_state()

        if state.identity_client is not None:
            await state.identity_client.close()
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.verify_jws = AsyncMock(
            side_effect=lambda token: {
                "valid": True,
                "agent_id": extract_kid(token),
                "payload": {},
            }
        )
        state.identity_client = mock_identity

        real_gateway = state.escrow_gateway
        if real_gateway is not None and hasattr(real_gateway, "close"):
            await real_gateway.close()
        mock_gateway = AsyncMock()
        mock_gateway.transfer = AsyncMock(
            return_value=TransferResult(success=True, transaction_hash="0xpaid")
        )
        mock_gateway.refund = AsyncMock(
            return_value=TransferResult(success=True, transaction_hash="0xrefund")
        )
        state.escrow_gateway = mock_gateway

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Mock override fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_identity_unavailable(_app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    state = get_app_state()
    state.identity_client.verify_jws = AsyncMock(
        side_effect=ConnectionError("Identity service unreachable")
    )


@pytest.fixture
def mock_transfer_declined(_app: Any) -> None:
    """Configure the escrow gateway mock to decline every transfer."""
    state = get_app_state()
    state.escrow_gateway.transfer = AsyncMock(
        return_value=TransferResult(success=False, error="insufficient escrow balance")
    )


# ---------------------------------------------------------------------------
# Marketplace helper functions
# ---------------------------------------------------------------------------
async def create_task(client: AsyncClient, **overrides: Any) -> Any:
    """Create a DRAFT task via POST /tasks as the creator and return the response."""
    body: dict[str, Any] = {
        "title": "Label 100 images",
        "description": "Draw bounding boxes around every car.",
        "requirements": "COCO JSON output",
        "total_budget": 100,
    }
    body.update(overrides)
    return await client.post("/tasks", json=body, headers=auth_headers(CREATOR_AGENT_ID))


async def activate_task(client: AsyncClient, task_id: str) -> Any:
    """Activate a task as the platform admin."""
    return await client.post(
        f"/tasks/{task_id}/activate",
        json={"escrow_wallet_id": "wallet-escrow-1"},
        headers=auth_headers(ADMIN_AGENT_ID),
    )


async def setup_active_task(client: AsyncClient, **overrides: Any) -> str:
    """Create and activate a task; returns the task_id."""
    created = await create_task(client, **overrides)
    task_id: str = created.json()["task_id"]
    await activate_task(client, task_id)
    return task_id


async def setup_hired_worker(
    client: AsyncClient,
    task_id: str,
    worker_id: str = WORKER_AGENT_ID,
) -> str:
    """Give the worker a wallet, apply, and accept; returns the application_id."""
    headers = auth_headers(worker_id)
    await client.put(
        "/accounts/me/wallet",
        json={"wallet_address": f"0x{worker_id}"},
        headers=headers,
    )
    applied = await client.post(f"/tasks/{task_id}/applications", json={}, headers=headers)
    application_id: str = applied.json()["application"]["application_id"]
    await client.post(
        f"/tasks/{task_id}/applications/{application_id}/accept",
        headers=auth_headers(CREATOR_AGENT_ID),
    )
    return application_id


async def submit_work(
    client: AsyncClient,
    task_id: str,
    worker_id: str = WORKER_AGENT_ID,
) -> str:
    """Submit work as the worker; returns the submission_id."""
    response = await client.post(
        f"/tasks/{task_id}/submissions",
        json={"content": "Labels attached", "evidence_urls": ["https://files/1.json"]},
        headers=auth_headers(worker_id),
    )
    submission_id: str = response.json()["submission"]["submission_id"]
    return submission_id


async def review(client: AsyncClient, submission_id: str, decision: str, notes: str | None) -> Any:
    """Review a submission as the creator."""
    return await client.post(
        f"/submissions/{submission_id}/review",
        json={"decision": decision, "notes": notes},
        headers=auth_headers(CREATOR_AGENT_ID),
    )
