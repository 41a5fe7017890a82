"""Unit test fixtures: cache clearing and an in-process market wired to a temp ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest

from task_market_service.clients.escrow_gateway_client import TransferResult
from task_market_service.config import LimitsConfig, clear_settings_cache
from task_market_service.core.state import reset_app_state
from task_market_service.services.background import BackgroundRunner
from task_market_service.services.ledger_store import LedgerStore
from task_market_service.services.notifier import Notifier
from task_market_service.services.payout_orchestrator import PayoutOrchestrator
from task_market_service.services.slot_allocator import SlotAllocator
from task_market_service.services.task_manager import TaskManager
from task_market_service.services.task_status import TaskStatusRecomputer
from task_market_service.services.token_validator import Actor

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

CREATOR = Actor(agent_id="a-creator")
ADMIN = Actor(agent_id="a-admin", is_admin=True)
PLATFORM_WALLET = "platform-escrow"
DISPUTE_WINDOW_HOURS = 48


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


def make_limits() -> LimitsConfig:
    return LimitsConfig(
        max_title_length=200,
        max_description_length=10000,
        max_requirements_length=10000,
        max_content_length=50000,
        max_notes_length=5000,
        max_workers=100,
    )


@dataclass
class Market:
    """Services sharing one ledger, with the escrow gateway mocked."""

    store: LedgerStore
    gateway: AsyncMock
    background: BackgroundRunner
    status: TaskStatusRecomputer
    tasks: TaskManager
    slots: SlotAllocator
    payouts: PayoutOrchestrator

    async def active_task(self, **overrides: Any) -> dict[str, Any]:
        """Create and activate a FIXED task owned by CREATOR."""
        data: dict[str, Any] = {
            "title": "Label 100 images",
            "description": "Draw bounding boxes around every car.",
            "requirements": "COCO JSON output",
            "total_budget": 100,
        }
        data.update(overrides)
        task = await self.tasks.create_task(CREATOR, data)
        return await self.tasks.activate_task(
            task["task_id"], ADMIN, {"escrow_wallet_id": "wallet-escrow-1"}
        )

    async def active_milestone_task(self, percentages: list[int]) -> dict[str, Any]:
        """Create and activate a one-worker MILESTONE task split by `percentages`."""
        return await self.active_task(
            payment_type="MILESTONE",
            milestones=[
                {"title": f"Phase {index}", "percentage": percentage}
                for index, percentage in enumerate(percentages, start=1)
            ],
        )

    async def hire(self, task_id: str, agent_id: str) -> dict[str, Any]:
        """Apply as `agent_id` and have CREATOR accept; the worker gets a wallet."""
        worker = Actor(agent_id=agent_id)
        await self.tasks.set_wallet(worker, f"0x{agent_id}")
        applied = await self.tasks.apply(task_id, worker, None)
        application_id = applied["application"]["application_id"]
        await self.slots.try_accept_application(task_id, application_id, CREATOR)
        return applied["application"]

    async def submit(self, task_id: str, agent_id: str) -> dict[str, Any]:
        result = await self.tasks.submit_work(
            task_id, Actor(agent_id=agent_id), "Labels attached", ["https://files/1.json"]
        )
        return result["submission"]

    def close_dispute_window(self, submission_id: str) -> None:
        """Backdate a review so the worker can no longer dispute it."""
        reviewed_at = datetime.now(UTC) - timedelta(hours=DISPUTE_WINDOW_HOURS + 1)
        stamp = reviewed_at.isoformat(timespec="microseconds").replace("+00:00", "Z")
        self.store.conditional_update("submissions", submission_id, {}, {"reviewed_at": stamp})


def successful_transfer() -> AsyncMock:
    return AsyncMock(return_value=TransferResult(success=True, transaction_hash="0xabc"))


@pytest.fixture
def market(tmp_path: Path) -> Iterator[Market]:
    store = LedgerStore(db_path=str(tmp_path / "task-market.db"))
    gateway = AsyncMock()
    gateway.transfer = successful_transfer()
    gateway.refund = AsyncMock(
        return_value=TransferResult(success=True, transaction_hash="0xrefund")
    )
    background = BackgroundRunner()
    notifier = Notifier(client=None, background=background)
    status = TaskStatusRecomputer(store=store)
    tasks = TaskManager(
        store=store,
        escrow_gateway=gateway,
        notifier=notifier,
        status_recomputer=status,
        limits=make_limits(),
        cancellation_fee_percent=Decimal(5),
        platform_wallet_ref=PLATFORM_WALLET,
        require_verified_agents=False,
    )
    slots = SlotAllocator(
        store=store,
        notifier=notifier,
        status_recomputer=status,
        dispute_window_hours=DISPUTE_WINDOW_HOURS,
    )
    payouts = PayoutOrchestrator(
        store=store,
        escrow_gateway=gateway,
        notifier=notifier,
        status_recomputer=status,
        platform_wallet_ref=PLATFORM_WALLET,
    )
    yield Market(
        store=store,
        gateway=gateway,
        background=background,
        status=status,
        tasks=tasks,
        slots=slots,
        payouts=payouts,
    )
    store.close()
