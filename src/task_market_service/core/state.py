"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from task_market_service.clients.escrow_gateway_client import EscrowGateway
    from task_market_service.clients.identity_client import IdentityClient
    from task_market_service.clients.notification_client import NotificationClient
    from task_market_service.clients.platform_signer import PlatformSigner
    from task_market_service.services.background import BackgroundRunner
    from task_market_service.services.challenge_service import ChallengeService
    from task_market_service.services.dispute_adjudicator import DisputeAdjudicator
    from task_market_service.services.ledger_store import LedgerStore
    from task_market_service.services.notifier import Notifier
    from task_market_service.services.payout_orchestrator import PayoutOrchestrator
    from task_market_service.services.slot_allocator import SlotAllocator
    from task_market_service.services.task_manager import TaskManager
    from task_market_service.services.token_validator import TokenValidator


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: LedgerStore | None = None
    identity_client: IdentityClient | None = None
    escrow_gateway: EscrowGateway | None = None
    notification_client: NotificationClient | None = None
    platform_signer: PlatformSigner | None = None
    background: BackgroundRunner | None = None
    notifier: Notifier | None = None
    token_validator: TokenValidator | None = None
    task_manager: TaskManager | None = None
    slot_allocator: SlotAllocator | None = None
    payout_orchestrator: PayoutOrchestrator | None = None
    dispute_adjudicator: DisputeAdjudicator | None = None
    challenge_service: ChallengeService | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep service dependency references in sync with replaced clients."""
        super().__setattr__(name, value)
        if value is None:
            return

        if name == "identity_client":
            token_validator = self.__dict__.get("token_validator")
            if token_validator is not None:
                token_validator.set_identity_client(value)
        elif name == "escrow_gateway":
            for holder in ("payout_orchestrator", "task_manager"):
                service = self.__dict__.get(holder)
                if service is not None:
                    service.set_escrow_gateway(value)
        elif name == "notification_client":
            notifier = self.__dict__.get("notifier")
            if notifier is not None:
                notifier.set_client(value)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
