"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from task_market_service.clients.escrow_gateway_client import EscrowGatewayClient
from task_market_service.clients.identity_client import IdentityClient
from task_market_service.clients.notification_client import NotificationClient
from task_market_service.clients.platform_signer import PlatformSigner, ensure_private_key
from task_market_service.config import get_settings
from task_market_service.core.state import init_app_state
from task_market_service.jury import LLMJuror, MockJuror
from task_market_service.logging import get_logger, setup_logging
from task_market_service.services.background import BackgroundRunner
from task_market_service.services.challenge_service import ChallengeService
from task_market_service.services.dispute_adjudicator import DisputeAdjudicator
from task_market_service.services.ledger_store import LedgerStore
from task_market_service.services.notifier import Notifier
from task_market_service.services.payout_orchestrator import PayoutOrchestrator
from task_market_service.services.slot_allocator import SlotAllocator
from task_market_service.services.statuses import Verdict
from task_market_service.services.task_manager import TaskManager
from task_market_service.services.task_status import TaskStatusRecomputer
from task_market_service.services.token_validator import TokenValidator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

    from task_market_service.config import Settings
    from task_market_service.core.state import AppState
    from task_market_service.jury import Juror

# Grace period for in-flight jury reviews and notifications at shutdown
_SHUTDOWN_GRACE_SECONDS = 5.0


def _build_jurors(settings: Settings) -> list[Juror]:
    jurors: list[Juror] = []
    for juror_cfg in settings.jury.jurors:
        provider = juror_cfg.provider.lower()
        if provider == "mock":
            fixed_vote = juror_cfg.fixed_vote or Verdict.REJECTION_UPHELD
            if fixed_vote not in set(Verdict):
                msg = f"Juror {juror_cfg.id} has invalid fixed_vote: {fixed_vote}"
                raise ValueError(msg)
            jurors.append(
                MockJuror(
                    juror_id=juror_cfg.id,
                    fixed_vote=fixed_vote,
                    reasoning="Mock juror default reasoning.",
                )
            )
            continue

        if juror_cfg.model is None or juror_cfg.temperature is None:
            msg = f"Juror {juror_cfg.id} is missing required model or temperature"
            raise ValueError(msg)
        jurors.append(
            LLMJuror(
                juror_id=juror_cfg.id,
                model=juror_cfg.model,
                persona=juror_cfg.persona,
                temperature=juror_cfg.temperature,
            )
        )

    if len(jurors) != settings.jury.panel_size:
        msg = "INVALID_PANEL_SIZE: configured juror count does not match panel_size"
        raise ValueError(msg)

    return jurors


async def _close_resources(state: AppState) -> None:
    if state.background is not None:
        await state.background.shutdown(_SHUTDOWN_GRACE_SECONDS)
    if state.identity_client is not None:
        await state.identity_client.close()
    if isinstance(state.escrow_gateway, EscrowGatewayClient):
        await state.escrow_gateway.close()
    if state.notification_client is not None:
        await state.notification_client.close()
    if state.store is not None:
        state.store.close()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    db_path = settings.database.path
    db_directory = Path(db_path).parent

    # Platform key: configured path, or a generated one next to the database
    private_key_path = settings.platform.private_key_path
    if not private_key_path:
        private_key_path = str(db_directory / "platform.pem")
    ensure_private_key(private_key_path)

    platform_signer = PlatformSigner(
        platform_agent_id=settings.platform.agent_id,
        private_key_path=private_key_path,
    )
    state.platform_signer = platform_signer

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_jws_path=settings.identity.verify_jws_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    escrow_gateway = EscrowGatewayClient(
        base_url=settings.escrow_gateway.base_url,
        transfer_path=settings.escrow_gateway.transfer_path,
        refund_path=settings.escrow_gateway.refund_path,
        timeout_seconds=settings.escrow_gateway.timeout_seconds,
        platform_signer=platform_signer,
    )
    state.escrow_gateway = escrow_gateway

    notification_client: NotificationClient | None = None
    if settings.notifications is not None:
        notification_client = NotificationClient(
            base_url=settings.notifications.base_url,
            notify_path=settings.notifications.notify_path,
            timeout_seconds=settings.notifications.timeout_seconds,
        )
        state.notification_client = notification_client

    store = LedgerStore(db_path=db_path)
    state.store = store
    background = BackgroundRunner()
    state.background = background
    notifier = Notifier(client=notification_client, background=background)
    state.notifier = notifier
    status_recomputer = TaskStatusRecomputer(store=store)

    state.token_validator = TokenValidator(
        identity_client=identity_client,
        admin_ids=settings.platform.admin_ids,
    )
    task_manager = TaskManager(
        store=store,
        escrow_gateway=escrow_gateway,
        notifier=notifier,
        status_recomputer=status_recomputer,
        limits=settings.limits,
        cancellation_fee_percent=settings.payouts.cancellation_fee_percent,
        platform_wallet_ref=settings.platform.wallet_ref,
        require_verified_agents=settings.verification.require_verified_agents,
    )
    state.task_manager = task_manager
    state.slot_allocator = SlotAllocator(
        store=store,
        notifier=notifier,
        status_recomputer=status_recomputer,
        dispute_window_hours=settings.disputes.window_hours,
    )
    payout_orchestrator = PayoutOrchestrator(
        store=store,
        escrow_gateway=escrow_gateway,
        notifier=notifier,
        status_recomputer=status_recomputer,
        platform_wallet_ref=settings.platform.wallet_ref,
    )
    state.payout_orchestrator = payout_orchestrator
    state.dispute_adjudicator = DisputeAdjudicator(
        store=store,
        jurors=_build_jurors(settings),
        payout_orchestrator=payout_orchestrator,
        background=background,
        notifier=notifier,
        status_recomputer=status_recomputer,
        window_hours=settings.disputes.window_hours,
        max_reason_length=settings.disputes.max_reason_length,
        juror_timeout_seconds=settings.jury.juror_timeout_seconds,
    )
    state.challenge_service = ChallengeService(
        ttl_seconds=settings.verification.challenge_ttl_seconds,
        purge_grace_seconds=settings.verification.purge_grace_seconds,
        on_verified=task_manager.mark_verified,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "identity_base_url": settings.identity.base_url,
            "escrow_gateway_base_url": settings.escrow_gateway.base_url,
            "notifications_enabled": notification_client is not None,
            "platform_agent_id": settings.platform.agent_id,
            "jurors": [juror.id for juror in settings.jury.jurors],
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info(
        "Service shutting down",
        extra={
            "uptime_seconds": state.uptime_seconds,
            "pending_background_tasks": background.pending,
        },
    )
    await _close_resources(state)
