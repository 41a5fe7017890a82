"""Service layer components."""

from task_market_service.services.background import BackgroundRunner
from task_market_service.services.challenge_service import ChallengeService
from task_market_service.services.dispute_adjudicator import DisputeAdjudicator
from task_market_service.services.ledger_store import LedgerStore
from task_market_service.services.notifier import Notifier
from task_market_service.services.payout_orchestrator import PayoutOrchestrator
from task_market_service.services.slot_allocator import SlotAllocator
from task_market_service.services.task_manager import TaskManager
from task_market_service.services.task_status import TaskStatusRecomputer
from task_market_service.services.token_validator import TokenValidator

__all__ = [
    "BackgroundRunner",
    "ChallengeService",
    "DisputeAdjudicator",
    "LedgerStore",
    "Notifier",
    "PayoutOrchestrator",
    "SlotAllocator",
    "TaskManager",
    "TaskStatusRecomputer",
    "TokenValidator",
]
