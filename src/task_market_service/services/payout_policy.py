"""
Fallback resolution rules for payouts, wallets, milestones and refunds.

Every rule here is a pure function so its precedence can be tested in
isolation from the ledger and the escrow gateway.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import TYPE_CHECKING

from task_market_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from collections.abc import Sequence

# USDC has 6 decimal places
USDC_QUANTUM = Decimal("0.000001")
MIN_MILESTONES = 2


@dataclass(frozen=True)
class WalletRef:
    """Source wallet chosen for a transfer."""

    ref: str
    is_platform_fallback: bool


def quantize_usdc(amount: Decimal) -> Decimal:
    """Round an amount down to USDC precision."""
    return amount.quantize(USDC_QUANTUM, rounding=ROUND_DOWN)


def parse_amount(value: object, field_name: str) -> Decimal:
    """
    Parse a positive monetary amount from a JSON value.

    Accepts ints and decimal strings; floats are rejected to avoid binary
    rounding of money. Raises INVALID_PAYLOAD on anything else.
    """
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must be an integer or a decimal string",
            400,
            {"field": field_name},
        )
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} is not a valid amount",
            400,
            {"field": field_name},
        ) from exc
    if not amount.is_finite() or amount <= 0:
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} must be greater than zero",
            400,
            {"field": field_name},
        )
    if amount != quantize_usdc(amount):
        raise ServiceError(
            "INVALID_PAYLOAD",
            f"{field_name} has more than 6 decimal places",
            400,
            {"field": field_name},
        )
    return amount


def resolve_payout_amount(
    payment_per_worker: Decimal | None,
    total_budget: Decimal,
    max_workers: int,
) -> Decimal:
    """
    Amount owed to one worker on approval.

    Precedence:
    1. the task's explicit payment_per_worker
    2. total_budget split evenly across max_workers, rounded down
    """
    if payment_per_worker is not None:
        return payment_per_worker
    return quantize_usdc(total_budget / max_workers)


def resolve_source_wallet(
    escrow_wallet_id: str | None,
    escrow_wallet_address: str | None,
    platform_wallet_ref: str,
) -> WalletRef:
    """
    Wallet a payout or refund is drawn from.

    Precedence:
    1. the task's escrow wallet id
    2. the task's escrow wallet address
    3. the platform-level fallback wallet
    """
    if escrow_wallet_id:
        return WalletRef(ref=escrow_wallet_id, is_platform_fallback=False)
    if escrow_wallet_address:
        return WalletRef(ref=escrow_wallet_address, is_platform_fallback=False)
    return WalletRef(ref=platform_wallet_ref, is_platform_fallback=True)


def validate_milestone_percentages(percentages: Sequence[object]) -> list[int]:
    """Require at least two integer percentages in 1..100 summing to exactly 100."""
    if len(percentages) < MIN_MILESTONES:
        raise ServiceError(
            "INVALID_MILESTONES",
            f"Milestone tasks need at least {MIN_MILESTONES} milestones",
            400,
            {},
        )

    validated: list[int] = []
    for percentage in percentages:
        if isinstance(percentage, bool) or not isinstance(percentage, int):
            raise ServiceError(
                "INVALID_MILESTONES",
                "Milestone percentages must be integers",
                400,
                {},
            )
        if not 1 <= percentage <= 100:
            raise ServiceError(
                "INVALID_MILESTONES",
                "Milestone percentages must be between 1 and 100",
                400,
                {},
            )
        validated.append(percentage)

    total = sum(validated)
    if total != 100:
        raise ServiceError(
            "INVALID_MILESTONES",
            f"Milestone percentages must sum to 100, got {total}",
            400,
            {"total": total},
        )
    return validated


def milestone_amount(percentage: int, total_budget: Decimal) -> Decimal:
    """Milestone share of the budget: percentage x total_budget / 100."""
    return quantize_usdc(Decimal(percentage) * total_budget / 100)


def cancellation_refund(total_budget: Decimal, fee_percent: Decimal) -> tuple[Decimal, Decimal]:
    """Split a cancelled task's escrow into (refund to creator, platform fee)."""
    fee = quantize_usdc(total_budget * fee_percent / 100)
    return total_budget - fee, fee
