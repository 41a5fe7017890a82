"""Unit tests for payout, wallet, milestone and refund rules."""

from __future__ import annotations

from decimal import Decimal

import pytest

from task_market_service.core.exceptions import ServiceError
from task_market_service.services.payout_policy import (
    cancellation_refund,
    milestone_amount,
    parse_amount,
    resolve_payout_amount,
    resolve_source_wallet,
    validate_milestone_percentages,
)


@pytest.mark.unit
def test_explicit_payment_per_worker_wins() -> None:
    assert resolve_payout_amount(Decimal(30), Decimal(100), 3) == Decimal(30)


@pytest.mark.unit
def test_budget_split_evenly_rounds_down_to_usdc() -> None:
    assert resolve_payout_amount(None, Decimal(100), 3) == Decimal("33.333333")
    assert resolve_payout_amount(None, Decimal(50), 1) == Decimal(50)


@pytest.mark.unit
def test_source_wallet_precedence() -> None:
    by_id = resolve_source_wallet("wallet-1", "0xaddr", "platform")
    assert by_id.ref == "wallet-1"
    assert not by_id.is_platform_fallback

    by_address = resolve_source_wallet(None, "0xaddr", "platform")
    assert by_address.ref == "0xaddr"

    fallback = resolve_source_wallet(None, None, "platform")
    assert fallback.ref == "platform"
    assert fallback.is_platform_fallback


@pytest.mark.unit
@pytest.mark.parametrize(
    "percentages",
    [[60, 30], [100], [50, "50"], [0, 100], [60, 40.0]],
)
def test_invalid_milestone_percentages(percentages: list[object]) -> None:
    with pytest.raises(ServiceError) as exc_info:
        validate_milestone_percentages(percentages)
    assert exc_info.value.error == "INVALID_MILESTONES"
    assert exc_info.value.status_code == 400


@pytest.mark.unit
def test_milestone_amounts_follow_percentages() -> None:
    assert validate_milestone_percentages([60, 40]) == [60, 40]
    assert milestone_amount(60, Decimal(100)) == Decimal(60)
    assert milestone_amount(40, Decimal(100)) == Decimal(40)
    assert milestone_amount(33, Decimal("10.5")) == Decimal("3.465")


@pytest.mark.unit
def test_cancellation_refund_keeps_platform_fee() -> None:
    refund, fee = cancellation_refund(Decimal(100), Decimal(5))
    assert refund == Decimal(95)
    assert fee == Decimal(5)

    refund, fee = cancellation_refund(Decimal(100), Decimal(0))
    assert refund == Decimal(100)
    assert fee == Decimal(0)


@pytest.mark.unit
@pytest.mark.parametrize("value", [0, -5, 1.5, True, None, "abc", "1.0000001"])
def test_parse_amount_rejects_bad_values(value: object) -> None:
    with pytest.raises(ServiceError) as exc_info:
        parse_amount(value, "total_budget")
    assert exc_info.value.error == "INVALID_PAYLOAD"
    assert exc_info.value.details == {"field": "total_budget"}


@pytest.mark.unit
def test_parse_amount_accepts_ints_and_decimal_strings() -> None:
    assert parse_amount(100, "total_budget") == Decimal(100)
    assert parse_amount("12.345678", "total_budget") == Decimal("12.345678")
