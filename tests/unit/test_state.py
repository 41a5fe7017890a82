"""Unit tests for AppState lifecycle helpers."""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest

from task_market_service.core.state import AppState, get_app_state, init_app_state, reset_app_state


@pytest.mark.unit
def test_app_state_init() -> None:
    """AppState initializes with default dependency fields."""
    state = AppState()
    assert state.store is None
    assert state.identity_client is None
    assert state.escrow_gateway is None
    assert state.notification_client is None
    assert state.background is None
    assert state.token_validator is None
    assert state.task_manager is None
    assert state.dispute_adjudicator is None
    assert state.challenge_service is None


@pytest.mark.unit
def test_app_state_uptime() -> None:
    """uptime_seconds increases after initialization."""
    state = AppState()
    time.sleep(0.001)
    assert state.uptime_seconds > 0


@pytest.mark.unit
def test_app_state_started_at() -> None:
    """started_at returns a UTC ISO timestamp."""
    state = AppState()
    assert state.started_at.endswith("Z")
    assert "T" in state.started_at


@pytest.mark.unit
def test_replacing_identity_client_updates_validator() -> None:
    state = AppState()
    state.token_validator = MagicMock()
    replacement = MagicMock()

    state.identity_client = replacement

    state.token_validator.set_identity_client.assert_called_once_with(replacement)


@pytest.mark.unit
def test_replacing_escrow_gateway_updates_money_services() -> None:
    state = AppState()
    state.task_manager = MagicMock()
    state.payout_orchestrator = MagicMock()
    replacement = MagicMock()

    state.escrow_gateway = replacement

    state.task_manager.set_escrow_gateway.assert_called_once_with(replacement)
    state.payout_orchestrator.set_escrow_gateway.assert_called_once_with(replacement)


@pytest.mark.unit
def test_replacing_notification_client_updates_notifier() -> None:
    state = AppState()
    state.notifier = MagicMock()
    replacement = MagicMock()

    state.notification_client = replacement

    state.notifier.set_client.assert_called_once_with(replacement)


@pytest.mark.unit
def test_clients_set_before_services_are_left_alone() -> None:
    state = AppState()
    state.identity_client = MagicMock()
    state.escrow_gateway = MagicMock()
    assert state.token_validator is None
    assert state.task_manager is None


@pytest.mark.unit
def test_get_app_state_uninitialized() -> None:
    """get_app_state raises RuntimeError before initialization."""
    reset_app_state()
    with pytest.raises(RuntimeError):
        _state = get_app_state()


@pytest.mark.unit
def test_init_app_state() -> None:
    """init_app_state creates and stores an AppState instance."""
    reset_app_state()
    state = init_app_state()
    assert isinstance(state, AppState)
    assert get_app_state() is state
    reset_app_state()
