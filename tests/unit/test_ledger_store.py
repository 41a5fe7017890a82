"""Unit tests for LedgerStore."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from task_market_service.services.ledger_store import (
    DuplicateApplicationError,
    DuplicateDisputeError,
    DuplicateSubmissionError,
    DuplicateVoteError,
    LedgerStore,
)


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _task_data(task_id: str, status: str = "ACTIVE", max_workers: int = 1) -> dict[str, object]:
    timestamp = _now()
    return {
        "task_id": task_id,
        "creator_id": "a-creator",
        "title": f"Task {task_id}",
        "description": "Description",
        "requirements": "Requirements",
        "status": status,
        "total_budget": Decimal(100),
        "payment_type": "FIXED",
        "max_workers": max_workers,
        "current_workers": 0,
        "created_at": timestamp,
        "updated_at": timestamp,
    }


def _application(application_id: str, task_id: str, agent_id: str) -> dict[str, object]:
    return {
        "application_id": application_id,
        "task_id": task_id,
        "agent_id": agent_id,
        "status": "PENDING",
        "applied_at": _now(),
    }


def _submission(submission_id: str, application_id: str, task_id: str) -> dict[str, object]:
    return {
        "submission_id": submission_id,
        "application_id": application_id,
        "task_id": task_id,
        "agent_id": "a-worker",
        "status": "SUBMITTED",
        "content": "Done",
        "evidence_urls": ["https://example.com/proof.png"],
        "payout_status": "PENDING",
        "submitted_at": _now(),
    }


@pytest.mark.unit
def test_task_crud_and_counts(tmp_path) -> None:
    """Tasks persist, filter and count by status."""
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1"))
    store.insert_task(_task_data("t-2", status="DRAFT"))

    task = store.get_task("t-1")
    assert task is not None
    assert task["total_budget"] == "100"
    assert task["current_workers"] == 0

    assert len(store.list_tasks(status=None, creator_id=None, limit=None, offset=None)) == 2
    assert len(store.list_tasks(status="DRAFT", creator_id=None, limit=None, offset=None)) == 1
    assert store.list_tasks(status=None, creator_id="a-other", limit=None, offset=None) == []
    assert store.count_tasks_by_status() == {"ACTIVE": 1, "DRAFT": 1}
    store.close()


@pytest.mark.unit
def test_conditional_update_matches_expected_values(tmp_path) -> None:
    """conditional_update only applies when every expected column matches."""
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1"))

    assert store.conditional_update("tasks", "t-1", {"status": "DRAFT"}, {"status": "X"}) == 0
    assert store.conditional_update("tasks", "t-1", {"completed_at": None}, {"title": "A"}) == 1
    assert (
        store.conditional_update(
            "tasks", "t-1", {"status": ("ACTIVE", "IN_PROGRESS")}, {"status": "IN_PROGRESS"}
        )
        == 1
    )
    task = store.get_task("t-1")
    assert task is not None
    assert task["title"] == "A"
    assert task["status"] == "IN_PROGRESS"
    store.close()


@pytest.mark.unit
def test_conditional_update_rejects_unknown_columns(tmp_path) -> None:
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    with pytest.raises(ValueError, match="Unknown tasks column"):
        store.conditional_update("tasks", "t-1", {}, {"bogus": 1})
    with pytest.raises(ValueError, match="Unknown table"):
        store.conditional_update("nope", "t-1", {}, {"status": "ACTIVE"})
    store.close()


@pytest.mark.unit
def test_slot_claims_never_exceed_max_workers(tmp_path) -> None:
    """Concurrent claims from many threads fill exactly max_workers slots."""
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1", max_workers=3))

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _i: store.try_claim_slot("t-1", _now()), range(10)))

    assert sum(results) == 3
    task = store.get_task("t-1")
    assert task is not None
    assert task["current_workers"] == 3
    store.close()


@pytest.mark.unit
def test_release_slot_never_goes_negative(tmp_path) -> None:
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1"))

    assert store.release_slot("t-1", _now()) == 0
    assert store.try_claim_slot("t-1", _now()) == 1
    assert store.release_slot("t-1", _now()) == 1
    task = store.get_task("t-1")
    assert task is not None
    assert task["current_workers"] == 0
    store.close()


@pytest.mark.unit
def test_transaction_rolls_back_on_error(tmp_path) -> None:
    """An exception inside a transaction undoes every write in it, nested ones included."""
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1"))

    with pytest.raises(RuntimeError), store.transaction():
        store.try_claim_slot("t-1", _now())
        with store.transaction():
            store.conditional_update("tasks", "t-1", {}, {"title": "Changed"})
        raise RuntimeError("abort")

    task = store.get_task("t-1")
    assert task is not None
    assert task["current_workers"] == 0
    assert task["title"] == "Task t-1"
    store.close()


@pytest.mark.unit
def test_duplicate_rows_raise_domain_errors(tmp_path) -> None:
    """Unique constraints surface as the store's duplicate errors."""
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1"))
    store.insert_application(_application("app-1", "t-1", "a-worker"))

    with pytest.raises(DuplicateApplicationError):
        store.insert_application(_application("app-2", "t-1", "a-worker"))

    store.insert_submission(_submission("sub-1", "app-1", "t-1"))
    with pytest.raises(DuplicateSubmissionError):
        store.insert_submission(_submission("sub-2", "app-1", "t-1"))

    dispute = {
        "dispute_id": "dsp-1",
        "submission_id": "sub-1",
        "task_id": "t-1",
        "filed_by": "a-worker",
        "status": "OPEN",
        "reason": "Unfair",
        "created_at": _now(),
    }
    store.insert_dispute(dispute)
    with pytest.raises(DuplicateDisputeError):
        store.insert_dispute({**dispute, "dispute_id": "dsp-2"})

    vote = {
        "vote_id": "vote-1",
        "dispute_id": "dsp-1",
        "juror_index": 0,
        "juror_id": "juror-a",
        "vote": "WORKER_PAID",
        "reasoning": "Meets requirements",
        "confidence": 0.9,
        "voted_at": _now(),
    }
    store.insert_jury_votes([vote])
    with pytest.raises(DuplicateVoteError):
        store.insert_jury_votes([{**vote, "vote_id": "vote-2"}])
    assert len(store.list_jury_votes("dsp-1")) == 1
    store.close()


@pytest.mark.unit
def test_submission_evidence_round_trips_as_list(tmp_path) -> None:
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1"))
    store.insert_application(_application("app-1", "t-1", "a-worker"))
    store.insert_submission(_submission("sub-1", "app-1", "t-1"))

    submission = store.get_submission("sub-1")
    assert submission is not None
    assert submission["evidence_urls"] == ["https://example.com/proof.png"]
    assert store.find_submission_for_application("app-1") is not None
    store.close()


@pytest.mark.unit
def test_reject_pending_applications_returns_agents(tmp_path) -> None:
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1"))
    store.insert_application(_application("app-1", "t-1", "a-one"))
    store.insert_application(_application("app-2", "t-1", "a-two"))
    store.conditional_update("applications", "app-1", {}, {"status": "ACCEPTED"})

    rejected = store.reject_pending_applications("t-1", _now())

    assert rejected == ["a-two"]
    assert [app["status"] for app in store.list_applications("t-1")] == ["ACCEPTED", "REJECTED"]
    assert store.list_applications("t-1", status="PENDING") == []
    store.close()


@pytest.mark.unit
def test_delete_task_refuses_tasks_with_workers(tmp_path) -> None:
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1", status="DRAFT"))
    store.insert_task(_task_data("t-2", status="DRAFT"))
    store.try_claim_slot("t-2", _now())

    assert store.delete_task("t-1", "DRAFT") == 1
    assert store.get_task("t-1") is None
    assert store.delete_task("t-2", "DRAFT") == 0
    store.close()


@pytest.mark.unit
def test_account_earnings_accumulate(tmp_path) -> None:
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    account = store.ensure_account("a-worker", _now())
    assert account["total_earnings"] == "0"

    store.credit_earnings("a-worker", Decimal("12.5"), completed=True)
    store.credit_earnings("a-worker", Decimal("7.5"), completed=False)
    store.set_wallet_address("a-worker", "0xabc")

    account = store.get_account("a-worker")
    assert account is not None
    assert Decimal(account["total_earnings"]) == Decimal(20)
    assert account["completed_tests"] == 1
    assert account["wallet_address"] == "0xabc"

    with pytest.raises(LookupError):
        store.credit_earnings("a-missing", Decimal(1), completed=True)
    store.close()


@pytest.mark.unit
def test_list_disputes_visible_to_parties(tmp_path) -> None:
    store = LedgerStore(db_path=str(tmp_path / "market.db"))
    store.insert_task(_task_data("t-1"))
    store.insert_application(_application("app-1", "t-1", "a-worker"))
    store.insert_submission(_submission("sub-1", "app-1", "t-1"))
    store.insert_dispute(
        {
            "dispute_id": "dsp-1",
            "submission_id": "sub-1",
            "task_id": "t-1",
            "filed_by": "a-worker",
            "status": "OPEN",
            "reason": "Unfair",
            "created_at": _now(),
        }
    )

    assert len(store.list_disputes(None)) == 1
    assert len(store.list_disputes("a-worker")) == 1
    assert len(store.list_disputes("a-creator")) == 1
    assert store.list_disputes("a-stranger") == []
    assert store.count_unresolved_disputes("t-1") == 1
    store.close()
