"""Task status aggregation: a pure derivation plus the ledger-backed recompute step."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from task_market_service.services.statuses import (
    SLOT_HOLDING_STATUSES,
    MilestoneStatus,
    PaymentType,
    SubmissionStatus,
    TaskStatus,
)

if TYPE_CHECKING:
    from task_market_service.services.ledger_store import LedgerStore

# Statuses set by explicit creator or funding events, never derived
_EXTERNALLY_SET = frozenset({TaskStatus.DRAFT, TaskStatus.CANCELLED, TaskStatus.COMPLETED})


@dataclass(frozen=True)
class WorkerSlot:
    """One application and the status of its submission, if any."""

    application_status: str
    submission_status: str | None


@dataclass(frozen=True)
class TaskSnapshot:
    """Everything the status derivation reads about one task."""

    status: str
    payment_type: str
    workers: tuple[WorkerSlot, ...]
    submission_count: int
    milestone_statuses: tuple[str, ...]
    unresolved_disputes: int


def completion_satisfied(snapshot: TaskSnapshot) -> bool:
    """
    Whether every required payout decision of the task is settled.

    Milestone tasks: at least one milestone and all of them COMPLETED.
    Fixed tasks: at least one slot-holding application, and every
    slot-holding application has an APPROVED submission.
    """
    if snapshot.payment_type == PaymentType.MILESTONE:
        return len(snapshot.milestone_statuses) > 0 and all(
            status == MilestoneStatus.COMPLETED for status in snapshot.milestone_statuses
        )

    holders = [
        worker for worker in snapshot.workers if worker.application_status in SLOT_HOLDING_STATUSES
    ]
    return len(holders) > 0 and all(
        worker.submission_status == SubmissionStatus.APPROVED for worker in holders
    )


def derive_task_status(snapshot: TaskSnapshot) -> str:
    """Derive Task.status from its applications, submissions, milestones and disputes."""
    if snapshot.status in _EXTERNALLY_SET:
        return snapshot.status

    if snapshot.unresolved_disputes > 0:
        return TaskStatus.DISPUTED

    if completion_satisfied(snapshot):
        return TaskStatus.COMPLETED

    has_worker = any(
        worker.application_status in SLOT_HOLDING_STATUSES for worker in snapshot.workers
    )
    milestone_started = any(
        status != MilestoneStatus.PENDING for status in snapshot.milestone_statuses
    )
    if has_worker or snapshot.submission_count > 0 or milestone_started:
        return TaskStatus.IN_PROGRESS

    return TaskStatus.ACTIVE


class TaskStatusRecomputer:
    """Re-derives and persists Task.status after a mutation."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def snapshot(self, task_id: str) -> TaskSnapshot:
        """Read the current snapshot of a task from the ledger."""
        task = self._store.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} not found"
            raise LookupError(msg)

        submissions = self._store.list_submissions(task_id)
        by_application = {
            submission["application_id"]: submission["status"] for submission in submissions
        }
        workers = tuple(
            WorkerSlot(
                application_status=application["status"],
                submission_status=by_application.get(application["application_id"]),
            )
            for application in self._store.list_applications(task_id)
        )
        return TaskSnapshot(
            status=task["status"],
            payment_type=task["payment_type"],
            workers=workers,
            submission_count=len(submissions),
            milestone_statuses=tuple(
                milestone["status"] for milestone in self._store.list_milestones(task_id)
            ),
            unresolved_disputes=self._store.count_unresolved_disputes(task_id),
        )

    def recompute(self, task_id: str, now: str) -> tuple[str, str]:
        """
        Persist the derived status and return (old_status, new_status).

        Runs inside the caller's transaction when one is open.
        """
        with self._store.transaction():
            snapshot = self.snapshot(task_id)
            new_status = derive_task_status(snapshot)
            if new_status == snapshot.status:
                return snapshot.status, new_status

            patch: dict[str, object] = {"status": new_status, "updated_at": now}
            if new_status == TaskStatus.COMPLETED:
                patch["completed_at"] = now
            self._store.conditional_update("tasks", task_id, {"status": snapshot.status}, patch)
        return snapshot.status, new_status
