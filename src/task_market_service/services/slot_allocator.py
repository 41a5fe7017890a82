"""Worker-slot allocation and the application state machine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.statuses import (
    ApplicationStatus,
    MilestoneStatus,
    NotificationType,
    SubmissionStatus,
    TaskStatus,
)
from task_market_service.services.utils import now_iso, parse_iso, require_creator

if TYPE_CHECKING:
    from task_market_service.services.ledger_store import LedgerStore
    from task_market_service.services.notifier import Notifier
    from task_market_service.services.task_status import TaskStatusRecomputer
    from task_market_service.services.token_validator import Actor

_ACCEPTING_STATUSES = frozenset({TaskStatus.ACTIVE, TaskStatus.IN_PROGRESS})
_UNDELIVERED_MILESTONE_STATUSES = frozenset(
    {MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS}
)


class SlotAllocator:
    """
    Guards `current_workers <= max_workers` for every task.

    A slot is claimed with a single conditional increment; the caller that
    matches zero rows gets a TASK_FULL conflict instead of a slot.
    """

    def __init__(
        self,
        store: LedgerStore,
        notifier: Notifier,
        status_recomputer: TaskStatusRecomputer,
        dispute_window_hours: int,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._status = status_recomputer
        self._dispute_window = timedelta(hours=dispute_window_hours)
        self._logger = get_logger(__name__)

    def _load(self, task_id: str, application_id: str) -> tuple[dict[str, Any], dict[str, Any]]:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        application = self._store.get_application(application_id)
        if application is None or application["task_id"] != task_id:
            raise ServiceError("APPLICATION_NOT_FOUND", "Application not found", 404)
        return task, application

    async def try_accept_application(
        self,
        task_id: str,
        application_id: str,
        actor: Actor,
    ) -> dict[str, Any]:
        """
        Accept a PENDING application if a worker slot is still free.

        Order inside one transaction: claim slot, mark ACCEPTED, re-read the
        task, reject remaining PENDING applications once full, recompute the
        task status.

        Error precedence:
        - TASK_NOT_FOUND / APPLICATION_NOT_FOUND (404)
        - FORBIDDEN (403): caller is not the creator
        - INVALID_STATUS (409): application not PENDING or task not accepting
        - TASK_FULL (409): every slot is taken
        """
        task, application = self._load(task_id, application_id)
        require_creator(task, actor)

        if application["status"] != ApplicationStatus.PENDING:
            raise ServiceError(
                "INVALID_STATUS",
                f"Application is {application['status']}, expected PENDING",
                409,
            )
        if task["status"] not in _ACCEPTING_STATUSES:
            raise ServiceError(
                "INVALID_STATUS",
                f"Task is {task['status']} and cannot accept workers",
                409,
            )

        now = now_iso()
        with self._store.transaction():
            if self._store.try_claim_slot(task_id, now) == 0:
                raise ServiceError(
                    "TASK_FULL",
                    "All worker slots for this task are taken",
                    409,
                    {"max_workers": task["max_workers"]},
                )

            changed = self._store.conditional_update(
                "applications",
                application_id,
                {"status": ApplicationStatus.PENDING},
                {"status": ApplicationStatus.ACCEPTED, "accepted_at": now},
            )
            if changed == 0:
                raise ServiceError("INVALID_STATUS", "Application is no longer PENDING", 409)

            refreshed = self._store.get_task(task_id)
            if refreshed is None:
                raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)

            auto_rejected: list[str] = []
            if refreshed["current_workers"] == refreshed["max_workers"]:
                auto_rejected = self._store.reject_pending_applications(task_id, now)

            _old_status, new_status = self._status.recompute(task_id, now)

        self._logger.info(
            "Application accepted",
            extra={
                "task_id": task_id,
                "application_id": application_id,
                "current_workers": refreshed["current_workers"],
                "max_workers": refreshed["max_workers"],
                "auto_rejected": len(auto_rejected),
            },
        )

        link = f"/tasks/{task_id}"
        self._notifier.notify(
            application["agent_id"],
            NotificationType.APPLICATION_ACCEPTED,
            "Application accepted",
            f"You were accepted to work on '{task['title']}'.",
            link,
        )
        for agent_id in auto_rejected:
            self._notifier.notify(
                agent_id,
                NotificationType.APPLICATION_REJECTED,
                "Task is full",
                f"All worker slots for '{task['title']}' have been filled.",
                link,
            )

        return {
            "accepted": True,
            "application": self._store.get_application(application_id),
            "task_status": new_status,
            "current_workers": refreshed["current_workers"],
            "max_workers": refreshed["max_workers"],
            "auto_rejected": len(auto_rejected),
        }

    async def reject_application(
        self,
        task_id: str,
        application_id: str,
        actor: Actor,
    ) -> dict[str, Any]:
        """Reject a PENDING application."""
        task, application = self._load(task_id, application_id)
        require_creator(task, actor)

        changed = self._store.conditional_update(
            "applications",
            application_id,
            {"status": ApplicationStatus.PENDING},
            {"status": ApplicationStatus.REJECTED, "rejected_at": now_iso()},
        )
        if changed == 0:
            raise ServiceError(
                "INVALID_STATUS",
                f"Application is {application['status']}, expected PENDING",
                409,
            )

        self._notifier.notify(
            application["agent_id"],
            NotificationType.APPLICATION_REJECTED,
            "Application rejected",
            f"Your application for '{task['title']}' was not accepted.",
            f"/tasks/{task_id}",
        )
        return {"application": self._store.get_application(application_id)}

    async def release_worker(
        self,
        task_id: str,
        application_id: str,
        actor: Actor,
    ) -> dict[str, Any]:
        """
        Free the slot of a worker whose submission was rejected.

        Permitted only for an ACCEPTED application whose submission is
        REJECTED and can no longer be disputed: either the dispute window has
        passed or a dispute already upheld the rejection. The status change and
        the slot decrement share a transaction.
        """
        task, application = self._load(task_id, application_id)
        require_creator(task, actor)

        if application["status"] != ApplicationStatus.ACCEPTED:
            raise ServiceError(
                "CANNOT_RELEASE",
                f"Application is {application['status']}, expected ACCEPTED",
                409,
            )
        submission = self._store.find_submission_for_application(application_id)
        if submission is None or submission["status"] != SubmissionStatus.REJECTED:
            raise ServiceError(
                "CANNOT_RELEASE",
                "Only workers whose submission was rejected can be released",
                409,
            )
        if self._dispute_still_possible(submission):
            raise ServiceError(
                "DISPUTE_WINDOW_OPEN",
                "The worker can still dispute the rejection",
                409,
            )

        now = now_iso()
        with self._store.transaction():
            changed = self._store.conditional_update(
                "applications",
                application_id,
                {"status": ApplicationStatus.ACCEPTED},
                {"status": ApplicationStatus.RELEASED, "released_at": now},
            )
            if changed == 0:
                raise ServiceError("CANNOT_RELEASE", "Application is no longer ACCEPTED", 409)
            if self._store.release_slot(task_id, now) == 0:
                raise ServiceError("INVALID_STATUS", "Task has no occupied worker slot", 409)
            old_status, new_status = self._status.recompute(task_id, now)

        self._notifier.notify(
            application["agent_id"],
            NotificationType.WORKER_RELEASED,
            "Released from task",
            f"You have been released from '{task['title']}'.",
            f"/tasks/{task_id}",
        )
        if new_status == TaskStatus.COMPLETED and old_status != TaskStatus.COMPLETED:
            self._notifier.notify(
                task["creator_id"],
                NotificationType.TASK_COMPLETED,
                "Task completed",
                f"All work on '{task['title']}' has been approved.",
                f"/tasks/{task_id}",
            )

        return {
            "application": self._store.get_application(application_id),
            "task_status": new_status,
        }

    def _dispute_still_possible(self, submission: dict[str, Any]) -> bool:
        if self._store.find_dispute_for_submission(submission["submission_id"]) is not None:
            return False
        reviewed_at = submission["reviewed_at"]
        if reviewed_at is None:
            return False
        return datetime.now(UTC) - parse_iso(reviewed_at) <= self._dispute_window

    def _has_milestone_work(self, task_id: str, agent_id: str) -> bool:
        return any(
            milestone["submitted_by"] == agent_id
            or milestone["status"] not in _UNDELIVERED_MILESTONE_STATUSES
            for milestone in self._store.list_milestones(task_id)
        )

    async def withdraw_application(self, task_id: str, actor: Actor) -> dict[str, Any]:
        """
        Withdraw the caller's own application.

        PENDING is deleted outright. ACCEPTED without a submission is deleted
        and its slot freed. Any application with a submission, or a worker who
        has delivered a milestone, is blocked.
        """
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        application = self._store.find_application(task_id, actor.agent_id)
        if application is None:
            raise ServiceError("APPLICATION_NOT_FOUND", "You have not applied to this task", 404)

        application_id = application["application_id"]
        status = application["status"]
        now = now_iso()
        new_status = task["status"]

        with self._store.transaction():
            if self._store.find_submission_for_application(application_id) is not None:
                raise ServiceError(
                    "WITHDRAW_BLOCKED",
                    "Cannot withdraw after submitting work",
                    409,
                )
            if self._has_milestone_work(task_id, actor.agent_id):
                raise ServiceError(
                    "WITHDRAW_BLOCKED",
                    "Cannot withdraw after delivering a milestone",
                    409,
                )

            if status == ApplicationStatus.PENDING:
                if self._store.delete_application(application_id, status) == 0:
                    raise ServiceError("INVALID_STATUS", "Application changed concurrently", 409)
            elif status == ApplicationStatus.ACCEPTED:
                if self._store.delete_application(application_id, status) == 0:
                    raise ServiceError("INVALID_STATUS", "Application changed concurrently", 409)
                if self._store.release_slot(task_id, now) == 0:
                    raise ServiceError("INVALID_STATUS", "Task has no occupied worker slot", 409)
                _old_status, new_status = self._status.recompute(task_id, now)
            else:
                raise ServiceError(
                    "INVALID_STATUS",
                    f"Cannot withdraw a {status} application",
                    409,
                )

        self._logger.info(
            "Application withdrawn",
            extra={"task_id": task_id, "application_id": application_id, "was": status},
        )
        return {
            "withdrawn": True,
            "application_id": application_id,
            "previous_status": status,
            "task_status": new_status,
        }
