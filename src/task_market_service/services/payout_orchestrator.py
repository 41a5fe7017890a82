"""Submission and milestone review, and the escrow payout that follows approval."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_market_service.clients.escrow_gateway_client import TransferResult
from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.payout_policy import (
    resolve_payout_amount,
    resolve_source_wallet,
)
from task_market_service.services.statuses import (
    SLOT_HOLDING_STATUSES,
    ApplicationStatus,
    MilestoneStatus,
    NotificationType,
    PayoutStatus,
    ReviewDecision,
    SubmissionStatus,
    TaskStatus,
)
from task_market_service.services.utils import append_note, now_iso, require_creator

if TYPE_CHECKING:
    from task_market_service.clients.escrow_gateway_client import EscrowGateway
    from task_market_service.services.ledger_store import LedgerStore
    from task_market_service.services.notifier import Notifier
    from task_market_service.services.task_status import TaskStatusRecomputer
    from task_market_service.services.token_validator import Actor


def parse_review_decision(decision: object) -> ReviewDecision:
    """Validate a review decision string."""
    if not isinstance(decision, str) or decision not in set(ReviewDecision):
        raise ServiceError(
            "INVALID_DECISION",
            "decision must be APPROVE or REJECT",
            400,
            {"allowed": [item.value for item in ReviewDecision]},
        )
    return ReviewDecision(decision)


class PayoutOrchestrator:
    """
    Reviews submissions and milestones and drives escrow transfers.

    The approval is committed before the transfer is attempted, so a
    concurrent second approval always loses on the conditional update and
    never reaches the gateway. Transfer failures are recorded on the
    submission and never retried automatically.
    """

    def __init__(
        self,
        store: LedgerStore,
        escrow_gateway: EscrowGateway,
        notifier: Notifier,
        status_recomputer: TaskStatusRecomputer,
        platform_wallet_ref: str,
    ) -> None:
        self._store = store
        self._escrow_gateway = escrow_gateway
        self._notifier = notifier
        self._status = status_recomputer
        self._platform_wallet_ref = platform_wallet_ref
        self._logger = get_logger(__name__)

    def set_escrow_gateway(self, escrow_gateway: EscrowGateway) -> None:
        """Replace the escrow gateway (used when tests swap in mocks)."""
        self._escrow_gateway = escrow_gateway

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    async def review_submission(
        self,
        submission_id: str,
        decision: object,
        notes: str | None,
        actor: Actor,
    ) -> dict[str, Any]:
        """
        Approve or reject a SUBMITTED submission.

        Error precedence:
        - INVALID_DECISION (400)
        - SUBMISSION_NOT_FOUND (404)
        - FORBIDDEN (403): caller is not the task creator
        - NOTES_REQUIRED (400): rejecting without notes
        - ALREADY_REVIEWED (409): submission is no longer SUBMITTED
        """
        parsed = parse_review_decision(decision)
        submission = self._store.get_submission(submission_id)
        if submission is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404)
        task = self._store.get_task(submission["task_id"])
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        require_creator(task, actor)

        if parsed == ReviewDecision.REJECT:
            return self._reject_submission(task, submission, notes, actor)
        return await self._approve_submission(task, submission, notes, actor)

    def _reject_submission(
        self,
        task: dict[str, Any],
        submission: dict[str, Any],
        notes: str | None,
        actor: Actor,
    ) -> dict[str, Any]:
        if notes is None or not notes.strip():
            raise ServiceError(
                "NOTES_REQUIRED",
                "Review notes are required when rejecting a submission",
                400,
            )

        now = now_iso()
        changed = self._store.conditional_update(
            "submissions",
            submission["submission_id"],
            {"status": SubmissionStatus.SUBMITTED},
            {
                "status": SubmissionStatus.REJECTED,
                "review_notes": notes.strip(),
                "reviewed_by": actor.agent_id,
                "reviewed_at": now,
            },
        )
        if changed == 0:
            raise ServiceError("ALREADY_REVIEWED", "Submission has already been reviewed", 409)

        self._logger.info(
            "Submission rejected",
            extra={"submission_id": submission["submission_id"], "task_id": task["task_id"]},
        )
        self._notifier.notify(
            submission["agent_id"],
            NotificationType.SUBMISSION_REJECTED,
            "Submission rejected",
            f"Your submission for '{task['title']}' was rejected. You may open a dispute.",
            f"/submissions/{submission['submission_id']}",
        )
        return {"submission": self._store.get_submission(submission["submission_id"])}

    async def _approve_submission(
        self,
        task: dict[str, Any],
        submission: dict[str, Any],
        notes: str | None,
        actor: Actor,
    ) -> dict[str, Any]:
        amount = self.payout_amount_for(task)
        now = now_iso()
        patch: dict[str, Any] = {
            "status": SubmissionStatus.APPROVED,
            "payout_amount": amount,
            "payout_status": PayoutStatus.PROCESSING,
            "reviewed_by": actor.agent_id,
            "reviewed_at": now,
        }
        if notes is not None and notes.strip():
            patch["review_notes"] = notes.strip()

        with self._store.transaction():
            changed = self._store.conditional_update(
                "submissions",
                submission["submission_id"],
                {"status": SubmissionStatus.SUBMITTED},
                patch,
            )
            if changed == 0:
                raise ServiceError(
                    "ALREADY_REVIEWED",
                    "Submission has already been reviewed",
                    409,
                )
            self._store.conditional_update(
                "applications",
                submission["application_id"],
                {"status": ApplicationStatus.ACCEPTED},
                {"status": ApplicationStatus.COMPLETED, "completed_at": now},
            )

        self._notifier.notify(
            submission["agent_id"],
            NotificationType.SUBMISSION_APPROVED,
            "Submission approved",
            f"Your submission for '{task['title']}' was approved.",
            f"/submissions/{submission['submission_id']}",
        )

        approved = self._store.get_submission(submission["submission_id"])
        if approved is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404)
        paid = await self.pay_submission(approved)
        return {"submission": paid, "task_status": self._current_status(task["task_id"])}

    def payout_amount_for(self, task: dict[str, Any]) -> Decimal:
        """Amount owed to one worker of a FIXED task."""
        per_worker = task["payment_per_worker"]
        return resolve_payout_amount(
            Decimal(per_worker) if per_worker is not None else None,
            Decimal(task["total_budget"]),
            int(task["max_workers"]),
        )

    async def pay_submission(self, submission: dict[str, Any]) -> dict[str, Any]:
        """
        Transfer an approved submission's payout and record the outcome.

        The submission must already be APPROVED with payout PROCESSING. No
        transaction is held open while the gateway is called.
        """
        submission_id = submission["submission_id"]
        task = self._store.get_task(submission["task_id"])
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        amount = Decimal(submission["payout_amount"])

        result = await self._transfer(task, submission["agent_id"], amount)
        now = now_iso()

        with self._store.transaction():
            if result.success:
                changed = self._store.conditional_update(
                    "submissions",
                    submission_id,
                    {"payout_status": PayoutStatus.PROCESSING},
                    {
                        "payout_status": PayoutStatus.PAID,
                        "transaction_hash": result.transaction_hash,
                        "paid_at": now,
                    },
                )
                if changed == 1:
                    self._store.ensure_account(submission["agent_id"], now)
                    self._store.credit_earnings(submission["agent_id"], amount, completed=True)
                    self._store.conditional_update(
                        "applications",
                        submission["application_id"],
                        {},
                        {"paid_amount": amount, "paid_at": now},
                    )
            else:
                current = self._store.get_submission(submission_id)
                notes = current["review_notes"] if current is not None else None
                self._store.conditional_update(
                    "submissions",
                    submission_id,
                    {"payout_status": PayoutStatus.PROCESSING},
                    {
                        "payout_status": PayoutStatus.FAILED,
                        "review_notes": append_note(notes, f"[PAYOUT FAILED] {result.error}"),
                    },
                )
            old_status, new_status = self._status.recompute(task["task_id"], now)

        if result.success:
            self._logger.info(
                "Payout completed",
                extra={
                    "submission_id": submission_id,
                    "amount": str(amount),
                    "transaction_hash": result.transaction_hash,
                },
            )
        else:
            self._logger.warning(
                "Payout failed",
                extra={
                    "submission_id": submission_id,
                    "amount": str(amount),
                    "error": result.error,
                },
            )

        self._notify_if_completed(task, old_status, new_status)
        updated = self._store.get_submission(submission_id)
        return updated if updated is not None else submission

    async def _transfer(
        self,
        task: dict[str, Any],
        agent_id: str,
        amount: Decimal,
    ) -> TransferResult:
        """Run one escrow transfer; a raised error counts as a failed transfer."""
        account = self._store.get_account(agent_id)
        wallet_address = account["wallet_address"] if account is not None else None
        if not wallet_address:
            return TransferResult(success=False, error="Agent has no payout wallet")

        source = resolve_source_wallet(
            task["escrow_wallet_id"],
            task["escrow_wallet_address"],
            self._platform_wallet_ref,
        )
        if source.is_platform_fallback:
            self._logger.info(
                "Using platform fallback wallet",
                extra={"task_id": task["task_id"], "source_wallet": source.ref},
            )

        try:
            return await self._escrow_gateway.transfer(wallet_address, amount, source.ref)
        except Exception as exc:
            message = exc.message if isinstance(exc, ServiceError) else str(exc)
            return TransferResult(success=False, error=message or type(exc).__name__)

    def list_failed_payouts(self) -> list[dict[str, Any]]:
        """Approved submissions whose payout failed, oldest review first."""
        return self._store.list_failed_payouts()

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    async def review_milestone(
        self,
        milestone_id: str,
        decision: object,
        feedback: str | None,
        actor: Actor,
    ) -> dict[str, Any]:
        """
        Approve or request changes on a milestone UNDER_REVIEW.

        Approval pays the milestone amount to the task's single slot holder.
        Requesting changes needs feedback and sends the milestone back to
        IN_PROGRESS with the feedback prepended to its deliverable.
        """
        parsed = parse_review_decision(decision)
        milestone = self._store.get_milestone(milestone_id)
        if milestone is None:
            raise ServiceError("MILESTONE_NOT_FOUND", "Milestone not found", 404)
        task = self._store.get_task(milestone["task_id"])
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        require_creator(task, actor)

        if parsed == ReviewDecision.REJECT:
            return self._request_milestone_changes(task, milestone, feedback)
        return await self._approve_milestone(task, milestone)

    def _request_milestone_changes(
        self,
        task: dict[str, Any],
        milestone: dict[str, Any],
        feedback: str | None,
    ) -> dict[str, Any]:
        if feedback is None or not feedback.strip():
            raise ServiceError(
                "NOTES_REQUIRED",
                "Feedback is required when requesting changes",
                400,
            )

        previous = milestone["deliverable"] or ""
        deliverable = (
            f"[CHANGES REQUESTED]\n{feedback.strip()}\n\n---\nPrevious submission:\n{previous}"
        )
        changed = self._store.conditional_update(
            "milestones",
            milestone["milestone_id"],
            {"status": MilestoneStatus.UNDER_REVIEW},
            {
                "status": MilestoneStatus.IN_PROGRESS,
                "deliverable": deliverable,
                "reviewed_at": now_iso(),
            },
        )
        if changed == 0:
            raise ServiceError("ALREADY_REVIEWED", "Milestone is not under review", 409)

        if milestone["submitted_by"]:
            self._notifier.notify(
                milestone["submitted_by"],
                NotificationType.MILESTONE_CHANGES_REQUESTED,
                "Changes requested",
                f"Changes were requested on milestone '{milestone['title']}'.",
                f"/tasks/{task['task_id']}",
            )
        return {"milestone": self._store.get_milestone(milestone["milestone_id"])}

    async def _approve_milestone(
        self,
        task: dict[str, Any],
        milestone: dict[str, Any],
    ) -> dict[str, Any]:
        milestone_id = milestone["milestone_id"]
        holders = [
            application
            for application in self._store.list_applications(task["task_id"])
            if application["status"] in SLOT_HOLDING_STATUSES
        ]
        if len(holders) == 0:
            raise ServiceError(
                "NO_ACCEPTED_WORKER",
                "Milestone task has no accepted worker to pay",
                409,
            )
        holder = next(
            (item for item in holders if item["agent_id"] == milestone["submitted_by"]),
            None,
        )
        if holder is None:
            raise ServiceError(
                "SUBMITTER_NOT_ASSIGNED",
                "The milestone was delivered by a worker who no longer holds the slot",
                409,
                {"submitted_by": milestone["submitted_by"]},
            )

        now = now_iso()
        changed = self._store.conditional_update(
            "milestones",
            milestone_id,
            {"status": MilestoneStatus.UNDER_REVIEW},
            {
                "status": MilestoneStatus.COMPLETED,
                "reviewed_at": now,
                "payout_status": PayoutStatus.PROCESSING,
            },
        )
        if changed == 0:
            raise ServiceError("ALREADY_REVIEWED", "Milestone is not under review", 409)

        amount = Decimal(milestone["amount"])
        result = await self._transfer(task, holder["agent_id"], amount)
        now = now_iso()

        with self._store.transaction():
            if result.success:
                self._store.conditional_update(
                    "milestones",
                    milestone_id,
                    {"payout_status": PayoutStatus.PROCESSING},
                    {
                        "payout_status": PayoutStatus.PAID,
                        "transaction_hash": result.transaction_hash,
                        "paid_at": now,
                    },
                )
                self._store.ensure_account(holder["agent_id"], now)
                self._store.credit_earnings(holder["agent_id"], amount, completed=False)
            else:
                self._store.conditional_update(
                    "milestones",
                    milestone_id,
                    {"payout_status": PayoutStatus.PROCESSING},
                    {"payout_status": PayoutStatus.FAILED, "payout_error": result.error},
                )

            old_status, new_status = self._status.recompute(task["task_id"], now)
            if new_status == TaskStatus.COMPLETED and old_status != TaskStatus.COMPLETED:
                self._store.conditional_update(
                    "applications",
                    holder["application_id"],
                    {"status": ApplicationStatus.ACCEPTED},
                    {"status": ApplicationStatus.COMPLETED, "completed_at": now},
                )
                self._store.ensure_account(holder["agent_id"], now)
                self._store.credit_earnings(holder["agent_id"], Decimal(0), completed=True)

        if result.success:
            self._logger.info(
                "Milestone paid",
                extra={"milestone_id": milestone_id, "amount": str(amount)},
            )
        else:
            self._logger.warning(
                "Milestone payout failed",
                extra={"milestone_id": milestone_id, "amount": str(amount), "error": result.error},
            )

        self._notifier.notify(
            holder["agent_id"],
            NotificationType.MILESTONE_APPROVED,
            "Milestone approved",
            f"Milestone '{milestone['title']}' was approved.",
            f"/tasks/{task['task_id']}",
        )
        self._notify_if_completed(task, old_status, new_status)
        return {
            "milestone": self._store.get_milestone(milestone_id),
            "task_status": new_status,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _current_status(self, task_id: str) -> str | None:
        task = self._store.get_task(task_id)
        return task["status"] if task is not None else None

    def _notify_if_completed(self, task: dict[str, Any], old_status: str, new_status: str) -> None:
        if new_status != TaskStatus.COMPLETED or old_status == TaskStatus.COMPLETED:
            return
        self._logger.info("Task completed", extra={"task_id": task["task_id"]})
        self._notifier.notify(
            task["creator_id"],
            NotificationType.TASK_COMPLETED,
            "Task completed",
            f"All work on '{task['title']}' has been approved.",
            f"/tasks/{task['task_id']}",
        )
