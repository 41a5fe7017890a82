"""Dispute workflow: filing, blind jury review, and human resolution."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.jury.base import JurorVote, JuryContext
from task_market_service.logging import get_logger
from task_market_service.services.ledger_store import DuplicateDisputeError, DuplicateVoteError
from task_market_service.services.statuses import (
    ApplicationStatus,
    DisputeStatus,
    NotificationType,
    PayoutStatus,
    SubmissionStatus,
    Verdict,
)
from task_market_service.services.utils import new_id, now_iso, parse_iso, require_admin

if TYPE_CHECKING:
    from collections.abc import Sequence

    from task_market_service.jury.base import Juror
    from task_market_service.services.background import BackgroundRunner
    from task_market_service.services.ledger_store import LedgerStore
    from task_market_service.services.notifier import Notifier
    from task_market_service.services.payout_orchestrator import PayoutOrchestrator
    from task_market_service.services.task_status import TaskStatusRecomputer
    from task_market_service.services.token_validator import Actor

_RETRYABLE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.JURY_REVIEW})


def tally_votes(votes: Sequence[str]) -> str | None:
    """
    Majority of the votes received.

    A tie keeps the rejection in place (REJECTION_UPHELD); with no votes at
    all there is no verdict.
    """
    if len(votes) == 0:
        return None
    counts = Counter(votes)
    if counts[Verdict.WORKER_PAID] > counts[Verdict.REJECTION_UPHELD]:
        return Verdict.WORKER_PAID
    return Verdict.REJECTION_UPHELD


def parse_verdict(decision: object) -> Verdict:
    """Validate a resolution decision string."""
    if not isinstance(decision, str) or decision not in set(Verdict):
        raise ServiceError(
            "INVALID_DECISION",
            "decision must be WORKER_PAID or REJECTION_UPHELD",
            400,
            {"allowed": [item.value for item in Verdict]},
        )
    return Verdict(decision)


class DisputeAdjudicator:
    """
    Runs the dispute lifecycle OPEN -> JURY_REVIEW -> HUMAN_REVIEW -> RESOLVED.

    The jury verdict is advisory: a platform admin always makes the final
    decision, and only a WORKER_PAID resolution moves money.
    """

    def __init__(
        self,
        store: LedgerStore,
        jurors: Sequence[Juror],
        payout_orchestrator: PayoutOrchestrator,
        background: BackgroundRunner,
        notifier: Notifier,
        status_recomputer: TaskStatusRecomputer,
        window_hours: int,
        max_reason_length: int,
        juror_timeout_seconds: float,
    ) -> None:
        self._store = store
        self._jurors = list(jurors)
        self._payout_orchestrator = payout_orchestrator
        self._background = background
        self._notifier = notifier
        self._status = status_recomputer
        self._window = timedelta(hours=window_hours)
        self._max_reason_length = max_reason_length
        self._juror_timeout_seconds = juror_timeout_seconds
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Filing
    # ------------------------------------------------------------------

    async def open_dispute(self, submission_id: str, reason: str, actor: Actor) -> dict[str, Any]:
        """
        File a dispute against a rejected submission.

        Error precedence:
        - SUBMISSION_NOT_FOUND (404)
        - FORBIDDEN (403): caller is not the submitting agent
        - INVALID_REASON (400): empty or too long
        - DISPUTE_EXISTS (409)
        - INVALID_STATUS (409): submission is not REJECTED
        - DISPUTE_WINDOW_EXPIRED (409)
        """
        submission = self._store.get_submission(submission_id)
        if submission is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404)
        if submission["agent_id"] != actor.agent_id:
            raise ServiceError(
                "FORBIDDEN",
                "Only the agent who submitted the work can dispute its rejection",
                403,
            )

        reason = reason.strip()
        if not reason:
            raise ServiceError("INVALID_REASON", "A dispute reason is required", 400)
        if len(reason) > self._max_reason_length:
            raise ServiceError(
                "INVALID_REASON",
                f"Dispute reason must be at most {self._max_reason_length} characters",
                400,
            )

        if self._store.find_dispute_for_submission(submission_id) is not None:
            raise ServiceError("DISPUTE_EXISTS", "This submission has already been disputed", 409)
        if submission["status"] != SubmissionStatus.REJECTED:
            raise ServiceError(
                "INVALID_STATUS",
                "Only rejected submissions can be disputed",
                409,
            )

        reviewed_at = submission["reviewed_at"]
        if reviewed_at is None or datetime.now(UTC) - parse_iso(reviewed_at) > self._window:
            raise ServiceError(
                "DISPUTE_WINDOW_EXPIRED",
                f"Disputes must be filed within {int(self._window.total_seconds() // 3600)} "
                "hours of rejection",
                409,
            )

        task = self._store.get_task(submission["task_id"])
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)

        dispute_id = new_id("dsp")
        now = now_iso()
        try:
            with self._store.transaction():
                self._store.insert_dispute(
                    {
                        "dispute_id": dispute_id,
                        "submission_id": submission_id,
                        "task_id": submission["task_id"],
                        "filed_by": actor.agent_id,
                        "status": DisputeStatus.OPEN,
                        "reason": reason,
                        "created_at": now,
                    }
                )
                changed = self._store.conditional_update(
                    "submissions",
                    submission_id,
                    {"status": SubmissionStatus.REJECTED},
                    {"status": SubmissionStatus.DISPUTED, "payout_status": PayoutStatus.DISPUTED},
                )
                if changed == 0:
                    raise ServiceError(
                        "INVALID_STATUS",
                        "Submission changed before the dispute was filed",
                        409,
                    )
                self._status.recompute(submission["task_id"], now)
        except DuplicateDisputeError as exc:
            raise ServiceError(
                "DISPUTE_EXISTS",
                "This submission has already been disputed",
                409,
            ) from exc

        self._logger.info(
            "Dispute opened",
            extra={"dispute_id": dispute_id, "submission_id": submission_id},
        )
        self._background.spawn(self.run_jury_review(dispute_id), name=f"jury-{dispute_id}")
        self._notifier.notify(
            task["creator_id"],
            NotificationType.DISPUTE_FILED,
            "Dispute filed",
            f"A rejected submission on '{task['title']}' is being disputed.",
            f"/disputes/{dispute_id}",
        )
        return {"dispute": self._store.get_dispute(dispute_id)}

    # ------------------------------------------------------------------
    # Jury
    # ------------------------------------------------------------------

    async def run_jury_review(self, dispute_id: str) -> dict[str, Any]:
        """
        Collect the jury's votes and hand the dispute to a human.

        Failed or timed-out jurors are logged and contribute no vote; the
        verdict is tallied over the votes that arrived.
        """
        dispute = self._store.get_dispute(dispute_id)
        if dispute is None:
            raise ServiceError("DISPUTE_NOT_FOUND", "Dispute not found", 404)

        if dispute["status"] == DisputeStatus.OPEN:
            changed = self._store.conditional_update(
                "disputes",
                dispute_id,
                {"status": DisputeStatus.OPEN},
                {"status": DisputeStatus.JURY_REVIEW, "jury_started_at": now_iso()},
            )
            if changed == 0:
                raise ServiceError("INVALID_STATUS", "Dispute is no longer OPEN", 409)
        elif dispute["status"] != DisputeStatus.JURY_REVIEW:
            raise ServiceError(
                "INVALID_STATUS",
                f"Dispute is {dispute['status']} and cannot be sent to the jury",
                409,
            )

        context = self._build_context(dispute)
        votes = await self._collect_votes(dispute_id, context)
        verdict = tally_votes([vote.vote for _index, vote in votes])
        now = now_iso()

        try:
            with self._store.transaction():
                self._store.insert_jury_votes(
                    [
                        {
                            "vote_id": new_id("vote"),
                            "dispute_id": dispute_id,
                            "juror_index": index,
                            "juror_id": vote.juror_id,
                            "vote": vote.vote,
                            "reasoning": vote.reasoning,
                            "confidence": vote.confidence,
                            "voted_at": vote.voted_at,
                        }
                        for index, vote in votes
                    ]
                )
                changed = self._store.conditional_update(
                    "disputes",
                    dispute_id,
                    {"status": DisputeStatus.JURY_REVIEW},
                    {
                        "status": DisputeStatus.HUMAN_REVIEW,
                        "jury_verdict": verdict,
                        "jurors_voted": len(votes),
                        "jury_completed_at": now,
                    },
                )
                if changed == 0:
                    raise ServiceError("INVALID_STATUS", "Dispute left jury review", 409)
        except DuplicateVoteError as exc:
            raise ServiceError(
                "INVALID_STATUS",
                "Jury votes for this dispute were already recorded",
                409,
            ) from exc

        self._logger.info(
            "Jury review completed",
            extra={
                "dispute_id": dispute_id,
                "jury_verdict": verdict,
                "jurors_voted": len(votes),
                "panel_size": len(self._jurors),
            },
        )
        return self.get_dispute_detail(dispute_id)

    def _build_context(self, dispute: dict[str, Any]) -> JuryContext:
        submission = self._store.get_submission(dispute["submission_id"])
        task = self._store.get_task(dispute["task_id"])
        if submission is None or task is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Disputed submission not found", 404)
        return JuryContext(
            task_title=task["title"],
            task_description=task["description"],
            task_requirements=task["requirements"],
            submission_content=submission["content"],
            evidence_count=len(submission["evidence_urls"]),
            dispute_reason=dispute["reason"],
        )

    async def _collect_votes(
        self,
        dispute_id: str,
        context: JuryContext,
    ) -> list[tuple[int, JurorVote]]:
        results = await asyncio.gather(
            *(
                asyncio.wait_for(juror.vote(context), timeout=self._juror_timeout_seconds)
                for juror in self._jurors
            ),
            return_exceptions=True,
        )

        votes: list[tuple[int, JurorVote]] = []
        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                self._logger.warning(
                    "Juror failed to vote",
                    extra={
                        "dispute_id": dispute_id,
                        "juror_index": index,
                        "error": type(result).__name__,
                    },
                )
                continue
            votes.append((index, result))
        return votes

    async def retry_jury_review(self, dispute_id: str, actor: Actor) -> dict[str, Any]:
        """Re-drive a dispute whose jury review never finished.

        A review still running in the background is cancelled first, so the
        jurors are only ever asked once per attempt.
        """
        require_admin(actor)
        dispute = self._store.get_dispute(dispute_id)
        if dispute is None:
            raise ServiceError("DISPUTE_NOT_FOUND", "Dispute not found", 404)
        if dispute["status"] not in _RETRYABLE_STATUSES:
            raise ServiceError(
                "INVALID_STATUS",
                f"Dispute is {dispute['status']}; only OPEN or JURY_REVIEW can be retried",
                409,
            )
        cancelled = await self._background.cancel(f"jury-{dispute_id}")
        if cancelled:
            self._logger.info(
                "Cancelled running jury review before retry",
                extra={"dispute_id": dispute_id},
            )
        return await self.run_jury_review(dispute_id)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_dispute(
        self,
        dispute_id: str,
        actor: Actor,
        decision: object,
        notes: str | None,
    ) -> dict[str, Any]:
        """
        Record the human decision on a dispute in HUMAN_REVIEW.

        WORKER_PAID approves the submission and drives the normal payout
        path. REJECTION_UPHELD returns the submission to REJECTED with no
        payout. Either way the dispute is terminal.
        """
        require_admin(actor)
        verdict = parse_verdict(decision)
        dispute = self._store.get_dispute(dispute_id)
        if dispute is None:
            raise ServiceError("DISPUTE_NOT_FOUND", "Dispute not found", 404)
        if dispute["status"] != DisputeStatus.HUMAN_REVIEW:
            raise ServiceError(
                "DISPUTE_NOT_READY",
                f"Dispute is {dispute['status']}, expected HUMAN_REVIEW",
                409,
            )

        submission = self._store.get_submission(dispute["submission_id"])
        task = self._store.get_task(dispute["task_id"])
        if submission is None or task is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Disputed submission not found", 404)

        now = now_iso()
        with self._store.transaction():
            changed = self._store.conditional_update(
                "disputes",
                dispute_id,
                {"status": DisputeStatus.HUMAN_REVIEW},
                {
                    "status": DisputeStatus.RESOLVED,
                    "outcome": verdict,
                    "resolved_by": actor.agent_id,
                    "resolution_notes": notes,
                    "resolved_at": now,
                },
            )
            if changed == 0:
                raise ServiceError("DISPUTE_NOT_READY", "Dispute was already resolved", 409)

            if verdict == Verdict.WORKER_PAID:
                self._store.conditional_update(
                    "submissions",
                    submission["submission_id"],
                    {"status": SubmissionStatus.DISPUTED},
                    {
                        "status": SubmissionStatus.APPROVED,
                        "payout_amount": self._payout_orchestrator.payout_amount_for(task),
                        "payout_status": PayoutStatus.PROCESSING,
                        "reviewed_by": actor.agent_id,
                        "reviewed_at": now,
                    },
                )
                completed = self._store.conditional_update(
                    "applications",
                    submission["application_id"],
                    {"status": ApplicationStatus.ACCEPTED},
                    {"status": ApplicationStatus.COMPLETED, "completed_at": now},
                )
                if completed == 0:
                    raise ServiceError(
                        "WORKER_NOT_ASSIGNED",
                        "The disputing worker no longer holds a slot on this task",
                        409,
                    )
            else:
                self._store.conditional_update(
                    "submissions",
                    submission["submission_id"],
                    {"status": SubmissionStatus.DISPUTED},
                    {"status": SubmissionStatus.REJECTED},
                )
            self._status.recompute(task["task_id"], now)

        self._logger.info(
            "Dispute resolved",
            extra={
                "dispute_id": dispute_id,
                "outcome": verdict,
                "jury_verdict": dispute["jury_verdict"],
            },
        )

        if verdict == Verdict.WORKER_PAID:
            approved = self._store.get_submission(submission["submission_id"])
            if approved is not None:
                await self._payout_orchestrator.pay_submission(approved)

        message = (
            "The worker will be paid."
            if verdict == Verdict.WORKER_PAID
            else "The rejection was upheld."
        )
        for recipient in (submission["agent_id"], task["creator_id"]):
            self._notifier.notify(
                recipient,
                NotificationType.DISPUTE_RESOLVED,
                "Dispute resolved",
                f"The dispute on '{task['title']}' was resolved. {message}",
                f"/disputes/{dispute_id}",
            )
        return self.get_dispute_detail(dispute_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_dispute_detail(self, dispute_id: str) -> dict[str, Any]:
        dispute = self._store.get_dispute(dispute_id)
        if dispute is None:
            raise ServiceError("DISPUTE_NOT_FOUND", "Dispute not found", 404)
        return {"dispute": dispute, "votes": self._store.list_jury_votes(dispute_id)}

    def get_dispute(self, dispute_id: str, actor: Actor) -> dict[str, Any]:
        """A dispute and its votes; visible to admins and the two parties."""
        detail = self.get_dispute_detail(dispute_id)
        if actor.is_admin:
            return detail
        dispute = detail["dispute"]
        task = self._store.get_task(dispute["task_id"])
        creator_id = task["creator_id"] if task is not None else None
        if actor.agent_id not in (dispute["filed_by"], creator_id):
            raise ServiceError("FORBIDDEN", "You are not a party to this dispute", 403)
        return detail

    def list_disputes(self, actor: Actor) -> list[dict[str, Any]]:
        """Admins see every dispute; others see the ones they are party to."""
        return self._store.list_disputes(None if actor.is_admin else actor.agent_id)
