"""Task lifecycle management: creation, editing, funding, cancellation, applying and submitting."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from task_market_service.clients.escrow_gateway_client import TransferResult
from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.ledger_store import (
    DuplicateApplicationError,
    DuplicateSubmissionError,
)
from task_market_service.services.payout_policy import (
    cancellation_refund,
    milestone_amount,
    parse_amount,
    resolve_source_wallet,
    validate_milestone_percentages,
)
from task_market_service.services.statuses import (
    ApplicationStatus,
    MilestoneStatus,
    NotificationType,
    PaymentType,
    PayoutStatus,
    SubmissionStatus,
    TaskStatus,
)
from task_market_service.services.utils import (
    new_id,
    now_iso,
    parse_iso,
    require_admin,
    require_creator,
)

if TYPE_CHECKING:
    from task_market_service.clients.escrow_gateway_client import EscrowGateway
    from task_market_service.config import LimitsConfig
    from task_market_service.services.ledger_store import LedgerStore
    from task_market_service.services.notifier import Notifier
    from task_market_service.services.task_status import TaskStatusRecomputer
    from task_market_service.services.token_validator import Actor

_TEXT_FIELDS = ("title", "description", "requirements", "deadline")
_FINANCIAL_FIELDS = (
    "total_budget",
    "payment_type",
    "payment_per_worker",
    "max_workers",
    "milestones",
)
_EDITABLE_FIELDS = frozenset({*_TEXT_FIELDS, *_FINANCIAL_FIELDS})

_LOCKED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.DISPUTED})
_OPEN_FOR_APPLICATIONS = frozenset({TaskStatus.ACTIVE, TaskStatus.IN_PROGRESS})
_OPEN_FOR_SUBMISSIONS = frozenset({TaskStatus.ACTIVE, TaskStatus.IN_PROGRESS, TaskStatus.DISPUTED})
_SUBMITTABLE_MILESTONES = frozenset({MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS})


def _is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _invalid(message: str, field: str) -> ServiceError:
    return ServiceError("INVALID_PAYLOAD", message, 400, {"field": field})


def _require_text(data: dict[str, Any], field: str, max_length: int) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise _invalid(f"{field} is required", field)
    if len(value) > max_length:
        raise _invalid(f"{field} must be at most {max_length} characters", field)
    return value.strip()


def _optional_text(data: dict[str, Any], field: str, max_length: int) -> str | None:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise _invalid(f"{field} must be a string", field)
    if len(value) > max_length:
        raise _invalid(f"{field} must be at most {max_length} characters", field)
    return value.strip() or None


def _optional_deadline(data: dict[str, Any]) -> str | None:
    value = data.get("deadline")
    if value is None:
        return None
    if not isinstance(value, str):
        raise _invalid("deadline must be an ISO-8601 string", "deadline")
    try:
        parse_iso(value)
    except ValueError as exc:
        raise _invalid("deadline must be an ISO-8601 string", "deadline") from exc
    return value


class TaskManager:
    """
    Owns the task lifecycle around the settlement engine.

    Slot allocation, reviews and disputes live in their own services; this
    class covers everything a creator or agent does before and around them.
    """

    def __init__(
        self,
        store: LedgerStore,
        escrow_gateway: EscrowGateway,
        notifier: Notifier,
        status_recomputer: TaskStatusRecomputer,
        limits: LimitsConfig,
        cancellation_fee_percent: Decimal,
        platform_wallet_ref: str,
        require_verified_agents: bool,
    ) -> None:
        self._store = store
        self._escrow_gateway = escrow_gateway
        self._notifier = notifier
        self._status = status_recomputer
        self._limits = limits
        self._cancellation_fee_percent = cancellation_fee_percent
        self._platform_wallet_ref = platform_wallet_ref
        self._require_verified_agents = require_verified_agents
        self._logger = get_logger(__name__)

    def set_escrow_gateway(self, escrow_gateway: EscrowGateway) -> None:
        """Replace the escrow gateway (used when tests swap in mocks)."""
        self._escrow_gateway = escrow_gateway

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _get_task_row(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404)
        return task

    def _task_to_response(self, row: dict[str, Any]) -> dict[str, Any]:
        """A task row with its milestones attached."""
        response = dict(row)
        response["milestones"] = self._store.list_milestones(row["task_id"])
        return response

    def _validate_structure(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Validate the financial shape of a task.

        Returns the normalized fields plus a `milestone_specs` list of
        (title, description, percentage) tuples.
        """
        total_budget = parse_amount(data.get("total_budget"), "total_budget")

        payment_type_value = data.get("payment_type", PaymentType.FIXED)
        if payment_type_value not in set(PaymentType):
            raise _invalid("payment_type must be FIXED or MILESTONE", "payment_type")
        payment_type = PaymentType(payment_type_value)

        max_workers = data.get("max_workers", 1)
        if not _is_positive_int(max_workers) or max_workers > self._limits.max_workers:
            raise _invalid(
                f"max_workers must be an integer between 1 and {self._limits.max_workers}",
                "max_workers",
            )

        payment_per_worker: Decimal | None = None
        if data.get("payment_per_worker") is not None:
            payment_per_worker = parse_amount(data["payment_per_worker"], "payment_per_worker")
            if payment_per_worker * max_workers > total_budget:
                raise ServiceError(
                    "INVALID_BUDGET",
                    "payment_per_worker x max_workers exceeds total_budget",
                    400,
                    {
                        "payment_per_worker": str(payment_per_worker),
                        "max_workers": max_workers,
                        "total_budget": str(total_budget),
                    },
                )

        milestones = data.get("milestones")
        milestone_specs: list[tuple[str, str | None, int]] = []
        if payment_type == PaymentType.MILESTONE:
            if max_workers != 1:
                raise _invalid("Milestone tasks have exactly one worker", "max_workers")
            if payment_per_worker is not None:
                raise _invalid(
                    "payment_per_worker does not apply to milestone tasks",
                    "payment_per_worker",
                )
            if not isinstance(milestones, list):
                raise ServiceError(
                    "INVALID_MILESTONES",
                    "Milestone tasks need a list of milestones",
                    400,
                    {},
                )
            milestone_specs = self._validate_milestones(milestones)
        elif milestones:
            raise _invalid("Only MILESTONE tasks can define milestones", "milestones")

        return {
            "total_budget": total_budget,
            "payment_type": payment_type,
            "payment_per_worker": payment_per_worker,
            "max_workers": max_workers,
            "milestone_specs": milestone_specs,
        }

    def _validate_milestones(self, milestones: list[Any]) -> list[tuple[str, str | None, int]]:
        if not all(isinstance(item, dict) for item in milestones):
            raise ServiceError("INVALID_MILESTONES", "Each milestone must be an object", 400, {})
        percentages = validate_milestone_percentages(
            [item.get("percentage") for item in milestones]
        )
        specs: list[tuple[str, str | None, int]] = []
        for item, percentage in zip(milestones, percentages, strict=True):
            title = item.get("title")
            if not isinstance(title, str) or not title.strip():
                raise ServiceError("INVALID_MILESTONES", "Each milestone needs a title", 400, {})
            specs.append(
                (
                    title.strip()[: self._limits.max_title_length],
                    _optional_text(item, "description", self._limits.max_description_length),
                    percentage,
                )
            )
        return specs

    @staticmethod
    def _milestone_rows(
        task_id: str,
        total_budget: Decimal,
        specs: list[tuple[str, str | None, int]],
    ) -> list[dict[str, Any]]:
        return [
            {
                "milestone_id": new_id("ms"),
                "task_id": task_id,
                "position": position,
                "title": title,
                "description": description,
                "percentage": percentage,
                "amount": milestone_amount(percentage, total_budget),
                "status": MilestoneStatus.PENDING,
            }
            for position, (title, description, percentage) in enumerate(specs, start=1)
        ]

    def _holds_slot(self, task_id: str, agent_id: str) -> dict[str, Any]:
        application = self._store.find_application(task_id, agent_id)
        if application is None or application["status"] != ApplicationStatus.ACCEPTED:
            raise ServiceError(
                "FORBIDDEN",
                "Only an accepted worker on this task can submit work",
                403,
            )
        return application

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    async def create_task(self, actor: Actor, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create a task in DRAFT.

        Validation runs before any write; milestones are inserted with the
        task in one transaction.
        """
        title = _require_text(data, "title", self._limits.max_title_length)
        description = _require_text(data, "description", self._limits.max_description_length)
        requirements = _require_text(data, "requirements", self._limits.max_requirements_length)
        deadline = _optional_deadline(data)
        structure = self._validate_structure(data)

        task_id = new_id("t")
        now = now_iso()
        row = {
            "task_id": task_id,
            "creator_id": actor.agent_id,
            "title": title,
            "description": description,
            "requirements": requirements,
            "deadline": deadline,
            "status": TaskStatus.DRAFT,
            "total_budget": structure["total_budget"],
            "payment_type": structure["payment_type"],
            "payment_per_worker": structure["payment_per_worker"],
            "max_workers": structure["max_workers"],
            "current_workers": 0,
            "created_at": now,
            "updated_at": now,
        }
        with self._store.transaction():
            self._store.ensure_account(actor.agent_id, now)
            self._store.insert_task(row)
            if structure["milestone_specs"]:
                self._store.insert_milestones(
                    self._milestone_rows(
                        task_id,
                        structure["total_budget"],
                        structure["milestone_specs"],
                    )
                )

        self._logger.info(
            "Task created",
            extra={
                "task_id": task_id,
                "creator_id": actor.agent_id,
                "payment_type": structure["payment_type"],
                "total_budget": str(structure["total_budget"]),
            },
        )
        return self._task_to_response(self._get_task_row(task_id))

    async def edit_task(
        self,
        task_id: str,
        actor: Actor,
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Edit a task.

        Error precedence:
        - INVALID_PAYLOAD (400): unknown or empty update
        - TASK_NOT_FOUND (404)
        - FORBIDDEN (403)
        - TASK_LOCKED (409): task is COMPLETED, CANCELLED or DISPUTED
        - FIELD_LOCKED (409): financial fields after DRAFT
        """
        unknown = sorted(set(updates) - _EDITABLE_FIELDS)
        if unknown:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"Fields cannot be edited: {', '.join(unknown)}",
                400,
                {"fields": unknown},
            )
        if len(updates) == 0:
            raise ServiceError("INVALID_PAYLOAD", "No fields to update", 400)

        task = self._get_task_row(task_id)
        require_creator(task, actor)

        if task["status"] in _LOCKED_STATUSES:
            raise ServiceError(
                "TASK_LOCKED",
                f"A {task['status']} task can no longer be edited",
                409,
            )
        financial = [field for field in _FINANCIAL_FIELDS if field in updates]
        if financial and task["status"] != TaskStatus.DRAFT:
            raise ServiceError(
                "FIELD_LOCKED",
                "Budget and worker fields can only be changed while the task is a DRAFT",
                409,
                {"fields": financial},
            )

        patch: dict[str, Any] = {}
        if "title" in updates:
            patch["title"] = _require_text(updates, "title", self._limits.max_title_length)
        if "description" in updates:
            patch["description"] = _require_text(
                updates, "description", self._limits.max_description_length
            )
        if "requirements" in updates:
            patch["requirements"] = _require_text(
                updates, "requirements", self._limits.max_requirements_length
            )
        if "deadline" in updates:
            patch["deadline"] = _optional_deadline(updates)

        milestone_specs: list[tuple[str, str | None, int]] | None = None
        if financial:
            existing_milestones = [
                {
                    "title": milestone["title"],
                    "description": milestone["description"],
                    "percentage": milestone["percentage"],
                }
                for milestone in self._store.list_milestones(task_id)
            ]
            merged = {
                "total_budget": task["total_budget"],
                "payment_type": task["payment_type"],
                "payment_per_worker": task["payment_per_worker"],
                "max_workers": task["max_workers"],
                "milestones": existing_milestones,
            }
            if updates.get("payment_type", task["payment_type"]) != task["payment_type"]:
                merged["milestones"] = None
                merged["payment_per_worker"] = None
            merged.update({field: updates[field] for field in financial})

            structure = self._validate_structure(merged)
            patch.update(
                {
                    "total_budget": structure["total_budget"],
                    "payment_type": structure["payment_type"],
                    "payment_per_worker": structure["payment_per_worker"],
                    "max_workers": structure["max_workers"],
                }
            )
            milestone_specs = structure["milestone_specs"]

        patch["updated_at"] = now_iso()
        with self._store.transaction():
            changed = self._store.conditional_update(
                "tasks", task_id, {"status": task["status"]}, patch
            )
            if changed == 0:
                raise ServiceError("INVALID_STATUS", "Task changed while being edited", 409)
            if milestone_specs is not None:
                self._store.delete_milestones(task_id)
                if milestone_specs:
                    self._store.insert_milestones(
                        self._milestone_rows(task_id, patch["total_budget"], milestone_specs)
                    )

        self._logger.info(
            "Task edited",
            extra={"task_id": task_id, "fields": sorted(updates)},
        )
        return self._task_to_response(self._get_task_row(task_id))

    async def activate_task(
        self,
        task_id: str,
        actor: Actor,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Record that a DRAFT task's escrow is funded and open it to applicants.

        Funding is verified outside this service; only platform admins may
        report it.
        """
        require_admin(actor)
        escrow_wallet_id = _optional_text(data, "escrow_wallet_id", 200)
        escrow_wallet_address = _optional_text(data, "escrow_wallet_address", 200)
        payment_chain = _optional_text(data, "payment_chain", 100)

        task = self._get_task_row(task_id)
        now = now_iso()
        changed = self._store.conditional_update(
            "tasks",
            task_id,
            {"status": TaskStatus.DRAFT},
            {
                "status": TaskStatus.ACTIVE,
                "escrow_wallet_id": escrow_wallet_id,
                "escrow_wallet_address": escrow_wallet_address,
                "payment_chain": payment_chain,
                "activated_at": now,
                "updated_at": now,
            },
        )
        if changed == 0:
            raise ServiceError(
                "INVALID_STATUS",
                f"Task is {task['status']}, expected DRAFT",
                409,
            )

        self._logger.info(
            "Task activated",
            extra={"task_id": task_id, "has_escrow_wallet": bool(escrow_wallet_id)},
        )
        return self._task_to_response(self._get_task_row(task_id))

    async def cancel_task(self, task_id: str, actor: Actor) -> dict[str, Any]:
        """
        Cancel an ACTIVE task with no workers and refund its escrow.

        The status change and the bulk rejection of PENDING applications are
        committed before the refund is attempted; the refund outcome is then
        recorded on the task.
        """
        task = self._get_task_row(task_id)
        require_creator(task, actor)

        if task["status"] != TaskStatus.ACTIVE:
            raise ServiceError(
                "INVALID_STATUS",
                f"Task is {task['status']}; only ACTIVE tasks can be cancelled",
                409,
            )
        if task["current_workers"] > 0:
            raise ServiceError(
                "TASK_HAS_WORKERS",
                "Tasks with accepted workers cannot be cancelled",
                409,
                {"current_workers": task["current_workers"]},
            )

        refund, fee = cancellation_refund(
            Decimal(task["total_budget"]), self._cancellation_fee_percent
        )
        now = now_iso()
        with self._store.transaction():
            changed = self._store.conditional_update(
                "tasks",
                task_id,
                {"status": TaskStatus.ACTIVE, "current_workers": 0},
                {
                    "status": TaskStatus.CANCELLED,
                    "cancelled_at": now,
                    "updated_at": now,
                    "refund_status": PayoutStatus.PROCESSING,
                    "refund_amount": refund,
                },
            )
            if changed == 0:
                raise ServiceError(
                    "INVALID_STATUS",
                    "Task changed before it could be cancelled",
                    409,
                )
            rejected = self._store.reject_pending_applications(task_id, now)

        result = await self._refund(task, refund)
        if result.success:
            refund_patch: dict[str, Any] = {
                "refund_status": PayoutStatus.PAID,
                "refund_transaction_hash": result.transaction_hash,
            }
            self._logger.info(
                "Task cancelled and refunded",
                extra={"task_id": task_id, "refund": str(refund), "fee": str(fee)},
            )
        else:
            refund_patch = {"refund_status": PayoutStatus.FAILED, "refund_error": result.error}
            self._logger.warning(
                "Cancellation refund failed",
                extra={"task_id": task_id, "refund": str(refund), "error": result.error},
            )
        self._store.conditional_update(
            "tasks", task_id, {"refund_status": PayoutStatus.PROCESSING}, refund_patch
        )

        for agent_id in rejected:
            self._notifier.notify(
                agent_id,
                NotificationType.APPLICATION_REJECTED,
                "Task cancelled",
                f"'{task['title']}' was cancelled by its creator.",
                f"/tasks/{task_id}",
            )

        response = self._task_to_response(self._get_task_row(task_id))
        response["cancellation_fee"] = str(fee)
        return response

    async def _refund(self, task: dict[str, Any], amount: Decimal) -> TransferResult:
        account = self._store.get_account(task["creator_id"])
        creator_address = account["wallet_address"] if account is not None else None
        if not creator_address:
            return TransferResult(success=False, error="Creator has no refund wallet")

        source = resolve_source_wallet(
            task["escrow_wallet_id"],
            task["escrow_wallet_address"],
            self._platform_wallet_ref,
        )
        try:
            return await self._escrow_gateway.refund(creator_address, source.ref, amount)
        except Exception as exc:
            message = exc.message if isinstance(exc, ServiceError) else str(exc)
            return TransferResult(success=False, error=message or type(exc).__name__)

    async def delete_task(self, task_id: str, actor: Actor) -> dict[str, Any]:
        """Hard-delete a DRAFT task that never had workers or submissions."""
        task = self._get_task_row(task_id)
        require_creator(task, actor)
        if task["status"] != TaskStatus.DRAFT:
            raise ServiceError(
                "INVALID_STATUS",
                f"Task is {task['status']}; only DRAFT tasks can be deleted",
                409,
            )
        if self._store.delete_task(task_id, TaskStatus.DRAFT) == 0:
            raise ServiceError(
                "INVALID_STATUS",
                "Task has workers or submissions and cannot be deleted",
                409,
            )
        self._logger.info("Task deleted", extra={"task_id": task_id})
        return {"task_id": task_id, "deleted": True}

    # ------------------------------------------------------------------
    # Applying and submitting
    # ------------------------------------------------------------------

    async def apply(self, task_id: str, actor: Actor, message: object) -> dict[str, Any]:
        """
        Apply to work on a task.

        Error precedence:
        - TASK_NOT_FOUND (404)
        - FORBIDDEN (403): the creator applying to their own task
        - AGENT_NOT_VERIFIED (403): when verification is required
        - INVALID_STATUS (409): task not ACTIVE or IN_PROGRESS
        - TASK_FULL (409)
        - ALREADY_APPLIED (409)
        """
        if message is not None and not isinstance(message, str):
            raise _invalid("message must be a string", "message")
        text = _optional_text({"message": message}, "message", self._limits.max_notes_length)

        task = self._get_task_row(task_id)
        if task["creator_id"] == actor.agent_id:
            raise ServiceError("FORBIDDEN", "Creators cannot apply to their own task", 403)

        now = now_iso()
        account = self._store.ensure_account(actor.agent_id, now)
        if self._require_verified_agents and account["verified_at"] is None:
            raise ServiceError(
                "AGENT_NOT_VERIFIED",
                "Complete a verification challenge before applying",
                403,
            )

        if task["status"] not in _OPEN_FOR_APPLICATIONS:
            raise ServiceError(
                "INVALID_STATUS",
                f"Task is {task['status']} and not accepting applications",
                409,
            )
        if task["current_workers"] >= task["max_workers"]:
            raise ServiceError("TASK_FULL", "All worker slots for this task are taken", 409)

        application_id = new_id("app")
        try:
            self._store.insert_application(
                {
                    "application_id": application_id,
                    "task_id": task_id,
                    "agent_id": actor.agent_id,
                    "status": ApplicationStatus.PENDING,
                    "message": text,
                    "applied_at": now,
                }
            )
        except DuplicateApplicationError as exc:
            raise ServiceError(
                "ALREADY_APPLIED",
                "You have already applied to this task",
                409,
            ) from exc

        self._notifier.notify(
            task["creator_id"],
            NotificationType.APPLICATION_RECEIVED,
            "New application",
            f"An agent applied to '{task['title']}'.",
            f"/tasks/{task_id}",
        )
        return {"application": self._store.get_application(application_id)}

    async def submit_work(
        self,
        task_id: str,
        actor: Actor,
        content: object,
        evidence_urls: object,
    ) -> dict[str, Any]:
        """File the single submission of an accepted worker on a FIXED task."""
        text = _require_text({"content": content}, "content", self._limits.max_content_length)
        if evidence_urls is None:
            evidence: list[str] = []
        elif isinstance(evidence_urls, list) and all(
            isinstance(url, str) and url.strip() for url in evidence_urls
        ):
            evidence = [url.strip() for url in evidence_urls]
        else:
            raise _invalid("evidence_urls must be a list of non-empty strings", "evidence_urls")

        task = self._get_task_row(task_id)
        if task["payment_type"] != PaymentType.FIXED:
            raise ServiceError(
                "INVALID_PAYMENT_TYPE",
                "Milestone tasks are submitted milestone by milestone",
                409,
            )
        application = self._holds_slot(task_id, actor.agent_id)
        if task["status"] not in _OPEN_FOR_SUBMISSIONS:
            raise ServiceError(
                "INVALID_STATUS",
                f"Task is {task['status']} and not accepting submissions",
                409,
            )

        submission_id = new_id("sub")
        now = now_iso()
        try:
            with self._store.transaction():
                self._store.insert_submission(
                    {
                        "submission_id": submission_id,
                        "application_id": application["application_id"],
                        "task_id": task_id,
                        "agent_id": actor.agent_id,
                        "status": SubmissionStatus.SUBMITTED,
                        "content": text,
                        "evidence_urls": evidence,
                        "payout_status": PayoutStatus.PENDING,
                        "submitted_at": now,
                    }
                )
                self._status.recompute(task_id, now)
        except DuplicateSubmissionError as exc:
            raise ServiceError(
                "ALREADY_SUBMITTED",
                "You have already submitted work for this task",
                409,
            ) from exc

        self._notifier.notify(
            task["creator_id"],
            NotificationType.SUBMISSION_RECEIVED,
            "New submission",
            f"Work was submitted for '{task['title']}'.",
            f"/submissions/{submission_id}",
        )
        return {"submission": self._store.get_submission(submission_id)}

    async def submit_milestone(
        self,
        milestone_id: str,
        actor: Actor,
        deliverable: object,
    ) -> dict[str, Any]:
        """Hand a milestone deliverable to the creator for review."""
        text = _require_text(
            {"deliverable": deliverable}, "deliverable", self._limits.max_content_length
        )
        milestone = self._store.get_milestone(milestone_id)
        if milestone is None:
            raise ServiceError("MILESTONE_NOT_FOUND", "Milestone not found", 404)
        task = self._get_task_row(milestone["task_id"])
        self._holds_slot(task["task_id"], actor.agent_id)

        now = now_iso()
        with self._store.transaction():
            changed = self._store.conditional_update(
                "milestones",
                milestone_id,
                {"status": tuple(_SUBMITTABLE_MILESTONES)},
                {
                    "status": MilestoneStatus.UNDER_REVIEW,
                    "deliverable": text,
                    "submitted_by": actor.agent_id,
                    "submitted_at": now,
                },
            )
            if changed == 0:
                raise ServiceError(
                    "INVALID_STATUS",
                    f"Milestone is {milestone['status']} and cannot be submitted",
                    409,
                )
            self._status.recompute(task["task_id"], now)

        self._notifier.notify(
            task["creator_id"],
            NotificationType.MILESTONE_SUBMITTED,
            "Milestone submitted",
            f"Milestone '{milestone['title']}' is ready for review.",
            f"/tasks/{task['task_id']}",
        )
        return {"milestone": self._store.get_milestone(milestone_id)}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """Get a task with its milestones."""
        return self._task_to_response(self._get_task_row(task_id))

    async def list_tasks(
        self,
        status: str | None,
        creator_id: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks, newest first."""
        if status is not None and status not in set(TaskStatus):
            raise ServiceError("INVALID_PAYLOAD", f"Unknown task status: {status}", 400)
        return self._store.list_tasks(status, creator_id, limit, offset)

    async def list_applications(self, task_id: str, actor: Actor) -> list[dict[str, Any]]:
        """The creator and admins see every application; agents see only their own."""
        task = self._get_task_row(task_id)
        applications = self._store.list_applications(task_id)
        if actor.is_admin or task["creator_id"] == actor.agent_id:
            return applications
        return [item for item in applications if item["agent_id"] == actor.agent_id]

    async def list_submissions(self, task_id: str, actor: Actor) -> list[dict[str, Any]]:
        """The creator and admins see every submission; agents see only their own."""
        task = self._get_task_row(task_id)
        submissions = self._store.list_submissions(task_id)
        if actor.is_admin or task["creator_id"] == actor.agent_id:
            return submissions
        return [item for item in submissions if item["agent_id"] == actor.agent_id]

    async def get_submission(self, submission_id: str, actor: Actor) -> dict[str, Any]:
        """A submission, visible to its agent, the task creator and admins."""
        submission = self._store.get_submission(submission_id)
        if submission is None:
            raise ServiceError("SUBMISSION_NOT_FOUND", "Submission not found", 404)
        if actor.is_admin or submission["agent_id"] == actor.agent_id:
            return submission
        task = self._get_task_row(submission["task_id"])
        require_creator(task, actor)
        return submission

    def count_tasks_by_status(self) -> dict[str, int]:
        return self._store.count_tasks_by_status()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, actor: Actor) -> dict[str, Any]:
        """The caller's account, created on first use."""
        return self._store.ensure_account(actor.agent_id, now_iso())

    async def set_wallet(self, actor: Actor, wallet_address: object) -> dict[str, Any]:
        """Set the wallet that payouts and refunds are sent to."""
        address = _require_text({"wallet_address": wallet_address}, "wallet_address", 200)
        self._store.ensure_account(actor.agent_id, now_iso())
        self._store.set_wallet_address(actor.agent_id, address)
        self._logger.info("Wallet updated", extra={"account_id": actor.agent_id})
        return await self.get_account(actor)

    def mark_verified(self, agent_id: str) -> dict[str, Any]:
        """Record a passed verification challenge."""
        now = now_iso()
        self._store.ensure_account(agent_id, now)
        self._store.mark_verified(agent_id, now)
        account = self._store.get_account(agent_id)
        if account is None:
            raise ServiceError("ACCOUNT_NOT_FOUND", "Account not found", 404)
        return account
