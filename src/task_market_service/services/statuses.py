"""Status vocabularies for tasks, applications, submissions, milestones and disputes."""

from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class PaymentType(StrEnum):
    FIXED = "FIXED"
    MILESTONE = "MILESTONE"


class ApplicationStatus(StrEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    RELEASED = "RELEASED"


# Applications that occupy one of the task's worker slots
SLOT_HOLDING_STATUSES: frozenset[str] = frozenset(
    {ApplicationStatus.ACCEPTED, ApplicationStatus.COMPLETED}
)


class SubmissionStatus(StrEnum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DISPUTED = "DISPUTED"


class PayoutStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    DISPUTED = "DISPUTED"


class MilestoneStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"


class DisputeStatus(StrEnum):
    OPEN = "OPEN"
    JURY_REVIEW = "JURY_REVIEW"
    HUMAN_REVIEW = "HUMAN_REVIEW"
    RESOLVED = "RESOLVED"


class Verdict(StrEnum):
    WORKER_PAID = "WORKER_PAID"
    REJECTION_UPHELD = "REJECTION_UPHELD"


class ReviewDecision(StrEnum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class NotificationType(StrEnum):
    APPLICATION_RECEIVED = "APPLICATION_RECEIVED"
    APPLICATION_ACCEPTED = "APPLICATION_ACCEPTED"
    APPLICATION_REJECTED = "APPLICATION_REJECTED"
    SUBMISSION_RECEIVED = "SUBMISSION_RECEIVED"
    SUBMISSION_APPROVED = "SUBMISSION_APPROVED"
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    WORKER_RELEASED = "WORKER_RELEASED"
    MILESTONE_SUBMITTED = "MILESTONE_SUBMITTED"
    MILESTONE_APPROVED = "MILESTONE_APPROVED"
    MILESTONE_CHANGES_REQUESTED = "MILESTONE_CHANGES_REQUESTED"
    DISPUTE_FILED = "DISPUTE_FILED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"
    TASK_COMPLETED = "TASK_COMPLETED"
