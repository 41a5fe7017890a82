"""SQLite-backed ledger for tasks, applications, submissions, milestones and disputes."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from decimal import Decimal
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


class DuplicateApplicationError(Exception):
    """Raised when an agent applies twice to the same task."""


class DuplicateSubmissionError(Exception):
    """Raised when a second submission is filed for one application."""


class DuplicateDisputeError(Exception):
    """Raised when a second dispute is opened for one submission."""


class DuplicateMilestoneError(Exception):
    """Raised when two milestones of a task share a position."""


class DuplicateVoteError(Exception):
    """Raised when a juror index already voted on a dispute."""


_TASK_COLUMNS: tuple[str, ...] = (
    "task_id",
    "creator_id",
    "title",
    "description",
    "requirements",
    "deadline",
    "status",
    "total_budget",
    "payment_type",
    "payment_per_worker",
    "max_workers",
    "current_workers",
    "escrow_wallet_id",
    "escrow_wallet_address",
    "payment_chain",
    "refund_status",
    "refund_amount",
    "refund_transaction_hash",
    "refund_error",
    "created_at",
    "updated_at",
    "activated_at",
    "completed_at",
    "cancelled_at",
)

_APPLICATION_COLUMNS: tuple[str, ...] = (
    "application_id",
    "task_id",
    "agent_id",
    "status",
    "message",
    "applied_at",
    "accepted_at",
    "rejected_at",
    "released_at",
    "completed_at",
    "paid_amount",
    "paid_at",
)

_SUBMISSION_COLUMNS: tuple[str, ...] = (
    "submission_id",
    "application_id",
    "task_id",
    "agent_id",
    "status",
    "content",
    "evidence_urls",
    "payout_amount",
    "payout_status",
    "transaction_hash",
    "review_notes",
    "reviewed_by",
    "submitted_at",
    "reviewed_at",
    "paid_at",
)

_MILESTONE_COLUMNS: tuple[str, ...] = (
    "milestone_id",
    "task_id",
    "position",
    "title",
    "description",
    "percentage",
    "amount",
    "status",
    "deliverable",
    "submitted_by",
    "submitted_at",
    "reviewed_at",
    "payout_status",
    "transaction_hash",
    "payout_error",
    "paid_at",
)

_DISPUTE_COLUMNS: tuple[str, ...] = (
    "dispute_id",
    "submission_id",
    "task_id",
    "filed_by",
    "status",
    "reason",
    "jury_verdict",
    "jurors_voted",
    "outcome",
    "resolved_by",
    "resolution_notes",
    "created_at",
    "jury_started_at",
    "jury_completed_at",
    "resolved_at",
)

_VOTE_COLUMNS: tuple[str, ...] = (
    "vote_id",
    "dispute_id",
    "juror_index",
    "juror_id",
    "vote",
    "reasoning",
    "confidence",
    "voted_at",
)

_ACCOUNT_COLUMNS: tuple[str, ...] = (
    "account_id",
    "wallet_address",
    "total_earnings",
    "completed_tests",
    "verified_at",
    "created_at",
)

# table name -> (primary key column, known columns)
_TABLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "tasks": ("task_id", _TASK_COLUMNS),
    "applications": ("application_id", _APPLICATION_COLUMNS),
    "submissions": ("submission_id", _SUBMISSION_COLUMNS),
    "milestones": ("milestone_id", _MILESTONE_COLUMNS),
    "disputes": ("dispute_id", _DISPUTE_COLUMNS),
    "jury_votes": ("vote_id", _VOTE_COLUMNS),
    "accounts": ("account_id", _ACCOUNT_COLUMNS),
}


def _to_db(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    return value


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "unique" in str(exc).lower()


class LedgerStore:
    """
    SQLite-backed ledger.

    All writes run inside `transaction()`, which opens a BEGIN IMMEDIATE
    transaction and rolls back on any exception. Nested `transaction()`
    blocks join the outermost one. Callers must not await while a
    transaction is open.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._depth = 0
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    creator_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    requirements TEXT NOT NULL,
                    deadline TEXT,
                    status TEXT NOT NULL,
                    total_budget TEXT NOT NULL,
                    payment_type TEXT NOT NULL,
                    payment_per_worker TEXT,
                    max_workers INTEGER NOT NULL,
                    current_workers INTEGER NOT NULL DEFAULT 0,
                    escrow_wallet_id TEXT,
                    escrow_wallet_address TEXT,
                    payment_chain TEXT,
                    refund_status TEXT,
                    refund_amount TEXT,
                    refund_transaction_hash TEXT,
                    refund_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    activated_at TEXT,
                    completed_at TEXT,
                    cancelled_at TEXT,
                    CHECK (current_workers >= 0 AND current_workers <= max_workers)
                );

                CREATE TABLE IF NOT EXISTS applications (
                    application_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    agent_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    applied_at TEXT NOT NULL,
                    accepted_at TEXT,
                    rejected_at TEXT,
                    released_at TEXT,
                    completed_at TEXT,
                    paid_amount TEXT,
                    paid_at TEXT,
                    UNIQUE(task_id, agent_id)
                );

                CREATE TABLE IF NOT EXISTS submissions (
                    submission_id TEXT PRIMARY KEY,
                    application_id TEXT NOT NULL UNIQUE,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    agent_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    content TEXT NOT NULL,
                    evidence_urls TEXT NOT NULL,
                    payout_amount TEXT,
                    payout_status TEXT NOT NULL,
                    transaction_hash TEXT,
                    review_notes TEXT,
                    reviewed_by TEXT,
                    submitted_at TEXT NOT NULL,
                    reviewed_at TEXT,
                    paid_at TEXT
                );

                CREATE TABLE IF NOT EXISTS milestones (
                    milestone_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    percentage INTEGER NOT NULL,
                    amount TEXT NOT NULL,
                    status TEXT NOT NULL,
                    deliverable TEXT,
                    submitted_by TEXT,
                    submitted_at TEXT,
                    reviewed_at TEXT,
                    payout_status TEXT,
                    transaction_hash TEXT,
                    payout_error TEXT,
                    paid_at TEXT,
                    UNIQUE(task_id, position)
                );

                CREATE TABLE IF NOT EXISTS disputes (
                    dispute_id TEXT PRIMARY KEY,
                    submission_id TEXT NOT NULL UNIQUE,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    filed_by TEXT NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    jury_verdict TEXT,
                    jurors_voted INTEGER,
                    outcome TEXT,
                    resolved_by TEXT,
                    resolution_notes TEXT,
                    created_at TEXT NOT NULL,
                    jury_started_at TEXT,
                    jury_completed_at TEXT,
                    resolved_at TEXT
                );

                CREATE TABLE IF NOT EXISTS jury_votes (
                    vote_id TEXT PRIMARY KEY,
                    dispute_id TEXT NOT NULL REFERENCES disputes(dispute_id) ON DELETE CASCADE,
                    juror_index INTEGER NOT NULL,
                    juror_id TEXT NOT NULL,
                    vote TEXT NOT NULL,
                    reasoning TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    voted_at TEXT NOT NULL,
                    UNIQUE(dispute_id, juror_index)
                );

                CREATE TABLE IF NOT EXISTS accounts (
                    account_id TEXT PRIMARY KEY,
                    wallet_address TEXT,
                    total_earnings TEXT NOT NULL DEFAULT '0',
                    completed_tests INTEGER NOT NULL DEFAULT 0,
                    verified_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_applications_task ON applications(task_id);
                CREATE INDEX IF NOT EXISTS idx_submissions_task ON submissions(task_id);
                CREATE INDEX IF NOT EXISTS idx_milestones_task ON milestones(task_id);
                CREATE INDEX IF NOT EXISTS idx_disputes_task ON disputes(task_id);
                """
            )
            self._db.commit()

    # ------------------------------------------------------------------
    # Transactions and the conditional-update primitive
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed writes as one atomic transaction."""
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._db.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._depth = 0
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
            self._depth = 0
            self._db.commit()

    def _execute(self, query: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self.transaction():
            return self._db.execute(query, tuple(params))

    def conditional_update(
        self,
        table: str,
        row_id: str,
        expected: dict[str, Any],
        patch: dict[str, Any],
    ) -> int:
        """
        Apply `patch` to one row only if every `expected` column still matches.

        An expected value of None matches NULL; a tuple/frozenset matches any of
        its members. Returns the number of affected rows (0 or 1).
        """
        if len(patch) == 0:
            return 0
        if table not in _TABLES:
            msg = f"Unknown table: {table}"
            raise ValueError(msg)

        key_column, columns = _TABLES[table]
        unknown = [column for column in (*patch, *expected) if column not in columns]
        if unknown:
            msg = f"Unknown {table} column(s): {', '.join(unknown)}"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in patch)
        params: list[Any] = [_to_db(value) for value in patch.values()]
        clauses = [f"{key_column} = ?"]
        params.append(row_id)

        for column, value in expected.items():
            if value is None:
                clauses.append(f"{column} IS NULL")
            elif isinstance(value, (tuple, frozenset, set)):
                members = list(value)
                placeholders = ", ".join("?" for _ in members)
                clauses.append(f"{column} IN ({placeholders})")
                params.extend(_to_db(member) for member in members)
            else:
                clauses.append(f"{column} = ?")
                params.append(_to_db(value))

        query = f"UPDATE {table} SET {set_clause} WHERE " + " AND ".join(clauses)  # nosec B608
        cursor = self._execute(query, params)
        return int(cursor.rowcount)

    def try_claim_slot(self, task_id: str, updated_at: str) -> int:
        """Increment current_workers only while a slot is free."""
        cursor = self._execute(
            "UPDATE tasks SET current_workers = current_workers + 1, updated_at = ? "
            "WHERE task_id = ? AND current_workers < max_workers",
            (updated_at, task_id),
        )
        return int(cursor.rowcount)

    def release_slot(self, task_id: str, updated_at: str) -> int:
        """Decrement current_workers, never below zero."""
        cursor = self._execute(
            "UPDATE tasks SET current_workers = current_workers - 1, updated_at = ? "
            "WHERE task_id = ? AND current_workers > 0",
            (updated_at, task_id),
        )
        return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _insert(self, table: str, data: dict[str, Any]) -> None:
        _key_column, columns = _TABLES[table]
        present = [column for column in columns if column in data]
        placeholders = ", ".join("?" for _ in present)
        query = f"INSERT INTO {table} ({', '.join(present)}) VALUES ({placeholders})"  # nosec B608
        self._execute(query, (_to_db(data[column]) for column in present))

    def _fetch_one(self, query: str, params: Iterable[Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self._db.execute(query, tuple(params)).fetchone()
        return None if row is None else self._row_to_dict(row)

    def _fetch_all(self, query: str, params: Iterable[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._db.execute(query, tuple(params)).fetchall()
        return [self._row_to_dict(row) for row in rows]

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
        data = {key: row[key] for key in row.keys()}  # noqa: SIM118
        if "evidence_urls" in data and isinstance(data["evidence_urls"], str):
            data["evidence_urls"] = json.loads(data["evidence_urls"])
        return data

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        self._insert("tasks", task_data)

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        return self._fetch_one("SELECT * FROM tasks WHERE task_id = ?", (task_id,))

    def list_tasks(
        self,
        status: str | None,
        creator_id: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = "SELECT * FROM tasks"
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if creator_id is not None:
            clauses.append("creator_id = ?")
            params.append(creator_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        return self._fetch_all(query, params)

    def delete_task(self, task_id: str, expected_status: str) -> int:
        """Hard-delete a task with no workers and no submissions."""
        cursor = self._execute(
            "DELETE FROM tasks WHERE task_id = ? AND status = ? AND current_workers = 0 "
            "AND NOT EXISTS (SELECT 1 FROM submissions WHERE submissions.task_id = tasks.task_id)",
            (task_id, expected_status),
        )
        return int(cursor.rowcount)

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def insert_milestones(self, milestones: list[dict[str, Any]]) -> None:
        """Insert a task's milestones atomically."""
        try:
            with self.transaction():
                for milestone in milestones:
                    self._insert("milestones", milestone)
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                msg = "Milestone positions must be unique per task"
                raise DuplicateMilestoneError(msg) from exc
            raise

    def delete_milestones(self, task_id: str) -> int:
        """Delete every milestone of a task."""
        cursor = self._execute("DELETE FROM milestones WHERE task_id = ?", (task_id,))
        return int(cursor.rowcount)

    def get_milestone(self, milestone_id: str) -> dict[str, Any] | None:
        """Fetch a milestone by ID."""
        return self._fetch_one("SELECT * FROM milestones WHERE milestone_id = ?", (milestone_id,))

    def list_milestones(self, task_id: str) -> list[dict[str, Any]]:
        """List a task's milestones in order."""
        return self._fetch_all(
            "SELECT * FROM milestones WHERE task_id = ? ORDER BY position",
            (task_id,),
        )

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def insert_application(self, application: dict[str, Any]) -> None:
        """Insert an application; one per (task, agent)."""
        try:
            self._insert("applications", application)
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                msg = (
                    f"Agent {application['agent_id']} already applied "
                    f"to task {application['task_id']}"
                )
                raise DuplicateApplicationError(msg) from exc
            raise

    def get_application(self, application_id: str) -> dict[str, Any] | None:
        """Fetch an application by ID."""
        return self._fetch_one(
            "SELECT * FROM applications WHERE application_id = ?",
            (application_id,),
        )

    def find_application(self, task_id: str, agent_id: str) -> dict[str, Any] | None:
        """Fetch the application an agent filed for a task."""
        return self._fetch_one(
            "SELECT * FROM applications WHERE task_id = ? AND agent_id = ?",
            (task_id, agent_id),
        )

    def list_applications(self, task_id: str, status: str | None = None) -> list[dict[str, Any]]:
        """List a task's applications, oldest first."""
        if status is None:
            return self._fetch_all(
                "SELECT * FROM applications WHERE task_id = ? ORDER BY applied_at",
                (task_id,),
            )
        return self._fetch_all(
            "SELECT * FROM applications WHERE task_id = ? AND status = ? ORDER BY applied_at",
            (task_id, status),
        )

    def delete_application(self, application_id: str, expected_status: str) -> int:
        """Delete an application still in the expected status."""
        cursor = self._execute(
            "DELETE FROM applications WHERE application_id = ? AND status = ?",
            (application_id, expected_status),
        )
        return int(cursor.rowcount)

    def reject_pending_applications(self, task_id: str, rejected_at: str) -> list[str]:
        """Reject every PENDING application of a task; return the affected agent IDs."""
        with self.transaction():
            rows = self._fetch_all(
                "SELECT agent_id FROM applications WHERE task_id = ? AND status = 'PENDING'",
                (task_id,),
            )
            self._execute(
                "UPDATE applications SET status = 'REJECTED', rejected_at = ? "
                "WHERE task_id = ? AND status = 'PENDING'",
                (rejected_at, task_id),
            )
        return [str(row["agent_id"]) for row in rows]

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def insert_submission(self, submission: dict[str, Any]) -> None:
        """Insert a submission; one per application."""
        try:
            self._insert("submissions", submission)
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                msg = f"Application {submission['application_id']} already has a submission"
                raise DuplicateSubmissionError(msg) from exc
            raise

    def get_submission(self, submission_id: str) -> dict[str, Any] | None:
        """Fetch a submission by ID."""
        return self._fetch_one(
            "SELECT * FROM submissions WHERE submission_id = ?",
            (submission_id,),
        )

    def find_submission_for_application(self, application_id: str) -> dict[str, Any] | None:
        """Fetch the submission filed for an application, if any."""
        return self._fetch_one(
            "SELECT * FROM submissions WHERE application_id = ?",
            (application_id,),
        )

    def list_submissions(self, task_id: str) -> list[dict[str, Any]]:
        """List a task's submissions, oldest first."""
        return self._fetch_all(
            "SELECT * FROM submissions WHERE task_id = ? ORDER BY submitted_at",
            (task_id,),
        )

    def list_failed_payouts(self) -> list[dict[str, Any]]:
        """List approved submissions whose payout failed."""
        return self._fetch_all(
            "SELECT * FROM submissions WHERE status = 'APPROVED' AND payout_status = 'FAILED' "
            "ORDER BY reviewed_at",
        )

    # ------------------------------------------------------------------
    # Disputes and jury votes
    # ------------------------------------------------------------------

    def insert_dispute(self, dispute: dict[str, Any]) -> None:
        """Insert a dispute; one per submission."""
        try:
            self._insert("disputes", dispute)
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                msg = f"Submission {dispute['submission_id']} already has a dispute"
                raise DuplicateDisputeError(msg) from exc
            raise

    def get_dispute(self, dispute_id: str) -> dict[str, Any] | None:
        """Fetch a dispute by ID."""
        return self._fetch_one("SELECT * FROM disputes WHERE dispute_id = ?", (dispute_id,))

    def find_dispute_for_submission(self, submission_id: str) -> dict[str, Any] | None:
        """Fetch the dispute opened against a submission, if any."""
        return self._fetch_one(
            "SELECT * FROM disputes WHERE submission_id = ?",
            (submission_id,),
        )

    def list_disputes(self, visible_to: str | None) -> list[dict[str, Any]]:
        """
        List disputes, newest first.

        With `visible_to` set, only disputes filed by that account or raised
        on tasks it created are returned.
        """
        if visible_to is None:
            return self._fetch_all("SELECT * FROM disputes ORDER BY created_at DESC")
        return self._fetch_all(
            "SELECT disputes.* FROM disputes JOIN tasks ON tasks.task_id = disputes.task_id "
            "WHERE disputes.filed_by = ? OR tasks.creator_id = ? "
            "ORDER BY disputes.created_at DESC",
            (visible_to, visible_to),
        )

    def count_unresolved_disputes(self, task_id: str) -> int:
        """Count a task's disputes that are not RESOLVED."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*) FROM disputes WHERE task_id = ? AND status != 'RESOLVED'",
                (task_id,),
            ).fetchone()
        return int(row[0]) if row is not None else 0

    def insert_jury_votes(self, votes: list[dict[str, Any]]) -> None:
        """Insert a dispute's received jury votes atomically."""
        try:
            with self.transaction():
                for vote in votes:
                    self._insert("jury_votes", vote)
        except sqlite3.IntegrityError as exc:
            if _is_unique_violation(exc):
                msg = "Juror already voted on this dispute"
                raise DuplicateVoteError(msg) from exc
            raise

    def list_jury_votes(self, dispute_id: str) -> list[dict[str, Any]]:
        """List a dispute's jury votes by juror index."""
        return self._fetch_all(
            "SELECT * FROM jury_votes WHERE dispute_id = ? ORDER BY juror_index",
            (dispute_id,),
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def ensure_account(self, account_id: str, created_at: str) -> dict[str, Any]:
        """Create the account row on first use and return it."""
        self._execute(
            "INSERT OR IGNORE INTO accounts (account_id, total_earnings, completed_tests, "
            "created_at) VALUES (?, '0', 0, ?)",
            (account_id, created_at),
        )
        account = self.get_account(account_id)
        if account is None:
            msg = f"Account {account_id} could not be created"
            raise RuntimeError(msg)
        return account

    def get_account(self, account_id: str) -> dict[str, Any] | None:
        """Fetch an account by ID."""
        return self._fetch_one("SELECT * FROM accounts WHERE account_id = ?", (account_id,))

    def set_wallet_address(self, account_id: str, wallet_address: str) -> int:
        """Set the payout wallet of an account."""
        return self.conditional_update(
            "accounts", account_id, {}, {"wallet_address": wallet_address}
        )

    def mark_verified(self, account_id: str, verified_at: str) -> int:
        """Record a passed verification challenge."""
        return self.conditional_update("accounts", account_id, {}, {"verified_at": verified_at})

    def credit_earnings(self, account_id: str, amount: Decimal, *, completed: bool) -> None:
        """Add a paid amount to an account and optionally count a completed task."""
        with self.transaction():
            row = self._fetch_one(
                "SELECT total_earnings, completed_tests FROM accounts WHERE account_id = ?",
                (account_id,),
            )
            if row is None:
                msg = f"Account {account_id} not found"
                raise LookupError(msg)
            total = Decimal(row["total_earnings"]) + amount
            completed_tests = int(row["completed_tests"]) + (1 if completed else 0)
            self._execute(
                "UPDATE accounts SET total_earnings = ?, completed_tests = ? WHERE account_id = ?",
                (str(total), completed_tests, account_id),
            )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
