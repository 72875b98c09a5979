"""SQLite-backed storage for tasks, escrow transactions and the reconciliation queue."""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

from task_escrow_service.records import (
    OUTSTANDING_SUBMISSION_STATUSES,
    PAID_SUBMISSION_STATUSES,
    RESOLVED_SUBMISSION_STATUSES,
    TERMINAL_TASK_STATUSES,
    EscrowTransactionRecord,
    EscrowTransactionType,
    ReconciliationEntry,
    TaskCategory,
    TaskRecord,
    TaskStatus,
)

if TYPE_CHECKING:
    from task_escrow_service.services.database import Database


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


SETTLEMENT_COMPLETE = "complete"
SETTLEMENT_REFUND = "refund"

_MONEY_COLUMNS: frozenset[str] = frozenset({"payout_per_worker", "platform_fee", "total_cost"})


def _placeholders(values: frozenset[Any]) -> tuple[str, list[str]]:
    ordered = sorted(str(value) for value in values)
    return ", ".join("?" for _ in ordered), ordered


class TaskStore:
    """Tasks, their assigned-worker sets, and the ledger bookkeeping tables."""

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "title",
        "description",
        "category",
        "creator_id",
        "creator_address",
        "payout_per_worker",
        "required_workers",
        "platform_fee",
        "total_cost",
        "status",
        "deadline",
        "processing_job_id",
        "processing_status",
        "settlement",
        "settlement_claimed_at",
        "created_at",
        "funded_at",
        "completed_at",
        "cancelled_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TASK_INSERT_SQL = (
        "INSERT INTO tasks ("
        + _TASK_COLUMNS_SQL
        + ") VALUES ("
        + ", ".join("?" for _ in _TASK_COLUMNS)
        + ")"
    )
    _TASK_SELECT_BASE_SQL = "SELECT " + _TASK_COLUMNS_SQL + " FROM tasks"  # nosec B608

    _TX_COLUMNS_SQL = (
        "tx_id, task_id, tx_hash, tx_type, status, amount, from_address, to_address, "
        "block_number, created_at"
    )
    _RECON_COLUMNS_SQL = (
        "entry_id, task_id, operation, reason, attempts, last_error, created_at, resolved_at"
    )

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _workers_for(self, task_id: str) -> list[str]:
        rows = self._db.fetch_all(
            "SELECT worker_id FROM task_workers WHERE task_id = ? ORDER BY assigned_at, worker_id",
            (task_id,),
        )
        return [str(row["worker_id"]) for row in rows]

    def _row_to_task(self, row: sqlite3.Row) -> TaskRecord:
        return TaskRecord(
            task_id=row["task_id"],
            title=row["title"],
            description=row["description"],
            category=TaskCategory(row["category"]),
            creator_id=row["creator_id"],
            creator_address=row["creator_address"],
            payout_per_worker=int(row["payout_per_worker"]),
            required_workers=int(row["required_workers"]),
            platform_fee=int(row["platform_fee"]),
            total_cost=int(row["total_cost"]),
            status=TaskStatus(row["status"]),
            deadline=row["deadline"],
            processing_job_id=row["processing_job_id"],
            processing_status=row["processing_status"],
            settlement=row["settlement"],
            settlement_claimed_at=row["settlement_claimed_at"],
            created_at=row["created_at"],
            funded_at=row["funded_at"],
            completed_at=row["completed_at"],
            cancelled_at=row["cancelled_at"],
            assigned_workers=self._workers_for(row["task_id"]),
        )

    @staticmethod
    def _to_column_value(column: str, value: Any) -> Any:
        if value is None:
            return None
        if column in _MONEY_COLUMNS:
            return str(int(value))
        if column in ("status", "category"):
            return str(value)
        return value

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task: TaskRecord) -> None:
        """Insert a new task row."""
        values = tuple(
            self._to_column_value(column, getattr(task, column)) for column in self._TASK_COLUMNS
        )
        try:
            with self._db.transaction() as conn:
                conn.execute(self._TASK_INSERT_SQL, values)
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateTaskError(
                    f"A task with task_id={task.task_id} already exists"
                ) from exc
            raise

    def get_task(self, task_id: str) -> TaskRecord | None:
        """Fetch a task by ID."""
        row = self._db.fetch_one(self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?", (task_id,))
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: TaskStatus | None,
    ) -> int:
        """Update task columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0

        if any(column not in self._TASK_COLUMNS or column == "task_id" for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = [
            self._to_column_value(column, value) for column, value in updates.items()
        ]

        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(str(expected_status))

        return self._db.execute_write(query, params)

    def list_tasks(
        self,
        status: TaskStatus | None,
        creator_id: str | None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[TaskRecord]:
        """List tasks with optional filters, newest first."""
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(str(status))
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

        rows = self._db.fetch_all(query, params)
        return [self._row_to_task(row) for row in rows]

    def count_tasks_by_creator(self, creator_id: str) -> int:
        """Count tasks ever created by the given creator."""
        row = self._db.fetch_one("SELECT COUNT(*) FROM tasks WHERE creator_id = ?", (creator_id,))
        return int(row[0]) if row is not None else 0

    def count_tasks(self) -> int:
        """Count total tasks."""
        row = self._db.fetch_one("SELECT COUNT(*) FROM tasks")
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        rows = self._db.fetch_all("SELECT status, COUNT(*) FROM tasks GROUP BY status")
        return {str(row[0]): int(row[1]) for row in rows}

    def list_offloaded_tasks(self, processing_status: str) -> list[TaskRecord]:
        """Tasks handed to the split-processing service in the given processing state."""
        terminal_sql, terminal = _placeholders(TERMINAL_TASK_STATUSES)
        rows = self._db.fetch_all(
            self._TASK_SELECT_BASE_SQL
            + " WHERE processing_job_id IS NOT NULL AND processing_status = ?"
            + " AND status NOT IN ("
            + terminal_sql
            + ") ORDER BY created_at",
            [processing_status, *terminal],
        )
        return [self._row_to_task(row) for row in rows]

    # ------------------------------------------------------------------
    # Settlement claim
    # ------------------------------------------------------------------

    def claim_settlement(self, task_id: str, claimed_at: str) -> str | None:
        """
        Atomically claim the right to settle a task.

        A single conditional UPDATE sets the settlement marker when the task
        is still active, unclaimed, has no outstanding submissions, and enough
        resolved submissions to fill every required slot. The marker records
        the outcome: ``complete`` if any submission was paid, else ``refund``.

        Returns the marker when this caller won the claim, None otherwise.
        """
        terminal_sql, terminal = _placeholders(TERMINAL_TASK_STATUSES)
        outstanding_sql, outstanding = _placeholders(OUTSTANDING_SUBMISSION_STATUSES)
        resolved_sql, resolved = _placeholders(RESOLVED_SUBMISSION_STATUSES)
        paid_sql, paid = _placeholders(PAID_SUBMISSION_STATUSES)

        query = (
            "UPDATE tasks SET settlement_claimed_at = ?, settlement = CASE WHEN EXISTS ("
            "SELECT 1 FROM submissions s WHERE s.task_id = tasks.task_id "
            "AND s.status IN (" + paid_sql + ")"
            ") THEN ? ELSE ? END "
            "WHERE task_id = ? AND settlement IS NULL "
            "AND status NOT IN (" + terminal_sql + ") AND status != ? "
            "AND NOT EXISTS ("
            "SELECT 1 FROM submissions s WHERE s.task_id = tasks.task_id "
            "AND s.status IN (" + outstanding_sql + ")"
            ") AND ("
            "SELECT COUNT(*) FROM submissions s WHERE s.task_id = tasks.task_id "
            "AND s.status IN (" + resolved_sql + ")"
            ") >= required_workers"
        )  # nosec B608
        params: list[object] = [
            claimed_at,
            *paid,
            SETTLEMENT_COMPLETE,
            SETTLEMENT_REFUND,
            task_id,
            *terminal,
            str(TaskStatus.DRAFT),
            *outstanding,
            *resolved,
        ]
        with self._db.transaction() as conn:
            cursor = conn.execute(query, params)
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT settlement FROM tasks WHERE task_id = ?", (task_id,)
            ).fetchone()
        return str(row["settlement"])

    def release_settlement(self, task_id: str) -> int:
        """Drop an unfinished settlement claim so that it can be retried."""
        terminal_sql, terminal = _placeholders(TERMINAL_TASK_STATUSES)
        return self._db.execute_write(
            "UPDATE tasks SET settlement = NULL, settlement_claimed_at = NULL WHERE task_id = ? "
            "AND status NOT IN (" + terminal_sql + ")",  # nosec B608
            [task_id, *terminal],
        )

    def list_unsettled_claims(self, claimed_before: str) -> list[TaskRecord]:
        """Tasks whose settlement claim is older than the cutoff and still not terminal."""
        terminal_sql, terminal = _placeholders(TERMINAL_TASK_STATUSES)
        rows = self._db.fetch_all(
            self._TASK_SELECT_BASE_SQL
            + " WHERE settlement IS NOT NULL AND settlement_claimed_at < ?"
            + " AND status NOT IN ("
            + terminal_sql
            + ") ORDER BY settlement_claimed_at",
            [claimed_before, *terminal],
        )
        return [self._row_to_task(row) for row in rows]

    # ------------------------------------------------------------------
    # Escrow transaction mirror
    # ------------------------------------------------------------------

    def insert_escrow_transaction(self, record: EscrowTransactionRecord) -> None:
        """Append a confirmed ledger transaction."""
        self._db.execute_write(
            "INSERT INTO escrow_transactions (" + self._TX_COLUMNS_SQL + ") "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.tx_id,
                record.task_id,
                record.tx_hash,
                str(record.tx_type),
                record.status,
                str(record.amount),
                record.from_address,
                record.to_address,
                record.block_number,
                record.created_at,
            ),
        )

    def list_escrow_transactions(self, task_id: str) -> list[EscrowTransactionRecord]:
        """All mirrored transactions for a task in insertion order."""
        rows = self._db.fetch_all(
            "SELECT " + self._TX_COLUMNS_SQL + " FROM escrow_transactions "  # nosec B608
            "WHERE task_id = ? ORDER BY created_at, rowid",
            (task_id,),
        )
        return [
            EscrowTransactionRecord(
                tx_id=row["tx_id"],
                task_id=row["task_id"],
                tx_hash=row["tx_hash"],
                tx_type=EscrowTransactionType(row["tx_type"]),
                status=row["status"],
                amount=int(row["amount"]),
                from_address=row["from_address"],
                to_address=row["to_address"],
                block_number=row["block_number"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Reconciliation queue
    # ------------------------------------------------------------------

    def enqueue_reconciliation(
        self, task_id: str, operation: str, reason: str, created_at: str
    ) -> str:
        """Record that the ledger may be ahead of local state for a task."""
        entry_id = f"rec-{uuid.uuid4()}"
        self._db.execute_write(
            "INSERT INTO reconciliation_queue (" + self._RECON_COLUMNS_SQL + ") "
            "VALUES (?, ?, ?, ?, 0, NULL, ?, NULL)",
            (entry_id, task_id, operation, reason, created_at),
        )
        return entry_id

    def list_open_reconciliations(self, limit: int) -> list[ReconciliationEntry]:
        """Unresolved reconciliation entries, oldest first."""
        rows = self._db.fetch_all(
            "SELECT " + self._RECON_COLUMNS_SQL + " FROM reconciliation_queue "  # nosec B608
            "WHERE resolved_at IS NULL ORDER BY created_at, rowid LIMIT ?",
            (limit,),
        )
        return [
            ReconciliationEntry(
                entry_id=row["entry_id"],
                task_id=row["task_id"],
                operation=row["operation"],
                reason=row["reason"],
                attempts=int(row["attempts"]),
                last_error=row["last_error"],
                created_at=row["created_at"],
                resolved_at=row["resolved_at"],
            )
            for row in rows
        ]

    def mark_reconciliation_resolved(self, entry_id: str, resolved_at: str) -> None:
        self._db.execute_write(
            "UPDATE reconciliation_queue SET resolved_at = ?, attempts = attempts + 1 "
            "WHERE entry_id = ? AND resolved_at IS NULL",
            (resolved_at, entry_id),
        )

    def mark_reconciliation_failed(self, entry_id: str, error: str) -> None:
        self._db.execute_write(
            "UPDATE reconciliation_queue SET attempts = attempts + 1, last_error = ? "
            "WHERE entry_id = ? AND resolved_at IS NULL",
            (error, entry_id),
        )
