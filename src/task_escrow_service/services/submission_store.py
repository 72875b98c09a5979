"""SQLite-backed storage for submissions and peer evaluations."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from task_escrow_service.records import (
    ASSIGNABLE_TASK_STATUSES,
    EvaluationRecord,
    SubmissionRecord,
    SubmissionStatus,
    TaskStatus,
)

if TYPE_CHECKING:
    from task_escrow_service.services.database import Database


class DuplicateEvaluationError(Exception):
    """Raised when an evaluator has already judged a submission."""


class ActiveReservationError(Exception):
    """Raised when a worker already holds a pending reservation."""


@dataclass(frozen=True)
class EvaluationVote:
    """One evaluator's judgment joined with their current reputation."""

    evaluator_id: str
    is_correct: bool
    reputation_score: int | None


class SubmissionStore:
    """Submissions, evaluations, and the atomic slot reservation."""

    _SUBMISSION_COLUMNS: tuple[str, ...] = (
        "submission_id",
        "task_id",
        "worker_id",
        "status",
        "payload",
        "created_at",
        "submitted_at",
        "approved_at",
        "rejected_at",
        "expired_at",
        "evaluated_at",
    )
    _SUBMISSION_COLUMNS_SQL = ", ".join(_SUBMISSION_COLUMNS)
    _SUBMISSION_SELECT_BASE_SQL = (
        "SELECT " + _SUBMISSION_COLUMNS_SQL + " FROM submissions"  # nosec B608
    )

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_submission(row: sqlite3.Row) -> SubmissionRecord:
        payload = row["payload"]
        return SubmissionRecord(
            submission_id=row["submission_id"],
            task_id=row["task_id"],
            worker_id=row["worker_id"],
            status=SubmissionStatus(row["status"]),
            payload=json.loads(payload) if payload is not None else None,
            created_at=row["created_at"],
            submitted_at=row["submitted_at"],
            approved_at=row["approved_at"],
            rejected_at=row["rejected_at"],
            expired_at=row["expired_at"],
            evaluated_at=row["evaluated_at"],
        )

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    def reserve_task_slot(
        self, worker_id: str, submission_id: str, now: str
    ) -> SubmissionRecord | None:
        """
        Reserve one open slot on the oldest-funded eligible task.

        Runs as a single write transaction: the eligibility query, the
        pending submission insert, the assigned-worker insert and the
        FUNDED -> ASSIGNED transition either all happen or none do.

        Tasks already worked by another user seen on one of the worker's
        devices are skipped.

        Returns None when no task is eligible. Raises ActiveReservationError
        when the worker already holds a pending reservation.
        """
        statuses = sorted(str(status) for status in ASSIGNABLE_TASK_STATUSES)
        status_sql = ", ".join("?" for _ in statuses)
        expired = str(SubmissionStatus.EXPIRED)

        with self._db.transaction() as conn:
            active = conn.execute(
                "SELECT submission_id FROM submissions WHERE worker_id = ? AND status = ? LIMIT 1",
                (worker_id, str(SubmissionStatus.PENDING)),
            ).fetchone()
            if active is not None:
                raise ActiveReservationError(
                    f"Worker already holds pending submission {active['submission_id']}"
                )

            candidate = conn.execute(
                "SELECT t.task_id, t.processing_job_id FROM tasks t "
                "WHERE t.status IN (" + status_sql + ") "
                "AND t.settlement IS NULL "
                "AND (t.creator_id IS NULL OR t.creator_id != ?) "
                "AND (SELECT COUNT(*) FROM submissions s "
                "     WHERE s.task_id = t.task_id AND s.status != ?) < t.required_workers "
                "AND NOT EXISTS (SELECT 1 FROM submissions s "
                "     WHERE s.task_id = t.task_id AND s.worker_id = ? AND s.status != ?) "
                "AND NOT EXISTS (SELECT 1 FROM submissions s "
                "     JOIN device_fingerprints peer ON peer.user_id = s.worker_id "
                "     JOIN device_fingerprints mine ON mine.fingerprint = peer.fingerprint "
                "     WHERE s.task_id = t.task_id AND s.status != ? "
                "     AND mine.user_id = ? AND s.worker_id != ?) "
                "ORDER BY t.funded_at, t.created_at, t.task_id LIMIT 1",  # nosec B608
                [*statuses, worker_id, expired, worker_id, expired, expired, worker_id, worker_id],
            ).fetchone()
            if candidate is None:
                return None

            task_id = str(candidate["task_id"])
            conn.execute(
                "INSERT INTO submissions (submission_id, task_id, worker_id, status, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (submission_id, task_id, worker_id, str(SubmissionStatus.PENDING), now),
            )
            conn.execute(
                "INSERT OR IGNORE INTO task_workers (task_id, worker_id, assigned_at) "
                "VALUES (?, ?, ?)",
                (task_id, worker_id, now),
            )
            next_status = (
                TaskStatus.WSA_PROCESSING
                if candidate["processing_job_id"] is not None
                else TaskStatus.ASSIGNED
            )
            conn.execute(
                "UPDATE tasks SET status = ? WHERE task_id = ? AND status = ?",
                (str(next_status), task_id, str(TaskStatus.FUNDED)),
            )

        return SubmissionRecord(
            submission_id=submission_id,
            task_id=task_id,
            worker_id=worker_id,
            status=SubmissionStatus.PENDING,
            payload=None,
            created_at=now,
        )

    def _expire_pending(self, conn: sqlite3.Connection, submission_id: str, now: str) -> bool:
        cursor = conn.execute(
            "UPDATE submissions SET status = ?, expired_at = ? "
            "WHERE submission_id = ? AND status = ?",
            (str(SubmissionStatus.EXPIRED), now, submission_id, str(SubmissionStatus.PENDING)),
        )
        if cursor.rowcount == 0:
            return False

        row = conn.execute(
            "SELECT task_id, worker_id FROM submissions WHERE submission_id = ?",
            (submission_id,),
        ).fetchone()
        task_id = row["task_id"]
        conn.execute(
            "DELETE FROM task_workers WHERE task_id = ? AND worker_id = ?",
            (task_id, row["worker_id"]),
        )
        # A task whose only reservations lapsed goes back to the funded pool
        conn.execute(
            "UPDATE tasks SET status = ? WHERE task_id = ? AND status IN (?, ?) "
            "AND settlement IS NULL "
            "AND NOT EXISTS (SELECT 1 FROM submissions s "
            "                WHERE s.task_id = tasks.task_id AND s.status != ?)",
            (
                str(TaskStatus.FUNDED),
                task_id,
                str(TaskStatus.ASSIGNED),
                str(TaskStatus.WSA_PROCESSING),
                str(SubmissionStatus.EXPIRED),
            ),
        )
        return True

    def release_reservation(self, submission_id: str, now: str) -> bool:
        """Expire a pending reservation immediately. Returns False if it was not pending."""
        with self._db.transaction() as conn:
            return self._expire_pending(conn, submission_id, now)

    def expire_stale_pending(self, created_before: str, now: str) -> list[SubmissionRecord]:
        """Expire every pending submission created before the threshold."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT submission_id FROM submissions "
                "WHERE status = ? AND created_at < ? ORDER BY created_at",
                (str(SubmissionStatus.PENDING), created_before),
            ).fetchall()
            expired_ids = [
                str(row["submission_id"])
                for row in rows
                if self._expire_pending(conn, str(row["submission_id"]), now)
            ]

        expired: list[SubmissionRecord] = []
        for submission_id in expired_ids:
            submission = self.get_submission(submission_id)
            if submission is not None:
                expired.append(submission)
        return expired

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def get_submission(self, submission_id: str) -> SubmissionRecord | None:
        """Fetch a submission by ID."""
        row = self._db.fetch_one(
            self._SUBMISSION_SELECT_BASE_SQL + " WHERE submission_id = ?", (submission_id,)
        )
        if row is None:
            return None
        return self._row_to_submission(row)

    def update_submission(
        self,
        submission_id: str,
        updates: dict[str, Any],
        *,
        expected_status: SubmissionStatus | None,
    ) -> int:
        """Update submission columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0

        if any(
            column not in self._SUBMISSION_COLUMNS or column == "submission_id"
            for column in updates
        ):
            msg = "Attempted to update unknown submission column"
            raise ValueError(msg)

        params: list[object] = []
        for column, value in updates.items():
            if column == "payload" and value is not None:
                params.append(json.dumps(value, sort_keys=True))
            elif column == "status":
                params.append(str(value))
            else:
                params.append(value)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        query = "UPDATE submissions SET " + set_clause + " WHERE submission_id = ?"  # nosec B608
        params.append(submission_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(str(expected_status))

        return self._db.execute_write(query, params)

    def list_submissions(
        self,
        *,
        worker_id: str | None = None,
        task_id: str | None = None,
        status: SubmissionStatus | None = None,
    ) -> list[SubmissionRecord]:
        """List submissions with optional filters, oldest first."""
        query = self._SUBMISSION_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        if worker_id is not None:
            clauses.append("worker_id = ?")
            params.append(worker_id)
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(status))

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at, rowid"

        rows = self._db.fetch_all(query, params)
        return [self._row_to_submission(row) for row in rows]

    # ------------------------------------------------------------------
    # Evaluations
    # ------------------------------------------------------------------

    def insert_evaluation(self, evaluation: EvaluationRecord) -> None:
        """Record a peer evaluation. One per (submission, evaluator)."""
        try:
            self._db.execute_write(
                "INSERT INTO evaluations "
                "(evaluation_id, submission_id, evaluator_id, is_correct, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    evaluation.evaluation_id,
                    evaluation.submission_id,
                    evaluation.evaluator_id,
                    1 if evaluation.is_correct else 0,
                    evaluation.created_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if "unique" in str(exc).lower():
                raise DuplicateEvaluationError(
                    f"{evaluation.evaluator_id} already evaluated {evaluation.submission_id}"
                ) from exc
            raise

    def list_evaluation_votes(self, submission_id: str) -> list[EvaluationVote]:
        """Evaluations for a submission with each evaluator's reputation."""
        rows = self._db.fetch_all(
            "SELECT e.evaluator_id, e.is_correct, u.reputation_score "
            "FROM evaluations e LEFT JOIN users u ON u.user_id = e.evaluator_id "
            "WHERE e.submission_id = ? ORDER BY e.created_at, e.rowid",
            (submission_id,),
        )
        return [
            EvaluationVote(
                evaluator_id=row["evaluator_id"],
                is_correct=bool(row["is_correct"]),
                reputation_score=(
                    int(row["reputation_score"]) if row["reputation_score"] is not None else None
                ),
            )
            for row in rows
        ]
