"""Shared SQLite connection, schema and transaction scope."""

from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    category TEXT NOT NULL,
    creator_id TEXT,
    creator_address TEXT,
    payout_per_worker TEXT NOT NULL,
    required_workers INTEGER NOT NULL,
    platform_fee TEXT NOT NULL,
    total_cost TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    deadline TEXT,
    processing_job_id TEXT,
    processing_status TEXT,
    settlement TEXT,
    settlement_claimed_at TEXT,
    created_at TEXT NOT NULL,
    funded_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_status_funded
    ON tasks(status, funded_at, created_at);

CREATE TABLE IF NOT EXISTS task_workers (
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    worker_id TEXT NOT NULL,
    assigned_at TEXT NOT NULL,
    UNIQUE(task_id, worker_id)
);

CREATE TABLE IF NOT EXISTS submissions (
    submission_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    worker_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    payload TEXT,
    created_at TEXT NOT NULL,
    submitted_at TEXT,
    approved_at TEXT,
    rejected_at TEXT,
    expired_at TEXT,
    evaluated_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_submissions_one_active
    ON submissions(task_id, worker_id)
    WHERE status NOT IN ('approved', 'rejected', 'completed', 'expired');

CREATE INDEX IF NOT EXISTS idx_submissions_status_created
    ON submissions(status, created_at);

CREATE TABLE IF NOT EXISTS evaluations (
    evaluation_id TEXT PRIMARY KEY,
    submission_id TEXT NOT NULL REFERENCES submissions(submission_id),
    evaluator_id TEXT NOT NULL,
    is_correct INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(submission_id, evaluator_id)
);

CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    wallet_address TEXT,
    reputation_score INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS device_fingerprints (
    fingerprint TEXT NOT NULL,
    user_id TEXT NOT NULL REFERENCES users(user_id),
    first_seen_at TEXT NOT NULL,
    PRIMARY KEY (fingerprint, user_id)
);

CREATE INDEX IF NOT EXISTS idx_device_fingerprints_user
    ON device_fingerprints(user_id);

CREATE TABLE IF NOT EXISTS escrow_transactions (
    tx_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    tx_hash TEXT NOT NULL,
    tx_type TEXT NOT NULL,
    status TEXT NOT NULL,
    amount TEXT NOT NULL,
    from_address TEXT,
    to_address TEXT,
    block_number INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reconciliation_queue (
    entry_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(task_id),
    operation TEXT NOT NULL,
    reason TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    resolved_at TEXT
);
"""


class Database:
    """
    One SQLite connection shared by every store.

    All access goes through ``lock``. Multi-statement critical sections use
    ``transaction()``, which holds the lock and runs inside BEGIN IMMEDIATE so
    that concurrent writers serialise on the database write lock.
    """

    def __init__(self, db_path: str) -> None:
        self.lock = RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.connection = sqlite3.connect(db_path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        self.connection.execute("PRAGMA journal_mode=WAL")
        self.connection.execute("PRAGMA foreign_keys=ON")
        self.connection.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self.lock:
            self.connection.executescript(_SCHEMA_SQL)
            self.connection.commit()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically, rolling back on any error."""
        with self.lock:
            self.connection.execute("BEGIN IMMEDIATE")
            try:
                yield self.connection
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self.connection.execute("ROLLBACK")
                raise
            self.connection.commit()

    def execute_write(self, query: str, params: tuple[object, ...] | list[object]) -> int:
        """Run one write statement, commit, and return the affected row count."""
        with self.lock:
            cursor = self.connection.execute(query, params)
            self.connection.commit()
        return int(cursor.rowcount)

    def fetch_one(
        self, query: str, params: tuple[object, ...] | list[object] = ()
    ) -> sqlite3.Row | None:
        with self.lock:
            row: sqlite3.Row | None = self.connection.execute(query, params).fetchone()
        return row

    def fetch_all(
        self, query: str, params: tuple[object, ...] | list[object] = ()
    ) -> list[sqlite3.Row]:
        with self.lock:
            rows = self.connection.execute(query, params).fetchall()
        return list(rows)

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            self.connection.close()
