"""SQLite-backed storage for verified users and their reputation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from task_escrow_service.records import UserRecord

if TYPE_CHECKING:
    import sqlite3

    from task_escrow_service.services.database import Database


class UserStore:
    """Users keyed by the identity provider's external id."""

    _USER_SELECT_SQL = (
        "SELECT user_id, wallet_address, reputation_score, created_at FROM users WHERE user_id = ?"
    )

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            user_id=row["user_id"],
            wallet_address=row["wallet_address"],
            reputation_score=int(row["reputation_score"]),
            created_at=row["created_at"],
        )

    def ensure_user(
        self,
        user_id: str,
        wallet_address: str | None,
        initial_score: int,
        now: str,
    ) -> UserRecord:
        """
        Create the user on first sight and keep the wallet address current.

        An existing wallet address is only replaced by a non-null one.
        """
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO users "
                "(user_id, wallet_address, reputation_score, created_at) VALUES (?, ?, ?, ?)",
                (user_id, wallet_address, initial_score, now),
            )
            if wallet_address is not None:
                conn.execute(
                    "UPDATE users SET wallet_address = ? WHERE user_id = ? "
                    "AND (wallet_address IS NULL OR wallet_address != ?)",
                    (wallet_address, user_id, wallet_address),
                )
            row = conn.execute(self._USER_SELECT_SQL, (user_id,)).fetchone()
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> UserRecord | None:
        """Fetch a user by ID."""
        row = self._db.fetch_one(self._USER_SELECT_SQL, (user_id,))
        if row is None:
            return None
        return self._row_to_user(row)

    def adjust_reputation(
        self, user_id: str, delta: int, min_score: int, max_score: int
    ) -> int | None:
        """
        Add ``delta`` to the user's score, clamped to [min_score, max_score].

        The clamp happens inside one UPDATE so concurrent adjustments never
        escape the bounds. Returns the new score, or None for unknown users.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET reputation_score = MAX(?, MIN(?, reputation_score + ?)) "
                "WHERE user_id = ?",
                (min_score, max_score, delta, user_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT reputation_score FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return int(row["reputation_score"])

    def record_device_fingerprint(self, user_id: str, fingerprint: str, now: str) -> list[str]:
        """
        Remember that the user acted from this device.

        Returns the other users already seen on the same device, oldest first.
        """
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO device_fingerprints (fingerprint, user_id, first_seen_at) "
                "VALUES (?, ?, ?)",
                (fingerprint, user_id, now),
            )
            rows = conn.execute(
                "SELECT user_id FROM device_fingerprints WHERE fingerprint = ? AND user_id != ? "
                "ORDER BY first_seen_at, user_id",
                (fingerprint, user_id),
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    def list_device_fingerprints(self, user_id: str) -> list[str]:
        rows = self._db.fetch_all(
            "SELECT fingerprint FROM device_fingerprints WHERE user_id = ? ORDER BY first_seen_at",
            (user_id,),
        )
        return [str(row["fingerprint"]) for row in rows]
