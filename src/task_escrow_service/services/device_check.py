"""Device fingerprint bookkeeping for spotting several accounts on one device."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from task_escrow_service.services.user_store import UserStore

_MAX_FINGERPRINT_LENGTH = 512


def normalize_fingerprint(raw: object) -> str | None:
    """Trim and lowercase a client-supplied fingerprint. Returns None when unusable."""
    if not isinstance(raw, str):
        return None
    fingerprint = raw.strip().lower()
    if fingerprint == "" or len(fingerprint) > _MAX_FINGERPRINT_LENGTH:
        return None
    return fingerprint


class DeviceCheck:
    """
    Records the devices a user acts from and flags devices shared between users.

    The check never fails the request it guards. A missing fingerprint or a
    storage error is logged and the caller carries on. Stored fingerprints
    are what keeps two accounts on one device off the same task.
    """

    def __init__(self, users: UserStore) -> None:
        self._users = users
        self._logger = get_logger(__name__)

    def check(self, user_id: str, raw_fingerprint: object) -> list[str]:
        """Record the fingerprint and return the other users seen on the same device."""
        fingerprint = normalize_fingerprint(raw_fingerprint)
        if fingerprint is None:
            self._logger.warning(
                "Request without usable device fingerprint", extra={"user_id": user_id}
            )
            return []

        now = datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
        try:
            shared_with = self._users.record_device_fingerprint(user_id, fingerprint, now)
        except sqlite3.Error as exc:
            self._logger.error(
                "Device fingerprint check failed",
                extra={"user_id": user_id, "error": str(exc)},
            )
            return []

        if shared_with:
            self._logger.warning(
                "Device fingerprint shared with other users",
                extra={"user_id": user_id, "fingerprint": fingerprint, "shared_with": shared_with},
            )
        return shared_with
