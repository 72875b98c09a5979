"""Bounded reputation adjustments driven by submission outcomes."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from task_escrow_service.services.policy import ReputationPolicy
    from task_escrow_service.services.user_store import UserStore


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class ReputationAdjuster:
    """The only writer of reputation scores."""

    def __init__(self, users: UserStore, policy: ReputationPolicy) -> None:
        self._users = users
        self._policy = policy
        self._logger = get_logger(__name__)

    def _apply(self, user_id: str, delta: int) -> int:
        score = self._users.adjust_reputation(
            user_id, delta, self._policy.min_score, self._policy.max_score
        )
        if score is None:
            self._users.ensure_user(user_id, None, self._policy.initial_score, _now_iso())
            score = self._users.adjust_reputation(
                user_id, delta, self._policy.min_score, self._policy.max_score
            )
        self._logger.info(
            "Reputation adjusted",
            extra={"user_id": user_id, "delta": delta, "reputation_score": score},
        )
        return int(score) if score is not None else self._policy.initial_score

    def reward(self, user_id: str) -> int:
        """Apply the approval adjustment and return the new score."""
        return self._apply(user_id, self._policy.approval_delta)

    def penalize(self, user_id: str) -> int:
        """Apply the rejection adjustment and return the new score."""
        return self._apply(user_id, self._policy.rejection_delta)

    def get_score(self, user_id: str) -> int | None:
        user = self._users.get_user(user_id)
        return user.reputation_score if user is not None else None
