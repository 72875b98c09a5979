"""Reputation-weighted consensus over peer evaluations."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from task_escrow_service.services.submission_store import EvaluationVote


@dataclass(frozen=True)
class ConsensusResult:
    """Outcome of a consensus tally."""

    approved: bool
    correct_weight: int
    total_weight: int
    evaluation_count: int

    @property
    def ratio(self) -> Decimal:
        if self.total_weight == 0:
            return Decimal(0)
        return Decimal(self.correct_weight) / Decimal(self.total_weight)


def vote_weight(reputation_score: int | None) -> int:
    """An evaluator's vote counts with their reputation, or 1 when they have none."""
    return reputation_score if reputation_score else 1


def tally(
    votes: Sequence[EvaluationVote], threshold: Decimal, min_evaluations: int
) -> ConsensusResult | None:
    """
    Decide a submission from its evaluations.

    Returns None while fewer than ``min_evaluations`` votes exist. Otherwise
    the submission is approved when correct weight / total weight reaches the
    threshold. The comparison multiplies rather than divides so it stays exact.
    """
    if len(votes) < min_evaluations:
        return None

    correct_weight = 0
    total_weight = 0
    for vote in votes:
        weight = vote_weight(vote.reputation_score)
        total_weight += weight
        if vote.is_correct:
            correct_weight += weight

    approved = Decimal(correct_weight) >= threshold * Decimal(total_weight)
    return ConsensusResult(
        approved=approved,
        correct_weight=correct_weight,
        total_weight=total_weight,
        evaluation_count=len(votes),
    )
