"""Workflow constants resolved from configuration into minor units."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from task_escrow_service.records import TaskCategory
from task_escrow_service.services.money import to_minor_units

if TYPE_CHECKING:
    from task_escrow_service.config import WorkflowConfig


@dataclass(frozen=True)
class ReputationPolicy:
    """Reputation bounds and per-outcome adjustments."""

    initial_score: int
    min_score: int
    max_score: int
    approval_delta: int
    rejection_delta: int


@dataclass(frozen=True)
class WorkflowPolicy:
    """
    Every fee, limit, threshold and timeout the orchestrators consult.

    Monetary limits are stored in minor units so that comparisons against
    task payouts are exact.
    """

    currency_decimals: int
    platform_fee_bps: int
    anonymous_max_workers: int
    anonymous_max_payout: int
    first_task_max_workers: int
    first_task_max_payout: int
    forbidden_keywords: tuple[str, ...]
    large_task_worker_threshold: int
    offload_categories: frozenset[TaskCategory]
    consensus_threshold: Decimal
    min_evaluations: int
    submission_ttl_seconds: int
    reputation: ReputationPolicy

    @classmethod
    def from_config(cls, config: WorkflowConfig) -> WorkflowPolicy:
        decimals = config.currency_decimals
        return cls(
            currency_decimals=decimals,
            platform_fee_bps=config.platform_fee_bps,
            anonymous_max_workers=config.anonymous_max_workers,
            anonymous_max_payout=to_minor_units(config.anonymous_max_payout, decimals),
            first_task_max_workers=config.first_task_max_workers,
            first_task_max_payout=to_minor_units(config.first_task_max_payout, decimals),
            forbidden_keywords=tuple(keyword.lower() for keyword in config.forbidden_keywords),
            large_task_worker_threshold=config.large_task_worker_threshold,
            offload_categories=frozenset(
                TaskCategory(category) for category in config.offload_categories
            ),
            consensus_threshold=config.consensus_threshold,
            min_evaluations=config.min_evaluations,
            submission_ttl_seconds=config.submission_ttl_seconds,
            reputation=ReputationPolicy(
                initial_score=config.reputation.initial_score,
                min_score=config.reputation.min_score,
                max_score=config.reputation.max_score,
                approval_delta=config.reputation.approval_delta,
                rejection_delta=config.reputation.rejection_delta,
            ),
        )
