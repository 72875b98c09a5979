"""Typed records for tasks, submissions, evaluations, users and escrow transactions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    """Task lifecycle states."""

    DRAFT = "DRAFT"
    FUNDED = "FUNDED"
    ASSIGNED = "ASSIGNED"
    WSA_PROCESSING = "WSA_PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SubmissionStatus(StrEnum):
    """Submission lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    PENDING_APPROVAL = "pending_approval"
    PENDING_CONSENSUS = "pending_consensus"
    PAYING = "paying"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    EXPIRED = "expired"


class TaskCategory(StrEnum):
    """Supported task categories."""

    IMAGE_LABELING = "Image Labeling"
    AUDIO_TRANSCRIPTION = "Audio Transcription"
    AI_EVALUATION = "AI Evaluation"
    COMPUTE_SHARE = "ComputeShare"


class EscrowTransactionType(StrEnum):
    """Kinds of confirmed ledger transactions mirrored locally."""

    FUND = "fund"
    PAYOUT = "payout"
    REFUND = "refund"
    PLATFORM_FEE = "platform_fee"


# Tasks in these states accept worker reservations
ASSIGNABLE_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.FUNDED, TaskStatus.ASSIGNED, TaskStatus.WSA_PROCESSING}
)

TERMINAL_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.CANCELLED}
)

# Submissions still waiting on the worker, a reviewer or an unconfirmed payout
OUTSTANDING_SUBMISSION_STATUSES: frozenset[SubmissionStatus] = frozenset(
    {
        SubmissionStatus.PENDING,
        SubmissionStatus.IN_PROGRESS,
        SubmissionStatus.SUBMITTED,
        SubmissionStatus.PENDING_APPROVAL,
        SubmissionStatus.PENDING_CONSENSUS,
        SubmissionStatus.PAYING,
    }
)

RESOLVED_SUBMISSION_STATUSES: frozenset[SubmissionStatus] = frozenset(
    {SubmissionStatus.APPROVED, SubmissionStatus.REJECTED, SubmissionStatus.COMPLETED}
)

PAID_SUBMISSION_STATUSES: frozenset[SubmissionStatus] = frozenset(
    {SubmissionStatus.APPROVED, SubmissionStatus.COMPLETED}
)

# Next status after the worker submits, by category
REVIEW_GATE_BY_CATEGORY: dict[TaskCategory, SubmissionStatus] = {
    TaskCategory.IMAGE_LABELING: SubmissionStatus.PENDING_APPROVAL,
    TaskCategory.AUDIO_TRANSCRIPTION: SubmissionStatus.PENDING_APPROVAL,
    TaskCategory.AI_EVALUATION: SubmissionStatus.PENDING_CONSENSUS,
    TaskCategory.COMPUTE_SHARE: SubmissionStatus.COMPLETED,
}


@dataclass
class TaskRecord:
    """A task row plus its assigned-worker set. Money is in integer minor units."""

    task_id: str
    title: str
    description: str
    category: TaskCategory
    creator_id: str | None
    creator_address: str | None
    payout_per_worker: int
    required_workers: int
    platform_fee: int
    total_cost: int
    status: TaskStatus
    deadline: str | None
    processing_job_id: str | None
    processing_status: str | None
    settlement: str | None
    settlement_claimed_at: str | None
    created_at: str
    funded_at: str | None
    completed_at: str | None
    cancelled_at: str | None
    assigned_workers: list[str] = field(default_factory=list)

    @property
    def subtotal(self) -> int:
        return self.payout_per_worker * self.required_workers

    def to_dict(self) -> dict[str, Any]:
        """Render for API responses. Money is rendered as decimal strings of minor units."""
        return {
            "task_id": self.task_id,
            "title": self.title,
            "description": self.description,
            "category": str(self.category),
            "creator_id": self.creator_id,
            "payout_per_worker": str(self.payout_per_worker),
            "required_workers": self.required_workers,
            "platform_fee": str(self.platform_fee),
            "total_cost": str(self.total_cost),
            "status": str(self.status),
            "assigned_workers": list(self.assigned_workers),
            "deadline": self.deadline,
            "processing_job_id": self.processing_job_id,
            "processing_status": self.processing_status,
            "created_at": self.created_at,
            "funded_at": self.funded_at,
            "completed_at": self.completed_at,
            "cancelled_at": self.cancelled_at,
        }


@dataclass
class SubmissionRecord:
    """A worker's reservation and, once submitted, their work."""

    submission_id: str
    task_id: str
    worker_id: str
    status: SubmissionStatus
    payload: dict[str, Any] | None
    created_at: str
    submitted_at: str | None = None
    approved_at: str | None = None
    rejected_at: str | None = None
    expired_at: str | None = None
    evaluated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "task_id": self.task_id,
            "worker_id": self.worker_id,
            "status": str(self.status),
            "payload": self.payload,
            "created_at": self.created_at,
            "submitted_at": self.submitted_at,
            "approved_at": self.approved_at,
            "rejected_at": self.rejected_at,
            "expired_at": self.expired_at,
            "evaluated_at": self.evaluated_at,
        }


@dataclass
class EvaluationRecord:
    """A peer worker's correctness judgment on an AI Evaluation submission."""

    evaluation_id: str
    submission_id: str
    evaluator_id: str
    is_correct: bool
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "evaluation_id": self.evaluation_id,
            "submission_id": self.submission_id,
            "evaluator_id": self.evaluator_id,
            "is_correct": self.is_correct,
            "created_at": self.created_at,
        }


@dataclass
class UserRecord:
    """A verified user with their payment address and reputation."""

    user_id: str
    wallet_address: str | None
    reputation_score: int
    created_at: str


@dataclass
class EscrowTransactionRecord:
    """Local mirror of a confirmed ledger transaction. Append-only."""

    tx_id: str
    task_id: str
    tx_hash: str
    tx_type: EscrowTransactionType
    status: str
    amount: int
    from_address: str | None
    to_address: str | None
    block_number: int | None
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "task_id": self.task_id,
            "tx_hash": self.tx_hash,
            "tx_type": str(self.tx_type),
            "status": self.status,
            "amount": str(self.amount),
            "from_address": self.from_address,
            "to_address": self.to_address,
            "block_number": self.block_number,
            "created_at": self.created_at,
        }


@dataclass
class ReconciliationEntry:
    """A task whose ledger state may be ahead of its local state."""

    entry_id: str
    task_id: str
    operation: str
    reason: str
    attempts: int
    last_error: str | None
    created_at: str
    resolved_at: str | None
