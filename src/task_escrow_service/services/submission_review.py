"""Submission review orchestration: submit, approve, reject and peer evaluation."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import (
    ForbiddenError,
    InvalidOperationError,
    InvalidStateError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.records import (
    REVIEW_GATE_BY_CATEGORY,
    EvaluationRecord,
    SubmissionStatus,
    TaskCategory,
)
from task_escrow_service.services.consensus import ConsensusResult, tally
from task_escrow_service.services.submission_store import DuplicateEvaluationError

if TYPE_CHECKING:
    from task_escrow_service.records import SubmissionRecord, TaskRecord
    from task_escrow_service.services.policy import WorkflowPolicy
    from task_escrow_service.services.reputation import ReputationAdjuster
    from task_escrow_service.services.settlement import SettlementCoordinator
    from task_escrow_service.services.submission_store import SubmissionStore
    from task_escrow_service.services.task_store import TaskStore


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass
class EvaluationOutcome:
    """
    Result of recording a peer evaluation.

    ``submission`` and ``consensus`` are set once enough evaluations exist
    for the submission to be decided.
    """

    evaluation: EvaluationRecord
    submission: SubmissionRecord | None = None
    consensus: ConsensusResult | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"evaluation": self.evaluation.to_dict()}
        if self.submission is not None:
            result["submission"] = self.submission.to_dict()
        if self.consensus is not None:
            result["consensus"] = {
                "approved": self.consensus.approved,
                "correct_weight": self.consensus.correct_weight,
                "total_weight": self.consensus.total_weight,
                "evaluation_count": self.consensus.evaluation_count,
                "ratio": str(self.consensus.ratio),
            }
        return result


class SubmissionReview:
    """
    Moves submissions through review and applies the outcome cascade.

    Approval pays the worker, rewards their reputation and then tries to
    settle the task. Rejection penalizes reputation and tries to settle.
    Every status change is conditional on the status that was checked.
    """

    def __init__(
        self,
        tasks: TaskStore,
        submissions: SubmissionStore,
        settlement: SettlementCoordinator,
        reputation: ReputationAdjuster,
        policy: WorkflowPolicy,
    ) -> None:
        self._tasks = tasks
        self._submissions = submissions
        self._settlement = settlement
        self._reputation = reputation
        self._policy = policy
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, submission_id: str) -> tuple[SubmissionRecord, TaskRecord]:
        submission = self._submissions.get_submission(submission_id)
        if submission is None:
            raise NotFoundError(
                "SUBMISSION_NOT_FOUND",
                "Submission not found",
                {"submission_id": submission_id},
            )
        task = self._tasks.get_task(submission.task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found", {"task_id": submission.task_id})
        return submission, task

    def _refresh(self, submission_id: str) -> SubmissionRecord:
        submission = self._submissions.get_submission(submission_id)
        if submission is None:
            raise NotFoundError(
                "SUBMISSION_NOT_FOUND",
                "Submission not found",
                {"submission_id": submission_id},
            )
        return submission

    @staticmethod
    def _invalid_status(submission: SubmissionRecord, expected: SubmissionStatus) -> ServiceError:
        return InvalidStateError(
            "INVALID_STATUS",
            f"Submission must be {expected}, current status is {submission.status}",
            {"submission_id": submission.submission_id, "status": str(submission.status)},
        )

    def _lost_race(self, submission_id: str) -> ServiceError:
        return InvalidStateError(
            "INVALID_STATUS",
            "Submission status changed concurrently",
            {"submission_id": submission_id},
        )

    async def _pay_then_finalize(
        self,
        task: TaskRecord,
        submission: SubmissionRecord,
        final_updates: dict[str, Any],
        revert_updates: dict[str, Any],
    ) -> None:
        """Pay a submission held in ``paying`` and move it on, or put it back on failure."""
        try:
            await self._settlement.pay_worker(task, submission)
        except ServiceError:
            self._submissions.update_submission(
                submission.submission_id, revert_updates, expected_status=SubmissionStatus.PAYING
            )
            self._logger.warning(
                "Payout failed, submission reverted",
                extra={
                    "submission_id": submission.submission_id,
                    "status": str(revert_updates["status"]),
                },
            )
            raise
        self._submissions.update_submission(
            submission.submission_id, final_updates, expected_status=SubmissionStatus.PAYING
        )

    async def _approve_cascade(
        self,
        task: TaskRecord,
        submission: SubmissionRecord,
        expected: SubmissionStatus,
        extra_updates: dict[str, Any] | None = None,
    ) -> bool:
        """Approve, pay, reward and settle. Returns False if the transition was lost."""
        # The submission stays outstanding while its payout is unconfirmed
        hold: dict[str, Any] = {"status": SubmissionStatus.PAYING}
        if extra_updates:
            hold.update(extra_updates)
        if (
            self._submissions.update_submission(
                submission.submission_id, hold, expected_status=expected
            )
            == 0
        ):
            return False

        revert: dict[str, Any] = {"status": expected}
        if extra_updates:
            revert.update({column: None for column in extra_updates})
        await self._pay_then_finalize(
            task,
            submission,
            {"status": SubmissionStatus.APPROVED, "approved_at": _now_iso()},
            revert,
        )

        self._reputation.reward(submission.worker_id)
        self._logger.info(
            "Submission approved",
            extra={"submission_id": submission.submission_id, "task_id": task.task_id},
        )
        await self._settlement.resolve_task(task.task_id)
        return True

    async def _reject_cascade(
        self,
        task: TaskRecord,
        submission: SubmissionRecord,
        expected: SubmissionStatus,
        extra_updates: dict[str, Any] | None = None,
    ) -> bool:
        """Reject, penalize and settle. Returns False if the transition was lost."""
        updates: dict[str, Any] = {"status": SubmissionStatus.REJECTED, "rejected_at": _now_iso()}
        if extra_updates:
            updates.update(extra_updates)
        if (
            self._submissions.update_submission(
                submission.submission_id, updates, expected_status=expected
            )
            == 0
        ):
            return False

        self._reputation.penalize(submission.worker_id)
        self._logger.info(
            "Submission rejected",
            extra={"submission_id": submission.submission_id, "task_id": task.task_id},
        )
        await self._settlement.resolve_task(task.task_id)
        return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit_work(
        self, submission_id: str, worker_id: str, payload: object
    ) -> SubmissionRecord:
        """
        Record the worker's result and route it to the category's review gate.

        ComputeShare work is auto-approved: it completes immediately and the
        payout cascade runs as for an approval.
        """
        submission = self._submissions.get_submission(submission_id)
        if submission is None or submission.worker_id != worker_id:
            raise NotFoundError(
                "SUBMISSION_NOT_FOUND",
                "No submission with this id belongs to the worker",
                {"submission_id": submission_id},
            )
        if submission.status != SubmissionStatus.PENDING:
            raise self._invalid_status(submission, SubmissionStatus.PENDING)
        if not isinstance(payload, dict):
            raise ValidationError("INVALID_PAYLOAD", "payload must be a JSON object")

        task = self._tasks.get_task(submission.task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found", {"task_id": submission.task_id})

        next_status = REVIEW_GATE_BY_CATEGORY[task.category]
        auto_approved = next_status == SubmissionStatus.COMPLETED
        updates: dict[str, Any] = {
            "status": SubmissionStatus.PAYING if auto_approved else next_status,
            "payload": payload,
            "submitted_at": _now_iso(),
        }

        if (
            self._submissions.update_submission(
                submission_id, updates, expected_status=SubmissionStatus.PENDING
            )
            == 0
        ):
            raise self._lost_race(submission_id)

        self._logger.info(
            "Work submitted",
            extra={
                "submission_id": submission_id,
                "task_id": task.task_id,
                "status": str(next_status),
            },
        )

        if auto_approved:
            await self._pay_then_finalize(
                task,
                submission,
                {"status": SubmissionStatus.COMPLETED, "approved_at": _now_iso()},
                {"status": SubmissionStatus.PENDING, "payload": None, "submitted_at": None},
            )
            self._reputation.reward(worker_id)
            await self._settlement.resolve_task(task.task_id)

        return self._refresh(submission_id)

    async def approve(self, submission_id: str, approver_id: str) -> SubmissionRecord:
        """Approve a submission awaiting single-reviewer approval."""
        submission, task = self._load(submission_id)
        if task.creator_id is None or task.creator_id != approver_id:
            raise ForbiddenError("FORBIDDEN", "Only the task creator can approve submissions")
        if submission.status != SubmissionStatus.PENDING_APPROVAL:
            raise self._invalid_status(submission, SubmissionStatus.PENDING_APPROVAL)

        if not await self._approve_cascade(task, submission, SubmissionStatus.PENDING_APPROVAL):
            raise self._lost_race(submission_id)
        return self._refresh(submission_id)

    async def reject(self, submission_id: str, rejecter_id: str) -> SubmissionRecord:
        """Reject a submission awaiting single-reviewer approval."""
        submission, task = self._load(submission_id)
        if task.creator_id is None or task.creator_id != rejecter_id:
            raise ForbiddenError("FORBIDDEN", "Only the task creator can reject submissions")
        if submission.status != SubmissionStatus.PENDING_APPROVAL:
            raise self._invalid_status(submission, SubmissionStatus.PENDING_APPROVAL)

        if not await self._reject_cascade(task, submission, SubmissionStatus.PENDING_APPROVAL):
            raise self._lost_race(submission_id)
        return self._refresh(submission_id)

    async def evaluate(
        self, submission_id: str, evaluator_id: str, is_correct: object
    ) -> EvaluationOutcome:
        """
        Record a peer evaluation and decide the submission once enough exist.

        Below the minimum evaluation count nothing but the evaluation itself
        is written. At the minimum, the reputation-weighted tally approves or
        rejects the submission and runs the matching cascade.
        """
        if not isinstance(is_correct, bool):
            raise ValidationError("INVALID_PAYLOAD", "is_correct must be a boolean")

        submission, task = self._load(submission_id)
        if task.category != TaskCategory.AI_EVALUATION:
            raise InvalidStateError(
                "INVALID_CATEGORY",
                "Only AI Evaluation submissions accept peer evaluations",
                {"submission_id": submission_id, "category": str(task.category)},
            )
        if submission.status != SubmissionStatus.PENDING_CONSENSUS:
            raise self._invalid_status(submission, SubmissionStatus.PENDING_CONSENSUS)
        if evaluator_id == submission.worker_id:
            raise InvalidOperationError(
                "SELF_EVALUATION",
                "Workers cannot evaluate their own submission",
                {"submission_id": submission_id},
            )

        evaluation = EvaluationRecord(
            evaluation_id=f"ev-{uuid.uuid4()}",
            submission_id=submission_id,
            evaluator_id=evaluator_id,
            is_correct=is_correct,
            created_at=_now_iso(),
        )
        try:
            self._submissions.insert_evaluation(evaluation)
        except DuplicateEvaluationError as exc:
            raise InvalidStateError(
                "ALREADY_EVALUATED",
                "Evaluator has already evaluated this submission",
                {"submission_id": submission_id},
            ) from exc

        votes = self._submissions.list_evaluation_votes(submission_id)
        result = tally(votes, self._policy.consensus_threshold, self._policy.min_evaluations)
        if result is None:
            return EvaluationOutcome(evaluation=evaluation)

        self._logger.info(
            "Consensus reached",
            extra={
                "submission_id": submission_id,
                "approved": result.approved,
                "correct_weight": result.correct_weight,
                "total_weight": result.total_weight,
            },
        )
        decided = {"evaluated_at": _now_iso()}
        if result.approved:
            await self._approve_cascade(
                task, submission, SubmissionStatus.PENDING_CONSENSUS, decided
            )
        else:
            await self._reject_cascade(
                task, submission, SubmissionStatus.PENDING_CONSENSUS, decided
            )
        # A concurrent evaluation may have decided first; report the stored state either way
        return EvaluationOutcome(
            evaluation=evaluation,
            submission=self._refresh(submission_id),
            consensus=result,
        )
