"""Escrow payout and task settlement coordination."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from task_escrow_service.core.exceptions import BlockchainError, ServiceError, ValidationError
from task_escrow_service.logging import get_logger
from task_escrow_service.records import PAID_SUBMISSION_STATUSES, TaskStatus
from task_escrow_service.services.ledger_gateway import Payout
from task_escrow_service.services.task_store import SETTLEMENT_COMPLETE

if TYPE_CHECKING:
    from task_escrow_service.records import SubmissionRecord, TaskRecord
    from task_escrow_service.services.ledger_gateway import LedgerGateway, LedgerReceipt
    from task_escrow_service.services.submission_store import SubmissionStore
    from task_escrow_service.services.task_store import TaskStore
    from task_escrow_service.services.user_store import UserStore


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class SettlementCoordinator:
    """Pays workers and closes tasks once every slot is resolved."""

    def __init__(
        self,
        gateway: LedgerGateway,
        tasks: TaskStore,
        submissions: SubmissionStore,
        users: UserStore,
    ) -> None:
        self._gateway = gateway
        self._tasks = tasks
        self._submissions = submissions
        self._users = users
        self._logger = get_logger(__name__)

    async def pay_worker(self, task: TaskRecord, submission: SubmissionRecord) -> LedgerReceipt:
        """
        Release one worker's payout from escrow.

        Raises ValidationError("WALLET_NOT_FOUND") when the worker has no
        payment address and BlockchainError when the ledger call fails.
        """
        worker = self._users.get_user(submission.worker_id)
        if worker is None or worker.wallet_address is None:
            raise ValidationError(
                "WALLET_NOT_FOUND",
                "Worker has no linked payment address",
                {"worker_id": submission.worker_id},
            )
        return await self._gateway.release_batch_payouts(
            task.task_id,
            [
                Payout(
                    worker_id=submission.worker_id,
                    address=worker.wallet_address,
                    amount=task.payout_per_worker,
                )
            ],
        )

    def _unpaid_balance(self, task: TaskRecord) -> int:
        paid = sum(
            1
            for submission in self._submissions.list_submissions(task_id=task.task_id)
            if submission.status in PAID_SUBMISSION_STATUSES
        )
        return task.subtotal - paid * task.payout_per_worker

    def finish(self, task: TaskRecord, outcome: str) -> TaskRecord:
        """Write the terminal status matching a settlement outcome the ledger already applied."""
        now = _now_iso()
        updates: dict[str, object] = {"settlement": outcome}
        if outcome == SETTLEMENT_COMPLETE:
            updates.update({"status": TaskStatus.COMPLETED, "completed_at": now})
        else:
            updates.update({"status": TaskStatus.CANCELLED, "cancelled_at": now})

        try:
            updated = self._tasks.update_task(task.task_id, updates, expected_status=task.status)
        except sqlite3.Error as exc:
            self._enqueue(task.task_id, outcome, f"local settlement write failed: {exc}")
            raise
        if updated == 0:
            self._enqueue(task.task_id, outcome, "task status changed during settlement")

        refreshed = self._tasks.get_task(task.task_id)
        return refreshed if refreshed is not None else task

    def _enqueue(self, task_id: str, outcome: str, reason: str) -> None:
        operation = "complete" if outcome == SETTLEMENT_COMPLETE else "cancel"
        self._tasks.enqueue_reconciliation(task_id, operation, reason, _now_iso())
        self._logger.warning(
            "Settlement queued for reconciliation",
            extra={"task_id": task_id, "operation": operation, "reason": reason},
        )

    async def settle_claimed(
        self, task: TaskRecord, outcome: str, *, enqueue_on_failure: bool = True
    ) -> TaskRecord:
        """Run the ledger call for a task whose settlement claim is already held."""
        try:
            if outcome == SETTLEMENT_COMPLETE:
                await self._gateway.complete_task(task, refund_amount=self._unpaid_balance(task))
            else:
                await self._gateway.cancel_and_refund(task, refund_amount=task.total_cost)
        except ServiceError as exc:
            self._tasks.release_settlement(task.task_id)
            if enqueue_on_failure:
                self._enqueue(task.task_id, outcome, f"{exc.error}: {exc.message}")
            if isinstance(exc, BlockchainError):
                raise
            raise BlockchainError(
                "SETTLEMENT_FAILED",
                "Ledger settlement failed",
                {"task_id": task.task_id},
            ) from exc

        finished = self.finish(task, outcome)
        self._logger.info(
            "Task settled",
            extra={"task_id": task.task_id, "status": str(finished.status)},
        )
        return finished

    async def resolve_task(
        self, task_id: str, *, enqueue_on_failure: bool = True
    ) -> TaskRecord | None:
        """
        Settle the task if this call resolves its last outstanding slot.

        The claim is a single conditional update, so when several reviews
        finish at once exactly one caller proceeds to the ledger. Returns the
        settled task, or None when the task is not ready or another caller
        holds the claim.
        """
        outcome = self._tasks.claim_settlement(task_id, _now_iso())
        if outcome is None:
            return None

        task = self._tasks.get_task(task_id)
        if task is None:
            return None
        return await self.settle_claimed(task, outcome, enqueue_on_failure=enqueue_on_failure)
