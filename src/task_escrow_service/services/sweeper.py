"""Periodic maintenance: TTL expiry, ledger reconciliation and offload polling."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from task_escrow_service.core.exceptions import ServiceError
from task_escrow_service.logging import get_logger
from task_escrow_service.records import TERMINAL_TASK_STATUSES, TaskStatus
from task_escrow_service.services.ledger_gateway import LedgerTaskStatus
from task_escrow_service.services.task_lifecycle import PROCESSING_SUBMITTED
from task_escrow_service.services.task_store import SETTLEMENT_COMPLETE, SETTLEMENT_REFUND

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from task_escrow_service.clients.split_processing_client import SplitProcessingClient
    from task_escrow_service.records import ReconciliationEntry, TaskRecord
    from task_escrow_service.services.ledger_gateway import LedgerGateway
    from task_escrow_service.services.settlement import SettlementCoordinator
    from task_escrow_service.services.submission_store import SubmissionStore
    from task_escrow_service.services.task_store import TaskStore

_FINISHED_JOB_STATUSES = frozenset({"completed", "failed"})


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


class Sweeper:
    """
    One pass of each maintenance job. Scheduling lives in SweepScheduler.

    check_expired_submissions: pending reservations older than the TTL
    become expired and their slots reopen.

    reconcile: for every queued task, compare the ledger's status with the
    local one, repair local state the ledger is ahead of, and retry
    settlements that failed or were abandoned mid-flight.

    poll_offloaded_tasks: refresh the processing status of tasks handed to
    the split-processing service.
    """

    def __init__(
        self,
        tasks: TaskStore,
        submissions: SubmissionStore,
        gateway: LedgerGateway,
        settlement: SettlementCoordinator,
        split_processing_client: SplitProcessingClient,
        submission_ttl_seconds: int,
        reconciliation_batch_size: int,
        stale_claim_seconds: float,
    ) -> None:
        self._tasks = tasks
        self._submissions = submissions
        self._gateway = gateway
        self._settlement = settlement
        self._split_processing_client = split_processing_client
        self._submission_ttl_seconds = submission_ttl_seconds
        self._reconciliation_batch_size = reconciliation_batch_size
        self._stale_claim_seconds = stale_claim_seconds
        self._logger = get_logger(__name__)

    def set_split_processing_client(self, client: SplitProcessingClient) -> None:
        self._split_processing_client = client

    # ------------------------------------------------------------------
    # Submission TTL
    # ------------------------------------------------------------------

    def check_expired_submissions(self) -> int:
        """Expire stale pending submissions and return how many were expired."""
        now = datetime.now(UTC)
        threshold = now - timedelta(seconds=self._submission_ttl_seconds)
        expired = self._submissions.expire_stale_pending(_iso(threshold), _iso(now))
        if expired:
            self._logger.info(
                "Expired stale submissions",
                extra={
                    "count": len(expired),
                    "submission_ids": [submission.submission_id for submission in expired],
                },
            )
        return len(expired)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _repair_fund(self, task: TaskRecord, ledger_status: LedgerTaskStatus) -> bool:
        if task.status != TaskStatus.DRAFT:
            return True
        if ledger_status == LedgerTaskStatus.CREATED:
            # Funding never landed on the ledger; nothing to repair
            return True
        updated = self._tasks.update_task(
            task.task_id,
            {"status": TaskStatus.FUNDED, "funded_at": _iso(datetime.now(UTC))},
            expected_status=TaskStatus.DRAFT,
        )
        if updated > 0:
            self._logger.info("Reconciled funded task", extra={"task_id": task.task_id})
        return True

    async def _repair_settlement(self, task: TaskRecord, ledger_status: LedgerTaskStatus) -> bool:
        if task.status in TERMINAL_TASK_STATUSES:
            return True
        if ledger_status == LedgerTaskStatus.COMPLETED:
            self._settlement.finish(task, SETTLEMENT_COMPLETE)
            self._logger.info("Reconciled completed task", extra={"task_id": task.task_id})
            return True
        if ledger_status == LedgerTaskStatus.CANCELLED:
            self._settlement.finish(task, SETTLEMENT_REFUND)
            self._logger.info("Reconciled cancelled task", extra={"task_id": task.task_id})
            return True

        self._tasks.release_settlement(task.task_id)
        settled = await self._settlement.resolve_task(task.task_id, enqueue_on_failure=False)
        return settled is not None and settled.status in TERMINAL_TASK_STATUSES

    async def _reconcile_entry(self, entry: ReconciliationEntry) -> None:
        task = self._tasks.get_task(entry.task_id)
        if task is None:
            self._tasks.mark_reconciliation_failed(entry.entry_id, "task not found")
            return

        try:
            ledger_status = await self._gateway.get_task_status(entry.task_id)
            if entry.operation == "fund":
                repaired = self._repair_fund(task, ledger_status)
            else:
                repaired = await self._repair_settlement(task, ledger_status)
        except ServiceError as exc:
            self._tasks.mark_reconciliation_failed(entry.entry_id, f"{exc.error}: {exc.message}")
            self._logger.warning(
                "Reconciliation attempt failed",
                extra={"task_id": entry.task_id, "entry_id": entry.entry_id, "error": exc.error},
            )
            return

        if repaired:
            self._tasks.mark_reconciliation_resolved(entry.entry_id, _iso(datetime.now(UTC)))
        else:
            self._tasks.mark_reconciliation_failed(entry.entry_id, "task not ready to settle")

    async def reconcile(self) -> int:
        """Process queued reconciliation entries and abandoned settlement claims."""
        entries = self._tasks.list_open_reconciliations(self._reconciliation_batch_size)
        for entry in entries:
            await self._reconcile_entry(entry)

        cutoff = datetime.now(UTC) - timedelta(seconds=self._stale_claim_seconds)
        stale = self._tasks.list_unsettled_claims(_iso(cutoff))
        for task in stale:
            try:
                ledger_status = await self._gateway.get_task_status(task.task_id)
                await self._repair_settlement(task, ledger_status)
            except ServiceError as exc:
                self._logger.warning(
                    "Abandoned settlement retry failed",
                    extra={"task_id": task.task_id, "error": exc.error},
                )
        return len(entries) + len(stale)

    # ------------------------------------------------------------------
    # Offload polling
    # ------------------------------------------------------------------

    async def poll_offloaded_tasks(self) -> int:
        """Refresh processing status for offloaded tasks; returns how many finished."""
        finished = 0
        for task in self._tasks.list_offloaded_tasks(PROCESSING_SUBMITTED):
            if task.processing_job_id is None:
                continue
            try:
                job = await self._split_processing_client.poll_status(task.processing_job_id)
            except ServiceError as exc:
                self._logger.warning(
                    "Offload status poll failed",
                    extra={"task_id": task.task_id, "error": exc.error},
                )
                continue

            job_status = job["status"]
            if job_status not in _FINISHED_JOB_STATUSES:
                continue
            self._tasks.update_task(
                task.task_id, {"processing_status": job_status}, expected_status=None
            )
            finished += 1
            self._logger.info(
                "Offloaded task finished processing",
                extra={
                    "task_id": task.task_id,
                    "job_id": task.processing_job_id,
                    "processing_status": job_status,
                    "result_count": len(job.get("results") or []),
                },
            )
        return finished


class SweepScheduler:
    """Runs each sweep job on its own fixed interval until stopped."""

    def __init__(
        self,
        sweeper: Sweeper,
        expiration_interval_seconds: float,
        reconciliation_interval_seconds: float,
        offload_poll_interval_seconds: float,
    ) -> None:
        self._sweeper = sweeper
        self._intervals = {
            "expiration": expiration_interval_seconds,
            "reconciliation": reconciliation_interval_seconds,
            "offload_poll": offload_poll_interval_seconds,
        }
        self._running = False
        self._loops: list[asyncio.Task[None]] = []
        self._logger = get_logger(__name__)

    async def _expire(self) -> None:
        self._sweeper.check_expired_submissions()

    async def _loop(self, name: str, job: Callable[[], Awaitable[object]]) -> None:
        interval = self._intervals[name]
        while self._running:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Unhandled error in sweep job", extra={"job": name})
            await asyncio.sleep(interval)

    def start(self) -> None:
        """Start one background loop per job on the running event loop."""
        if self._running:
            return
        self._running = True
        jobs: dict[str, Callable[[], Awaitable[object]]] = {
            "expiration": self._expire,
            "reconciliation": self._sweeper.reconcile,
            "offload_poll": self._sweeper.poll_offloaded_tasks,
        }
        self._loops = [
            asyncio.create_task(self._loop(name, job), name=f"sweep-{name}")
            for name, job in jobs.items()
        ]
        self._logger.info("Sweep scheduler started", extra={"intervals": self._intervals})

    async def stop(self) -> None:
        """Cancel the loops and wait for them to exit."""
        self._running = False
        for loop_task in self._loops:
            loop_task.cancel()
        for loop_task in self._loops:
            with contextlib.suppress(asyncio.CancelledError):
                await loop_task
        self._loops = []
        self._logger.info("Sweep scheduler stopped")
