"""Task lifecycle orchestration: create, fund and assign."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, cast

from task_escrow_service.core.exceptions import (
    DependencyError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from task_escrow_service.logging import get_logger
from task_escrow_service.records import (
    SubmissionRecord,
    SubmissionStatus,
    TaskCategory,
    TaskRecord,
    TaskStatus,
)
from task_escrow_service.services.money import compute_task_costs, format_native, to_minor_units
from task_escrow_service.services.submission_store import ActiveReservationError

if TYPE_CHECKING:
    from task_escrow_service.clients.split_processing_client import SplitProcessingClient
    from task_escrow_service.records import EscrowTransactionRecord, UserRecord
    from task_escrow_service.services.ledger_gateway import LedgerGateway
    from task_escrow_service.services.policy import WorkflowPolicy
    from task_escrow_service.services.submission_store import SubmissionStore
    from task_escrow_service.services.task_store import TaskStore

PROCESSING_SUBMITTED = "submitted"
PROCESSING_FAILED = "failed"

_MAX_TITLE_LENGTH = 200
_MAX_DESCRIPTION_LENGTH = 10_000


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _require_text(data: dict[str, Any], field_name: str, max_length: int) -> str:
    value = data.get(field_name)
    if not isinstance(value, str) or value.strip() == "":
        raise ValidationError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be a non-empty string",
            {"field": field_name},
        )
    if len(value) > max_length:
        raise ValidationError(
            "INVALID_PAYLOAD",
            f"Field '{field_name}' must be at most {max_length} characters",
            {"field": field_name},
        )
    return value.strip()


class TaskLifecycle:
    """
    Creates tasks, funds them into escrow, and reserves worker slots.

    Local writes happen only after the ledger confirms, except for the DRAFT
    row itself, which exists before the task is registered on the ledger
    so that a failed registration leaves a record behind.
    """

    def __init__(
        self,
        tasks: TaskStore,
        submissions: SubmissionStore,
        gateway: LedgerGateway,
        split_processing_client: SplitProcessingClient,
        policy: WorkflowPolicy,
    ) -> None:
        self._tasks = tasks
        self._submissions = submissions
        self._gateway = gateway
        self._split_processing_client = split_processing_client
        self._policy = policy
        self._logger = get_logger(__name__)

    def set_split_processing_client(self, client: SplitProcessingClient) -> None:
        self._split_processing_client = client

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _validate_deadline(self, raw: object) -> str | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            try:
                parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                parsed = None
            if parsed is not None:
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=UTC)
                return parsed.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        # An unusable deadline never blocks task creation
        self._logger.warning("Ignoring invalid task deadline", extra={"deadline": str(raw)})
        return None

    def _check_tier_limits(
        self, creator: UserRecord | None, payout: int, required_workers: int
    ) -> None:
        if creator is None:
            tier = "anonymous"
            max_workers = self._policy.anonymous_max_workers
            max_payout = self._policy.anonymous_max_payout
        elif self._tasks.count_tasks_by_creator(creator.user_id) == 0:
            tier = "first_task"
            max_workers = self._policy.first_task_max_workers
            max_payout = self._policy.first_task_max_payout
        else:
            return

        if required_workers > max_workers:
            raise ValidationError(
                "TIER_LIMIT_EXCEEDED",
                f"{tier} creators may request at most {max_workers} workers",
                {"tier": tier, "max_workers": max_workers},
            )
        if payout > max_payout:
            raise ValidationError(
                "TIER_LIMIT_EXCEEDED",
                f"{tier} creators may offer at most {max_payout} minor units per worker",
                {"tier": tier, "max_payout": str(max_payout)},
            )

    def _check_content(self, title: str, description: str) -> None:
        content = f"{title} {description}".lower()
        for keyword in self._policy.forbidden_keywords:
            if keyword in content:
                raise ValidationError(
                    "FORBIDDEN_CONTENT",
                    "Task content contains forbidden keywords",
                    {"keyword": keyword},
                )

    def _should_offload(self, task: TaskRecord) -> bool:
        return (
            task.required_workers > self._policy.large_task_worker_threshold
            or task.category in self._policy.offload_categories
        )

    async def _offload(self, task: TaskRecord) -> TaskRecord:
        try:
            job_id = await self._split_processing_client.submit(
                {
                    "task_id": task.task_id,
                    "title": task.title,
                    "description": task.description,
                    "category": str(task.category),
                    "required_workers": task.required_workers,
                    "payout_per_worker": str(task.payout_per_worker),
                }
            )
        except ServiceError as exc:
            self._logger.warning(
                "Task offload failed",
                extra={"task_id": task.task_id, "error": exc.error},
            )
            self._tasks.update_task(
                task.task_id, {"processing_status": PROCESSING_FAILED}, expected_status=None
            )
            task.processing_status = PROCESSING_FAILED
            return task

        self._tasks.update_task(
            task.task_id,
            {"processing_job_id": job_id, "processing_status": PROCESSING_SUBMITTED},
            expected_status=None,
        )
        task.processing_job_id = job_id
        task.processing_status = PROCESSING_SUBMITTED
        self._logger.info("Task offloaded", extra={"task_id": task.task_id, "job_id": job_id})
        return task

    async def create_task(
        self, task_data: dict[str, Any], creator: UserRecord | None
    ) -> TaskRecord:
        """
        Validate, price and persist a task as DRAFT, then register it on the ledger.

        Raises ValidationError for bad fields, tier limit violations and
        forbidden content; BlockchainError if ledger registration fails, in
        which case the DRAFT row is kept.
        """
        title = _require_text(task_data, "title", _MAX_TITLE_LENGTH)
        description = _require_text(task_data, "description", _MAX_DESCRIPTION_LENGTH)

        raw_category = task_data.get("category")
        try:
            category = TaskCategory(raw_category)
        except ValueError as exc:
            raise ValidationError(
                "INVALID_CATEGORY",
                "category must be one of: " + ", ".join(str(c) for c in TaskCategory),
                {"category": raw_category},
            ) from exc

        required_workers = task_data.get("required_workers")
        if not _is_positive_int(required_workers):
            raise ValidationError(
                "INVALID_WORKER_COUNT",
                "required_workers must be a positive integer",
            )
        workers_int = cast("int", required_workers)

        try:
            payout = to_minor_units(
                task_data.get("payout_per_worker"), self._policy.currency_decimals
            )
        except ValueError as exc:
            raise ValidationError("INVALID_PAYOUT", str(exc)) from exc
        if payout <= 0:
            raise ValidationError("INVALID_PAYOUT", "payout_per_worker must be greater than 0")

        self._check_tier_limits(creator, payout, workers_int)
        self._check_content(title, description)

        costs = compute_task_costs(payout, workers_int, self._policy.platform_fee_bps)
        task = TaskRecord(
            task_id=f"t-{uuid.uuid4()}",
            title=title,
            description=description,
            category=category,
            creator_id=creator.user_id if creator is not None else None,
            creator_address=creator.wallet_address if creator is not None else None,
            payout_per_worker=payout,
            required_workers=workers_int,
            platform_fee=costs.platform_fee,
            total_cost=costs.total_cost,
            status=TaskStatus.DRAFT,
            deadline=self._validate_deadline(task_data.get("deadline")),
            processing_job_id=None,
            processing_status=None,
            settlement=None,
            settlement_claimed_at=None,
            created_at=_now_iso(),
            funded_at=None,
            completed_at=None,
            cancelled_at=None,
        )
        self._tasks.insert_task(task)
        self._logger.info(
            "Task created",
            extra={
                "task_id": task.task_id,
                "creator_id": task.creator_id,
                "category": str(category),
                "required_workers": workers_int,
                "total_cost": str(task.total_cost),
                "total_cost_native": format_native(
                    task.total_cost, self._policy.currency_decimals
                ),
            },
        )

        try:
            await self._gateway.create_task(task)
        except ServiceError:
            self._logger.warning(
                "Ledger registration failed, task left in DRAFT",
                extra={"task_id": task.task_id},
            )
            raise

        if self._should_offload(task):
            task = await self._offload(task)
        return task

    # ------------------------------------------------------------------
    # Fund
    # ------------------------------------------------------------------

    async def fund_task(self, task_id: str, caller: UserRecord) -> TaskRecord:
        """
        Move the task's total cost into escrow and mark it FUNDED.

        A ledger success followed by a failed local write is queued for
        reconciliation and surfaces as DependencyError.
        """
        task = self._tasks.get_task(task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found", {"task_id": task_id})
        if task.creator_id is None or task.creator_id != caller.user_id:
            raise ForbiddenError("FORBIDDEN", "Only the task creator can fund this task")
        if task.status != TaskStatus.DRAFT:
            raise InvalidStateError(
                "INVALID_STATUS",
                f"Task must be DRAFT to fund, current status is {task.status}",
                {"status": str(task.status)},
            )

        funder_address = caller.wallet_address or task.creator_address
        if funder_address is None:
            raise ValidationError(
                "WALLET_NOT_FOUND", "Creator has no linked payment address", {"task_id": task_id}
            )

        try:
            await self._gateway.fund_task(task, funder_address)
        except sqlite3.Error as exc:
            self._queue_fund_reconciliation(task_id, f"escrow mirror write failed: {exc}")
            raise DependencyError(
                "LOCAL_STATE_WRITE_FAILED",
                "Funding confirmed on the ledger but the local record could not be written",
                {"task_id": task_id},
            ) from exc

        try:
            updated = self._tasks.update_task(
                task_id,
                {"status": TaskStatus.FUNDED, "funded_at": _now_iso()},
                expected_status=TaskStatus.DRAFT,
            )
        except sqlite3.Error as exc:
            self._queue_fund_reconciliation(task_id, f"status write failed: {exc}")
            raise DependencyError(
                "LOCAL_STATE_WRITE_FAILED",
                "Funding confirmed on the ledger but the local record could not be written",
                {"task_id": task_id},
            ) from exc

        if updated == 0:
            self._queue_fund_reconciliation(task_id, "task left DRAFT during funding")
            raise DependencyError(
                "LOCAL_STATE_WRITE_FAILED",
                "Funding confirmed on the ledger but the task changed concurrently",
                {"task_id": task_id},
            )

        self._logger.info(
            "Task funded",
            extra={"task_id": task_id, "total_cost": str(task.total_cost)},
        )
        return self.get_task(task_id)

    def _queue_fund_reconciliation(self, task_id: str, reason: str) -> None:
        self._logger.error(
            "Ledger funded but local state not updated",
            extra={"task_id": task_id, "reason": reason},
        )
        self._tasks.enqueue_reconciliation(task_id, "fund", reason, _now_iso())

    # ------------------------------------------------------------------
    # Assign
    # ------------------------------------------------------------------

    async def assign_task(self, worker: UserRecord) -> tuple[TaskRecord, SubmissionRecord]:
        """
        Reserve a slot on the oldest-funded eligible task for the worker.

        The reservation is atomic in the store. If recording the worker on
        the ledger fails the reservation is released and the ledger error
        propagates.
        """
        try:
            submission = self._submissions.reserve_task_slot(
                worker.user_id, f"s-{uuid.uuid4()}", _now_iso()
            )
        except ActiveReservationError as exc:
            raise InvalidStateError(
                "ACTIVE_RESERVATION",
                "Worker already holds a pending submission",
                {"worker_id": worker.user_id},
            ) from exc

        if submission is None:
            raise NotFoundError(
                "NO_ELIGIBLE_TASK",
                "No funded task with open slots is available",
                {"worker_id": worker.user_id},
            )

        try:
            await self._gateway.assign_workers(
                submission.task_id, [worker.wallet_address or worker.user_id]
            )
        except ServiceError:
            self._submissions.release_reservation(submission.submission_id, _now_iso())
            self._logger.warning(
                "Ledger assignment failed, reservation released",
                extra={"task_id": submission.task_id, "worker_id": worker.user_id},
            )
            raise

        task = self.get_task(submission.task_id)
        self._logger.info(
            "Worker assigned",
            extra={
                "task_id": task.task_id,
                "worker_id": worker.user_id,
                "submission_id": submission.submission_id,
            },
        )
        return task, submission

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskRecord:
        task = self._tasks.get_task(task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found", {"task_id": task_id})
        return task

    def list_tasks(
        self,
        status: str | None,
        creator_id: str | None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[TaskRecord]:
        """List tasks, validating the status filter."""
        status_filter: TaskStatus | None = None
        if status is not None:
            try:
                status_filter = TaskStatus(status)
            except ValueError as exc:
                raise ValidationError(
                    "INVALID_PAYLOAD",
                    "status must be one of: " + ", ".join(str(s) for s in TaskStatus),
                ) from exc
        return self._tasks.list_tasks(status_filter, creator_id, limit, offset)

    def list_worker_submissions(
        self, worker_id: str, status: str | None = None
    ) -> list[SubmissionRecord]:
        status_filter: SubmissionStatus | None = None
        if status is not None:
            try:
                status_filter = SubmissionStatus(status)
            except ValueError as exc:
                raise ValidationError(
                    "INVALID_PAYLOAD",
                    "status must be one of: " + ", ".join(str(s) for s in SubmissionStatus),
                ) from exc
        return self._submissions.list_submissions(worker_id=worker_id, status=status_filter)

    def list_transactions(self, task_id: str) -> list[EscrowTransactionRecord]:
        """Confirmed ledger transactions recorded for the task."""
        self.get_task(task_id)
        return self._tasks.list_escrow_transactions(task_id)

    def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        return {
            "total_tasks": self._tasks.count_tasks(),
            "tasks_by_status": self._tasks.count_tasks_by_status(),
        }
