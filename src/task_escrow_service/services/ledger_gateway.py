"""Escrow contract operations with confirmation and post-call status checks."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import IntEnum
from typing import TYPE_CHECKING, Any

from task_escrow_service.core.exceptions import BlockchainError
from task_escrow_service.logging import get_logger
from task_escrow_service.records import EscrowTransactionRecord, EscrowTransactionType

if TYPE_CHECKING:
    from collections.abc import Sequence

    from task_escrow_service.clients.ledger_client import LedgerClient
    from task_escrow_service.records import TaskRecord
    from task_escrow_service.services.task_store import TaskStore


def _now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class LedgerTaskStatus(IntEnum):
    """Task status as stored by the escrow contract."""

    CREATED = 0
    FUNDED = 1
    COMPLETED = 2
    CANCELLED = 3


@dataclass(frozen=True)
class LedgerReceipt:
    """A confirmed, successful ledger transaction."""

    tx_hash: str
    block_number: int | None


@dataclass(frozen=True)
class Payout:
    """One worker payment in a batch payout."""

    worker_id: str
    address: str
    amount: int


class LedgerGateway:
    """
    One method per escrow contract operation.

    Each call submits exactly one transaction and blocks until its receipt
    is mined or the confirmation timeout passes. A reverted receipt, a
    timeout, or an on-chain task status other than the one the operation
    should produce raises BlockchainError. Nothing is retried here.
    """

    def __init__(
        self,
        ledger_client: LedgerClient,
        store: TaskStore,
        platform_wallet_address: str,
        confirmation_timeout_seconds: float,
        poll_interval_seconds: float,
    ) -> None:
        self._ledger_client = ledger_client
        self._store = store
        self._platform_wallet_address = platform_wallet_address
        self._confirmation_timeout_seconds = confirmation_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._logger = get_logger(__name__)

    def set_ledger_client(self, client: LedgerClient) -> None:
        self._ledger_client = client

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    async def _wait_for_receipt(self, tx_hash: str, action: str) -> LedgerReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._confirmation_timeout_seconds

        while True:
            receipt = await self._ledger_client.get_receipt(tx_hash)
            if receipt is not None:
                break
            if loop.time() >= deadline:
                self._logger.warning(
                    "Ledger confirmation timed out",
                    extra={"action": action, "tx_hash": tx_hash},
                )
                raise BlockchainError(
                    "CONFIRMATION_TIMEOUT",
                    f"Transaction for {action} was not confirmed in time",
                    {"action": action, "tx_hash": tx_hash},
                )
            await asyncio.sleep(self._poll_interval_seconds)

        if receipt.get("status") != 1:
            self._logger.warning(
                "Ledger transaction reverted",
                extra={"action": action, "tx_hash": tx_hash},
            )
            raise BlockchainError(
                "TRANSACTION_REVERTED",
                f"Transaction for {action} reverted",
                {"action": action, "tx_hash": tx_hash},
            )

        block_number = receipt.get("block_number")
        return LedgerReceipt(
            tx_hash=tx_hash,
            block_number=int(block_number) if block_number is not None else None,
        )

    async def _transact(self, action: str, params: dict[str, Any]) -> LedgerReceipt:
        tx_hash = await self._ledger_client.submit_transaction(action, params)
        receipt = await self._wait_for_receipt(tx_hash, action)
        self._logger.info(
            "Ledger transaction confirmed",
            extra={
                "action": action,
                "task_id": params.get("task_id"),
                "tx_hash": tx_hash,
                "block_number": receipt.block_number,
            },
        )
        return receipt

    async def _expect_status(self, task_id: str, expected: LedgerTaskStatus, action: str) -> None:
        actual = await self.get_task_status(task_id)
        if actual != expected:
            self._logger.warning(
                "Unexpected ledger task status after transaction",
                extra={
                    "task_id": task_id,
                    "action": action,
                    "expected": expected.name,
                    "actual": int(actual),
                },
            )
            raise BlockchainError(
                "UNEXPECTED_LEDGER_STATUS",
                f"Ledger task status after {action} is not {expected.name}",
                {"task_id": task_id, "expected": int(expected), "actual": int(actual)},
            )

    def _record(
        self,
        task_id: str,
        receipt: LedgerReceipt,
        tx_type: EscrowTransactionType,
        amount: int,
        from_address: str | None,
        to_address: str | None,
    ) -> None:
        self._store.insert_escrow_transaction(
            EscrowTransactionRecord(
                tx_id=f"tx-{uuid.uuid4()}",
                task_id=task_id,
                tx_hash=receipt.tx_hash,
                tx_type=tx_type,
                status="confirmed",
                amount=amount,
                from_address=from_address,
                to_address=to_address,
                block_number=receipt.block_number,
                created_at=_now_iso(),
            )
        )

    # ------------------------------------------------------------------
    # Contract operations
    # ------------------------------------------------------------------

    async def create_task(self, task: TaskRecord) -> LedgerReceipt:
        """Register a task and its economics with the escrow contract."""
        return await self._transact(
            "create_task",
            {
                "task_id": task.task_id,
                "creator_address": task.creator_address,
                "payout_per_worker": str(task.payout_per_worker),
                "required_workers": task.required_workers,
                "platform_fee": str(task.platform_fee),
                "total_cost": str(task.total_cost),
            },
        )

    async def fund_task(self, task: TaskRecord, funder_address: str) -> LedgerReceipt:
        """Move the task's total cost into escrow; the contract must report FUNDED."""
        receipt = await self._transact(
            "fund_task",
            {
                "task_id": task.task_id,
                "from_address": funder_address,
                "amount": str(task.total_cost),
            },
        )
        await self._expect_status(task.task_id, LedgerTaskStatus.FUNDED, "fund_task")
        self._record(
            task.task_id,
            receipt,
            EscrowTransactionType.FUND,
            task.total_cost,
            funder_address,
            None,
        )
        return receipt

    async def assign_workers(self, task_id: str, worker_addresses: Sequence[str]) -> LedgerReceipt:
        """Record workers against the task on-chain."""
        return await self._transact(
            "assign_workers",
            {"task_id": task_id, "workers": list(worker_addresses)},
        )

    async def release_batch_payouts(
        self, task_id: str, payouts: Sequence[Payout]
    ) -> LedgerReceipt:
        """Pay one or more workers from escrow in a single transaction."""
        receipt = await self._transact(
            "release_batch_payouts",
            {
                "task_id": task_id,
                "payouts": [
                    {"to_address": payout.address, "amount": str(payout.amount)}
                    for payout in payouts
                ],
            },
        )
        for payout in payouts:
            self._record(
                task_id,
                receipt,
                EscrowTransactionType.PAYOUT,
                payout.amount,
                None,
                payout.address,
            )
        return receipt

    async def complete_task(self, task: TaskRecord, refund_amount: int) -> LedgerReceipt:
        """
        Close a task with at least one paid worker.

        The contract sends the platform fee to the platform wallet and any
        unpaid slot balance back to the creator.
        """
        receipt = await self._transact("complete_task", {"task_id": task.task_id})
        await self._expect_status(task.task_id, LedgerTaskStatus.COMPLETED, "complete_task")
        self._record(
            task.task_id,
            receipt,
            EscrowTransactionType.PLATFORM_FEE,
            task.platform_fee,
            None,
            self._platform_wallet_address,
        )
        if refund_amount > 0:
            self._record(
                task.task_id,
                receipt,
                EscrowTransactionType.REFUND,
                refund_amount,
                None,
                task.creator_address,
            )
        return receipt

    async def cancel_and_refund(self, task: TaskRecord, refund_amount: int) -> LedgerReceipt:
        """Cancel a task and return the escrowed balance to the creator."""
        receipt = await self._transact("cancel_and_refund", {"task_id": task.task_id})
        await self._expect_status(task.task_id, LedgerTaskStatus.CANCELLED, "cancel_and_refund")
        self._record(
            task.task_id,
            receipt,
            EscrowTransactionType.REFUND,
            refund_amount,
            None,
            task.creator_address,
        )
        return receipt

    async def get_task_status(self, task_id: str) -> LedgerTaskStatus:
        """Read the contract's status for a task."""
        raw = await self._ledger_client.get_task_status(task_id)
        try:
            return LedgerTaskStatus(raw)
        except ValueError as exc:
            raise BlockchainError(
                "UNEXPECTED_LEDGER_STATUS",
                f"Ledger reported unknown task status {raw}",
                {"task_id": task_id, "actual": raw},
            ) from exc
