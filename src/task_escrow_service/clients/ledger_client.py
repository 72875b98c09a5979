"""Async HTTP client for the escrow ledger relay."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

import httpx

from task_escrow_service.core.exceptions import BlockchainError
from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from task_escrow_service.clients.platform_signer import PlatformSigner


class LedgerClient:
    """
    Client for the relay that fronts the escrow contract.

    Three calls:
    1. submit_transaction: sends a platform-signed escrow call and returns
       the transaction hash as soon as the relay has broadcast it.
    2. get_receipt: fetches the mined receipt, or None while still pending.
    3. get_task_status: reads the escrow contract's status for a task.

    Waiting for confirmation and checking the result is the gateway's job;
    this client only maps transport and HTTP failures to BlockchainError.
    """

    def __init__(
        self,
        base_url: str,
        submit_path: str,
        receipt_path: str,
        task_status_path: str,
        timeout_seconds: int,
        platform_signer: PlatformSigner,
    ) -> None:
        self._base_url = base_url
        self._submit_path = submit_path
        self._receipt_path = receipt_path
        self._task_status_path = task_status_path
        self._platform_signer = platform_signer
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        logger = get_logger(__name__)
        try:
            return await self._client.request(method, path, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Ledger relay connection failed",
                extra={"error": str(exc), "base_url": self._base_url, "path": path},
            )
            raise BlockchainError(
                "LEDGER_UNAVAILABLE",
                "Cannot connect to ledger relay",
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Ledger relay HTTP error",
                extra={"error": str(exc), "base_url": self._base_url, "path": path},
            )
            raise BlockchainError(
                "LEDGER_UNAVAILABLE",
                "Ledger relay request failed",
            ) from exc

    @staticmethod
    def _error_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def submit_transaction(self, action: str, params: dict[str, Any]) -> str:
        """
        Sign and submit one escrow contract call.

        Args:
            action: Contract operation name, e.g. "fund_task"
            params: Operation arguments; amounts are decimal strings of minor units

        Returns:
            The transaction hash

        Raises:
            BlockchainError: TRANSACTION_REJECTED if the relay refused the call,
                LEDGER_UNAVAILABLE on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)

        signed_token = self._platform_signer.sign(
            {"action": action, "nonce": str(uuid.uuid4()), **params}
        )
        response = await self._send("POST", self._submit_path, json={"token": signed_token})

        if response.status_code in (200, 201, 202):
            body = self._error_body(response)
            tx_hash = body.get("tx_hash")
            if not isinstance(tx_hash, str) or tx_hash == "":
                raise BlockchainError(
                    "LEDGER_UNAVAILABLE",
                    "Ledger relay response did not include a transaction hash",
                    {"action": action},
                )
            return tx_hash

        if response.status_code in (400, 403, 409, 422):
            error_body = self._error_body(response)
            raise BlockchainError(
                "TRANSACTION_REJECTED",
                error_body.get("message", f"Ledger relay rejected {action}"),
                {"action": action, "relay_error": error_body.get("error")},
            )

        logger.warning(
            "Ledger relay unexpected status on submit",
            extra={
                "status_code": response.status_code,
                "action": action,
                "base_url": self._base_url,
            },
        )
        raise BlockchainError(
            "LEDGER_UNAVAILABLE",
            "Ledger relay returned unexpected status",
            {"action": action},
        )

    async def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """
        Fetch a transaction receipt.

        Returns:
            dict with keys status (1 success, 0 reverted) and block_number,
            or None while the transaction is not yet mined
        """
        response = await self._send("GET", self._receipt_path.format(tx_hash=tx_hash))

        if response.status_code == 404:
            return None
        if response.status_code == 200:
            body = self._error_body(response)
            if "status" not in body:
                raise BlockchainError(
                    "LEDGER_UNAVAILABLE",
                    "Ledger relay returned a malformed receipt",
                    {"tx_hash": tx_hash},
                )
            return body

        get_logger(__name__).warning(
            "Ledger relay unexpected status on receipt",
            extra={"status_code": response.status_code, "tx_hash": tx_hash},
        )
        raise BlockchainError(
            "LEDGER_UNAVAILABLE",
            "Ledger relay returned unexpected status",
            {"tx_hash": tx_hash},
        )

    async def get_task_status(self, task_id: str) -> int:
        """Read the escrow contract's numeric status for a task."""
        response = await self._send("GET", self._task_status_path.format(task_id=task_id))

        if response.status_code == 200:
            body = self._error_body(response)
            status = body.get("status")
            if isinstance(status, int) and not isinstance(status, bool):
                return status
            raise BlockchainError(
                "LEDGER_UNAVAILABLE",
                "Ledger relay returned a malformed task status",
                {"task_id": task_id},
            )

        if response.status_code == 404:
            raise BlockchainError(
                "TASK_NOT_ON_LEDGER",
                "Task is not registered on the ledger",
                {"task_id": task_id},
            )

        get_logger(__name__).warning(
            "Ledger relay unexpected status on task status",
            extra={"status_code": response.status_code, "task_id": task_id},
        )
        raise BlockchainError(
            "LEDGER_UNAVAILABLE",
            "Ledger relay returned unexpected status",
            {"task_id": task_id},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
