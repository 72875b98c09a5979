"""Async HTTP client for the split-processing service."""

from __future__ import annotations

from typing import Any

import httpx

from task_escrow_service.core.exceptions import DependencyError
from task_escrow_service.logging import get_logger


class SplitProcessingClient:
    """
    Client for offloading oversized or model-evaluated tasks.

    The service splits a task into subtasks on its side; we only submit the
    task once and later poll the job it created.
    """

    def __init__(
        self,
        base_url: str,
        submit_path: str,
        status_path: str,
        api_key: str | None,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._submit_path = submit_path
        self._status_path = status_path
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        logger = get_logger(__name__)
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(
                "Split-processing request failed",
                extra={"error": str(exc), "base_url": self._base_url, "path": path},
            )
            raise DependencyError(
                "SPLIT_PROCESSING_UNAVAILABLE",
                "Split-processing service request failed",
            ) from exc

        if response.status_code not in (200, 201, 202):
            logger.warning(
                "Split-processing unexpected status",
                extra={"status_code": response.status_code, "path": path},
            )
            raise DependencyError(
                "SPLIT_PROCESSING_UNAVAILABLE",
                "Split-processing service returned unexpected status",
                {"status_code": response.status_code},
            )
        return response

    async def submit(self, subtask: dict[str, Any]) -> str:
        """Submit a task for split processing and return the job id."""
        response = await self._send("POST", self._submit_path, json=subtask)
        body: dict[str, Any] = response.json()
        job_id = body.get("job_id")
        if not isinstance(job_id, str) or job_id == "":
            raise DependencyError(
                "SPLIT_PROCESSING_UNAVAILABLE",
                "Split-processing response did not include a job id",
            )
        return job_id

    async def poll_status(self, job_id: str) -> dict[str, Any]:
        """
        Fetch the state of a split-processing job.

        Returns:
            dict with keys: status (str) and, once finished, results
        """
        response = await self._send("GET", self._status_path.format(job_id=job_id))
        body: dict[str, Any] = response.json()
        result: dict[str, Any] = {"status": str(body.get("status", "unknown"))}
        if "results" in body:
            result["results"] = body["results"]
        return result

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
