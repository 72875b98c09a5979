"""Async HTTP client for the identity provider."""

from __future__ import annotations

from typing import Any

import httpx

from task_escrow_service.core.exceptions import DependencyError, ForbiddenError
from task_escrow_service.logging import get_logger


class IdentityClient:
    """
    Client for access-token verification.

    Exchanges an opaque bearer token for the verified external user id and
    the payment addresses linked to it. This service never inspects tokens
    itself.
    """

    def __init__(
        self,
        base_url: str,
        verify_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._verify_path = verify_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def verify(self, token: str) -> dict[str, Any]:
        """
        Verify an access token with the identity provider.

        Args:
            token: Opaque access token from the Authorization header

        Returns:
            dict with keys: external_id (str), addresses (list[str])

        Raises:
            ForbiddenError: FORBIDDEN if the provider says valid=false
            DependencyError: IDENTITY_SERVICE_UNAVAILABLE on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                self._verify_path,
                json={"token": token},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Identity service connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise DependencyError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot connect to Identity service",
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity service HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise DependencyError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Identity service request failed",
            ) from exc

        if response.status_code != 200:
            logger.warning(
                "Identity service unexpected status",
                extra={
                    "status_code": response.status_code,
                    "base_url": self._base_url,
                },
            )
            raise DependencyError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Identity service returned unexpected status",
            )

        result: dict[str, Any] = response.json()

        if not result.get("valid", False):
            raise ForbiddenError("FORBIDDEN", "Access token verification failed")

        external_id = result.get("external_id")
        if not isinstance(external_id, str) or external_id == "":
            raise DependencyError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Identity service response did not include an external id",
            )

        addresses = result.get("addresses") or []
        return {
            "external_id": external_id,
            "addresses": [str(address) for address in addresses],
        }

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
