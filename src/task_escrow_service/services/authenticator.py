"""Bearer token authentication against the identity provider."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from task_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from task_escrow_service.clients.identity_client import IdentityClient
    from task_escrow_service.records import UserRecord
    from task_escrow_service.services.user_store import UserStore


class Authenticator:
    """
    Turns an access token into a local user record.

    The identity provider is authoritative; the first linked address
    becomes the user's payment address. Users are created on first sight
    with the configured initial reputation.
    """

    def __init__(
        self, identity_client: IdentityClient, users: UserStore, initial_score: int
    ) -> None:
        self._identity_client = identity_client
        self._users = users
        self._initial_score = initial_score
        self._logger = get_logger(__name__)

    def set_identity_client(self, client: IdentityClient) -> None:
        self._identity_client = client

    async def authenticate(self, token: str) -> UserRecord:
        """
        Verify the token and return the caller's user record.

        Raises:
            ForbiddenError: FORBIDDEN if the token is not valid
            DependencyError: IDENTITY_SERVICE_UNAVAILABLE if the provider is unreachable
        """
        identity = await self._identity_client.verify(token)
        addresses: list[str] = identity["addresses"]
        wallet_address = addresses[0] if addresses else None
        now = datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
        user = self._users.ensure_user(
            identity["external_id"], wallet_address, self._initial_score, now
        )
        self._logger.debug("Caller authenticated", extra={"user_id": user.user_id})
        return user
