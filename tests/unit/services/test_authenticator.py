"""Unit tests for Authenticator."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from task_escrow_service.core.exceptions import ForbiddenError
from task_escrow_service.services.authenticator import Authenticator


@pytest.mark.unit
async def test_first_sight_creates_user(user_store):
    identity = AsyncMock()
    identity.verify.return_value = {"external_id": "u-1", "addresses": ["0xaaa", "0xbbb"]}
    authenticator = Authenticator(identity_client=identity, users=user_store, initial_score=100)

    user = await authenticator.authenticate("tok")

    assert user.user_id == "u-1"
    assert user.wallet_address == "0xaaa"
    assert user.reputation_score == 100
    identity.verify.assert_awaited_once_with("tok")


@pytest.mark.unit
async def test_existing_user_keeps_score_and_wallet(user_store):
    identity = AsyncMock()
    identity.verify.return_value = {"external_id": "u-1", "addresses": ["0xaaa"]}
    authenticator = Authenticator(identity_client=identity, users=user_store, initial_score=100)
    await authenticator.authenticate("tok")
    user_store.adjust_reputation("u-1", 25, 0, 200)

    identity.verify.return_value = {"external_id": "u-1", "addresses": []}
    user = await authenticator.authenticate("tok")

    assert user.reputation_score == 125
    assert user.wallet_address == "0xaaa"


@pytest.mark.unit
async def test_invalid_token_propagates(user_store):
    identity = AsyncMock()
    identity.verify.side_effect = ForbiddenError("FORBIDDEN", "Access token verification failed")
    authenticator = Authenticator(identity_client=identity, users=user_store, initial_score=100)

    with pytest.raises(ForbiddenError):
        await authenticator.authenticate("bad")

    assert user_store.get_user("u-1") is None
