"""Router test fixtures with mocked identity, ledger and split-processing services."""

from __future__ import annotations

import os
import uuid
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_escrow_service.app import create_app
from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.exceptions import BlockchainError, ForbiddenError
from task_escrow_service.core.lifespan import lifespan
from task_escrow_service.core.state import get_app_state, reset_app_state
from task_escrow_service.services.ledger_gateway import LedgerTaskStatus
from tests.helpers import make_config_yaml

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed user IDs. The mocked identity provider maps token "u-x" to user "u-x".
# ---------------------------------------------------------------------------
ALICE = "u-alice"
BOB = "u-bob"
CAROL = "u-carol"
DAVE = "u-dave"

_STATUS_AFTER_ACTION = {
    "create_task": LedgerTaskStatus.CREATED,
    "fund_task": LedgerTaskStatus.FUNDED,
    "complete_task": LedgerTaskStatus.COMPLETED,
    "cancel_and_refund": LedgerTaskStatus.CANCELLED,
}


def auth(user_id: str) -> dict[str, str]:
    """Authorization header for a user known to the mocked identity provider."""
    return {"Authorization": f"Bearer {user_id}"}


def _verify(token: str) -> dict[str, Any]:
    if token.startswith("invalid"):
        raise ForbiddenError("FORBIDDEN", "Access token verification failed")
    return {"external_id": token, "addresses": [f"0x{token}"]}


def _mock_ledger() -> AsyncMock:
    """Ledger relay double that confirms everything and tracks contract status."""
    statuses: dict[str, int] = {}

    async def submit_transaction(action: str, params: dict[str, Any]) -> str:
        if action in _STATUS_AFTER_ACTION:
            statuses[params["task_id"]] = int(_STATUS_AFTER_ACTION[action])
        return f"0x{uuid.uuid4().hex}"

    async def get_task_status(task_id: str) -> int:
        return statuses[task_id]

    ledger = AsyncMock()
    ledger.submit_transaction = AsyncMock(side_effect=submit_transaction)
    ledger.get_receipt = AsyncMock(return_value={"status": 1, "block_number": 1})
    ledger.get_task_status = AsyncMock(side_effect=get_task_status)
    return ledger


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(make_config_yaml(str(tmp_path / "test.db")))

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        mock_identity = AsyncMock()
        mock_identity.verify = AsyncMock(side_effect=_verify)
        state.identity_client = mock_identity

        state.ledger_client = _mock_ledger()

        mock_split = AsyncMock()
        mock_split.submit = AsyncMock(return_value="job-1")
        mock_split.poll_status = AsyncMock(return_value={"status": "processing"})
        state.split_processing_client = mock_split

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def ledger_unavailable(_app: Any) -> None:
    """Make every ledger submission fail as if the relay were down."""
    get_app_state().ledger_client.submit_transaction = AsyncMock(
        side_effect=BlockchainError("LEDGER_UNAVAILABLE", "Cannot connect to ledger relay")
    )


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------
def task_body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "title": "Label street signs",
        "description": "Draw a box around every street sign",
        "category": "Image Labeling",
        "payout_per_worker": "0.01",
        "required_workers": 2,
    }
    body.update(overrides)
    return body


async def create_task(client: AsyncClient, creator: str | None = ALICE, **overrides: Any):
    headers = auth(creator) if creator is not None else {}
    response = await client.post("/tasks", json=task_body(**overrides), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


async def create_funded_task(client: AsyncClient, creator: str = ALICE, **overrides: Any):
    task = await create_task(client, creator, **overrides)
    response = await client.post(f"/tasks/{task['task_id']}/fund", headers=auth(creator))
    assert response.status_code == 200, response.text
    return response.json()


async def assign(client: AsyncClient, worker: str) -> dict[str, Any]:
    response = await client.post("/assignments", headers=auth(worker))
    assert response.status_code == 201, response.text
    return response.json()


async def submit(client: AsyncClient, worker: str, submission_id: str, payload=None):
    response = await client.post(
        f"/submissions/{submission_id}/submit",
        json={"payload": payload if payload is not None else {"boxes": 4}},
        headers=auth(worker),
    )
    assert response.status_code == 200, response.text
    return response.json()
