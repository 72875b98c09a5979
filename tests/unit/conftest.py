"""Unit test fixtures: cache reset, temp-dir SQLite stores and a mocked ledger gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import pytest

from task_escrow_service.config import clear_settings_cache
from task_escrow_service.core.state import reset_app_state
from task_escrow_service.services.database import Database
from task_escrow_service.services.ledger_gateway import LedgerGateway, LedgerReceipt
from task_escrow_service.services.submission_store import SubmissionStore
from task_escrow_service.services.task_store import TaskStore
from task_escrow_service.services.user_store import UserStore
from tests.helpers import make_policy

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from task_escrow_service.services.policy import WorkflowPolicy


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def database(tmp_path: Path) -> Iterator[Database]:
    db = Database(str(tmp_path / "escrow.db"))
    yield db
    db.close()


@pytest.fixture
def task_store(database: Database) -> TaskStore:
    return TaskStore(database)


@pytest.fixture
def submission_store(database: Database) -> SubmissionStore:
    return SubmissionStore(database)


@pytest.fixture
def user_store(database: Database) -> UserStore:
    return UserStore(database)


@pytest.fixture
def policy() -> WorkflowPolicy:
    return make_policy()


@pytest.fixture
def gateway() -> MagicMock:
    """LedgerGateway double whose contract calls all confirm."""
    mock = MagicMock(spec=LedgerGateway)
    receipt = LedgerReceipt(tx_hash="0xabc", block_number=7)
    mock.create_task.return_value = receipt
    mock.fund_task.return_value = receipt
    mock.assign_workers.return_value = receipt
    mock.release_batch_payouts.return_value = receipt
    mock.complete_task.return_value = receipt
    mock.cancel_and_refund.return_value = receipt
    return mock
