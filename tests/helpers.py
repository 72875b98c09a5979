"""Shared test helpers: config text, policy and record builders."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from task_escrow_service.config import ReputationConfig, WorkflowConfig
from task_escrow_service.records import TaskCategory, TaskRecord, TaskStatus, UserRecord
from task_escrow_service.services.money import compute_task_costs
from task_escrow_service.services.policy import WorkflowPolicy

if TYPE_CHECKING:
    from task_escrow_service.services.task_store import TaskStore
    from task_escrow_service.services.user_store import UserStore

PLATFORM_AGENT_ID = "a-platform-test-id"
PLATFORM_WALLET = "0xplatform"

# 0.01 native units in minor units
CENT = 10**16


def make_config_yaml(db_path: str, *, sweeper_enabled: bool = False, **workflow: Any) -> str:
    """Build a complete config file body pointing at the given database."""
    offload_categories = workflow.get("offload_categories", [])
    min_evaluations = workflow.get("min_evaluations", 3)
    log_directory = Path(db_path).parent / "logs"
    return f"""\
service:
  name: "task-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_directory}"
database:
  path: "{db_path}"
identity:
  base_url: "http://localhost:8001"
  verify_path: "/tokens/verify"
  timeout_seconds: 10
ledger:
  base_url: "http://localhost:8545"
  submit_path: "/transactions"
  receipt_path: "/transactions/{{tx_hash}}/receipt"
  task_status_path: "/escrow/tasks/{{task_id}}/status"
  timeout_seconds: 10
  confirmation_timeout_seconds: 5
  poll_interval_seconds: 0.01
  platform_wallet_address: "{PLATFORM_WALLET}"
split_processing:
  base_url: "http://localhost:8020"
  submit_path: "/submit-task"
  status_path: "/job-status/{{job_id}}"
  api_key: "split-secret"
  timeout_seconds: 10
platform:
  agent_id: "{PLATFORM_AGENT_ID}"
request:
  max_body_size: 1048576
workflow:
  currency_decimals: 18
  platform_fee_bps: 1500
  anonymous_max_workers: 5
  anonymous_max_payout: "0.05"
  first_task_max_workers: 10
  first_task_max_payout: "0.1"
  forbidden_keywords: ["hack", "illegal", "malicious", "attack"]
  large_task_worker_threshold: 50
  offload_categories: {offload_categories!r}
  consensus_threshold: "0.70"
  min_evaluations: {min_evaluations}
  submission_ttl_seconds: 300
  reputation:
    initial_score: 100
    min_score: 0
    max_score: 200
    approval_delta: 10
    rejection_delta: -5
sweeper:
  enabled: {"true" if sweeper_enabled else "false"}
  expiration_interval_seconds: 60
  reconciliation_interval_seconds: 300
  offload_poll_interval_seconds: 30
  reconciliation_batch_size: 50
"""


def make_policy(**overrides: Any) -> WorkflowPolicy:
    """Build a WorkflowPolicy from the default workflow section plus overrides."""
    values: dict[str, Any] = {
        "currency_decimals": 18,
        "platform_fee_bps": 1500,
        "anonymous_max_workers": 5,
        "anonymous_max_payout": Decimal("0.05"),
        "first_task_max_workers": 10,
        "first_task_max_payout": Decimal("0.1"),
        "forbidden_keywords": ["hack", "illegal", "malicious", "attack"],
        "large_task_worker_threshold": 50,
        "offload_categories": [],
        "consensus_threshold": Decimal("0.70"),
        "min_evaluations": 3,
        "submission_ttl_seconds": 300,
        "reputation": ReputationConfig(
            initial_score=100,
            min_score=0,
            max_score=200,
            approval_delta=10,
            rejection_delta=-5,
        ),
    }
    values.update(overrides)
    return WorkflowPolicy.from_config(WorkflowConfig(**values))


def now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def make_task(
    *,
    task_id: str | None = None,
    creator_id: str | None = "u-creator",
    creator_address: str | None = "0xcreator",
    category: TaskCategory = TaskCategory.IMAGE_LABELING,
    payout_per_worker: int = CENT,
    required_workers: int = 2,
    status: TaskStatus = TaskStatus.FUNDED,
    processing_job_id: str | None = None,
    processing_status: str | None = None,
    created_at: str | None = None,
    funded_at: str | None = None,
) -> TaskRecord:
    """Build a priced task record."""
    costs = compute_task_costs(payout_per_worker, required_workers, 1500)
    created = created_at or now_iso()
    return TaskRecord(
        task_id=task_id or f"t-{uuid.uuid4()}",
        title="Label street signs",
        description="Draw a box around every street sign",
        category=category,
        creator_id=creator_id,
        creator_address=creator_address,
        payout_per_worker=payout_per_worker,
        required_workers=required_workers,
        platform_fee=costs.platform_fee,
        total_cost=costs.total_cost,
        status=status,
        deadline=None,
        processing_job_id=processing_job_id,
        processing_status=processing_status,
        settlement=None,
        settlement_claimed_at=None,
        created_at=created,
        funded_at=funded_at if funded_at is not None else (
            created if status != TaskStatus.DRAFT else None
        ),
        completed_at=None,
        cancelled_at=None,
    )


def add_task(store: TaskStore, **kwargs: Any) -> TaskRecord:
    """Insert a task built by make_task and return it."""
    task = make_task(**kwargs)
    store.insert_task(task)
    return task


def add_user(
    users: UserStore,
    user_id: str,
    *,
    wallet_address: str | None = None,
    score: int = 100,
) -> UserRecord:
    """Create a user with a wallet derived from the id unless one is given."""
    address = wallet_address if wallet_address is not None else f"0x{user_id}"
    return users.ensure_user(user_id, address, score, now_iso())
