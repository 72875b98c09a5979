"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from task_escrow_service.clients.identity_client import IdentityClient
from task_escrow_service.clients.ledger_client import LedgerClient
from task_escrow_service.clients.platform_signer import PlatformSigner, ensure_private_key
from task_escrow_service.clients.split_processing_client import SplitProcessingClient
from task_escrow_service.config import get_safe_config, get_settings
from task_escrow_service.core.state import init_app_state
from task_escrow_service.logging import get_logger, setup_logging
from task_escrow_service.services.authenticator import Authenticator
from task_escrow_service.services.database import Database
from task_escrow_service.services.device_check import DeviceCheck
from task_escrow_service.services.ledger_gateway import LedgerGateway
from task_escrow_service.services.policy import WorkflowPolicy
from task_escrow_service.services.reputation import ReputationAdjuster
from task_escrow_service.services.settlement import SettlementCoordinator
from task_escrow_service.services.submission_review import SubmissionReview
from task_escrow_service.services.submission_store import SubmissionStore
from task_escrow_service.services.sweeper import Sweeper, SweepScheduler
from task_escrow_service.services.task_lifecycle import TaskLifecycle
from task_escrow_service.services.task_store import TaskStore
from task_escrow_service.services.user_store import UserStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    db_path = settings.database.path

    # Resolve platform private key path (use configured path or fallback in data dir)
    private_key_path = settings.platform.private_key_path
    if not private_key_path:
        private_key_path = str(Path(db_path).parent / "platform.pem")
    ensure_private_key(private_key_path)

    platform_signer = PlatformSigner(
        platform_agent_id=settings.platform.agent_id,
        private_key_path=private_key_path,
    )
    state.platform_signer = platform_signer

    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_path=settings.identity.verify_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    ledger_client = LedgerClient(
        base_url=settings.ledger.base_url,
        submit_path=settings.ledger.submit_path,
        receipt_path=settings.ledger.receipt_path,
        task_status_path=settings.ledger.task_status_path,
        timeout_seconds=settings.ledger.timeout_seconds,
        platform_signer=platform_signer,
    )
    split_processing_client = SplitProcessingClient(
        base_url=settings.split_processing.base_url,
        submit_path=settings.split_processing.submit_path,
        status_path=settings.split_processing.status_path,
        api_key=settings.split_processing.api_key,
        timeout_seconds=settings.split_processing.timeout_seconds,
    )

    # Stores share one SQLite connection
    database = Database(db_path)
    state.database = database
    task_store = TaskStore(database)
    submission_store = SubmissionStore(database)
    user_store = UserStore(database)

    policy = WorkflowPolicy.from_config(settings.workflow)

    gateway = LedgerGateway(
        ledger_client=ledger_client,
        store=task_store,
        platform_wallet_address=settings.ledger.platform_wallet_address,
        confirmation_timeout_seconds=settings.ledger.confirmation_timeout_seconds,
        poll_interval_seconds=settings.ledger.poll_interval_seconds,
    )
    state.ledger_gateway = gateway

    settlement = SettlementCoordinator(
        gateway=gateway,
        tasks=task_store,
        submissions=submission_store,
        users=user_store,
    )
    reputation = ReputationAdjuster(users=user_store, policy=policy.reputation)
    state.reputation = reputation

    state.task_lifecycle = TaskLifecycle(
        tasks=task_store,
        submissions=submission_store,
        gateway=gateway,
        split_processing_client=split_processing_client,
        policy=policy,
    )
    state.submission_review = SubmissionReview(
        tasks=task_store,
        submissions=submission_store,
        settlement=settlement,
        reputation=reputation,
        policy=policy,
    )
    state.authenticator = Authenticator(
        identity_client=identity_client,
        users=user_store,
        initial_score=policy.reputation.initial_score,
    )
    state.device_check = DeviceCheck(users=user_store)

    sweeper = Sweeper(
        tasks=task_store,
        submissions=submission_store,
        gateway=gateway,
        settlement=settlement,
        split_processing_client=split_processing_client,
        submission_ttl_seconds=policy.submission_ttl_seconds,
        reconciliation_batch_size=settings.sweeper.reconciliation_batch_size,
        # A claim older than two confirmation windows was abandoned mid-settlement
        stale_claim_seconds=2 * settings.ledger.confirmation_timeout_seconds,
    )
    state.sweeper = sweeper

    state.identity_client = identity_client
    state.ledger_client = ledger_client
    state.split_processing_client = split_processing_client

    if settings.sweeper.enabled:
        scheduler = SweepScheduler(
            sweeper,
            expiration_interval_seconds=settings.sweeper.expiration_interval_seconds,
            reconciliation_interval_seconds=settings.sweeper.reconciliation_interval_seconds,
            offload_poll_interval_seconds=settings.sweeper.offload_poll_interval_seconds,
        )
        scheduler.start()
        state.sweep_scheduler = scheduler

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "identity_base_url": settings.identity.base_url,
            "ledger_base_url": settings.ledger.base_url,
            "split_processing_base_url": settings.split_processing.base_url,
            "platform_agent_id": settings.platform.agent_id,
            "sweeper_enabled": settings.sweeper.enabled,
        },
    )
    logger.debug("Effective configuration", extra={"config": get_safe_config()})

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    if state.sweep_scheduler is not None:
        await state.sweep_scheduler.stop()

    database.close()

    await identity_client.close()
    await ledger_client.close()
    await split_processing_client.close()
