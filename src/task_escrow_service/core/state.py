"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from task_escrow_service.clients.identity_client import IdentityClient
    from task_escrow_service.clients.ledger_client import LedgerClient
    from task_escrow_service.clients.platform_signer import PlatformSigner
    from task_escrow_service.clients.split_processing_client import SplitProcessingClient
    from task_escrow_service.services.authenticator import Authenticator
    from task_escrow_service.services.database import Database
    from task_escrow_service.services.device_check import DeviceCheck
    from task_escrow_service.services.ledger_gateway import LedgerGateway
    from task_escrow_service.services.reputation import ReputationAdjuster
    from task_escrow_service.services.submission_review import SubmissionReview
    from task_escrow_service.services.sweeper import Sweeper, SweepScheduler
    from task_escrow_service.services.task_lifecycle import TaskLifecycle


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    database: Database | None = None
    task_lifecycle: TaskLifecycle | None = None
    submission_review: SubmissionReview | None = None
    reputation: ReputationAdjuster | None = None
    authenticator: Authenticator | None = None
    device_check: DeviceCheck | None = None
    ledger_gateway: LedgerGateway | None = None
    sweeper: Sweeper | None = None
    sweep_scheduler: SweepScheduler | None = None
    identity_client: IdentityClient | None = None
    ledger_client: LedgerClient | None = None
    split_processing_client: SplitProcessingClient | None = None
    platform_signer: PlatformSigner | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep service client references in sync with AppState fields."""
        super().__setattr__(name, value)
        if value is None:
            return

        if name == "identity_client":
            authenticator = self.__dict__.get("authenticator")
            if authenticator is not None:
                authenticator.set_identity_client(value)
        elif name == "ledger_client":
            gateway = self.__dict__.get("ledger_gateway")
            if gateway is not None:
                gateway.set_ledger_client(value)
        elif name == "split_processing_client":
            task_lifecycle = self.__dict__.get("task_lifecycle")
            sweeper = self.__dict__.get("sweeper")
            if task_lifecycle is not None:
                task_lifecycle.set_split_processing_client(value)
            if sweeper is not None:
                sweeper.set_split_processing_client(value)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
