"""Service layer components."""

from task_escrow_service.services.authenticator import Authenticator
from task_escrow_service.services.database import Database
from task_escrow_service.services.ledger_gateway import LedgerGateway
from task_escrow_service.services.reputation import ReputationAdjuster
from task_escrow_service.services.settlement import SettlementCoordinator
from task_escrow_service.services.submission_review import SubmissionReview
from task_escrow_service.services.sweeper import Sweeper, SweepScheduler
from task_escrow_service.services.task_lifecycle import TaskLifecycle

__all__ = [
    "Authenticator",
    "Database",
    "LedgerGateway",
    "ReputationAdjuster",
    "SettlementCoordinator",
    "SubmissionReview",
    "SweepScheduler",
    "Sweeper",
    "TaskLifecycle",
]
