"""HTTP clients for the identity provider, ledger relay and split-processing service."""

from task_escrow_service.clients.identity_client import IdentityClient
from task_escrow_service.clients.ledger_client import LedgerClient
from task_escrow_service.clients.split_processing_client import SplitProcessingClient

__all__ = ["IdentityClient", "LedgerClient", "SplitProcessingClient"]
