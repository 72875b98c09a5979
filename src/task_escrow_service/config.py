"""
Configuration management for the task escrow service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from task_escrow_service.core.config_loader import (
    REDACTION_MARKER,
    create_settings_loader,
    get_safe_model_config,
)
from task_escrow_service.core.config_loader import (
    get_config_path as resolve_config_path,
)

if TYPE_CHECKING:
    from pathlib import Path


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity provider connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    verify_path: str
    timeout_seconds: int


class LedgerConfig(BaseModel):
    """Escrow ledger relay connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    submit_path: str
    receipt_path: str
    task_status_path: str
    timeout_seconds: int
    confirmation_timeout_seconds: float
    poll_interval_seconds: float
    platform_wallet_address: str


class SplitProcessingConfig(BaseModel):
    """Split-processing service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    submit_path: str
    status_path: str
    api_key: str | None = None
    timeout_seconds: int


class PlatformConfig(BaseModel):
    """Platform agent configuration for signing ledger requests."""

    model_config = ConfigDict(extra="forbid")
    agent_id: str
    private_key_path: str | None = None


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class ReputationConfig(BaseModel):
    """Reputation bounds and adjustments."""

    model_config = ConfigDict(extra="forbid")
    initial_score: int
    min_score: int
    max_score: int
    approval_delta: int
    rejection_delta: int


class WorkflowConfig(BaseModel):
    """Fees, creator limits, thresholds and timeouts for the task workflow."""

    model_config = ConfigDict(extra="forbid")
    currency_decimals: int
    platform_fee_bps: int
    anonymous_max_workers: int
    anonymous_max_payout: Decimal
    first_task_max_workers: int
    first_task_max_payout: Decimal
    forbidden_keywords: list[str]
    large_task_worker_threshold: int
    offload_categories: list[str]
    consensus_threshold: Decimal
    min_evaluations: int
    submission_ttl_seconds: int
    reputation: ReputationConfig


class SweeperConfig(BaseModel):
    """Periodic sweep configuration."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    expiration_interval_seconds: float
    reconciliation_interval_seconds: float
    offload_poll_interval_seconds: float
    reconciliation_batch_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    ledger: LedgerConfig
    split_processing: SplitProcessingConfig
    platform: PlatformConfig
    request: RequestConfig
    workflow: WorkflowConfig
    sweeper: SweeperConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    return resolve_config_path(
        env_var_name="CONFIG_PATH",
        default_filename="config.yaml",
    )


get_settings, clear_settings_cache = create_settings_loader(Settings, get_config_path)  # nosemgrep


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return get_safe_model_config(get_settings(), REDACTION_MARKER)
