"""
Configuration management for the escrow ledger service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from service_commons.config import (
    REDACTION_MARKER,
    create_settings_loader,
    get_safe_model_config,
)
from service_commons.config import (
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
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    verify_path: str
    timeout_seconds: int


class GatewayConfig(BaseModel):
    """Payment gateway connection and webhook configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    secret_key: str
    webhook_secret_hash: str
    signature_header: str
    redirect_url: str
    timeout_seconds: int


class EscrowConfig(BaseModel):
    """Escrow fee and settlement configuration."""

    model_config = ConfigDict(extra="forbid")
    platform_fee_bps: int = Field(ge=0, le=10000)
    auto_release_hours: int = Field(gt=0)
    default_currency: str


class WithdrawalConfig(BaseModel):
    """Withdrawal limits and fee schedule."""

    model_config = ConfigDict(extra="forbid")
    minimum_amount: int = Field(gt=0)
    fixed_fee: int = Field(ge=0)
    percentage_fee_bps: int = Field(ge=0, le=10000)
    max_fee: int = Field(ge=0)


class SchedulerConfig(BaseModel):
    """Periodic settlement sweep configuration."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    auto_release_interval_seconds: int = Field(gt=0)
    expiry_interval_seconds: int = Field(gt=0)


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


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
    gateway: GatewayConfig
    escrow: EscrowConfig
    withdrawal: WithdrawalConfig
    scheduler: SchedulerConfig
    request: RequestConfig


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
