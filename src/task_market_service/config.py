"""
Configuration management for the task market service.

Loads configuration from YAML with ZERO defaults for required sections.
Every required value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEYS = frozenset({"private_key_path", "api_key"})


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
    verify_jws_path: str
    timeout_seconds: int


class EscrowGatewayConfig(BaseModel):
    """Escrow gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    transfer_path: str
    refund_path: str
    timeout_seconds: int


class NotificationsConfig(BaseModel):
    """Notification service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    notify_path: str
    timeout_seconds: int


class PlatformConfig(BaseModel):
    """Platform agent configuration for signing escrow operations."""

    model_config = ConfigDict(extra="forbid")
    agent_id: str
    private_key_path: str | None = None
    wallet_ref: str
    admin_ids: list[str]

    @field_validator("agent_id", "wallet_ref")
    @classmethod
    def must_not_be_empty(cls, value: str) -> str:
        """Reject empty platform identifiers at startup."""
        if not value.strip():
            msg = "platform identifiers must not be empty"
            raise ValueError(msg)
        return value


class PayoutsConfig(BaseModel):
    """Payout and refund configuration."""

    model_config = ConfigDict(extra="forbid")
    cancellation_fee_percent: Decimal

    @field_validator("cancellation_fee_percent")
    @classmethod
    def fee_in_range(cls, value: Decimal) -> Decimal:
        """Cancellation fee is a percentage in [0, 100]."""
        if not Decimal(0) <= value <= Decimal(100):
            msg = "payouts.cancellation_fee_percent must be between 0 and 100"
            raise ValueError(msg)
        return value


class DisputesConfig(BaseModel):
    """Dispute configuration."""

    model_config = ConfigDict(extra="forbid")
    window_hours: int
    max_reason_length: int


class JurorConfig(BaseModel):
    """Single juror configuration."""

    model_config = ConfigDict(extra="forbid")
    id: str
    provider: str
    model: str | None = None
    persona: str
    temperature: float | None = None
    fixed_vote: str | None = None


class JuryConfig(BaseModel):
    """Jury panel configuration."""

    model_config = ConfigDict(extra="forbid")
    panel_size: int
    juror_timeout_seconds: float
    jurors: list[JurorConfig]

    @model_validator(mode="after")
    def validate_panel(self) -> JuryConfig:
        """Validate panel size and juror identities."""
        if self.panel_size != 3:
            msg = "INVALID_PANEL_SIZE: jury.panel_size must be 3"
            raise ValueError(msg)
        if self.panel_size != len(self.jurors):
            msg = "INVALID_PANEL_SIZE: jury.panel_size must equal len(jurors)"
            raise ValueError(msg)

        seen: set[str] = set()
        for juror in self.jurors:
            if juror.id in seen:
                msg = f"Duplicate juror id: {juror.id}"
                raise ValueError(msg)
            seen.add(juror.id)
        return self


class VerificationConfig(BaseModel):
    """Agent verification challenge configuration."""

    model_config = ConfigDict(extra="forbid")
    challenge_ttl_seconds: int
    purge_grace_seconds: int
    require_verified_agents: bool


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class LimitsConfig(BaseModel):
    """Input length and size limits."""

    model_config = ConfigDict(extra="forbid")
    max_title_length: int
    max_description_length: int
    max_requirements_length: int
    max_content_length: int
    max_notes_length: int
    max_workers: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED except `notifications`.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    escrow_gateway: EscrowGatewayConfig
    notifications: NotificationsConfig | None = None
    platform: PlatformConfig
    payouts: PayoutsConfig
    disputes: DisputesConfig
    jury: JuryConfig
    verification: VerificationConfig
    request: RequestConfig
    limits: LimitsConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and validate settings. Cached after first call."""
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Clear the cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER if key in _SENSITIVE_KEYS and item is not None else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump(mode="json"))
    return redacted
