"""Service configuration schemas.

The promotion service is configured from a single YAML document:

    registry:
      host: ghcr.io
      repository: acme/web
      username_env: REGISTRY_ACTOR
      password_env: REGISTRY_TOKEN
    scanner:
      tool: trivy
      block_on_severity: [CRITICAL, HIGH]
      timeout_seconds: 600
    approval:
      timeout_seconds: 86400
      store_dir: .promoter/approvals
    audit:
      path: .promoter/audit.jsonl
    webhooks:
      - url: https://hooks.example.com/promotions
        events: [promoted, failed]
    logging:
      level: INFO
      json_output: true

Example:
    >>> from image_promoter.schemas.config import load_config
    >>> config = load_config("promoter.yaml")
    >>> config.registry.repository
    'acme/web'
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from image_promoter.errors import ConfigError
from image_promoter.schemas.promotion import Severity

logger = structlog.get_logger(__name__)


class RegistryConfig(BaseModel):
    """Container registry holding both the source and promoted tags.

    Credentials are never stored in the file; ``username_env`` and
    ``password_env`` name the environment variables that hold them.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(..., min_length=1, description="Registry host, e.g. ghcr.io")
    repository: str = Field(..., min_length=1, description="Repository path, e.g. acme/web")
    username_env: str | None = Field(default="REGISTRY_USERNAME")
    password_env: str | None = Field(default="REGISTRY_PASSWORD")
    retry_times: int = Field(default=3, ge=0, description="skopeo --retry-times")
    tls_verify: bool = True
    command_timeout_seconds: float = Field(default=300.0, gt=0)
    skopeo_binary: str = "skopeo"

    def credentials(self) -> str | None:
        """Return ``user:password`` from the environment, or None if unset."""
        if not self.username_env or not self.password_env:
            return None
        username = os.environ.get(self.username_env, "")
        password = os.environ.get(self.password_env, "")
        if not username or not password:
            return None
        return f"{username}:{password}"


class ScannerConfig(BaseModel):
    """External vulnerability scanner settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool: Literal["trivy", "grype"] = "trivy"
    binary: str | None = Field(default=None, description="Override scanner executable path")
    block_on_severity: list[Severity] = Field(
        default_factory=lambda: [Severity.CRITICAL, Severity.HIGH],
        description="Severities that fail the gate",
    )
    ignore_unfixed: bool = Field(
        default=False,
        description="Do not block on findings that have no fixed version",
    )
    timeout_seconds: float = Field(default=600.0, gt=0)


class ApprovalConfig(BaseModel):
    """Approval gate settings for protected environments."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_seconds: float = Field(default=86400.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    store_dir: Path = Path(".promoter/approvals")


class AuditConfig(BaseModel):
    """Audit log location."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: Path = Path(".promoter/audit.jsonl")


class WebhookConfig(BaseModel):
    """Webhook endpoint notified about promotion events.

    Examples:
        >>> config = WebhookConfig(url="https://hooks.example.com/x", events=["failed"])
        >>> config.retry_count
        3
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., pattern=r"^https?://")
    events: list[str] = Field(
        default_factory=lambda: ["promoted", "failed", "approval_requested"],
    )
    headers: dict[str, str] | None = None
    timeout_seconds: int = Field(default=30, ge=1)
    retry_count: int = Field(default=3, ge=0)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_output: bool = True


class PromoterConfig(BaseModel):
    """Top-level promotion service configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    registry: RegistryConfig
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    webhooks: list[WebhookConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path) -> PromoterConfig:
    """Load and validate a PromoterConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Validated PromoterConfig.

    Raises:
        ConfigError: If the file is missing, empty, not YAML, or invalid.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config YAML: {e}") from e

    if data is None:
        raise ConfigError(f"Empty config file: {config_path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {config_path}")

    try:
        config = PromoterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    logger.debug(
        "config_loaded",
        path=str(config_path),
        registry=config.registry.host,
        repository=config.registry.repository,
        scanner=config.scanner.tool,
    )
    return config


__all__: list[str] = [
    "ApprovalConfig",
    "AuditConfig",
    "LoggingConfig",
    "PromoterConfig",
    "RegistryConfig",
    "ScannerConfig",
    "WebhookConfig",
    "load_config",
]
