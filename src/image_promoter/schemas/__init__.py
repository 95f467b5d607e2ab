"""Pydantic models for the image promotion service.

Promotion Models (image_promoter.schemas.promotion):
    ImageReference, PromotionRequest, ScanResult, Finding, ApprovalRecord,
    PendingApproval, PromotionFailure, PromotionOutcome and their enums.

Configuration Models (image_promoter.schemas.config):
    PromoterConfig and its sections, plus load_config() for YAML files.

Example:
    >>> from image_promoter.schemas import Environment, PromotionRequest
    >>> request = PromotionRequest(
    ...     source_sha="abc1234", target_tag="staging", environment=Environment.STAGING
    ... )
"""

from __future__ import annotations

from image_promoter.schemas.config import (
    ApprovalConfig,
    AuditConfig,
    LoggingConfig,
    PromoterConfig,
    RegistryConfig,
    ScannerConfig,
    WebhookConfig,
    load_config,
)
from image_promoter.schemas.promotion import (
    ApprovalDecision,
    ApprovalRecord,
    ApprovalState,
    Environment,
    FailureReason,
    Finding,
    ImageReference,
    PendingApproval,
    PromotionFailure,
    PromotionOutcome,
    PromotionRequest,
    PromotionState,
    ScanResult,
    ScanVerdict,
    Severity,
)

__all__ = [
    "ApprovalConfig",
    "ApprovalDecision",
    "ApprovalRecord",
    "ApprovalState",
    "AuditConfig",
    "Environment",
    "FailureReason",
    "Finding",
    "ImageReference",
    "LoggingConfig",
    "PendingApproval",
    "PromoterConfig",
    "PromotionFailure",
    "PromotionOutcome",
    "PromotionRequest",
    "PromotionState",
    "RegistryConfig",
    "ScanResult",
    "ScanVerdict",
    "ScannerConfig",
    "Severity",
    "WebhookConfig",
    "load_config",
]
