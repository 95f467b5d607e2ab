"""Image promotion service.

Moves an immutable build image (tagged with its git short-SHA) through
reference resolution, tag policy, vulnerability scanning and, for protected
environments, human approval, before retagging it in the registry.

Example:
    >>> from image_promoter import PromotionOrchestrator, PromotionRequest, Environment
    >>> orchestrator = PromotionOrchestrator.from_config(config)
    >>> outcome = orchestrator.promote_sync(
    ...     PromotionRequest(source_sha="abc1234", target_tag="staging",
    ...                      environment=Environment.STAGING)
    ... )
"""

from __future__ import annotations

from image_promoter.orchestrator import PromotionOrchestrator
from image_promoter.schemas.promotion import (
    Environment,
    FailureReason,
    ImageReference,
    PromotionOutcome,
    PromotionRequest,
    PromotionState,
)

__version__ = "0.1.0"

__all__ = [
    "Environment",
    "FailureReason",
    "ImageReference",
    "PromotionOrchestrator",
    "PromotionOutcome",
    "PromotionRequest",
    "PromotionState",
    "__version__",
]
