"""OpenTelemetry metrics for promotion attempts.

Metrics Emitted:
    Counters:
        - promoter_promotions_total: Terminal outcomes by environment,
          final state and failure reason

    Histograms:
        - promoter_promotion_duration_seconds: Wall time from request to
          terminal state, by environment and final state

Example:
    >>> metrics = PromotionMetrics()
    >>> metrics.record_outcome(outcome, duration_seconds=4.2)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from opentelemetry import metrics

if TYPE_CHECKING:
    from opentelemetry.metrics import Counter, Histogram, MeterProvider

    from image_promoter.schemas.promotion import PromotionOutcome

logger = structlog.get_logger(__name__)


class PromotionMetrics:
    """OpenTelemetry metrics collector for promotion outcomes.

    Instruments are created lazily on first use. Thread-safe via the
    OpenTelemetry SDK.
    """

    PROMOTIONS_TOTAL = "promoter_promotions_total"
    PROMOTION_DURATION_SECONDS = "promoter_promotion_duration_seconds"

    def __init__(
        self,
        meter_name: str = "image_promoter",
        meter_version: str = "1.0.0",
        meter_provider: MeterProvider | None = None,
    ) -> None:
        self._meter = metrics.get_meter(meter_name, meter_version, meter_provider=meter_provider)
        self._promotions_counter: Counter | None = None
        self._duration_histogram: Histogram | None = None

    @property
    def promotions_counter(self) -> Counter:
        """Get or create the promotions counter."""
        if self._promotions_counter is None:
            self._promotions_counter = self._meter.create_counter(
                self.PROMOTIONS_TOTAL,
                unit="1",
                description="Total number of promotion attempts by environment and outcome",
            )
        return self._promotions_counter

    @property
    def duration_histogram(self) -> Histogram:
        """Get or create the duration histogram."""
        if self._duration_histogram is None:
            self._duration_histogram = self._meter.create_histogram(
                self.PROMOTION_DURATION_SECONDS,
                unit="s",
                description="Duration of promotion attempts in seconds",
            )
        return self._duration_histogram

    def record_outcome(self, outcome: PromotionOutcome, duration_seconds: float) -> None:
        """Record one terminal outcome.

        Args:
            outcome: The terminal outcome.
            duration_seconds: Wall time of the attempt.
        """
        labels = {
            "environment": outcome.request.environment.value,
            "final_state": outcome.final_state.value,
            "reason": outcome.reason.value if outcome.reason else "none",
        }
        self.promotions_counter.add(1, labels)
        self.duration_histogram.record(
            duration_seconds,
            {"environment": labels["environment"], "final_state": labels["final_state"]},
        )
        logger.debug("promotion_metrics_recorded", duration_seconds=duration_seconds, **labels)


__all__ = ["PromotionMetrics"]
