"""Telemetry for the promotion service: tracing, log correlation and metrics."""

from __future__ import annotations

from image_promoter.telemetry.logging import add_trace_context, configure_logging
from image_promoter.telemetry.metrics import PromotionMetrics
from image_promoter.telemetry.sanitization import sanitize_error_message
from image_promoter.telemetry.tracing import (
    create_span,
    format_trace_id,
    get_tracer,
    reset_tracer,
    set_tracer,
    traced,
)

__all__ = [
    "PromotionMetrics",
    "add_trace_context",
    "configure_logging",
    "create_span",
    "format_trace_id",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
