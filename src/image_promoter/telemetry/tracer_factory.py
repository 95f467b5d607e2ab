"""Thread-safe tracer factory.

Provides lazily created, cached OpenTelemetry tracers with a NoOpTracer
fallback when OpenTelemetry global state cannot be initialized, and
reset_tracer() for test isolation.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

_tracers: dict[str, Tracer] = {}
_tracer_init_failed: bool = False
_lock = threading.Lock()


def get_tracer(name: str = "image_promoter") -> Tracer:
    """Get or create a cached tracer instance.

    Uses double-checked locking so the fast path never takes the lock.

    Args:
        name: The tracer (instrumenting module) name.

    Returns:
        OpenTelemetry Tracer, or a NoOpTracer if initialization failed.
    """
    global _tracer_init_failed

    if name in _tracers:
        return _tracers[name]

    if _tracer_init_failed:
        return trace.NoOpTracer()

    with _lock:
        if name in _tracers:
            return _tracers[name]

        if _tracer_init_failed:
            return trace.NoOpTracer()

        try:
            tracer = trace.get_tracer(name)
            _tracers[name] = tracer
            return tracer
        except Exception:
            # Corrupted OTel global state (seen in test environments)
            _tracer_init_failed = True
            return trace.NoOpTracer()


def set_tracer(name: str, tracer: Tracer | None) -> None:
    """Set or clear the tracer used for ``name`` (for testing)."""
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Clear cached tracers and the initialization failure flag."""
    global _tracer_init_failed
    with _lock:
        _tracers.clear()
        _tracer_init_failed = False


__all__ = ["get_tracer", "reset_tracer", "set_tracer"]
