"""OpenTelemetry tracing utilities.

Provides the create_span() context manager and the @traced decorator used to
instrument promotion stages and collaborator calls. Error messages recorded
on spans are sanitized via sanitize_error_message() to strip credentials.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

from opentelemetry.trace import Status, StatusCode, Tracer

from image_promoter.telemetry.sanitization import sanitize_error_message
from image_promoter.telemetry.tracer_factory import get_tracer as _factory_get_tracer
from image_promoter.telemetry.tracer_factory import reset_tracer
from image_promoter.telemetry.tracer_factory import set_tracer as _factory_set_tracer

__all__ = ["create_span", "format_trace_id", "get_tracer", "reset_tracer", "set_tracer", "traced"]

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span

P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "image_promoter"


def get_tracer() -> Tracer:
    """Get the tracer used for promotion spans."""
    return _factory_get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Set the promotion tracer (for testing). None resets it."""
    _factory_set_tracer(_TRACER_NAME, tracer)


def _record_error(span: Span, error: Exception) -> None:
    sanitized = sanitize_error_message(str(error))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(error).__name__)
    span.set_attribute("exception.message", sanitized)


def format_trace_id(span: Span) -> str:
    """Return the 32-char hex trace id of ``span``, or "" for invalid contexts."""
    span_context = span.get_span_context()
    if not span_context.is_valid:
        return ""
    return format(span_context.trace_id, "032x")


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator to trace function execution with an OpenTelemetry span.

    Works on plain and async functions, with or without arguments:

        @traced
        def inspect(ref): ...

        @traced(name="promoter.registry.retag", attributes={"tool": "skopeo"})
        def retag(ref, tag): ...

    Args:
        func: The function to decorate (when used without parentheses).
        name: Span name. Defaults to the function's qualified name.
        attributes: Static attributes set on every span.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__qualname__

        if asyncio.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
                with get_tracer().start_as_current_span(
                    span_name,
                    attributes=attributes,
                    record_exception=False,
                    set_status_on_exception=False,
                ) as span:
                    try:
                        return await fn(*args, **kwargs)  # type: ignore[misc]
                    except Exception as e:
                        _record_error(span, e)
                        raise

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(fn)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            with get_tracer().start_as_current_span(
                span_name,
                attributes=attributes,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise

        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships automatically, including
    across ``await`` points within the same task.

    Args:
        name: The span name.
        attributes: Optional attributes to set on the span.

    Yields:
        The created span for additional attribute setting.

    Examples:
        >>> with create_span("promoter.promote", attributes={"environment": "staging"}) as span:
        ...     span.set_attribute("target_tag", "staging")
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            _record_error(span, e)
            raise
