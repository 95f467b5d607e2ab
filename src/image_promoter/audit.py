"""Append-only audit log of promotion outcomes.

Every terminal PromotionOutcome (including Conflict rejections) is appended
exactly once. There is no update or delete operation. Queries return a lazy
iterable that re-reads the log each time it is iterated, so the same query
object can be iterated again to see newer records.

Each append also emits a structured audit event on the ``promoter.audit``
logger carrying the active OpenTelemetry trace context, so log pipelines can
correlate the audit trail with traces.

Example:
    >>> log = JsonlAuditLog(Path(".promoter/audit.jsonl"))
    >>> log.append(outcome)
    >>> [o.request.target_tag for o in log.query(AuditFilter(environment=Environment.PRODUCTION))]
    ['v1.0.0']
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID

from image_promoter.schemas.promotion import (
    Environment,
    FailureReason,
    PromotionOutcome,
    PromotionState,
)

logger = structlog.get_logger(__name__)

AUDIT_LOGGER_NAME = "promoter.audit"


def _get_trace_context() -> dict[str, str]:
    ctx = trace.get_current_span().get_span_context()
    if ctx.trace_id == INVALID_TRACE_ID or ctx.span_id == INVALID_SPAN_ID:
        return {}
    return {
        "trace_id": format(ctx.trace_id, "032x"),
        "span_id": format(ctx.span_id, "016x"),
    }


@dataclass(frozen=True)
class AuditFilter:
    """Criteria for audit queries. Unset fields match everything.

    ``since`` is inclusive and ``until`` exclusive; both compare against the
    request time.
    """

    environment: Environment | None = None
    final_state: PromotionState | None = None
    reason: FailureReason | None = None
    source_sha: str | None = None
    target_tag: str | None = None
    since: datetime | None = None
    until: datetime | None = None

    def matches(self, outcome: PromotionOutcome) -> bool:
        request = outcome.request
        if self.environment is not None and request.environment is not self.environment:
            return False
        if self.final_state is not None and outcome.final_state is not self.final_state:
            return False
        if self.reason is not None and outcome.reason is not self.reason:
            return False
        if self.source_sha is not None and request.source_sha != self.source_sha:
            return False
        if self.target_tag is not None and request.target_tag != self.target_tag:
            return False
        if self.since is not None and request.requested_at < self.since:
            return False
        if self.until is not None and request.requested_at >= self.until:
            return False
        return True


class AuditQuery:
    """Restartable lazy view over audit records matching a filter."""

    def __init__(
        self,
        source: Callable[[], Iterable[PromotionOutcome]],
        audit_filter: AuditFilter,
    ) -> None:
        self._source = source
        self.filter = audit_filter

    def __iter__(self) -> Iterator[PromotionOutcome]:
        for outcome in self._source():
            if self.filter.matches(outcome):
                yield outcome


@runtime_checkable
class AuditLog(Protocol):
    """Append-only store of terminal outcomes."""

    def append(self, outcome: PromotionOutcome) -> None: ...

    def query(self, audit_filter: AuditFilter | None = None) -> AuditQuery: ...


class AuditEventEmitter:
    """Emit structured audit events with trace context."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME) -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, outcome: PromotionOutcome) -> None:
        log_data: dict[str, Any] = {
            "audit_event": True,
            "request_id": str(outcome.request.request_id),
            "source_sha": outcome.request.source_sha,
            "target_tag": outcome.request.target_tag,
            "environment": outcome.request.environment.value,
            "final_state": outcome.final_state.value,
            "reason": outcome.reason.value if outcome.reason else None,
            "requested_by": outcome.request.requested_by,
            "resulting_reference": (
                str(outcome.resulting_reference) if outcome.resulting_reference else None
            ),
        }
        trace_ctx = _get_trace_context()
        if trace_ctx:
            log_data.update(trace_ctx)
        elif outcome.trace_id:
            log_data["trace_id"] = outcome.trace_id

        if outcome.promoted:
            self._logger.info("promotion_audit", **log_data)
        else:
            self._logger.warning("promotion_audit", **log_data)


class InMemoryAuditLog:
    """Process-local audit log."""

    def __init__(self, emitter: AuditEventEmitter | None = None) -> None:
        self._records: list[PromotionOutcome] = []
        self._lock = threading.Lock()
        self._emitter = emitter or AuditEventEmitter()

    def append(self, outcome: PromotionOutcome) -> None:
        with self._lock:
            self._records.append(outcome)
        self._emitter.emit(outcome)

    def _snapshot(self) -> list[PromotionOutcome]:
        with self._lock:
            return list(self._records)

    def query(self, audit_filter: AuditFilter | None = None) -> AuditQuery:
        return AuditQuery(self._snapshot, audit_filter or AuditFilter())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonlAuditLog:
    """Audit log stored as one JSON document per line.

    The file is only ever opened in append mode for writes. Lines that fail
    to parse (e.g. a torn write after a crash) are skipped with a warning.

    Args:
        path: JSON Lines file. Parent directories are created on first append.
    """

    def __init__(self, path: Path | str, emitter: AuditEventEmitter | None = None) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._emitter = emitter or AuditEventEmitter()

    def append(self, outcome: PromotionOutcome) -> None:
        line = outcome.model_dump_json()
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
        self._emitter.emit(outcome)

    def _read(self) -> Iterator[PromotionOutcome]:
        try:
            f = self.path.open(encoding="utf-8")
        except FileNotFoundError:
            return
        with f:
            for line_number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    yield PromotionOutcome.model_validate_json(line)
                except ValueError as e:
                    logger.warning(
                        "audit_record_unreadable",
                        path=str(self.path),
                        line=line_number,
                        error=str(e)[:200],
                    )

    def query(self, audit_filter: AuditFilter | None = None) -> AuditQuery:
        return AuditQuery(self._read, audit_filter or AuditFilter())


def outcome_to_dict(outcome: PromotionOutcome) -> dict[str, Any]:
    """JSON-compatible dict of an outcome, as written to the audit file."""
    return json.loads(outcome.model_dump_json())


__all__ = [
    "AUDIT_LOGGER_NAME",
    "AuditEventEmitter",
    "AuditFilter",
    "AuditLog",
    "AuditQuery",
    "InMemoryAuditLog",
    "JsonlAuditLog",
    "outcome_to_dict",
]
