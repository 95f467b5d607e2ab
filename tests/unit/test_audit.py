"""Unit tests for the append-only audit log."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from image_promoter.audit import (
    AuditEventEmitter,
    AuditFilter,
    AuditLog,
    InMemoryAuditLog,
    JsonlAuditLog,
    outcome_to_dict,
)
from image_promoter.schemas.promotion import (
    Environment,
    FailureReason,
    ImageReference,
    PromotionFailure,
    PromotionOutcome,
    PromotionRequest,
    PromotionState,
)

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _outcome(
    target_tag: str = "staging",
    environment: Environment = Environment.STAGING,
    reason: FailureReason | None = None,
    source_sha: str = "abc1234",
    minutes: int = 0,
) -> PromotionOutcome:
    request = PromotionRequest(
        source_sha=source_sha,
        target_tag=target_tag,
        environment=environment,
        requested_at=BASE_TIME + timedelta(minutes=minutes),
    )
    if reason is None:
        return PromotionOutcome(
            request=request,
            final_state=PromotionState.PROMOTED,
            resulting_reference=ImageReference(
                registry="ghcr.io", repository="acme/web", tag=target_tag
            ),
        )
    return PromotionOutcome(
        request=request,
        final_state=PromotionState.FAILED,
        failure=PromotionFailure(reason=reason, stage=PromotionState.RESOLVING, message="x"),
    )


@pytest.fixture(params=["memory", "jsonl"])
def any_audit_log(request: pytest.FixtureRequest, tmp_path: Path) -> AuditLog:
    if request.param == "memory":
        return InMemoryAuditLog()
    return JsonlAuditLog(tmp_path / "audit" / "log.jsonl")


class TestAuditLog:
    """Behavior shared by every audit log implementation."""

    def test_satisfies_protocol(self, any_audit_log: AuditLog) -> None:
        assert isinstance(any_audit_log, AuditLog)

    def test_query_returns_appended_records_in_order(self, any_audit_log: AuditLog) -> None:
        first = _outcome()
        second = _outcome(reason=FailureReason.NOT_FOUND, source_sha="zzzzzzz")
        any_audit_log.append(first)
        any_audit_log.append(second)

        assert list(any_audit_log.query()) == [first, second]

    def test_query_is_restartable_and_sees_new_records(self, any_audit_log: AuditLog) -> None:
        any_audit_log.append(_outcome())
        query = any_audit_log.query()

        assert len(list(query)) == 1
        assert len(list(query)) == 1

        any_audit_log.append(_outcome(minutes=1))
        assert len(list(query)) == 2

    def test_filters(self, any_audit_log: AuditLog) -> None:
        promoted = _outcome()
        prod = _outcome("v1.0.0", Environment.PRODUCTION, minutes=5)
        rejected = _outcome(
            "v1.0.1", Environment.PRODUCTION, FailureReason.APPROVAL_REJECTED, minutes=10
        )
        for outcome in (promoted, prod, rejected):
            any_audit_log.append(outcome)

        query = any_audit_log.query
        assert list(query(AuditFilter(environment=Environment.PRODUCTION))) == [prod, rejected]
        assert list(query(AuditFilter(final_state=PromotionState.FAILED))) == [rejected]
        assert list(query(AuditFilter(reason=FailureReason.APPROVAL_REJECTED))) == [rejected]
        assert list(query(AuditFilter(target_tag="v1.0.0"))) == [prod]
        assert list(query(AuditFilter(source_sha="zzzzzzz"))) == []

    def test_time_window_is_half_open(self, any_audit_log: AuditLog) -> None:
        outcomes = [_outcome(minutes=m) for m in (0, 5, 10)]
        for outcome in outcomes:
            any_audit_log.append(outcome)

        window = AuditFilter(
            since=BASE_TIME + timedelta(minutes=5), until=BASE_TIME + timedelta(minutes=10)
        )
        assert list(any_audit_log.query(window)) == [outcomes[1]]


class TestJsonlAuditLog:
    def test_one_line_per_outcome(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = JsonlAuditLog(path)
        log.append(_outcome())
        log.append(_outcome(minutes=1))

        assert len(path.read_text(encoding="utf-8").splitlines()) == 2

    def test_missing_file_queries_empty(self, tmp_path: Path) -> None:
        assert list(JsonlAuditLog(tmp_path / "none.jsonl").query()) == []

    def test_torn_lines_are_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = JsonlAuditLog(path)
        outcome = _outcome()
        log.append(outcome)
        with path.open("a", encoding="utf-8") as f:
            f.write('{"request": {"source_sha"\n\n')

        assert list(log.query()) == [outcome]

    def test_records_survive_a_new_instance(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        outcome = _outcome("v1.0.0", Environment.PRODUCTION)
        JsonlAuditLog(path).append(outcome)

        assert list(JsonlAuditLog(path).query()) == [outcome]


class TestAuditEventEmitter:
    def test_every_append_emits_once(self) -> None:
        emitter = MagicMock(spec=AuditEventEmitter)
        log = InMemoryAuditLog(emitter=emitter)
        outcome = _outcome()

        log.append(outcome)

        emitter.emit.assert_called_once_with(outcome)
        assert len(log) == 1

    def test_failed_outcome_emits_warning(self) -> None:
        emitter = AuditEventEmitter()
        emitter._logger = MagicMock()
        emitter.emit(_outcome(reason=FailureReason.CONFLICT))

        emitter._logger.warning.assert_called_once()
        kwargs = emitter._logger.warning.call_args.kwargs
        assert kwargs["reason"] == "conflict"
        assert kwargs["audit_event"] is True

    def test_promoted_outcome_emits_info(self) -> None:
        emitter = AuditEventEmitter()
        emitter._logger = MagicMock()
        emitter.emit(_outcome())

        emitter._logger.info.assert_called_once()
        assert emitter._logger.info.call_args.kwargs["resulting_reference"] == (
            "ghcr.io/acme/web:staging"
        )


def test_outcome_to_dict_is_json_compatible() -> None:
    data = outcome_to_dict(_outcome(reason=FailureReason.SCAN_FAILED))
    assert data["final_state"] == "failed"
    assert data["failure"]["reason"] == "scan_failed"
    assert data["request"]["environment"] == "staging"
