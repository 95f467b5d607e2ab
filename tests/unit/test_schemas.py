"""Unit tests for promotion schemas.

Covers reference rendering and equality, request validation, scan result
helpers and the terminal-outcome invariants enforced by PromotionOutcome.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from image_promoter.schemas.promotion import (
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

DIGEST = "sha256:" + "b" * 64


def _request(**overrides: object) -> PromotionRequest:
    fields: dict[str, object] = {
        "source_sha": "abc1234",
        "target_tag": "staging",
        "environment": Environment.STAGING,
    }
    fields.update(overrides)
    return PromotionRequest(**fields)  # type: ignore[arg-type]


class TestImageReference:
    """Tests for ImageReference."""

    def test_renders_tag_reference(self) -> None:
        ref = ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234")
        assert str(ref) == "ghcr.io/acme/web:abc1234"
        assert ref.transport_ref() == "docker://ghcr.io/acme/web:abc1234"

    def test_renders_digest_reference(self) -> None:
        ref = ImageReference(registry="ghcr.io", repository="acme/web", digest=DIGEST)
        assert str(ref) == f"ghcr.io/acme/web@{DIGEST}"

    def test_equality_is_field_equality(self) -> None:
        a = ImageReference(registry="ghcr.io", repository="acme/web", tag="staging")
        b = ImageReference(registry="ghcr.io", repository="acme/web", tag="staging")
        c = ImageReference(registry="ghcr.io", repository="acme/api", tag="staging")
        assert a == b
        assert hash(a) == hash(b)
        assert a != c

    def test_with_tag_keeps_repository(self) -> None:
        ref = ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234")
        assert ref.with_tag("v1.0.0") == ImageReference(
            registry="ghcr.io", repository="acme/web", tag="v1.0.0"
        )

    def test_with_digest_drops_tag(self) -> None:
        ref = ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234")
        pinned = ref.with_digest(DIGEST)
        assert pinned.tag is None
        assert str(pinned) == f"ghcr.io/acme/web@{DIGEST}"
        assert pinned.with_tag("staging") == ref.with_tag("staging")

    def test_requires_exactly_one_of_tag_or_digest(self) -> None:
        with pytest.raises(ValidationError, match="exactly one"):
            ImageReference(registry="ghcr.io", repository="acme/web")
        with pytest.raises(ValidationError, match="exactly one"):
            ImageReference(registry="ghcr.io", repository="acme/web", tag="x", digest=DIGEST)

    @pytest.mark.parametrize("tag", ["-leading-dash", "has space", "a" * 129, "tag/slash"])
    def test_rejects_invalid_tags(self, tag: str) -> None:
        with pytest.raises(ValidationError):
            ImageReference(registry="ghcr.io", repository="acme/web", tag=tag)

    def test_is_immutable(self) -> None:
        ref = ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234")
        with pytest.raises(ValidationError):
            ref.tag = "other"  # type: ignore[misc]


class TestPromotionRequest:
    """Tests for PromotionRequest."""

    def test_generates_unique_ids(self) -> None:
        assert _request().request_id != _request().request_id

    def test_requested_at_is_utc(self) -> None:
        assert _request().requested_at.tzinfo is not None

    @pytest.mark.parametrize("sha", ["abc123", "abc-1234", "a" * 41, ""])
    def test_rejects_malformed_source_sha(self, sha: str) -> None:
        with pytest.raises(ValidationError):
            _request(source_sha=sha)

    def test_target_tag_is_not_validated_at_construction(self) -> None:
        # Tag rules are enforced by the policy engine.
        assert _request(target_tag="latest", environment=Environment.PRODUCTION).target_tag == (
            "latest"
        )

    def test_only_production_is_protected(self) -> None:
        assert Environment.PRODUCTION.is_protected
        assert not Environment.STAGING.is_protected


class TestScanResult:
    """Tests for ScanResult helpers."""

    def test_severity_counts(self) -> None:
        ref = ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234")
        result = ScanResult(
            image_reference=ref,
            verdict=ScanVerdict.PASS,
            findings=[
                Finding(severity=Severity.MEDIUM, package="openssl", vulnerability_id="CVE-1"),
                Finding(severity=Severity.MEDIUM, package="zlib", vulnerability_id="CVE-2"),
                Finding(severity=Severity.LOW, package="bash", vulnerability_id="CVE-3"),
            ],
        )
        assert result.passed
        assert result.count(Severity.MEDIUM) == 2
        assert result.severity_counts() == {
            "CRITICAL": 0,
            "HIGH": 0,
            "MEDIUM": 2,
            "LOW": 1,
            "UNKNOWN": 0,
        }

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("critical", Severity.CRITICAL),
            ("High", Severity.HIGH),
            ("Negligible", Severity.UNKNOWN),
            (None, Severity.UNKNOWN),
        ],
    )
    def test_severity_parse(self, raw: str | None, expected: Severity) -> None:
        assert Severity.parse(raw) is expected

    def test_finding_has_fix(self) -> None:
        assert Finding(severity=Severity.HIGH, package="p", fixed_version="1.2").has_fix
        assert not Finding(severity=Severity.HIGH, package="p", fixed_version="  ").has_fix
        assert not Finding(severity=Severity.HIGH, package="p").has_fix


class TestPromotionOutcome:
    """Tests for terminal outcome invariants."""

    def test_promoted_requires_resulting_reference(self) -> None:
        with pytest.raises(ValidationError, match="resulting reference"):
            PromotionOutcome(request=_request(), final_state=PromotionState.PROMOTED)

    def test_promoted_cannot_carry_failure(self) -> None:
        ref = ImageReference(registry="ghcr.io", repository="acme/web", tag="staging")
        failure = PromotionFailure(
            reason=FailureReason.SCAN_FAILED, stage=PromotionState.SCANNING, message="x"
        )
        with pytest.raises(ValidationError, match="cannot carry a failure"):
            PromotionOutcome(
                request=_request(),
                final_state=PromotionState.PROMOTED,
                resulting_reference=ref,
                failure=failure,
            )

    def test_failed_requires_failure(self) -> None:
        with pytest.raises(ValidationError, match="requires a failure"):
            PromotionOutcome(request=_request(), final_state=PromotionState.FAILED)

    def test_non_terminal_state_rejected(self) -> None:
        with pytest.raises(ValidationError, match="terminal"):
            PromotionOutcome(request=_request(), final_state=PromotionState.SCANNING)

    def test_reason_and_completed_at(self) -> None:
        now = datetime.now(timezone.utc)
        outcome = PromotionOutcome(
            request=_request(),
            final_state=PromotionState.FAILED,
            failure=PromotionFailure(
                reason=FailureReason.NOT_FOUND, stage=PromotionState.RESOLVING, message="gone"
            ),
            stage_timestamps={PromotionState.FAILED: now},
        )
        assert not outcome.promoted
        assert outcome.reason is FailureReason.NOT_FOUND
        assert outcome.completed_at == now

    def test_json_round_trip_keeps_stage_timestamps(self) -> None:
        now = datetime.now(timezone.utc)
        outcome = PromotionOutcome(
            request=_request(),
            final_state=PromotionState.PROMOTED,
            resulting_reference=ImageReference(
                registry="ghcr.io", repository="acme/web", tag="staging"
            ),
            stage_timestamps={PromotionState.REQUESTED: now, PromotionState.PROMOTED: now},
        )
        restored = PromotionOutcome.model_validate_json(outcome.model_dump_json())
        assert restored == outcome
        assert set(restored.stage_timestamps) == {
            PromotionState.REQUESTED,
            PromotionState.PROMOTED,
        }


class TestPendingApproval:
    def test_request_id_property(self) -> None:
        request = _request(target_tag="v1.0.0", environment=Environment.PRODUCTION)
        pending = PendingApproval(
            request=request,
            source_reference=ImageReference(
                registry="ghcr.io", repository="acme/web", tag="abc1234"
            ),
            deadline=datetime.now(timezone.utc),
        )
        assert pending.request_id == request.request_id
        assert not pending.timed_out
