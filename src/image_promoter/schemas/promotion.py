"""Promotion workflow schemas.

This module defines the Pydantic v2 models that flow through the promotion
workflow: the caller's request, image references, scan results, approval
records, persisted pending approvals, and the terminal outcome appended to
the audit log.

Key Components:
    Environment: Deployment environments (staging, production)
    ImageReference: Immutable registry/repository:tag-or-digest reference
    PromotionRequest: One promotion attempt as submitted by a caller
    ScanResult: Severity-classified scanner verdict
    ApprovalRecord: Human decision for a protected environment
    PendingApproval: Persisted "awaiting decision" record
    PromotionOutcome: Terminal, immutable result of one attempt
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TAG_PATTERN = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}")
"""Characters a registry accepts in a tag (OCI distribution grammar)."""

DIGEST_PATTERN = re.compile(r"[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-fA-F0-9]{32,}")
"""Content digest, e.g. sha256:<64 hex>."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class Environment(str, Enum):
    """Target deployment environment.

    Examples:
        >>> Environment("production").is_protected
        True
    """

    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def is_protected(self) -> bool:
        """Whether promotions to this environment need human approval."""
        return self is Environment.PRODUCTION


class Severity(str, Enum):
    """Standardized vulnerability severity levels."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> Severity:
        """Map scanner severity text (any case) to a Severity.

        Unrecognized values (e.g. Grype's "Negligible") become UNKNOWN.
        """
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.UNKNOWN


class ScanVerdict(str, Enum):
    """Scan gate verdict."""

    PASS = "pass"
    FAIL = "fail"


class ApprovalDecision(str, Enum):
    """Decision made by an approver."""

    APPROVE = "approve"
    REJECT = "reject"


class ApprovalState(str, Enum):
    """Approval gate state. Approved and Rejected are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PromotionState(str, Enum):
    """Promotion attempt state machine states."""

    REQUESTED = "requested"
    RESOLVING = "resolving"
    POLICY_CHECK = "policy_check"
    SCANNING = "scanning"
    GATING = "gating"
    RETAGGING = "retagging"
    PROMOTED = "promoted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PromotionState.PROMOTED, PromotionState.FAILED)


class FailureReason(str, Enum):
    """Why a promotion attempt ended in the Failed state."""

    NOT_FOUND = "not_found"
    POLICY_VIOLATION = "policy_violation"
    SCAN_FAILED = "scan_failed"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_TIMEOUT = "approval_timeout"
    REGISTRY_ERROR = "registry_error"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"


# =============================================================================
# Image references and requests
# =============================================================================


class ImageReference(BaseModel):
    """Immutable container image reference.

    Exactly one of ``tag`` or ``digest`` is set. Two references are equal
    when registry, repository and tag-or-digest all match.

    Examples:
        >>> ref = ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234")
        >>> str(ref)
        'ghcr.io/acme/web:abc1234'
        >>> str(ref.with_tag("staging"))
        'ghcr.io/acme/web:staging'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    registry: str = Field(..., min_length=1, description="Registry host")
    repository: str = Field(..., min_length=1, description="Repository path")
    tag: str | None = Field(default=None, description="Tag, if referenced by tag")
    digest: str | None = Field(default=None, description="Digest, if referenced by digest")

    @field_validator("tag")
    @classmethod
    def _validate_tag(cls, value: str | None) -> str | None:
        if value is not None and not TAG_PATTERN.fullmatch(value):
            raise ValueError(f"invalid tag '{value}'")
        return value

    @field_validator("digest")
    @classmethod
    def _validate_digest(cls, value: str | None) -> str | None:
        if value is not None and not DIGEST_PATTERN.fullmatch(value):
            raise ValueError(f"invalid digest '{value}'")
        return value

    @model_validator(mode="after")
    def _require_tag_or_digest(self) -> ImageReference:
        if (self.tag is None) == (self.digest is None):
            raise ValueError("exactly one of tag or digest must be set")
        return self

    @property
    def name(self) -> str:
        """Registry and repository without tag or digest."""
        return f"{self.registry}/{self.repository}"

    def with_tag(self, tag: str) -> ImageReference:
        """Return a reference to ``tag`` in the same repository."""
        return ImageReference(registry=self.registry, repository=self.repository, tag=tag)

    def with_digest(self, digest: str) -> ImageReference:
        """Return a reference pinned to ``digest`` in the same repository."""
        return ImageReference(registry=self.registry, repository=self.repository, digest=digest)

    def transport_ref(self) -> str:
        """Reference in containers-transport form (``docker://...``)."""
        return f"docker://{self}"

    def __str__(self) -> str:
        if self.digest is not None:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"


class PromotionRequest(BaseModel):
    """A single promotion attempt as submitted by a caller.

    ``target_tag`` is deliberately unconstrained here; naming and versioning
    rules are enforced by the policy engine so violations become auditable
    outcomes instead of construction errors.

    Examples:
        >>> request = PromotionRequest(
        ...     source_sha="abc1234",
        ...     target_tag="v1.0.0",
        ...     environment=Environment.PRODUCTION,
        ... )
        >>> request.environment.is_protected
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request_id: UUID = Field(default_factory=uuid4, description="Request identity")
    source_sha: str = Field(
        ...,
        pattern=r"^[A-Za-z0-9]{7,40}$",
        description="Build tag of the source image (git short-SHA)",
    )
    target_tag: str = Field(..., description="Tag to apply to the source image")
    environment: Environment = Field(..., description="Target environment")
    requested_by: str | None = Field(default=None, description="Caller identity")
    requested_at: datetime = Field(default_factory=_utcnow, description="Creation time (UTC)")


# =============================================================================
# Scan results
# =============================================================================


class Finding(BaseModel):
    """One severity-classified vulnerability report entry."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    severity: Severity
    package: str
    description: str = ""
    vulnerability_id: str = "UNKNOWN"
    installed_version: str | None = None
    fixed_version: str | None = None

    @property
    def has_fix(self) -> bool:
        return bool(self.fixed_version and self.fixed_version.strip())


class ScanResult(BaseModel):
    """Scan gate verdict for one immutable image reference.

    Attributes:
        image_reference: The reference that was scanned.
        verdict: PASS or FAIL.
        findings: All findings, in scanner order.
        blocking_vulnerabilities: IDs of findings that caused a FAIL verdict.
        ignored_unfixed: Blocking-severity findings skipped because no fix exists.
        scanner: Scanner that produced the findings.
        scanned_at: When the scan completed (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    image_reference: ImageReference
    verdict: ScanVerdict
    findings: list[Finding] = Field(default_factory=list)
    blocking_vulnerabilities: list[str] = Field(default_factory=list)
    ignored_unfixed: int = Field(default=0, ge=0)
    scanner: str = "unknown"
    scanned_at: datetime = Field(default_factory=_utcnow)

    @property
    def passed(self) -> bool:
        return self.verdict is ScanVerdict.PASS

    def count(self, severity: Severity) -> int:
        """Number of findings with the given severity."""
        return sum(1 for finding in self.findings if finding.severity is severity)

    def severity_counts(self) -> dict[str, int]:
        return {severity.value: self.count(severity) for severity in Severity}


# =============================================================================
# Approvals
# =============================================================================


class ApprovalRecord(BaseModel):
    """A human (or system) decision on a protected-environment promotion."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    approver_identity: str = Field(..., min_length=1)
    decision: ApprovalDecision
    timestamp: datetime = Field(default_factory=_utcnow)
    comment: str | None = None


class PendingApproval(BaseModel):
    """Persisted record of a promotion attempt suspended in the Gating state.

    Carries everything needed to resume the attempt after a process restart.
    ``timed_out`` and ``cancelled`` distinguish system rejections from an
    approver's rejection.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request: PromotionRequest
    source_reference: ImageReference
    source_digest: str | None = None
    scan_result: ScanResult | None = None
    warnings: list[str] = Field(default_factory=list)
    stage_timestamps: dict[PromotionState, datetime] = Field(default_factory=dict)
    trace_id: str = ""
    opened_at: datetime = Field(default_factory=_utcnow)
    deadline: datetime
    state: ApprovalState = ApprovalState.PENDING
    record: ApprovalRecord | None = None
    timed_out: bool = False
    cancelled: bool = False

    @property
    def request_id(self) -> UUID:
        return self.request.request_id


# =============================================================================
# Outcomes
# =============================================================================


class PromotionFailure(BaseModel):
    """Why and where a promotion attempt failed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    reason: FailureReason
    stage: PromotionState = Field(..., description="State the attempt was in when it failed")
    message: str = Field(..., description="Human-readable explanation")
    code: str | None = Field(default=None, description="Rule code for policy violations")
    retryable: bool = Field(
        default=False,
        description="True for transient registry errors a caller may retry with a new request",
    )


class PromotionOutcome(BaseModel):
    """Terminal, immutable record of one promotion attempt.

    Examples:
        >>> outcome.final_state
        <PromotionState.PROMOTED: 'promoted'>
        >>> str(outcome.resulting_reference)
        'ghcr.io/acme/web:staging'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request: PromotionRequest
    final_state: PromotionState
    resulting_reference: ImageReference | None = None
    source_reference: ImageReference | None = None
    source_digest: str | None = None
    failure: PromotionFailure | None = None
    scan_result: ScanResult | None = None
    approval: ApprovalRecord | None = None
    warnings: list[str] = Field(default_factory=list)
    stage_timestamps: dict[PromotionState, datetime] = Field(default_factory=dict)
    trace_id: str = ""

    @model_validator(mode="after")
    def _check_terminal(self) -> PromotionOutcome:
        if not self.final_state.is_terminal:
            raise ValueError(f"outcome state must be terminal, got {self.final_state.value}")
        if self.final_state is PromotionState.PROMOTED:
            if self.failure is not None:
                raise ValueError("promoted outcome cannot carry a failure")
            if self.resulting_reference is None:
                raise ValueError("promoted outcome requires a resulting reference")
        elif self.failure is None:
            raise ValueError("failed outcome requires a failure")
        return self

    @property
    def promoted(self) -> bool:
        return self.final_state is PromotionState.PROMOTED

    @property
    def reason(self) -> FailureReason | None:
        return self.failure.reason if self.failure else None

    @property
    def completed_at(self) -> datetime | None:
        return self.stage_timestamps.get(self.final_state)


__all__: list[str] = [
    "DIGEST_PATTERN",
    "TAG_PATTERN",
    "ApprovalDecision",
    "ApprovalRecord",
    "ApprovalState",
    "Environment",
    "FailureReason",
    "Finding",
    "ImageReference",
    "PendingApproval",
    "PromotionFailure",
    "PromotionOutcome",
    "PromotionRequest",
    "PromotionState",
    "ScanResult",
    "ScanVerdict",
    "Severity",
]
