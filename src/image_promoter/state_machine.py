"""Promotion attempt state machine.

Transitions:
    REQUESTED    -> RESOLVING | FAILED
    RESOLVING    -> POLICY_CHECK | FAILED
    POLICY_CHECK -> SCANNING | FAILED
    SCANNING     -> GATING (protected) | RETAGGING (unprotected) | FAILED
    GATING       -> RETAGGING | FAILED
    RETAGGING    -> PROMOTED | FAILED
    PROMOTED, FAILED: terminal

Every entered state is timestamped. No state is entered twice; a failed
attempt is never restarted, callers submit a new PromotionRequest.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

from image_promoter.errors import InvalidTransitionError
from image_promoter.schemas.promotion import (
    FailureReason,
    PromotionFailure,
    PromotionOutcome,
    PromotionState,
)

if TYPE_CHECKING:
    from image_promoter.schemas.promotion import (
        ApprovalRecord,
        ImageReference,
        PendingApproval,
        PromotionRequest,
        ScanResult,
    )

logger = structlog.get_logger(__name__)

_S = PromotionState

TRANSITIONS: dict[PromotionState, frozenset[PromotionState]] = {
    _S.REQUESTED: frozenset({_S.RESOLVING, _S.FAILED}),
    _S.RESOLVING: frozenset({_S.POLICY_CHECK, _S.FAILED}),
    _S.POLICY_CHECK: frozenset({_S.SCANNING, _S.FAILED}),
    _S.SCANNING: frozenset({_S.GATING, _S.RETAGGING, _S.FAILED}),
    _S.GATING: frozenset({_S.RETAGGING, _S.FAILED}),
    _S.RETAGGING: frozenset({_S.PROMOTED, _S.FAILED}),
    _S.PROMOTED: frozenset(),
    _S.FAILED: frozenset(),
}


def can_transition(from_state: PromotionState, to_state: PromotionState) -> bool:
    return to_state in TRANSITIONS[from_state]


class PromotionAttempt:
    """Mutable progress tracker for one promotion request.

    Collects what each stage learns (resolved reference, digest, scan
    result, approval) and produces the immutable PromotionOutcome once a
    terminal state is reached.
    """

    def __init__(self, request: PromotionRequest) -> None:
        self.request = request
        self.state = PromotionState.REQUESTED
        self.stage_timestamps: dict[PromotionState, datetime] = {
            PromotionState.REQUESTED: datetime.now(timezone.utc)
        }
        self.failure: PromotionFailure | None = None
        self.warnings: list[str] = []
        self.source_reference: ImageReference | None = None
        self.source_digest: str | None = None
        self.scan_result: ScanResult | None = None
        self.approval: ApprovalRecord | None = None
        self.resulting_reference: ImageReference | None = None
        self.trace_id = ""

    @classmethod
    def from_pending(cls, pending: PendingApproval) -> PromotionAttempt:
        """Rebuild an attempt suspended in GATING from its persisted record."""
        attempt = cls(pending.request)
        attempt.state = PromotionState.GATING
        attempt.stage_timestamps = dict(pending.stage_timestamps)
        attempt.stage_timestamps.setdefault(PromotionState.GATING, pending.opened_at)
        attempt.warnings = list(pending.warnings)
        attempt.source_reference = pending.source_reference
        attempt.source_digest = pending.source_digest
        attempt.scan_result = pending.scan_result
        attempt.trace_id = pending.trace_id
        return attempt

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def require_source(self) -> ImageReference:
        """Return the resolved source reference.

        Raises:
            ValueError: If resolution has not produced one yet.
        """
        if self.source_reference is None:
            raise ValueError(
                f"attempt {self.request.request_id} has no resolved source "
                f"(state {self.state.value})"
            )
        return self.source_reference

    def advance(self, to_state: PromotionState) -> None:
        """Move to ``to_state`` and timestamp it.

        Raises:
            InvalidTransitionError: If the edge is not in TRANSITIONS.
        """
        if not can_transition(self.state, to_state):
            raise InvalidTransitionError(self.state.value, to_state.value)
        logger.debug(
            "promotion_state_changed",
            request_id=str(self.request.request_id),
            from_state=self.state.value,
            to_state=to_state.value,
        )
        self.state = to_state
        self.stage_timestamps[to_state] = datetime.now(timezone.utc)

    def fail(
        self,
        reason: FailureReason,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = False,
    ) -> None:
        """Record a failure at the current stage and move to FAILED."""
        stage = self.state
        self.advance(PromotionState.FAILED)
        self.failure = PromotionFailure(
            reason=reason,
            stage=stage,
            message=message,
            code=code,
            retryable=retryable,
        )

    def to_outcome(self) -> PromotionOutcome:
        """Freeze the attempt into its terminal outcome.

        Raises:
            ValueError: If the attempt is not terminal.
        """
        if not self.is_terminal:
            raise ValueError(f"attempt {self.request.request_id} is still {self.state.value}")
        return PromotionOutcome(
            request=self.request,
            final_state=self.state,
            resulting_reference=self.resulting_reference,
            source_reference=self.source_reference,
            source_digest=self.source_digest,
            failure=self.failure,
            scan_result=self.scan_result,
            approval=self.approval,
            warnings=list(self.warnings),
            stage_timestamps=dict(self.stage_timestamps),
            trace_id=self.trace_id,
        )


__all__ = ["TRANSITIONS", "PromotionAttempt", "can_transition"]
