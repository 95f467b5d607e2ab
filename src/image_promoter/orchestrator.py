"""Promotion orchestrator.

Drives one PromotionRequest through the promotion state machine:

    Requested -> Resolving -> PolicyCheck -> Scanning -> [Gating] -> Retagging -> Promoted
                     \\            \\             \\           \\           \\
                      +------------+-------------+-----------+-----------+--> Failed

Every attempt ends in a terminal PromotionOutcome that is appended to the
audit log, counted in metrics and announced to subscribed webhooks. Domain
failures never escape promote(); they become Failed outcomes carrying the
stage, a readable message and a ``retryable`` hint.

Concurrency:
    - At most one attempt per (repository, target tag) is in flight. The
      slot is claimed before the first ``await``, so of two simultaneous
      requests exactly one proceeds and the other ends as Conflict.
    - Registry and scanner calls run in worker threads; the scan is bounded
      by the configured timeout.
    - Waiting for approval is an ``await`` without locks held, so other
      attempts proceed while one is gated.
    - Only a Gating attempt can be cancelled. Retagging, once started, runs
      to completion; if the task running promote() is cancelled meanwhile,
      the outcome is recorded before the cancellation propagates.
    - A task cancelled while Gating leaves its persisted record for
      resume_pending(). A persisted record is driven by one process at a
      time (see ApprovalStore.claim).
    - Webhook deliveries run in the background; aclose() waits for them.

Example:
    >>> orchestrator = PromotionOrchestrator.from_config(load_config("promoter.yaml"))
    >>> outcome = await orchestrator.promote(
    ...     PromotionRequest(source_sha="abc1234", target_tag="staging",
    ...                      environment=Environment.STAGING)
    ... )
    >>> outcome.final_state
    <PromotionState.PROMOTED: 'promoted'>
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Coroutine, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

import structlog

from image_promoter.approval import ApprovalGate, FileApprovalStore, InMemoryApprovalStore
from image_promoter.audit import InMemoryAuditLog, JsonlAuditLog
from image_promoter.errors import (
    PolicyViolationError,
    RegistryError,
    ScanGateError,
    SourceImageNotFoundError,
)
from image_promoter.policy import PolicyEngine
from image_promoter.registry.client import SkopeoRegistryClient
from image_promoter.registry.reference import ImageReferenceResolver
from image_promoter.scanning.gate import CachingScanGate, CommandScanGate
from image_promoter.schemas.promotion import (
    ApprovalDecision,
    ApprovalState,
    FailureReason,
    PendingApproval,
    PromotionOutcome,
    PromotionRequest,
    PromotionState,
)
from image_promoter.state_machine import PromotionAttempt
from image_promoter.telemetry.metrics import PromotionMetrics
from image_promoter.telemetry.sanitization import sanitize_error_message
from image_promoter.telemetry.tracing import create_span, format_trace_id
from image_promoter.webhooks import (
    EVENT_APPROVAL_REQUESTED,
    EVENT_FAILED,
    EVENT_PROMOTED,
    WebhookNotifier,
    outcome_payload,
    pending_payload,
)

if TYPE_CHECKING:
    from opentelemetry.trace import Span

    from image_promoter.audit import AuditLog
    from image_promoter.registry.client import RegistryClient
    from image_promoter.scanning.gate import ScanGate
    from image_promoter.schemas.config import PromoterConfig

logger = structlog.get_logger(__name__)

DEFAULT_APPROVAL_TIMEOUT_SECONDS = 86400.0
DEFAULT_SCAN_TIMEOUT_SECONDS = 600.0

# Failure reason recorded when an unexpected error interrupts a stage
_UNEXPECTED_FAILURE_REASONS: dict[PromotionState, FailureReason] = {
    PromotionState.RESOLVING: FailureReason.REGISTRY_ERROR,
    PromotionState.POLICY_CHECK: FailureReason.POLICY_VIOLATION,
    PromotionState.SCANNING: FailureReason.SCAN_FAILED,
    PromotionState.GATING: FailureReason.APPROVAL_REJECTED,
    PromotionState.RETAGGING: FailureReason.REGISTRY_ERROR,
}


class PromotionOrchestrator:
    """Run promotion attempts end to end.

    Args:
        resolver: Resolves build tags and builds target references.
        registry_client: Registry adapter used for digests and retagging.
        scan_gate: Vulnerability verdict provider.
        policy_engine: Tag naming and versioning rules.
        approval_gate: Approval gate for protected environments.
        audit_log: Where terminal outcomes are appended.
        approval_timeout_seconds: Time an approver has before the attempt
            fails with ApprovalTimeout.
        scan_timeout_seconds: Upper bound for one scan.
        notifier: Optional webhook notifier.
        metrics: Optional metrics recorder.
    """

    def __init__(
        self,
        *,
        resolver: ImageReferenceResolver,
        registry_client: RegistryClient,
        scan_gate: ScanGate,
        policy_engine: PolicyEngine | None = None,
        approval_gate: ApprovalGate | None = None,
        audit_log: AuditLog | None = None,
        approval_timeout_seconds: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS,
        scan_timeout_seconds: float = DEFAULT_SCAN_TIMEOUT_SECONDS,
        notifier: WebhookNotifier | None = None,
        metrics: PromotionMetrics | None = None,
    ) -> None:
        self.resolver = resolver
        self.registry_client = registry_client
        self.scan_gate = scan_gate
        self.policy_engine = policy_engine or PolicyEngine()
        self.approval_gate = approval_gate or ApprovalGate(InMemoryApprovalStore())
        self.audit_log: AuditLog = audit_log if audit_log is not None else InMemoryAuditLog()
        self.approval_timeout_seconds = approval_timeout_seconds
        self.scan_timeout_seconds = scan_timeout_seconds
        self.notifier = notifier
        self.metrics = metrics

        self._lock = threading.Lock()
        self._in_flight: dict[tuple[str, str], UUID] = {}
        self._attempts: dict[UUID, PromotionAttempt] = {}
        self._notifications: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(cls, config: PromoterConfig) -> PromotionOrchestrator:
        """Build an orchestrator wired to skopeo, the configured scanner and file stores."""
        registry_client = SkopeoRegistryClient(config.registry)
        resolver = ImageReferenceResolver(
            registry_client, config.registry.host, config.registry.repository
        )
        return cls(
            resolver=resolver,
            registry_client=registry_client,
            scan_gate=CachingScanGate(CommandScanGate(config.scanner)),
            policy_engine=PolicyEngine(),
            approval_gate=ApprovalGate(
                FileApprovalStore(config.approval.store_dir),
                poll_interval_seconds=config.approval.poll_interval_seconds,
            ),
            audit_log=JsonlAuditLog(config.audit.path),
            approval_timeout_seconds=config.approval.timeout_seconds,
            scan_timeout_seconds=config.scanner.timeout_seconds,
            notifier=WebhookNotifier(config.webhooks) if config.webhooks else None,
            metrics=PromotionMetrics(),
        )

    # ------------------------------------------------------------------
    # In-flight bookkeeping
    # ------------------------------------------------------------------

    def _lock_key(self, request: PromotionRequest) -> tuple[str, str]:
        return (self.resolver.repository_path, request.target_tag)

    def _claim(self, attempt: PromotionAttempt) -> UUID | None:
        """Claim the target-tag slot. Returns the holder's id on conflict."""
        key = self._lock_key(attempt.request)
        with self._lock:
            holder = self._in_flight.get(key)
            if holder is not None:
                return holder
            self._in_flight[key] = attempt.request.request_id
            self._attempts[attempt.request.request_id] = attempt
            return None

    def _release(self, attempt: PromotionAttempt) -> None:
        key = self._lock_key(attempt.request)
        request_id = attempt.request.request_id
        with self._lock:
            if self._in_flight.get(key) == request_id:
                del self._in_flight[key]
            if self._attempts.get(request_id) is attempt:
                del self._attempts[request_id]

    def in_flight(self) -> dict[UUID, PromotionState]:
        """Snapshot of active attempts and their current states."""
        with self._lock:
            return {request_id: a.state for request_id, a in self._attempts.items()}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def promote(self, request: PromotionRequest) -> PromotionOutcome:
        """Run one promotion attempt to a terminal outcome.

        Returns:
            The terminal outcome. Domain failures are reported in the
            outcome, not raised.
        """
        attempt = PromotionAttempt(request)
        started = time.monotonic()
        log = logger.bind(
            request_id=str(request.request_id),
            source_sha=request.source_sha,
            target_tag=request.target_tag,
            environment=request.environment.value,
        )

        with create_span(
            "promoter.promote",
            attributes={
                "promoter.request_id": str(request.request_id),
                "promoter.source_sha": request.source_sha,
                "promoter.target_tag": request.target_tag,
                "promoter.environment": request.environment.value,
            },
        ) as span:
            attempt.trace_id = format_trace_id(span)
            holder = self._claim(attempt)
            if holder is not None:
                log.warning("promote_conflict", holder_request_id=str(holder))
                attempt.fail(
                    FailureReason.CONFLICT,
                    f"promotion to {self.resolver.repository_path}:{request.target_tag} "
                    f"already in flight (request {holder})",
                )
                return self._finish(attempt, started, span, log)

            log.info("promote_started")
            return await self._settle(attempt, self._run(attempt, log), started, span, log)

    def promote_sync(self, request: PromotionRequest) -> PromotionOutcome:
        """Run promote() on a fresh event loop, delivering webhooks before returning."""

        async def _main() -> PromotionOutcome:
            try:
                return await self.promote(request)
            finally:
                await self.aclose()

        return asyncio.run(_main())

    async def aclose(self) -> None:
        """Wait for webhook deliveries started on the running event loop."""
        loop = asyncio.get_running_loop()
        with self._lock:
            tasks = [t for t in self._notifications if t.get_loop() is loop]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def resolve_approval(
        self,
        request_id: UUID,
        decision: ApprovalDecision,
        approver: str,
        comment: str | None = None,
    ) -> bool:
        """Record an approver's decision.

        Returns:
            False if the request is not awaiting approval (unknown, already
            decided, or terminal). Late decisions change nothing.
        """
        return self.approval_gate.resolve(request_id, decision, approver, comment)

    def cancel(self, request_id: UUID) -> bool:
        """Cancel an attempt waiting for approval.

        Returns:
            True if the attempt was in Gating and is now being cancelled.
        """
        with self._lock:
            attempt = self._attempts.get(request_id)
        if attempt is not None and attempt.state is not PromotionState.GATING:
            logger.info(
                "cancel_ignored",
                request_id=str(request_id),
                state=attempt.state.value,
            )
            return False
        return self.approval_gate.cancel(request_id)

    async def resume_pending(self) -> list[PromotionOutcome]:
        """Resume attempts persisted in Gating by an earlier process.

        Includes attempts whose decision arrived while no process was
        waiting. Attempts already being waited on, by this orchestrator or
        by another process holding the record's claim, are skipped.
        """
        with self._lock:
            active = set(self._attempts)
        pending: list[PendingApproval] = []
        for record in self.approval_gate.unfinished():
            request_id = record.request_id
            if request_id in active:
                continue
            if not self.approval_gate.claim(request_id):
                logger.info("resume_skipped_owned", request_id=str(request_id))
                continue
            # The previous owner may have finished between listing and claiming
            current = self.approval_gate.store.get(request_id)
            if current is None:
                self.approval_gate.release(request_id)
                continue
            pending.append(current)
        if not pending:
            return []
        logger.info("resume_pending_started", count=len(pending))
        try:
            return list(await asyncio.gather(*(self._resume(p) for p in pending)))
        except asyncio.CancelledError:
            # Resumes cancelled before their first step never release their claim
            for record in pending:
                self.approval_gate.release(record.request_id)
            raise

    def resume_pending_sync(self) -> list[PromotionOutcome]:
        """Run resume_pending() on a fresh event loop, delivering webhooks before returning."""

        async def _main() -> list[PromotionOutcome]:
            try:
                return await self.resume_pending()
            finally:
                await self.aclose()

        return asyncio.run(_main())

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @contextmanager
    def _stage(self, attempt: PromotionAttempt, state: PromotionState) -> Iterator[Span]:
        attempt.advance(state)
        with create_span(
            f"promoter.promote.{state.value}",
            attributes={"promoter.request_id": str(attempt.request.request_id)},
        ) as span:
            yield span
            span.set_attribute("promoter.stage.failed", attempt.state is PromotionState.FAILED)

    async def _run(self, attempt: PromotionAttempt, log: Any) -> None:
        request = attempt.request

        with self._stage(attempt, PromotionState.RESOLVING):
            await self._resolve_source(attempt, log)
        if attempt.is_terminal:
            return

        with self._stage(attempt, PromotionState.POLICY_CHECK):
            try:
                policy_result = self.policy_engine.validate(request)
            except PolicyViolationError as e:
                attempt.fail(FailureReason.POLICY_VIOLATION, e.reason, code=e.code)
                return
            attempt.warnings.extend(policy_result.warnings)
            for warning in policy_result.warnings:
                log.warning("policy_warning", warning=warning)

        with self._stage(attempt, PromotionState.SCANNING):
            await self._scan(attempt, log)
        if attempt.is_terminal:
            return

        if request.environment.is_protected:
            with self._stage(attempt, PromotionState.GATING):
                await self._request_approval(attempt, log)
            if attempt.is_terminal:
                return

        await self._retag(attempt, log)

    async def _resolve_source(self, attempt: PromotionAttempt, log: Any) -> None:
        request = attempt.request
        try:
            source = await asyncio.to_thread(self.resolver.resolve, request.source_sha)
            attempt.source_reference = source
            attempt.source_digest = await asyncio.to_thread(self.registry_client.digest, source)
        except SourceImageNotFoundError as e:
            attempt.fail(FailureReason.NOT_FOUND, str(e))
        except RegistryError as e:
            log.warning("resolve_registry_error", error=str(e), transient=e.transient)
            attempt.fail(
                FailureReason.REGISTRY_ERROR,
                sanitize_error_message(str(e)),
                retryable=e.transient,
            )
        except Exception as e:
            log.error("resolve_unexpected_error", error=str(e), exc_info=True)
            attempt.fail(
                FailureReason.REGISTRY_ERROR,
                sanitize_error_message(f"Registry lookup failed: {e}"),
            )
        else:
            log.info("source_resolved", reference=str(source), digest=attempt.source_digest)

    async def _scan(self, attempt: PromotionAttempt, log: Any) -> None:
        source = attempt.require_source()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.scan_gate.scan, source),
                timeout=self.scan_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.error("scan_timeout", timeout_seconds=self.scan_timeout_seconds)
            attempt.fail(
                FailureReason.SCAN_FAILED,
                f"Scan of {source} timed out after {self.scan_timeout_seconds}s",
            )
            return
        except ScanGateError as e:
            log.error("scan_error", error=str(e))
            attempt.fail(FailureReason.SCAN_FAILED, sanitize_error_message(str(e)))
            return
        except Exception as e:
            log.error("scan_unexpected_error", error=str(e), exc_info=True)
            attempt.fail(
                FailureReason.SCAN_FAILED,
                sanitize_error_message(f"Scan gate error: {e}"),
            )
            return

        attempt.scan_result = result
        if not result.passed:
            blocking = result.blocking_vulnerabilities
            shown = ", ".join(blocking[:5]) + (", ..." if len(blocking) > 5 else "")
            log.warning("scan_gate_blocked", blocking=len(blocking))
            attempt.fail(
                FailureReason.SCAN_FAILED,
                f"Blocked by {len(blocking)} vulnerabilit{'y' if len(blocking) == 1 else 'ies'}: "
                f"{shown}",
            )
            return
        log.info("scan_gate_passed", findings=len(result.findings))

    async def _request_approval(self, attempt: PromotionAttempt, log: Any) -> None:
        now = datetime.now(timezone.utc)
        pending = PendingApproval(
            request=attempt.request,
            source_reference=attempt.require_source(),
            source_digest=attempt.source_digest,
            scan_result=attempt.scan_result,
            warnings=list(attempt.warnings),
            stage_timestamps=dict(attempt.stage_timestamps),
            trace_id=attempt.trace_id,
            opened_at=now,
            deadline=now + timedelta(seconds=self.approval_timeout_seconds),
        )
        self.approval_gate.open(pending)
        self._notify(EVENT_APPROVAL_REQUESTED, pending_payload(pending), log)
        await self._hold_gate(attempt, log)

    async def _hold_gate(self, attempt: PromotionAttempt, log: Any) -> None:
        """Wait for the decision on a claimed record, then give up the claim."""
        request_id = attempt.request.request_id
        try:
            await self._await_decision(attempt, log)
        except Exception:
            self._drop_approval(request_id, log)
            raise
        finally:
            self.approval_gate.release(request_id)

    def _drop_approval(self, request_id: UUID, log: Any) -> None:
        try:
            self.approval_gate.discard(request_id)
        except OSError as e:
            log.error("approval_record_cleanup_failed", error=str(e))

    async def _await_decision(self, attempt: PromotionAttempt, log: Any) -> None:
        request_id = attempt.request.request_id
        try:
            decided = await self.approval_gate.wait(request_id)
        except KeyError:
            log.warning("approval_record_missing")
            attempt.fail(FailureReason.CANCELLED, "Approval record was removed while waiting")
            return

        self.approval_gate.discard(request_id)
        attempt.approval = decided.record

        if decided.state is ApprovalState.APPROVED:
            log.info("approval_granted", approver=decided.record.approver_identity)
            return
        if decided.cancelled:
            attempt.fail(FailureReason.CANCELLED, "Promotion cancelled while awaiting approval")
        elif decided.timed_out:
            attempt.fail(
                FailureReason.APPROVAL_TIMEOUT,
                f"No approval decision within {self.approval_timeout_seconds}s",
            )
        else:
            approver = decided.record.approver_identity if decided.record else "unknown"
            comment = decided.record.comment if decided.record else None
            message = f"Rejected by {approver}"
            if comment:
                message += f": {comment}"
            attempt.fail(FailureReason.APPROVAL_REJECTED, message)

    async def _retag(self, attempt: PromotionAttempt, log: Any) -> None:
        source = attempt.require_source()
        if attempt.source_digest:
            # The build tag may have moved since scanning; copy the scanned manifest
            source = source.with_digest(attempt.source_digest)
        target_tag = attempt.request.target_tag
        interrupted = False
        with self._stage(attempt, PromotionState.RETAGGING):
            retag = asyncio.ensure_future(
                asyncio.to_thread(self.registry_client.retag, source, target_tag)
            )
            # A started copy runs to completion even if this task is cancelled
            while not retag.done():
                try:
                    await asyncio.wait({retag})
                except asyncio.CancelledError:
                    interrupted = True
            try:
                target = retag.result()
            except RegistryError as e:
                log.error("retag_failed", error=str(e), transient=e.transient)
                attempt.fail(
                    FailureReason.REGISTRY_ERROR,
                    sanitize_error_message(str(e)),
                    retryable=e.transient,
                )
            except Exception as e:
                log.error("retag_unexpected_error", error=str(e), exc_info=True)
                attempt.fail(
                    FailureReason.REGISTRY_ERROR,
                    sanitize_error_message(f"Retag failed: {e}"),
                )
            else:
                attempt.resulting_reference = target
        if not attempt.is_terminal:
            attempt.advance(PromotionState.PROMOTED)
        if interrupted:
            log.warning("retag_completed_after_cancel", final_state=attempt.state.value)
            raise asyncio.CancelledError

    async def _resume(self, pending: PendingApproval) -> PromotionOutcome:
        attempt = PromotionAttempt.from_pending(pending)
        started = time.monotonic()
        log = logger.bind(
            request_id=str(pending.request_id),
            source_sha=pending.request.source_sha,
            target_tag=pending.request.target_tag,
            environment=pending.request.environment.value,
            resumed=True,
        )
        with create_span(
            "promoter.promote.resume",
            attributes={"promoter.request_id": str(pending.request_id)},
        ) as span:
            holder = self._claim(attempt)
            if holder is not None:
                log.warning("promote_conflict", holder_request_id=str(holder))
                self.approval_gate.cancel(pending.request_id)
                self.approval_gate.discard(pending.request_id)
                attempt.fail(
                    FailureReason.CONFLICT,
                    f"promotion to {pending.request.target_tag} already in flight "
                    f"(request {holder})",
                )
                return self._finish(attempt, started, span, log)

            log.info("promote_resumed")
            return await self._settle(
                attempt, self._continue_resumed(attempt, log), started, span, log
            )

    async def _continue_resumed(self, attempt: PromotionAttempt, log: Any) -> None:
        with create_span(
            "promoter.promote.gating",
            attributes={"promoter.request_id": str(attempt.request.request_id)},
        ):
            await self._hold_gate(attempt, log)
        if not attempt.is_terminal:
            await self._retag(attempt, log)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _settle(
        self,
        attempt: PromotionAttempt,
        stages: Coroutine[Any, Any, None],
        started: float,
        span: Span,
        log: Any,
    ) -> PromotionOutcome:
        """Run the stages of a claimed attempt and record how it ended.

        Unexpected errors become Failed outcomes. Cancellation propagates
        after the outcome is recorded, except in Gating, where the persisted
        approval record is left for resume_pending().
        """
        try:
            await stages
        except asyncio.CancelledError:
            if attempt.state is PromotionState.GATING:
                log.warning("promote_suspended")
            else:
                if not attempt.is_terminal:
                    attempt.fail(
                        FailureReason.CANCELLED,
                        f"Promotion task cancelled during {attempt.state.value}",
                    )
                self._finish(attempt, started, span, log)
            raise
        except Exception as e:
            log.error(
                "promote_unexpected_error",
                state=attempt.state.value,
                error=str(e),
                exc_info=True,
            )
            if not attempt.is_terminal:
                attempt.fail(
                    _UNEXPECTED_FAILURE_REASONS.get(attempt.state, FailureReason.REGISTRY_ERROR),
                    sanitize_error_message(f"Unexpected error during {attempt.state.value}: {e}"),
                )
        finally:
            self._release(attempt)
        return self._finish(attempt, started, span, log)

    def _notify(self, event_type: str, event_data: dict[str, Any], log: Any) -> None:
        """Deliver a webhook event in the background (see aclose())."""
        if self.notifier is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._deliver(self.notifier, event_type, event_data, log)
        )
        with self._lock:
            self._notifications.add(task)
        task.add_done_callback(self._forget_notification)

    def _forget_notification(self, task: asyncio.Task[None]) -> None:
        with self._lock:
            self._notifications.discard(task)

    async def _deliver(
        self,
        notifier: WebhookNotifier,
        event_type: str,
        event_data: dict[str, Any],
        log: Any,
    ) -> None:
        try:
            await notifier.notify_all(event_type, event_data)
        except Exception as e:
            log.error("webhook_notification_error", event_type=event_type, error=str(e))

    def _finish(
        self,
        attempt: PromotionAttempt,
        started: float,
        span: Span,
        log: Any,
    ) -> PromotionOutcome:
        outcome = attempt.to_outcome()
        duration = time.monotonic() - started

        span.set_attribute("promoter.final_state", outcome.final_state.value)
        if outcome.failure is not None:
            span.set_attribute("promoter.failure_reason", outcome.failure.reason.value)
            span.set_attribute("promoter.failure_stage", outcome.failure.stage.value)

        try:
            self.audit_log.append(outcome)
        except Exception as e:
            log.error("audit_append_failed", error=str(e), exc_info=True)

        if self.metrics is not None:
            self.metrics.record_outcome(outcome, duration)

        if outcome.failure is None:
            log.info(
                "promote_completed",
                resulting_reference=str(outcome.resulting_reference),
                duration_seconds=round(duration, 3),
            )
            self._notify(EVENT_PROMOTED, outcome_payload(outcome), log)
        else:
            log.warning(
                "promote_failed",
                reason=outcome.failure.reason.value,
                stage=outcome.failure.stage.value,
                message=outcome.failure.message,
                retryable=outcome.failure.retryable,
                duration_seconds=round(duration, 3),
            )
            self._notify(EVENT_FAILED, outcome_payload(outcome), log)
        return outcome


__all__ = ["PromotionOrchestrator"]
