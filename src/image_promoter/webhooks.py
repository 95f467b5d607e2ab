"""Webhook notifications for promotion events.

Events:
    - approval_requested: a protected promotion is waiting for a decision
    - promoted: an attempt reached Promoted
    - failed: an attempt reached Failed (any reason, including Conflict)

Delivery is an HTTP POST of a JSON payload. Server errors, timeouts and
connection errors are retried with exponential backoff; client errors are
not. Delivery failures are logged and reported in the result, never raised.

Example:
    >>> notifier = WebhookNotifier([WebhookConfig(url="https://hooks.example.com/x")])
    >>> results = await notifier.notify_all("promoted", outcome_payload(outcome))
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from image_promoter.telemetry.tracing import create_span

if TYPE_CHECKING:
    from image_promoter.schemas.config import WebhookConfig
    from image_promoter.schemas.promotion import PendingApproval, PromotionOutcome

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for exponential backoff (doubles each retry)."""

EVENT_APPROVAL_REQUESTED = "approval_requested"
EVENT_PROMOTED = "promoted"
EVENT_FAILED = "failed"

logger = structlog.get_logger(__name__)


class WebhookNotificationResult(BaseModel):
    """Result of delivering one event to one endpoint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    url: str
    status_code: int | None = None
    error: str | None = None
    attempts: int = Field(default=1, ge=1)


def outcome_payload(outcome: PromotionOutcome) -> dict[str, Any]:
    """Event data for a terminal outcome."""
    request = outcome.request
    return {
        "request_id": str(request.request_id),
        "source_sha": request.source_sha,
        "target_tag": request.target_tag,
        "environment": request.environment.value,
        "requested_by": request.requested_by,
        "final_state": outcome.final_state.value,
        "reason": outcome.reason.value if outcome.reason else None,
        "message": outcome.failure.message if outcome.failure else None,
        "resulting_reference": (
            str(outcome.resulting_reference) if outcome.resulting_reference else None
        ),
        "source_digest": outcome.source_digest,
        "trace_id": outcome.trace_id or None,
    }


def pending_payload(pending: PendingApproval) -> dict[str, Any]:
    """Event data for an approval request."""
    request = pending.request
    return {
        "request_id": str(request.request_id),
        "source_sha": request.source_sha,
        "target_tag": request.target_tag,
        "environment": request.environment.value,
        "requested_by": request.requested_by,
        "source_reference": str(pending.source_reference),
        "deadline": pending.deadline.isoformat(),
        "trace_id": pending.trace_id or None,
    }


class WebhookNotifier:
    """Deliver promotion events to every subscribed endpoint.

    Args:
        configs: Endpoint configurations. An endpoint receives an event only
            if the event name is in its ``events`` list.
        backoff_base_seconds: First retry delay; doubles on each retry.
    """

    def __init__(
        self,
        configs: list[WebhookConfig],
        backoff_base_seconds: float = BACKOFF_BASE_SECONDS,
    ) -> None:
        self.configs = list(configs)
        self.backoff_base_seconds = backoff_base_seconds

    def subscribers(self, event_type: str) -> list[WebhookConfig]:
        return [config for config in self.configs if event_type in config.events]

    @staticmethod
    def build_payload(event_type: str, event_data: dict[str, Any]) -> dict[str, Any]:
        return {"event_type": event_type, **event_data}

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(self.backoff_base_seconds * (2 ** (attempt - 1)))

    async def deliver(
        self,
        config: WebhookConfig,
        event_type: str,
        event_data: dict[str, Any],
    ) -> WebhookNotificationResult:
        """POST one event to one endpoint with retries."""
        payload = self.build_payload(event_type, event_data)
        max_attempts = 1 + config.retry_count
        log = logger.bind(url=config.url, event_type=event_type, max_attempts=max_attempts)

        with create_span(
            "promoter.webhook.notify",
            attributes={
                "webhook.url": config.url,
                "webhook.event_type": event_type,
                "webhook.max_retries": config.retry_count,
            },
        ) as span:
            start_time = time.monotonic()
            last_status_code: int | None = None
            last_error: str | None = None
            attempts = 0

            async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                for attempt in range(1, max_attempts + 1):
                    attempts = attempt
                    try:
                        response = await client.post(
                            url=config.url,
                            json=payload,
                            headers=config.headers or {},
                        )
                    except httpx.TimeoutException:
                        last_error = "Request timed out"
                        log.warning("webhook_notification_timeout", attempt=attempt)
                    except httpx.RequestError as e:
                        last_error = str(e)
                        log.warning("webhook_notification_error", attempt=attempt, error=str(e))
                    else:
                        last_status_code = response.status_code
                        if response.status_code < 400:
                            duration_ms = int((time.monotonic() - start_time) * 1000)
                            span.set_attribute("webhook.attempts", attempt)
                            span.set_attribute("webhook.status_code", response.status_code)
                            span.set_attribute("webhook.success", True)
                            log.info(
                                "webhook_notification_sent",
                                status_code=response.status_code,
                                attempts=attempt,
                                duration_ms=duration_ms,
                            )
                            return WebhookNotificationResult(
                                success=True,
                                url=config.url,
                                status_code=response.status_code,
                                attempts=attempt,
                            )
                        if response.status_code < 500:
                            last_error = f"Client error: {response.status_code}"
                            break
                        last_error = f"Server error: {response.status_code}"
                        log.warning(
                            "webhook_notification_retry",
                            status_code=response.status_code,
                            attempt=attempt,
                        )

                    if attempt < max_attempts:
                        await self._backoff(attempt)

            duration_ms = int((time.monotonic() - start_time) * 1000)
            span.set_attribute("webhook.attempts", attempts)
            span.set_attribute("webhook.success", False)
            if last_status_code is not None:
                span.set_attribute("webhook.status_code", last_status_code)

            log.error(
                "webhook_notification_failed",
                status_code=last_status_code,
                error=last_error,
                attempts=attempts,
                duration_ms=duration_ms,
            )
            return WebhookNotificationResult(
                success=False,
                url=config.url,
                status_code=last_status_code,
                error=last_error,
                attempts=attempts,
            )

    async def notify_all(
        self,
        event_type: str,
        event_data: dict[str, Any],
    ) -> list[WebhookNotificationResult]:
        """Deliver an event to all subscribed endpoints concurrently.

        Returns:
            One result per subscribed endpoint, in configuration order.
        """
        subscribers = self.subscribers(event_type)
        if not subscribers:
            logger.debug("webhook_no_subscribers", event_type=event_type)
            return []
        return list(
            await asyncio.gather(
                *(self.deliver(config, event_type, event_data) for config in subscribers)
            )
        )


__all__: list[str] = [
    "EVENT_APPROVAL_REQUESTED",
    "EVENT_FAILED",
    "EVENT_PROMOTED",
    "WebhookNotificationResult",
    "WebhookNotifier",
    "outcome_payload",
    "pending_payload",
]
