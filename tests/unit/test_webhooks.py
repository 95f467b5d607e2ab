"""Unit tests for WebhookNotifier.

These tests validate webhook notification behavior:
- Event filtering per endpoint
- Payload formatting for outcomes and approval requests
- HTTP delivery with retry and exponential backoff
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from image_promoter.schemas.config import WebhookConfig
from image_promoter.schemas.promotion import (
    Environment,
    FailureReason,
    ImageReference,
    PendingApproval,
    PromotionFailure,
    PromotionOutcome,
    PromotionRequest,
    PromotionState,
)
from image_promoter.webhooks import (
    EVENT_APPROVAL_REQUESTED,
    EVENT_FAILED,
    EVENT_PROMOTED,
    WebhookNotifier,
    outcome_payload,
    pending_payload,
)


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(
        url="https://hooks.example.com/webhook",
        events=[EVENT_PROMOTED, EVENT_FAILED],
        headers={"Authorization": "Bearer test-token"},
        timeout_seconds=30,
        retry_count=3,
    )


@pytest.fixture
def request_model() -> PromotionRequest:
    return PromotionRequest(
        source_sha="abc1234",
        target_tag="v1.0.0",
        environment=Environment.PRODUCTION,
        requested_by="ci@example.com",
    )


def _response(status_code: int) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    return response


class TestPayloads:
    """Tests for event payload formatting."""

    def test_promoted_outcome_payload(self, request_model: PromotionRequest) -> None:
        outcome = PromotionOutcome(
            request=request_model,
            final_state=PromotionState.PROMOTED,
            resulting_reference=ImageReference(
                registry="ghcr.io", repository="acme/web", tag="v1.0.0"
            ),
            source_digest="sha256:" + "a" * 64,
        )

        payload = outcome_payload(outcome)

        assert payload["final_state"] == "promoted"
        assert payload["reason"] is None
        assert payload["resulting_reference"] == "ghcr.io/acme/web:v1.0.0"
        assert payload["environment"] == "production"
        assert payload["trace_id"] is None

    def test_failed_outcome_payload(self, request_model: PromotionRequest) -> None:
        outcome = PromotionOutcome(
            request=request_model,
            final_state=PromotionState.FAILED,
            failure=PromotionFailure(
                reason=FailureReason.APPROVAL_REJECTED,
                stage=PromotionState.GATING,
                message="Rejected by alice",
            ),
        )

        payload = outcome_payload(outcome)

        assert payload["reason"] == "approval_rejected"
        assert payload["message"] == "Rejected by alice"
        assert payload["resulting_reference"] is None

    def test_pending_payload(self, request_model: PromotionRequest) -> None:
        deadline = datetime.now(timezone.utc) + timedelta(hours=24)
        pending = PendingApproval(
            request=request_model,
            source_reference=ImageReference(
                registry="ghcr.io", repository="acme/web", tag="abc1234"
            ),
            deadline=deadline,
        )

        payload = pending_payload(pending)

        assert payload["request_id"] == str(request_model.request_id)
        assert payload["source_reference"] == "ghcr.io/acme/web:abc1234"
        assert payload["deadline"] == deadline.isoformat()

    def test_build_payload_adds_event_type(self) -> None:
        assert WebhookNotifier.build_payload("promoted", {"a": 1}) == {
            "event_type": "promoted",
            "a": 1,
        }


class TestEventFiltering:
    def test_subscribers(self, webhook_config: WebhookConfig) -> None:
        approvals = WebhookConfig(
            url="https://approvals.example.com/hook", events=[EVENT_APPROVAL_REQUESTED]
        )
        notifier = WebhookNotifier([webhook_config, approvals])

        assert notifier.subscribers(EVENT_PROMOTED) == [webhook_config]
        assert notifier.subscribers(EVENT_APPROVAL_REQUESTED) == [approvals]

    @pytest.mark.asyncio
    async def test_no_subscribers_sends_nothing(self, webhook_config: WebhookConfig) -> None:
        notifier = WebhookNotifier([webhook_config])
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            results = await notifier.notify_all(EVENT_APPROVAL_REQUESTED, {})
        assert results == []
        mock_post.assert_not_called()


class TestDelivery:
    """Tests for HTTP delivery with retry."""

    @pytest.mark.asyncio
    async def test_successful_delivery(self, webhook_config: WebhookConfig) -> None:
        notifier = WebhookNotifier([webhook_config])

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(200)
            results = await notifier.notify_all(EVENT_PROMOTED, {"target_tag": "v1.0.0"})

        assert len(results) == 1
        assert results[0].success
        assert results[0].attempts == 1
        kwargs = mock_post.call_args.kwargs
        assert kwargs["url"] == "https://hooks.example.com/webhook"
        assert kwargs["json"] == {"event_type": "promoted", "target_tag": "v1.0.0"}
        assert kwargs["headers"] == {"Authorization": "Bearer test-token"}

    @pytest.mark.asyncio
    async def test_server_error_is_retried_with_backoff(
        self, webhook_config: WebhookConfig
    ) -> None:
        notifier = WebhookNotifier([webhook_config])

        with (
            patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post,
            patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            mock_post.side_effect = [_response(503), _response(502), _response(200)]
            result = await notifier.deliver(webhook_config, EVENT_PROMOTED, {})

        assert result.success
        assert result.attempts == 3
        assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, webhook_config: WebhookConfig) -> None:
        notifier = WebhookNotifier([webhook_config])

        with (
            patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post,
            patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            mock_post.return_value = _response(404)
            result = await notifier.deliver(webhook_config, EVENT_FAILED, {})

        assert not result.success
        assert result.status_code == 404
        assert result.error == "Client error: 404"
        assert mock_post.call_count == 1
        mock_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_count(self, webhook_config: WebhookConfig) -> None:
        notifier = WebhookNotifier([webhook_config], backoff_base_seconds=0.5)

        with (
            patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post,
            patch("asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            mock_post.side_effect = httpx.ConnectError("connection refused")
            result = await notifier.deliver(webhook_config, EVENT_FAILED, {})

        assert not result.success
        assert result.attempts == 4
        assert result.status_code is None
        assert "connection refused" in (result.error or "")
        assert [call.args[0] for call in mock_sleep.call_args_list] == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self) -> None:
        config = WebhookConfig(url="https://hooks.example.com/slow", retry_count=0)
        notifier = WebhookNotifier([config])

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = httpx.ReadTimeout("slow")
            result = await notifier.deliver(config, EVENT_PROMOTED, {})

        assert not result.success
        assert result.error == "Request timed out"
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_notify_all_reports_each_endpoint(self) -> None:
        configs = [
            WebhookConfig(url="https://a.example.com/hook", events=[EVENT_FAILED]),
            WebhookConfig(url="https://b.example.com/hook", events=[EVENT_FAILED]),
        ]
        notifier = WebhookNotifier(configs)

        with patch("httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = _response(204)
            results = await notifier.notify_all(EVENT_FAILED, {})

        assert [r.url for r in results] == [
            "https://a.example.com/hook",
            "https://b.example.com/hook",
        ]
        assert all(r.success for r in results)
