from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from pywebpush import WebPushException

from backend.src.config import Settings
from backend.src.contracts.errors import PermanentDeliveryError, TransientDeliveryError
from backend.src.contracts.models import DeliveryOutcome, SubscriptionKeys, SubscriptionSchema
from backend.src.notifier.web_push_notifier import WebPushTransport, classify_failure


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        vapid_public_key="test-public-key",
        vapid_private_key="test-private-key",
        vapid_claims_email="mailto:admin@splatnetalert.com",
        push_timeout_seconds=7.5,
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture()
def subscription() -> SubscriptionSchema:
    return SubscriptionSchema(
        endpoint="https://fcm.googleapis.com/fcm/send/abc123",
        keys=SubscriptionKeys(auth="auth-secret", p256dh="p256dh-key"),
    )


def _push_error(status_code: int) -> WebPushException:
    response = MagicMock()
    response.status_code = status_code
    return WebPushException(f"Push failed: {status_code}", response=response)


PAYLOAD = json.dumps({"title": "Now on SplatNet!", "tag": "gear-1"})


# ── classify_failure ──────────────────────────────────────────────────────────


class TestClassifyFailure:
    @pytest.mark.parametrize("status_code", [403, 404, 410])
    def test_gone_statuses_are_permanent(self, status_code: int) -> None:
        error = classify_failure("https://push.example/1", _push_error(status_code))

        assert isinstance(error, PermanentDeliveryError)
        assert error.status_code == status_code

    @pytest.mark.parametrize("status_code", [400, 413, 429, 500, 503])
    def test_other_statuses_are_transient(self, status_code: int) -> None:
        error = classify_failure("https://push.example/1", _push_error(status_code))

        assert isinstance(error, TransientDeliveryError)

    def test_exception_without_response_is_transient(self) -> None:
        error = classify_failure("https://push.example/1", ConnectionError("reset"))

        assert isinstance(error, TransientDeliveryError)
        assert error.status_code is None


# ── WebPushTransport ──────────────────────────────────────────────────────────


class TestWebPushTransport:
    @pytest.mark.asyncio
    async def test_send_success(self, settings: Settings, subscription: SubscriptionSchema) -> None:
        transport = WebPushTransport(settings)

        with patch("backend.src.notifier.web_push_notifier.webpush") as mock_webpush:
            mock_webpush.return_value = MagicMock(status_code=201)
            outcome = await transport.send(subscription, PAYLOAD, 3600)

        assert outcome is DeliveryOutcome.DELIVERED
        mock_webpush.assert_called_once()
        kwargs = mock_webpush.call_args.kwargs
        assert kwargs["subscription_info"] == {
            "endpoint": "https://fcm.googleapis.com/fcm/send/abc123",
            "keys": {"auth": "auth-secret", "p256dh": "p256dh-key"},
        }
        assert kwargs["data"] == PAYLOAD
        assert kwargs["ttl"] == 3600
        assert kwargs["vapid_private_key"] == "test-private-key"
        assert kwargs["vapid_claims"] == {"sub": "mailto:admin@splatnetalert.com"}
        assert kwargs["timeout"] == 7.5

    @pytest.mark.asyncio
    async def test_send_gone_is_permanent(
        self, settings: Settings, subscription: SubscriptionSchema
    ) -> None:
        transport = WebPushTransport(settings)

        with patch("backend.src.notifier.web_push_notifier.webpush") as mock_webpush:
            mock_webpush.side_effect = _push_error(410)
            outcome = await transport.send(subscription, PAYLOAD, 60)

        assert outcome is DeliveryOutcome.PERMANENT_FAILURE

    @pytest.mark.asyncio
    async def test_send_server_error_is_transient(
        self, settings: Settings, subscription: SubscriptionSchema
    ) -> None:
        transport = WebPushTransport(settings)

        with patch("backend.src.notifier.web_push_notifier.webpush") as mock_webpush:
            mock_webpush.side_effect = _push_error(500)
            outcome = await transport.send(subscription, PAYLOAD, 60)

        assert outcome is DeliveryOutcome.TRANSIENT_FAILURE
        # One attempt only.
        assert mock_webpush.call_count == 1

    @pytest.mark.asyncio
    async def test_send_unexpected_error_is_transient(
        self, settings: Settings, subscription: SubscriptionSchema
    ) -> None:
        transport = WebPushTransport(settings)

        with patch("backend.src.notifier.web_push_notifier.webpush") as mock_webpush:
            mock_webpush.side_effect = TimeoutError("push service timed out")
            outcome = await transport.send(subscription, PAYLOAD, 60)

        assert outcome is DeliveryOutcome.TRANSIENT_FAILURE
