from __future__ import annotations

import asyncio

import structlog
from pywebpush import WebPushException, webpush

from backend.src.config import Settings
from backend.src.contracts.errors import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from backend.src.contracts.models import DeliveryOutcome, SubscriptionSchema

logger = structlog.get_logger(__name__)

# 403: keys changed or no longer match, 404: endpoint unknown, 410: subscription expired
PERMANENT_FAILURE_STATUS_CODES = frozenset({403, 404, 410})


def classify_failure(endpoint: str, exc: Exception) -> DeliveryError:
    """Map a send failure onto the transient/permanent delivery error it represents."""
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(exc, WebPushException) and status_code in PERMANENT_FAILURE_STATUS_CODES:
        return PermanentDeliveryError(endpoint, str(exc), status_code=status_code)
    return TransientDeliveryError(endpoint, str(exc), status_code=status_code)


class WebPushTransport:
    """Sends one browser push message per call via pywebpush. No retries."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def _webpush(self, subscription: SubscriptionSchema, payload: str, ttl: int) -> None:
        await asyncio.to_thread(
            webpush,
            subscription_info=subscription.to_subscription_info(),
            data=payload,
            vapid_private_key=self._settings.vapid_private_key,
            vapid_claims={"sub": self._settings.vapid_claims_email},
            ttl=ttl,
            timeout=self._settings.push_timeout_seconds,
        )

    async def send(
        self,
        subscription: SubscriptionSchema,
        payload: str,
        ttl: int,
    ) -> DeliveryOutcome:
        log = logger.bind(endpoint=subscription.endpoint[:60], channel="web_push")

        try:
            await self._webpush(subscription, payload, ttl)
        except Exception as exc:  # noqa: BLE001
            error = classify_failure(subscription.endpoint, exc)
            if isinstance(error, PermanentDeliveryError):
                log.info("web_push_endpoint_gone", status_code=error.status_code)
                return DeliveryOutcome.PERMANENT_FAILURE
            log.warning(
                "web_push_send_failed",
                status_code=error.status_code,
                error=str(exc),
            )
            return DeliveryOutcome.TRANSIENT_FAILURE

        log.debug("web_push_sent", ttl=ttl)
        return DeliveryOutcome.DELIVERED
