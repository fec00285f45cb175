from __future__ import annotations

import asyncio
import json

import structlog
from pywebpush import webpush

from backend.src.config import Settings
from backend.src.contracts.models import BatchResult, PushMessage, PushResult

logger = structlog.get_logger(__name__)


def build_web_push_payload(message: PushMessage) -> str:
    """Build the JSON payload for a web push notification."""
    return json.dumps(
        {
            "title": message.title,
            "body": message.body,
            "icon": message.image_url,
            "product_id": str(message.product_id),
        },
        ensure_ascii=False,
    )


class WebPushSender:
    """Channel sender delivering browser notifications via pywebpush.

    The device token of a web registration is the JSON-encoded push subscription.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def send_batch(self, messages: list[PushMessage]) -> BatchResult:
        results = await asyncio.gather(*(self._send_one(m) for m in messages))
        return BatchResult(results=list(results))

    async def _send_one(self, message: PushMessage) -> PushResult:
        log = logger.bind(user_id=str(message.user_id), channel="web_push")

        try:
            subscription_info = json.loads(message.token)
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription_info,
                data=build_web_push_payload(message),
                vapid_private_key=self._settings.vapid_private_key,
                vapid_claims={"sub": self._settings.vapid_claims_email},
            )
        except Exception as exc:  # noqa: BLE001
            log.warning("web_push_send_failed", error=str(exc))
            return PushResult(token=message.token, success=False, error=str(exc))

        log.info("web_push_sent")
        return PushResult(token=message.token, success=True)
