from __future__ import annotations

import asyncio

import structlog
from aioapns import APNs, NotificationRequest

from backend.src.config import Settings
from backend.src.contracts.models import BatchResult, PushMessage, PushResult

logger = structlog.get_logger(__name__)


def build_apns_notification(message: PushMessage, bundle_id: str) -> NotificationRequest:
    """Build an APNs NotificationRequest with rich notification support."""
    return NotificationRequest(
        device_token=message.token,
        message={
            "aps": {
                "alert": {"title": message.title, "body": message.body},
                "sound": "default",
                "mutable-content": 1,
            },
            "image_url": message.image_url,
            "product_id": str(message.product_id),
        },
        apns_topic=bundle_id,
    )


class ApnsPushSender:
    """Channel sender delivering iOS notifications via APNs."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._client: APNs | None = None

    def _get_client(self) -> APNs:
        if self._client is None:
            self._client = APNs(
                key=self._settings.apns_auth_key_path,
                key_id=self._settings.apns_auth_key_id,
                team_id=self._settings.apns_team_id,
                topic=self._settings.apns_bundle_id,
                use_sandbox=self._settings.apns_use_sandbox,
            )
        return self._client

    async def send_batch(self, messages: list[PushMessage]) -> BatchResult:
        results = await asyncio.gather(*(self._send_one(m) for m in messages))
        return BatchResult(results=list(results))

    async def _send_one(self, message: PushMessage) -> PushResult:
        log = logger.bind(user_id=str(message.user_id), channel="apns")
        notification = build_apns_notification(message, self._settings.apns_bundle_id)

        try:
            result = await self._get_client().send_notification(notification)
        except Exception as exc:  # noqa: BLE001
            log.warning("apns_send_failed", error=str(exc))
            return PushResult(token=message.token, success=False, error=str(exc))

        if not result.is_successful:
            log.warning("apns_rejected", reason=result.description)
            return PushResult(token=message.token, success=False, error=result.description)

        log.info("apns_sent")
        return PushResult(token=message.token, success=True)
