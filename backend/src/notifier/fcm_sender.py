from __future__ import annotations

import asyncio

import firebase_admin
import structlog
from firebase_admin import credentials, messaging

from backend.src.config import Settings
from backend.src.contracts.models import BatchResult, PushMessage, PushResult

logger = structlog.get_logger(__name__)

# messaging.send_each accepts at most this many messages per call.
_MAX_BATCH_SIZE = 500
_APP_NAME = "priceguard"


def build_fcm_message(message: PushMessage) -> messaging.Message:
    """Build an FCM message with the product image shown in the Android notification."""
    return messaging.Message(
        notification=messaging.Notification(title=message.title, body=message.body),
        android=messaging.AndroidConfig(
            notification=messaging.AndroidNotification(image=message.image_url),
        ),
        token=message.token,
    )


class FcmPushSender:
    """Channel sender delivering Android notifications through Firebase Cloud Messaging."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._app: firebase_admin.App | None = None

    def _get_app(self) -> firebase_admin.App:
        if self._app is None:
            try:
                self._app = firebase_admin.get_app(_APP_NAME)
            except ValueError:
                self._app = firebase_admin.initialize_app(
                    credentials.Certificate(self._settings.firebase_credentials_path),
                    name=_APP_NAME,
                )
        return self._app

    async def send_batch(self, messages: list[PushMessage]) -> BatchResult:
        results: list[PushResult] = []

        for start in range(0, len(messages), _MAX_BATCH_SIZE):
            chunk = messages[start : start + _MAX_BATCH_SIZE]
            try:
                response = await asyncio.to_thread(
                    messaging.send_each,
                    [build_fcm_message(m) for m in chunk],
                    app=self._get_app(),
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "fcm_chunk_failed",
                    channel="fcm",
                    count=len(chunk),
                    error=str(exc),
                )
                results.extend(BatchResult.all_failed(chunk, str(exc)).results)
                continue

            for message, send_response in zip(chunk, response.responses):
                error = None if send_response.success else str(send_response.exception)
                results.append(
                    PushResult(token=message.token, success=send_response.success, error=error)
                )

            logger.info(
                "fcm_chunk_sent",
                channel="fcm",
                success_count=response.success_count,
                failure_count=response.failure_count,
            )

        return BatchResult(results=results)
