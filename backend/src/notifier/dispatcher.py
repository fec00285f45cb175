from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict

import structlog

from backend.src.contracts.interfaces import IPushSender, ITrackingIndex
from backend.src.contracts.models import (
    BatchResult,
    DeviceToken,
    FetchedProduct,
    PushMessage,
    TrackingSubscription,
)

logger = structlog.get_logger(__name__)

NOTIFICATION_TITLE = "목표 가격 이하로 내려갔습니다!"


def build_push_message(
    subscription: TrackingSubscription,
    product: FetchedProduct,
    device: DeviceToken,
) -> PushMessage:
    return PushMessage(
        user_id=subscription.user_id,
        product_id=product.product_id,
        token=device.token,
        platform=device.platform,
        title=NOTIFICATION_TITLE,
        body=f"{product.product_name}의 현재 가격은 {product.price}원 입니다.",
        image_url=product.image_url,
    )


class NotificationDispatcher:
    """Turn one cycle's changed products into push messages for eligible subscribers.

    A subscriber is eligible when their target price is at or above the newly
    observed price. Subscribers without a registered device are skipped.
    """

    def __init__(
        self,
        tracking: ITrackingIndex,
        sender: IPushSender,
        timeout_seconds: float,
    ) -> None:
        self._tracking = tracking
        self._sender = sender
        self._timeout = timeout_seconds

    async def build_messages(self, changes: list[FetchedProduct]) -> list[PushMessage]:
        if not changes:
            return []

        subscriptions = await self._tracking.find_subscriptions_for_products(
            [c.product_id for c in changes]
        )

        by_product: dict[uuid.UUID, list[TrackingSubscription]] = defaultdict(list)
        for subscription in subscriptions:
            by_product[subscription.product_id].append(subscription)

        eligible: list[tuple[TrackingSubscription, FetchedProduct]] = [
            (subscription, product)
            for product in changes
            for subscription in by_product.get(product.product_id, [])
            if subscription.target_price >= product.price
        ]
        if not eligible:
            return []

        devices = await self._tracking.device_tokens_for(
            list({subscription.user_id for subscription, _ in eligible})
        )

        messages: list[PushMessage] = []
        for subscription, product in eligible:
            device = devices.get(subscription.user_id)
            if device is None:
                logger.debug(
                    "subscriber_without_device",
                    user_id=str(subscription.user_id),
                    product_id=str(product.product_id),
                )
                continue
            messages.append(build_push_message(subscription, product, device))

        logger.info(
            "notifications_built",
            changed_count=len(changes),
            subscription_count=len(subscriptions),
            eligible_count=len(eligible),
            message_count=len(messages),
        )
        return messages

    async def dispatch(self, changes: list[FetchedProduct]) -> BatchResult:
        messages = await self.build_messages(changes)
        if not messages:
            return BatchResult()

        try:
            result = await asyncio.wait_for(
                self._sender.send_batch(messages), timeout=self._timeout
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "push_batch_failed",
                message_count=len(messages),
                error=str(exc) or type(exc).__name__,
                exc_info=True,
            )
            return BatchResult.all_failed(messages, str(exc) or type(exc).__name__)

        logger.info(
            "push_batch_sent",
            success_count=result.success_count,
            failure_count=result.failure_count,
        )
        return result
