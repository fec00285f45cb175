from __future__ import annotations

import asyncio
from collections import defaultdict

import structlog

from backend.src.contracts.interfaces import IPushSender
from backend.src.contracts.models import BatchResult, Platform, PushMessage, PushResult

logger = structlog.get_logger(__name__)


class PushSenderRegistry:
    """IPushSender that splits a batch by platform and sends each part through its channel.

    Adding a new platform requires only a new channel sender registered here.
    A channel that raises fails only its own payloads.
    """

    def __init__(self, senders: dict[Platform, IPushSender]) -> None:
        self._senders = senders

    async def send_batch(self, messages: list[PushMessage]) -> BatchResult:
        by_platform: dict[Platform, list[int]] = defaultdict(list)
        for index, message in enumerate(messages):
            by_platform[message.platform].append(index)

        results: list[PushResult | None] = [None] * len(messages)

        platforms = list(by_platform)
        outcomes = await asyncio.gather(
            *(
                self._send_channel(platform, [messages[i] for i in by_platform[platform]])
                for platform in platforms
            )
        )

        for platform, outcome in zip(platforms, outcomes):
            for index, result in zip(by_platform[platform], outcome.results):
                results[index] = result

        batch = BatchResult(results=[r for r in results if r is not None])
        logger.info(
            "push_batch_complete",
            platforms=[p.value for p in platforms],
            success_count=batch.success_count,
            failure_count=batch.failure_count,
        )
        return batch

    async def _send_channel(self, platform: Platform, messages: list[PushMessage]) -> BatchResult:
        sender = self._senders.get(platform)
        if sender is None:
            logger.warning("push_channel_missing", platform=platform.value, count=len(messages))
            return BatchResult.all_failed(messages, f"no sender for {platform.value}")

        try:
            return await sender.send_batch(messages)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "push_channel_error",
                platform=platform.value,
                count=len(messages),
                error=str(exc),
            )
            return BatchResult.all_failed(messages, str(exc))
