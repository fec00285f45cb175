from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backend.src.cache.price_cache import PriceCache
from backend.src.config import Settings
from backend.src.contracts.interfaces import IPriceFetcher, IPriceHistoryStore, ITrackingIndex
from backend.src.contracts.models import CycleReport, FetchedProduct, PricePoint, TrackedProduct
from backend.src.differ.differ import PriceChangeDetector
from backend.src.notifier.dispatcher import NotificationDispatcher

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class PricePoller:
    """Periodically fetches every tracked product, records price changes and notifies.

    Only one cycle runs at a time; a tick that fires while a cycle is in flight
    is dropped rather than queued.
    """

    def __init__(
        self,
        settings: Settings,
        tracking: ITrackingIndex,
        fetcher: IPriceFetcher,
        history: IPriceHistoryStore,
        cache: PriceCache,
        dispatcher: NotificationDispatcher,
        detector: PriceChangeDetector | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._tracking = tracking
        self._fetcher = fetcher
        self._history = history
        self._cache = cache
        self._dispatcher = dispatcher
        self._detector = detector or PriceChangeDetector()
        self._clock = clock
        self._cycle_lock = asyncio.Lock()
        self._scheduler = AsyncIOScheduler()

    @property
    def is_running_cycle(self) -> bool:
        return self._cycle_lock.locked()

    def start(self) -> None:
        self._scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(minutes=self._settings.poll_interval_minutes),
            id="price_cycle",
            name="Poll tracked product prices and notify subscribers",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_configured",
            interval_minutes=self._settings.poll_interval_minutes,
            fetch_concurrency=self._settings.fetch_concurrency,
        )

    def stop(self) -> None:
        self._scheduler.shutdown(wait=False)
        logger.info("scheduler_shutdown")

    async def trigger_now(self) -> CycleReport | None:
        """Manually trigger a cycle (useful for testing or admin endpoints)."""
        return await self.run_cycle()

    async def run_cycle(self) -> CycleReport | None:
        if self._cycle_lock.locked():
            logger.warning("price_cycle_skipped_busy")
            return None

        async with self._cycle_lock:
            logger.info("price_cycle_start")
            try:
                report = await self._run_cycle()
            except Exception:
                logger.error("price_cycle_error", exc_info=True)
                raise
            logger.info("price_cycle_complete", **report.model_dump(mode="json"))
            return report

    async def _run_cycle(self) -> CycleReport:
        report = CycleReport()

        # 1. Tracked products
        tracked = await self._tracking.list_tracked_products()
        report.tracked_count = len(tracked)
        if not tracked:
            logger.info("no_tracked_products")
            return report

        # 2. Fetch, bounded and isolated per product
        fetched, failed = await self._fetch_all(tracked)
        report.fetched_count = len(fetched)
        report.failed_product_ids = [t.product_id for t in failed]

        # 3. Detect changes against the cache
        changes = self._detector.detect(fetched, self._cache)
        if not changes:
            return report

        # 4. Record history first; the cache only follows a durable write
        now = self._clock()
        points = [
            PricePoint(
                product_id=c.product_id,
                time=now,
                price=c.price,
                is_sold_out=c.is_sold_out,
            )
            for c in changes
        ]
        try:
            await self._history.append_many(points)
        except Exception:
            logger.error(
                "price_history_write_failed",
                product_ids=[str(c.product_id) for c in changes],
                exc_info=True,
            )
            report.history_write_failed = True
            return report

        for change in changes:
            self._cache.upsert(change.product_id, change.price, change.is_sold_out)
        report.changed_product_ids = [c.product_id for c in changes]

        # 5. Notify
        result = await self._dispatcher.dispatch(changes)
        report.notifications_sent = result.success_count
        report.notifications_failed = result.failure_count
        return report

    async def _fetch_all(
        self, tracked: list[TrackedProduct]
    ) -> tuple[list[FetchedProduct], list[TrackedProduct]]:
        semaphore = asyncio.Semaphore(self._settings.fetch_concurrency)

        async def fetch_one(product: TrackedProduct) -> FetchedProduct | None:
            async with semaphore:
                try:
                    info = await asyncio.wait_for(
                        self._fetcher.fetch(product.product_code),
                        timeout=self._settings.fetch_timeout_seconds,
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "price_fetch_failed",
                        product_id=str(product.product_id),
                        product_code=product.product_code,
                        error=str(exc) or type(exc).__name__,
                    )
                    return None
            return FetchedProduct(
                product_id=product.product_id,
                product_code=product.product_code,
                product_name=info.product_name,
                image_url=info.image_url,
                price=info.price,
                is_sold_out=info.is_sold_out,
            )

        outcomes = await asyncio.gather(*(fetch_one(p) for p in tracked))

        fetched = [o for o in outcomes if o is not None]
        failed = [p for p, o in zip(tracked, outcomes) if o is None]
        logger.info("fetch_complete", fetched_count=len(fetched), failed_count=len(failed))
        return fetched, failed
