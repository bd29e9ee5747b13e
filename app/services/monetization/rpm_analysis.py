"""RPM analysis: ad-yield opportunities from page metrics.

Read-only over metrics; findings reach the queue only through
``ActionQueue.create_opportunity``. Per page the hit with the largest
estimated impact wins.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services.monetization.action_queue import ActionQueue
from app.services.monetization.detectors import (
    DetectionContext,
    DetectorRegistry,
    build_yield_registry,
)
from app.services.monetization.page_stats import load_page_summaries, site_rpm
from app.services.monetization.scanner import ScanResult, queue_hits
from app.settings import settings

logger = logging.getLogger(__name__)


class RpmAnalyzer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: DetectorRegistry | None = None,
        queue: ActionQueue | None = None,
        *,
        window_days: int | None = None,
        confidence_floor: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry or build_yield_registry()
        self.queue = queue or ActionQueue()
        self.window_days = window_days or settings.RPM_WINDOW_DAYS
        self.confidence_floor = (
            confidence_floor
            if confidence_floor is not None
            else settings.OPPORTUNITY_CONFIDENCE_FLOOR
        )

    async def analyze(self, today: date | None = None) -> ScanResult:
        end = (today or datetime.now(timezone.utc).date()) - timedelta(days=1)
        start = end - timedelta(days=self.window_days - 1)

        async with self.session_factory() as db:
            pages = await load_page_summaries(db, start, end)
            ctx = DetectionContext(
                window_start=start,
                window_end=end,
                pages=pages,
                site_rpm=site_rpm(pages),
            )
            result = ScanResult(items_scanned=len(pages))
            hits = self.registry.detect_all(ctx)
            await queue_hits(
                db,
                self.queue,
                hits,
                result,
                confidence_floor=self.confidence_floor,
                key=lambda hit: hit.estimated_revenue_impact or 0.0,
            )

        logger.info(
            "RPM analysis: %d pages, site RPM %.2f, %d hits, %d created",
            result.items_scanned,
            ctx.site_rpm,
            result.hits,
            result.opportunities_created,
        )
        return result
