"""Opportunity scanner: finds affiliate placement opportunities.

Pipeline:
  1. Aggregate the trailing window of page metrics.
  2. Snapshot current content records.
  3. Run every registered detector.
  4. Drop low-confidence hits and keep the strongest hit per page.
  5. Queue survivors through the action queue.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import ContentItem
from app.services.monetization.action_queue import ActionQueue
from app.services.monetization.detectors import (
    ContentSnapshot,
    DetectionContext,
    DetectorHit,
    DetectorRegistry,
    build_scan_registry,
)
from app.services.monetization.page_stats import load_page_summaries, site_rpm
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Outcome of one scanner or analysis pass."""

    items_scanned: int = 0
    hits: int = 0
    discarded: int = 0
    opportunities_created: int = 0
    opportunities_refreshed: int = 0
    by_detector: dict[str, int] = field(default_factory=dict)


def dedupe_by_page(
    hits: list[DetectorHit], key: Callable[[DetectorHit], float]
) -> list[DetectorHit]:
    """Keep the best hit per page (by *key*). Hits without a page are kept."""
    best: dict[str, DetectorHit] = {}
    unpaged: list[DetectorHit] = []
    for hit in hits:
        if hit.page_url is None:
            unpaged.append(hit)
            continue
        current = best.get(hit.page_url)
        if current is None or key(hit) > key(current):
            best[hit.page_url] = hit
    return list(best.values()) + unpaged


async def queue_hits(
    db: AsyncSession,
    queue: ActionQueue,
    hits: list[DetectorHit],
    result: ScanResult,
    *,
    confidence_floor: float,
    key: Callable[[DetectorHit], float],
) -> ScanResult:
    result.hits = len(hits)
    confident = [h for h in hits if h.confidence >= confidence_floor]
    result.discarded = len(hits) - len(confident)

    for hit in dedupe_by_page(confident, key):
        queued = await queue.create_opportunity(db, hit.to_draft(), hit.actions)
        if queued.created:
            result.opportunities_created += 1
        else:
            result.opportunities_refreshed += 1
        result.by_detector[hit.detector] = result.by_detector.get(hit.detector, 0) + 1
    return result


class OpportunityScanner:
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
        self.registry = registry or build_scan_registry()
        self.queue = queue or ActionQueue()
        self.window_days = window_days or settings.SCAN_WINDOW_DAYS
        self.confidence_floor = (
            confidence_floor
            if confidence_floor is not None
            else settings.OPPORTUNITY_CONFIDENCE_FLOOR
        )

    async def build_context(self, db: AsyncSession, today: date | None = None) -> DetectionContext:
        end = (today or datetime.now(timezone.utc).date()) - timedelta(days=1)
        start = end - timedelta(days=self.window_days - 1)
        pages = await load_page_summaries(db, start, end)
        items = (await db.execute(select(ContentItem))).scalars().all()
        content = [
            ContentSnapshot(
                id=str(item.id),
                title=item.title,
                page_url=item.page_url,
                description=item.description or "",
                author=item.author,
                source=item.source,
                category=item.category,
            )
            for item in items
        ]
        return DetectionContext(
            window_start=start,
            window_end=end,
            pages=pages,
            content=content,
            site_rpm=site_rpm(pages),
        )

    async def scan(self, today: date | None = None) -> ScanResult:
        async with self.session_factory() as db:
            ctx = await self.build_context(db, today)
            result = ScanResult(items_scanned=len(ctx.pages) + len(ctx.content))
            hits = self.registry.detect_all(ctx)
            await queue_hits(
                db,
                self.queue,
                hits,
                result,
                confidence_floor=self.confidence_floor,
                key=lambda hit: hit.confidence,
            )

        logger.info(
            "Opportunity scan: %d items, %d hits, %d discarded, %d created",
            result.items_scanned,
            result.hits,
            result.discarded,
            result.opportunities_created,
        )
        return result
