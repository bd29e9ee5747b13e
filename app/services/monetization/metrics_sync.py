"""Metrics sync job: pulls daily per-page metrics into ``monetization_metrics``.

Dates are synced one at a time. Each date waits on the rate limiter, fetches
from the external source under a timeout, then upserts every page through
the batched executor. A date is recorded as failed when its fetch failed or
when none of its page writes succeeded; the job only fails when every
requested date failed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models import MonetizationMetric
from app.services.monetization.batching import BatchedExecutor, ProgressCallback
from app.services.monetization.errors import ExternalFetchError, PartialBatchFailure
from app.services.monetization.rate_limit import TokenBucket
from app.services.monetization.sources import MetricsSource, PageMetrics
from app.settings import settings

logger = logging.getLogger(__name__)

_METRIC_FIELDS = (
    "page_type",
    "pageviews",
    "unique_visitors",
    "bounce_rate",
    "avg_time_on_page",
    "traffic_google",
    "traffic_pinterest",
    "traffic_direct",
    "traffic_social",
    "traffic_other",
    "affiliate_clicks",
    "ad_revenue",
    "affiliate_revenue",
)


@dataclass
class MetricsSyncResult:
    pages_synced: int = 0
    pages_failed: int = 0
    dates_synced: list[date] = field(default_factory=list)
    dates_failed: list[date] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


async def upsert_page_metrics(
    db: AsyncSession, metric_date: date, page: PageMetrics
) -> MonetizationMetric:
    """Insert or overwrite the row for ``(metric_date, page_url)``."""
    result = await db.execute(
        select(MonetizationMetric).where(
            MonetizationMetric.metric_date == metric_date,
            MonetizationMetric.page_url == page.page_url,
        )
    )
    row = result.scalars().first()
    if row is None:
        row = MonetizationMetric(metric_date=metric_date, page_url=page.page_url)
        db.add(row)
    for name in _METRIC_FIELDS:
        setattr(row, name, getattr(page, name))
    row.synced_at = datetime.now(timezone.utc)
    return row


class MetricsSyncJob:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: MetricsSource,
        rate_limiter: TokenBucket | None = None,
        executor: BatchedExecutor | None = None,
        *,
        fetch_timeout: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.source = source
        self.rate_limiter = rate_limiter or TokenBucket.per_minute(
            settings.METRICS_RATE_LIMIT_PER_MINUTE
        )
        self.executor = executor or BatchedExecutor(
            batch_size=settings.METRICS_SYNC_BATCH_SIZE,
            delay_seconds=settings.METRICS_SYNC_BATCH_DELAY_SECONDS,
        )
        self.fetch_timeout = fetch_timeout or settings.METRICS_FETCH_TIMEOUT_SECONDS

    async def _fetch(self, metric_date: date) -> list[PageMetrics]:
        await self.rate_limiter.acquire()
        try:
            return await asyncio.wait_for(
                self.source.fetch_page_metrics(metric_date, metric_date),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExternalFetchError(
                f"Metrics fetch for {metric_date} timed out after {self.fetch_timeout}s",
                details={"date": metric_date.isoformat(), "timeout": self.fetch_timeout},
            ) from exc
        except ExternalFetchError:
            raise
        except Exception as exc:
            raise ExternalFetchError(
                f"Metrics fetch for {metric_date} failed: {exc}",
                details={"date": metric_date.isoformat(), "error": str(exc)},
            ) from exc

    async def _store(self, metric_date: date, page: PageMetrics) -> None:
        async with self.session_factory() as db:
            await upsert_page_metrics(db, metric_date, page)
            await db.commit()

    async def sync(
        self,
        start_date: date,
        end_date: date | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> MetricsSyncResult:
        end_date = end_date or start_date
        if end_date < start_date:
            raise ValueError("end_date must not be before start_date")

        result = MetricsSyncResult()
        fetch_failures = 0
        day = start_date
        while day <= end_date:
            try:
                pages = await self._fetch(day)
            except ExternalFetchError as exc:
                logger.warning("Skipping metrics sync for %s: %s", day, exc)
                fetch_failures += 1
                result.dates_failed.append(day)
                result.errors.append(str(exc))
                day += timedelta(days=1)
                continue

            metric_date = day
            batch = await self.executor.run(
                pages,
                lambda page: self._store(metric_date, page),
                on_progress=on_progress,
            )
            result.pages_synced += batch.successes
            result.pages_failed += batch.failures
            result.errors.extend(batch.errors)
            try:
                batch.raise_if_total_failure()
            except PartialBatchFailure as exc:
                logger.warning("No page stored for %s: %s", day, exc)
                result.dates_failed.append(day)
            else:
                result.dates_synced.append(day)
                logger.info(
                    "Synced %d pages for %s (%d failed)", batch.successes, day, batch.failures
                )
            day += timedelta(days=1)

        if result.dates_failed and not result.dates_synced:
            # A sync that failed only on writes is a batch failure.
            error_cls = ExternalFetchError if fetch_failures else PartialBatchFailure
            raise error_cls(
                "Metrics sync failed for every requested date",
                details={
                    "dates": [d.isoformat() for d in result.dates_failed],
                    "pages_failed": result.pages_failed,
                    "errors": result.errors[:10],
                },
            )
        return result

    async def sync_yesterday(self) -> MetricsSyncResult:
        yesterday = datetime.now(timezone.utc).date() - timedelta(days=1)
        return await self.sync(yesterday)
