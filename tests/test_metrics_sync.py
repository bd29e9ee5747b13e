"""Tests for the metrics sync job and the analytics sources."""

from __future__ import annotations

import json
from datetime import date

import httpx
import pytest
from sqlalchemy import func, select

from app.models import MonetizationMetric, RunStatus, RunType
from app.services.monetization.batching import BatchedExecutor
from app.services.monetization.errors import ExternalFetchError, PartialBatchFailure
from app.services.monetization.metrics_sync import MetricsSyncJob
from app.services.monetization.orchestrator import AgentOrchestrator, JobOutcome
from app.services.monetization.rate_limit import TokenBucket
from app.services.monetization.sources import (
    HttpAnalyticsSource,
    PageMetrics,
    UnconfiguredMetricsSource,
    aggregate_report_rows,
    classify_channel,
    infer_page_type,
)
from tests.conftest import FakeMetricsSource


DAY1 = date(2026, 3, 1)
DAY2 = date(2026, 3, 2)
DAY3 = date(2026, 3, 3)


def _pages(n: int, views: int = 100) -> list[PageMetrics]:
    return [
        PageMetrics(page_url=f"/content/{i}", page_type="content", pageviews=views, ad_revenue=0.5)
        for i in range(n)
    ]


def _job(factory, source, job_cls=MetricsSyncJob, **kwargs) -> MetricsSyncJob:
    return job_cls(
        factory,
        source,
        rate_limiter=TokenBucket(capacity=100, refill_per_second=100.0),
        executor=BatchedExecutor(batch_size=1, delay_seconds=0),
        **kwargs,
    )


class BrokenStoreJob(MetricsSyncJob):
    """Fails page writes for the listed dates and pages (every write when both are empty)."""

    broken_dates: set[date] = set()
    broken_pages: set[str] = set()

    async def _store(self, metric_date: date, page: PageMetrics) -> None:
        everything = not self.broken_dates and not self.broken_pages
        if everything or metric_date in self.broken_dates or page.page_url in self.broken_pages:
            raise RuntimeError("disk full")
        await super()._store(metric_date, page)


async def _count(factory) -> int:
    async with factory() as db:
        return (await db.execute(select(func.count()).select_from(MonetizationMetric))).scalar_one()


# ---------------------------------------------------------------------------
# Sync job
# ---------------------------------------------------------------------------


class TestMetricsSyncJob:
    @pytest.mark.asyncio
    async def test_sync_single_date(self, session_factory):
        source = FakeMetricsSource(default=_pages(3))
        result = await _job(session_factory, source).sync(DAY1)

        assert result.pages_synced == 3
        assert result.dates_synced == [DAY1]
        assert result.dates_failed == []
        assert await _count(session_factory) == 3

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, session_factory):
        job = _job(session_factory, FakeMetricsSource(default=_pages(4)))
        await job.sync(DAY1)
        await job.sync(DAY1)
        assert await _count(session_factory) == 4

    @pytest.mark.asyncio
    async def test_resync_overwrites_values(self, session_factory):
        await _job(session_factory, FakeMetricsSource(default=_pages(1, views=100))).sync(DAY1)
        await _job(session_factory, FakeMetricsSource(default=_pages(1, views=250))).sync(DAY1)

        async with session_factory() as db:
            row = (await db.execute(select(MonetizationMetric))).scalars().one()
        assert row.pageviews == 250

    @pytest.mark.asyncio
    async def test_date_range_with_failed_date(self, session_factory):
        source = FakeMetricsSource(default=_pages(2), fail_dates={DAY2})
        result = await _job(session_factory, source).sync(DAY1, DAY3)

        assert result.dates_synced == [DAY1, DAY3]
        assert result.dates_failed == [DAY2]
        assert result.pages_synced == 4
        assert len(result.errors) == 1
        assert [call[0] for call in source.calls] == [DAY1, DAY2, DAY3]

    @pytest.mark.asyncio
    async def test_all_dates_failed_raises(self, session_factory):
        source = FakeMetricsSource(fail_dates={DAY1, DAY2})
        with pytest.raises(ExternalFetchError) as exc_info:
            await _job(session_factory, source).sync(DAY1, DAY2)
        assert exc_info.value.details["dates"] == ["2026-03-01", "2026-03-02"]

    @pytest.mark.asyncio
    async def test_every_page_write_failing_fails_the_sync(self, session_factory):
        with pytest.raises(PartialBatchFailure) as exc_info:
            await _job(
                session_factory, FakeMetricsSource(default=_pages(5)), job_cls=BrokenStoreJob
            ).sync(DAY1)

        assert exc_info.value.details["dates"] == ["2026-03-01"]
        assert exc_info.value.details["pages_failed"] == 5
        assert await _count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_date_without_stored_pages_is_failed(self, session_factory):
        job = _job(
            session_factory,
            FakeMetricsSource(default=_pages(2)),
            job_cls=BrokenStoreJob,
        )
        job.broken_dates = {DAY2}
        result = await job.sync(DAY1, DAY2)

        assert result.dates_synced == [DAY1]
        assert result.dates_failed == [DAY2]
        assert result.pages_synced == 2
        assert result.pages_failed == 2

    @pytest.mark.asyncio
    async def test_some_page_writes_failing_keeps_the_date(self, session_factory):
        job = _job(
            session_factory,
            FakeMetricsSource(default=_pages(3)),
            job_cls=BrokenStoreJob,
        )
        job.broken_pages = {"/content/0"}
        result = await job.sync(DAY1)

        assert result.dates_synced == [DAY1]
        assert result.pages_synced == 2
        assert result.pages_failed == 1
        assert await _count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_failed_writes_fail_the_tracked_run(self, session_factory):
        job = _job(session_factory, FakeMetricsSource(default=_pages(5)), job_cls=BrokenStoreJob)

        async def metrics_sync() -> JobOutcome:
            result = await job.sync(DAY1)
            return JobOutcome(items_processed=result.pages_synced)

        orchestrator = AgentOrchestrator(
            session_factory, jobs={RunType.METRICS_SYNC: metrics_sync}
        )
        summary = await orchestrator.trigger(RunType.METRICS_SYNC)

        assert summary.status == RunStatus.FAILED
        assert summary.items_processed == 0
        assert summary.error_details["error_type"] == "PartialBatchFailure"
        assert summary.error_details["details"]["pages_failed"] == 5

    @pytest.mark.asyncio
    async def test_fetch_timeout_counts_as_failed_date(self, session_factory):
        source = FakeMetricsSource(default=_pages(1), delay=0.2)
        with pytest.raises(ExternalFetchError):
            await _job(session_factory, source, fetch_timeout=0.01).sync(DAY1)
        assert await _count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_rate_limiter_acquired_per_date(self, session_factory):
        class CountingBucket(TokenBucket):
            acquired = 0

            async def acquire(self) -> None:
                CountingBucket.acquired += 1
                await super().acquire()

        job = MetricsSyncJob(
            session_factory,
            FakeMetricsSource(default=_pages(1)),
            rate_limiter=CountingBucket(capacity=10, refill_per_second=10.0),
            executor=BatchedExecutor(batch_size=1, delay_seconds=0),
        )
        await job.sync(DAY1, DAY3)
        assert CountingBucket.acquired == 3

    @pytest.mark.asyncio
    async def test_end_before_start_rejected(self, session_factory):
        with pytest.raises(ValueError):
            await _job(session_factory, FakeMetricsSource()).sync(DAY2, DAY1)

    @pytest.mark.asyncio
    async def test_unconfigured_source_fails(self, session_factory):
        with pytest.raises(ExternalFetchError):
            await _job(session_factory, UnconfiguredMetricsSource()).sync(DAY1)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class TestPageClassification:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/", "home"),
            ("", "home"),
            ("/content/abc", "content"),
            ("/category/hair", "category"),
            ("/search?q=hair", "search"),
            ("/creator/jane", "creator"),
            ("/blog/post", "blog"),
            ("/collections/summer", "collection"),
            ("/about", "other"),
        ],
    )
    def test_infer_page_type(self, path, expected):
        assert infer_page_type(path) == expected

    @pytest.mark.parametrize(
        "channel,expected",
        [
            ("Organic Search", "google"),
            ("Pinterest", "pinterest"),
            ("Direct", "direct"),
            ("Organic Social", "social"),
            ("Referral", "other"),
            ("search", "other"),
            ("Paid Search", "other"),
            ("(none)", "direct"),
            ("", "other"),
        ],
    )
    def test_classify_channel(self, channel, expected):
        assert classify_channel(channel) == expected


def _row(path: str, channel: str, views: int, users: int, bounce: float, time: float, revenue: float):
    return {
        "dimensionValues": [{"value": path}, {"value": channel}],
        "metricValues": [
            {"value": str(views)},
            {"value": str(users)},
            {"value": str(bounce)},
            {"value": str(time)},
            {"value": str(revenue)},
        ],
    }


class TestAggregation:
    def test_rows_folded_per_page(self):
        rows = [
            _row("/content/1", "Organic Search", 100, 80, 0.5, 60, 1.0),
            _row("/content/1", "Pinterest", 300, 200, 0.9, 20, 2.0),
            _row("/content/2", "Direct", 50, 40, 0.2, 100, 0.1),
        ]
        pages = {p.page_url: p for p in aggregate_report_rows(rows, {"/content/1": 7})}

        first = pages["/content/1"]
        assert first.pageviews == 400
        assert first.unique_visitors == 280
        assert first.traffic_google == 100
        assert first.traffic_pinterest == 300
        assert first.bounce_rate == pytest.approx((50 * 100 + 90 * 300) / 400)
        assert first.avg_time_on_page == pytest.approx((60 * 100 + 20 * 300) / 400)
        assert first.ad_revenue == pytest.approx(3.0)
        assert first.affiliate_clicks == 7
        assert pages["/content/2"].traffic_direct == 50

    @pytest.mark.asyncio
    async def test_http_source_runs_both_reports(self):
        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            requests.append(body)
            assert request.headers["Authorization"] == "Bearer secret"
            if "dimensionFilter" in body:
                return httpx.Response(
                    200,
                    json={"rows": [{"dimensionValues": [{"value": "/content/1"}], "metricValues": [{"value": "4"}]}]},
                )
            return httpx.Response(200, json={"rows": [_row("/content/1", "Organic Search", 120, 90, 0.4, 30, 0.6)]})

        source = HttpAnalyticsSource(
            "https://analytics.test", "secret", "123", transport=httpx.MockTransport(handler)
        )
        pages = await source.fetch_page_metrics(DAY1, DAY1)

        assert len(requests) == 2
        assert requests[0]["dateRanges"] == [{"startDate": "2026-03-01", "endDate": "2026-03-01"}]
        assert pages[0].pageviews == 120
        assert pages[0].affiliate_clicks == 4
        assert source.report_url == "https://analytics.test/v1beta/properties/123:runReport"

    @pytest.mark.asyncio
    async def test_http_error_becomes_external_fetch_error(self):
        source = HttpAnalyticsSource(
            "https://analytics.test",
            "secret",
            "123",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        with pytest.raises(ExternalFetchError):
            await source.fetch_page_metrics(DAY1, DAY1)
