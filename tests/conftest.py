from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401  -- ensure all models are registered
from app.db import Base
from app.models import MonetizationMetric
from app.services.monetization.action_queue import ActionDraft, OpportunityDraft
from app.services.monetization.sources import PageMetrics


# ---------------------------------------------------------------------------
# Async test DB
# ---------------------------------------------------------------------------


def setup_async_test_db():
    """Create an in-memory async SQLite engine and session factory."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingAsyncSession = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False
    )
    return engine, TestingAsyncSession


@pytest.fixture
async def session_factory():
    engine, SessionFactory = setup_async_test_db()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionFactory
    await engine.dispose()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_draft(**overrides) -> OpportunityDraft:
    defaults = dict(
        opportunity_type="affiliate_placement",
        title="Add affiliate links",
        description="Test opportunity",
        priority=5,
        confidence=0.7,
        estimated_revenue_impact=10.0,
        page_url=None,
    )
    defaults.update(overrides)
    return OpportunityDraft(**defaults)


def make_actions(count: int = 1) -> list[ActionDraft]:
    return [
        ActionDraft(action_type="add_affiliate_link", action_data={"index": i})
        for i in range(count)
    ]


def make_metric(
    metric_date: date,
    page_url: str = "/content/1",
    *,
    page_type: str = "content",
    pageviews: int = 100,
    ad_revenue: float = 1.0,
    affiliate_revenue: float = 0.0,
    **fields,
) -> MonetizationMetric:
    return MonetizationMetric(
        metric_date=metric_date,
        page_url=page_url,
        page_type=page_type,
        pageviews=pageviews,
        ad_revenue=ad_revenue,
        affiliate_revenue=affiliate_revenue,
        synced_at=datetime.now(timezone.utc),
        **fields,
    )


async def add_metrics(factory, rows: list[MonetizationMetric]) -> None:
    async with factory() as db:
        db.add_all(rows)
        await db.commit()


# ---------------------------------------------------------------------------
# Fake metrics source
# ---------------------------------------------------------------------------


class FakeMetricsSource:
    """Returns canned pages per date; dates listed in ``fail_dates`` raise."""

    def __init__(
        self,
        pages: dict[date, list[PageMetrics]] | None = None,
        *,
        default: list[PageMetrics] | None = None,
        fail_dates: set[date] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.pages = pages or {}
        self.default = default or []
        self.fail_dates = fail_dates or set()
        self.error = error or RuntimeError("provider unavailable")
        self.delay = delay
        self.calls: list[tuple[date, date]] = []

    async def fetch_page_metrics(self, start: date, end: date) -> list[PageMetrics]:
        self.calls.append((start, end))
        if self.delay:
            await asyncio.sleep(self.delay)
        if start in self.fail_dates:
            raise self.error
        return list(self.pages.get(start, self.default))
