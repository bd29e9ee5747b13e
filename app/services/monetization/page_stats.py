"""Per-page aggregates over a window of ``monetization_metrics`` rows.

Both the opportunity scanner and the RPM analysis read metrics through
these helpers; nothing here writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import MonetizationMetric


@dataclass
class DailyPoint:
    metric_date: date
    pageviews: int
    ad_revenue: float


@dataclass
class PageSummary:
    page_url: str
    page_type: str = "other"
    pageviews: int = 0
    unique_visitors: int = 0
    affiliate_clicks: int = 0
    ad_revenue: float = 0.0
    affiliate_revenue: float = 0.0
    bounce_rate: float = 0.0
    avg_time_on_page: float = 0.0
    traffic_google: int = 0
    traffic_pinterest: int = 0
    traffic_direct: int = 0
    traffic_social: int = 0
    traffic_other: int = 0
    daily: list[DailyPoint] = field(default_factory=list)

    @property
    def rpm(self) -> float:
        """Ad revenue per thousand pageviews."""
        if self.pageviews <= 0:
            return 0.0
        return self.ad_revenue / self.pageviews * 1000

    @property
    def click_rate(self) -> float:
        if self.pageviews <= 0:
            return 0.0
        return self.affiliate_clicks / self.pageviews

    @property
    def pinterest_share(self) -> float:
        if self.pageviews <= 0:
            return 0.0
        return self.traffic_pinterest / self.pageviews


def summarize(rows: list[MonetizationMetric]) -> list[PageSummary]:
    """Fold daily rows into one summary per page, highest traffic first."""
    pages: dict[str, PageSummary] = {}
    for row in rows:
        summary = pages.get(row.page_url)
        if summary is None:
            summary = PageSummary(page_url=row.page_url, page_type=row.page_type)
            pages[row.page_url] = summary

        views = int(row.pageviews or 0)
        previous = summary.pageviews
        summary.pageviews += views
        summary.unique_visitors += int(row.unique_visitors or 0)
        summary.affiliate_clicks += int(row.affiliate_clicks or 0)
        summary.ad_revenue += float(row.ad_revenue or 0)
        summary.affiliate_revenue += float(row.affiliate_revenue or 0)
        summary.traffic_google += int(row.traffic_google or 0)
        summary.traffic_pinterest += int(row.traffic_pinterest or 0)
        summary.traffic_direct += int(row.traffic_direct or 0)
        summary.traffic_social += int(row.traffic_social or 0)
        summary.traffic_other += int(row.traffic_other or 0)
        if summary.pageviews > 0:
            summary.bounce_rate = (
                summary.bounce_rate * previous + float(row.bounce_rate or 0) * views
            ) / summary.pageviews
            summary.avg_time_on_page = (
                summary.avg_time_on_page * previous + float(row.avg_time_on_page or 0) * views
            ) / summary.pageviews
        summary.daily.append(
            DailyPoint(
                metric_date=row.metric_date,
                pageviews=views,
                ad_revenue=float(row.ad_revenue or 0),
            )
        )

    for summary in pages.values():
        summary.daily.sort(key=lambda point: point.metric_date)
    return sorted(pages.values(), key=lambda s: s.pageviews, reverse=True)


async def load_page_summaries(
    db: AsyncSession, start: date, end: date
) -> list[PageSummary]:
    result = await db.execute(
        select(MonetizationMetric).where(
            MonetizationMetric.metric_date >= start,
            MonetizationMetric.metric_date <= end,
        )
    )
    return summarize(list(result.scalars().all()))


def site_rpm(pages: list[PageSummary]) -> float:
    views = sum(p.pageviews for p in pages)
    if views <= 0:
        return 0.0
    return sum(p.ad_revenue for p in pages) / views * 1000
