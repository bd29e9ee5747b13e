"""External analytics sources for the metrics sync.

A source returns one :class:`PageMetrics` per page for a date range. The
HTTP source speaks the analytics provider's ``runReport`` API: rows keyed
by page path and channel group are aggregated per page, bounce rate and time
on page are pageview-weighted, and each row's pageviews are attributed to a
traffic channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

import httpx

from app.services.monetization.errors import ExternalFetchError
from app.settings import settings


TRAFFIC_CHANNELS: dict[str, tuple[str, ...]] = {
    "google": ("google", "organic search"),
    "pinterest": ("pinterest",),
    "direct": ("direct", "(direct)", "(none)"),
    "social": ("facebook", "twitter", "instagram", "tiktok", "reddit", "social"),
}

_PAGE_TYPE_PREFIXES: tuple[tuple[str, str], ...] = (
    ("/content/", "content"),
    ("/category/", "category"),
    ("/search", "search"),
    ("/creator/", "creator"),
    ("/blog/", "blog"),
    ("/collections/", "collection"),
)


@dataclass
class PageMetrics:
    page_url: str
    page_type: str = "other"
    pageviews: int = 0
    unique_visitors: int = 0
    bounce_rate: float = 0.0
    avg_time_on_page: float = 0.0
    traffic_google: int = 0
    traffic_pinterest: int = 0
    traffic_direct: int = 0
    traffic_social: int = 0
    traffic_other: int = 0
    affiliate_clicks: int = 0
    ad_revenue: float = 0.0
    affiliate_revenue: float = 0.0


class MetricsSource(Protocol):
    async def fetch_page_metrics(self, start: date, end: date) -> list[PageMetrics]:
        ...


def infer_page_type(path: str) -> str:
    if path in ("", "/"):
        return "home"
    for prefix, page_type in _PAGE_TYPE_PREFIXES:
        if path.startswith(prefix):
            return page_type
    return "other"


def classify_channel(channel: str) -> str:
    """Map a provider channel-group label to one of our traffic buckets."""
    channel = channel.strip().lower()
    if not channel:
        return "other"
    for bucket, keywords in TRAFFIC_CHANNELS.items():
        if any(keyword in channel for keyword in keywords):
            return bucket
    return "other"


def _metric(row: dict[str, Any], index: int) -> float:
    values = row.get("metricValues") or []
    if index >= len(values):
        return 0.0
    try:
        return float(values[index].get("value") or 0)
    except (TypeError, ValueError):
        return 0.0


def _dimension(row: dict[str, Any], index: int) -> str:
    values = row.get("dimensionValues") or []
    if index >= len(values):
        return ""
    return str(values[index].get("value") or "")


def aggregate_report_rows(
    rows: list[dict[str, Any]],
    affiliate_clicks: dict[str, int] | None = None,
) -> list[PageMetrics]:
    """Fold ``(pagePath, channelGroup)`` report rows into per-page metrics.

    Metric columns, in order: pageviews, users, bounce rate (0-1), average
    session duration (seconds), ad revenue.
    """
    pages: dict[str, PageMetrics] = {}

    for row in rows:
        path = _dimension(row, 0)
        channel = _dimension(row, 1)
        pageviews = int(_metric(row, 0))
        users = int(_metric(row, 1))
        bounce = _metric(row, 2) * 100
        avg_time = _metric(row, 3)
        ad_revenue = _metric(row, 4)

        entry = pages.get(path)
        if entry is None:
            entry = PageMetrics(page_url=path, page_type=infer_page_type(path))
            pages[path] = entry

        previous = entry.pageviews
        entry.pageviews += pageviews
        entry.unique_visitors += users
        entry.ad_revenue += ad_revenue
        if entry.pageviews > 0:
            entry.bounce_rate = (entry.bounce_rate * previous + bounce * pageviews) / entry.pageviews
            entry.avg_time_on_page = (
                entry.avg_time_on_page * previous + avg_time * pageviews
            ) / entry.pageviews

        bucket = classify_channel(channel)
        attr = f"traffic_{bucket}"
        setattr(entry, attr, getattr(entry, attr) + pageviews)

    for path, clicks in (affiliate_clicks or {}).items():
        if path in pages:
            pages[path].affiliate_clicks += clicks

    return list(pages.values())


# ---------------------------------------------------------------------------
# HTTP source
# ---------------------------------------------------------------------------


class HttpAnalyticsSource:
    """Fetches page metrics from the analytics provider over HTTPS.

    ``transport`` lets tests plug in an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        property_id: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.ANALYTICS_API_URL).rstrip("/")
        self.token = token if token is not None else settings.ANALYTICS_API_TOKEN
        self.property_id = property_id or settings.ANALYTICS_PROPERTY_ID
        self.timeout = timeout or settings.METRICS_FETCH_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def report_url(self) -> str:
        return f"{self.base_url}/v1beta/properties/{self.property_id}:runReport"

    async def _run_report(self, client: httpx.AsyncClient, body: dict[str, Any]) -> list[dict]:
        try:
            response = await client.post(self.report_url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalFetchError(
                f"Analytics report request failed: {exc}",
                details={"url": self.report_url, "error": str(exc)},
            ) from exc
        return response.json().get("rows") or []

    async def fetch_page_metrics(self, start: date, end: date) -> list[PageMetrics]:
        date_ranges = [{"startDate": start.isoformat(), "endDate": end.isoformat()}]
        headers = {"Authorization": f"Bearer {self.token}"}

        async with httpx.AsyncClient(
            headers=headers, timeout=self.timeout, transport=self._transport
        ) as client:
            rows = await self._run_report(
                client,
                {
                    "dateRanges": date_ranges,
                    "dimensions": [{"name": "pagePath"}, {"name": "sessionDefaultChannelGroup"}],
                    "metrics": [
                        {"name": "screenPageViews"},
                        {"name": "totalUsers"},
                        {"name": "bounceRate"},
                        {"name": "averageSessionDuration"},
                        {"name": "totalAdRevenue"},
                    ],
                },
            )
            click_rows = await self._run_report(
                client,
                {
                    "dateRanges": date_ranges,
                    "dimensions": [{"name": "pagePath"}],
                    "metrics": [{"name": "eventCount"}],
                    "dimensionFilter": {
                        "filter": {
                            "fieldName": "eventName",
                            "stringFilter": {"value": "affiliate_click"},
                        }
                    },
                },
            )

        clicks: dict[str, int] = {}
        for row in click_rows:
            path = _dimension(row, 0)
            clicks[path] = clicks.get(path, 0) + int(_metric(row, 0))
        return aggregate_report_rows(rows, clicks)


class UnconfiguredMetricsSource:
    """Placeholder used when no analytics credentials are configured."""

    async def fetch_page_metrics(self, start: date, end: date) -> list[PageMetrics]:
        raise ExternalFetchError(
            "Analytics source is not configured",
            details={"missing": ["ANALYTICS_API_URL", "ANALYTICS_API_TOKEN", "ANALYTICS_PROPERTY_ID"]},
        )


def build_default_source() -> MetricsSource:
    if settings.ANALYTICS_API_URL and settings.ANALYTICS_API_TOKEN and settings.ANALYTICS_PROPERTY_ID:
        return HttpAnalyticsSource()
    return UnconfiguredMetricsSource()
