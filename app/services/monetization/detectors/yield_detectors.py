"""Ad-yield detectors used by the RPM analysis job.

RPM is ad revenue per thousand pageviews. Estimated impacts are monthly
revenue deltas, assuming the window covers roughly a month of traffic.
"""

from __future__ import annotations

import math
from datetime import timedelta

from app.models import ActionType, OpportunityType
from app.services.monetization.action_queue import ActionDraft
from app.services.monetization.detectors.base import (
    BaseDetector,
    DetectionContext,
    DetectorHit,
    clamp_priority,
)
from app.services.monetization.page_stats import PageSummary


def percentile(values: list[float], pct: float) -> float:
    """Linear-interpolated percentile, *pct* in 0–100."""
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    rank = (len(ordered) - 1) * max(0.0, min(100.0, pct)) / 100
    low = math.floor(rank)
    high = math.ceil(rank)
    if low == high:
        return ordered[low]
    return ordered[low] + (ordered[high] - ordered[low]) * (rank - low)


def _impact_priority(impact: float) -> int:
    return clamp_priority(max(1, min(9, math.ceil(impact / 10))))


class LowYieldDetector(BaseDetector):
    """Pages earning in the bottom percentile of RPM."""

    name = "low_yield"
    description = "Pages whose RPM sits below the site's low percentile"

    def __init__(self, *, low_percentile: float = 25.0, min_pageviews: int = 100) -> None:
        self.low_percentile = low_percentile
        self.min_pageviews = min_pageviews

    def _eligible(self, ctx: DetectionContext) -> list[PageSummary]:
        return [p for p in ctx.pages if p.pageviews >= self.min_pageviews]

    def check_preconditions(self, ctx: DetectionContext) -> tuple[bool, str]:
        if len(self._eligible(ctx)) < 2:
            return False, "Not enough pages with traffic to rank RPM"
        if ctx.site_rpm <= 0:
            return False, "No ad revenue in window"
        return True, ""

    def detect(self, ctx: DetectionContext) -> list[DetectorHit]:
        pages = self._eligible(ctx)
        threshold = percentile([p.rpm for p in pages], self.low_percentile)
        hits: list[DetectorHit] = []
        for page in pages:
            rpm = page.rpm
            if rpm >= threshold or rpm >= ctx.site_rpm:
                continue
            impact = round((ctx.site_rpm - rpm) * page.pageviews / 1000, 2)
            hits.append(
                DetectorHit(
                    detector=self.name,
                    opportunity_type=OpportunityType.AD_LAYOUT_OPTIMIZATION,
                    title=f"Improve ad yield on {page.page_url}",
                    description=(
                        f"RPM of ${rpm:.2f} is below the {self.low_percentile:.0f}th percentile "
                        f"(${threshold:.2f}) and the site average of ${ctx.site_rpm:.2f} "
                        f"across {page.pageviews} pageviews."
                    ),
                    confidence=0.75,
                    priority=_impact_priority(impact),
                    estimated_revenue_impact=impact,
                    page_url=page.page_url,
                    category=page.page_type,
                    actions=[
                        ActionDraft(
                            action_type=ActionType.UPDATE_AD_PLACEMENT,
                            action_data={
                                "page_url": page.page_url,
                                "current_rpm": round(rpm, 4),
                                "target_rpm": round(ctx.site_rpm, 4),
                                "suggestions": ["add_in_content_unit", "move_unit_above_fold"],
                            },
                        )
                    ],
                )
            )
        return hits


class TrafficSpikeDetector(BaseDetector):
    """Pages whose traffic jumped recently while RPM did not follow."""

    name = "traffic_spike"
    description = "Recent traffic spike without a matching yield increase"

    def __init__(
        self,
        *,
        recent_days: int = 7,
        spike_ratio: float = 1.5,
        min_rpm_lift: float = 0.10,
        min_recent_pageviews: int = 100,
    ) -> None:
        self.recent_days = recent_days
        self.spike_ratio = spike_ratio
        self.min_rpm_lift = min_rpm_lift
        self.min_recent_pageviews = min_recent_pageviews

    def check_preconditions(self, ctx: DetectionContext) -> tuple[bool, str]:
        window_days = (ctx.window_end - ctx.window_start).days + 1
        if window_days <= self.recent_days:
            return False, "Window too short to compare against earlier traffic"
        return True, ""

    def detect(self, ctx: DetectionContext) -> list[DetectorHit]:
        cutoff = ctx.window_end - timedelta(days=self.recent_days)
        earlier_days = (cutoff - ctx.window_start).days + 1
        hits: list[DetectorHit] = []

        for page in ctx.pages:
            recent = [d for d in page.daily if d.metric_date > cutoff]
            earlier = [d for d in page.daily if d.metric_date <= cutoff]
            recent_views = sum(d.pageviews for d in recent)
            earlier_views = sum(d.pageviews for d in earlier)
            if recent_views < self.min_recent_pageviews or earlier_views <= 0:
                continue

            recent_avg = recent_views / self.recent_days
            earlier_avg = earlier_views / earlier_days
            ratio = recent_avg / earlier_avg
            if ratio < self.spike_ratio:
                continue

            recent_rpm = sum(d.ad_revenue for d in recent) / recent_views * 1000
            earlier_rpm = sum(d.ad_revenue for d in earlier) / earlier_views * 1000
            if earlier_rpm > 0 and recent_rpm >= earlier_rpm * (1 + self.min_rpm_lift):
                continue

            reference_rpm = max(ctx.site_rpm, earlier_rpm, recent_rpm)
            impact = round(recent_avg * 30 / 1000 * reference_rpm * 0.2, 2)
            hits.append(
                DetectorHit(
                    detector=self.name,
                    opportunity_type=OpportunityType.AD_LAYOUT_OPTIMIZATION,
                    title=f"Capture spike traffic on {page.page_url}",
                    description=(
                        f"Daily pageviews rose {ratio:.1f}x over the last {self.recent_days} days "
                        f"but RPM moved from ${earlier_rpm:.2f} to ${recent_rpm:.2f}."
                    ),
                    confidence=round(min(0.85, 0.6 + (ratio - self.spike_ratio) * 0.1), 4),
                    priority=clamp_priority(max(_impact_priority(impact), 6)),
                    estimated_revenue_impact=impact,
                    page_url=page.page_url,
                    category=page.page_type,
                    actions=[
                        ActionDraft(
                            action_type=ActionType.UPDATE_AD_PLACEMENT,
                            action_data={
                                "page_url": page.page_url,
                                "traffic_ratio": round(ratio, 2),
                                "recent_rpm": round(recent_rpm, 4),
                                "earlier_rpm": round(earlier_rpm, 4),
                                "suggestions": ["enable_sticky_unit", "add_in_content_unit"],
                            },
                        )
                    ],
                )
            )
        return hits


class HighBounceDetector(BaseDetector):
    """Busy pages most visitors leave immediately."""

    name = "high_bounce"
    description = "High-traffic pages with bounce rate above threshold"

    def __init__(self, *, max_bounce_rate: float = 70.0, min_pageviews: int = 100) -> None:
        self.max_bounce_rate = max_bounce_rate
        self.min_pageviews = min_pageviews

    def check_preconditions(self, ctx: DetectionContext) -> tuple[bool, str]:
        if not ctx.pages:
            return False, "No page metrics in window"
        return True, ""

    def detect(self, ctx: DetectionContext) -> list[DetectorHit]:
        hits: list[DetectorHit] = []
        for page in ctx.pages:
            if page.pageviews < self.min_pageviews or page.bounce_rate <= self.max_bounce_rate:
                continue
            impact = round(page.pageviews / 1000 * max(ctx.site_rpm, page.rpm) * 0.1, 2)
            hits.append(
                DetectorHit(
                    detector=self.name,
                    opportunity_type=OpportunityType.CONTENT_EXPANSION,
                    title=f"Reduce bounce rate on {page.page_url}",
                    description=(
                        f"{page.bounce_rate:.0f}% of {page.pageviews} visits bounce. More related "
                        "content would keep readers on site for additional ad impressions."
                    ),
                    confidence=0.65,
                    priority=4,
                    estimated_revenue_impact=impact,
                    page_url=page.page_url,
                    category=page.page_type,
                    actions=[
                        ActionDraft(
                            action_type=ActionType.EXPAND_CONTENT,
                            action_data={
                                "page_url": page.page_url,
                                "bounce_rate": round(page.bounce_rate, 2),
                                "suggestions": ["related_content_block", "internal_links"],
                            },
                        )
                    ],
                )
            )
        return hits
