"""Affiliate placement detectors used by the opportunity scanner.

Revenue estimates assume a 3% click-through on an added affiliate link, a
5% conversion on those clicks and a $20 average order at 7% commission.
"""

from __future__ import annotations

import math

from app.models import ActionType, OpportunityType
from app.services.monetization.action_queue import ActionDraft
from app.services.monetization.detectors.base import (
    BaseDetector,
    DetectionContext,
    DetectorHit,
    clamp_priority,
)

BUYER_INTENT_KEYWORDS = (
    # premium content
    "patreon",
    "exclusive",
    "premium",
    "early access",
    "supporter",
    # purchase language
    "download",
    "get it",
    "grab it",
    "available now",
    # quality
    "high quality",
    "detailed",
    # bundles
    "collection",
    "bundle",
    "pack",
    "complete",
    # creator support
    "support",
    "tip jar",
    "ko-fi",
    "buy me a coffee",
)

AFFILIATE_PROGRAMS = {
    "patreon": {"name": "Patreon", "commission": 0.08, "recurring": True},
    "curseforge": {"name": "CurseForge", "commission": 0.05, "recurring": False},
    "tsr": {"name": "The Sims Resource", "commission": 0.10, "recurring": True},
}

EXPECTED_CTR = 0.03
EXPECTED_CONVERSION = 0.05
AVERAGE_ORDER_VALUE = 20.0
COMMISSION_RATE = 0.07


def estimate_affiliate_revenue(pageviews: int) -> float:
    """Monthly revenue an affiliate link on a page with *pageviews* could earn."""
    return round(
        pageviews * EXPECTED_CTR * EXPECTED_CONVERSION * AVERAGE_ORDER_VALUE * COMMISSION_RATE, 2
    )


def intent_signals(text: str) -> list[str]:
    lowered = text.lower()
    return [keyword for keyword in BUYER_INTENT_KEYWORDS if keyword in lowered]


def suggest_programs(text: str) -> list[str]:
    lowered = text.lower()
    programs = [key for key in ("patreon", "curseforge") if key in lowered]
    if "tsr" in lowered or "sims resource" in lowered:
        programs.append("tsr")
    return programs or ["patreon", "curseforge"]


# ---------------------------------------------------------------------------


class UntappedTrafficDetector(BaseDetector):
    """High-traffic pages that barely produce affiliate clicks."""

    name = "untapped_traffic"
    description = "High-traffic pages with almost no affiliate clicks"

    def __init__(self, *, min_pageviews: int = 100, max_clicks: int = 5) -> None:
        self.min_pageviews = min_pageviews
        self.max_clicks = max_clicks

    def check_preconditions(self, ctx: DetectionContext) -> tuple[bool, str]:
        if not ctx.pages:
            return False, "No page metrics in window"
        return True, ""

    def detect(self, ctx: DetectionContext) -> list[DetectorHit]:
        titles = {item.page_url: item for item in ctx.content}
        hits: list[DetectorHit] = []
        for page in ctx.pages:
            if page.pageviews < self.min_pageviews or page.affiliate_clicks >= self.max_clicks:
                continue
            item = titles.get(page.page_url)
            label = item.title if item else page.page_url
            impact = estimate_affiliate_revenue(page.pageviews)
            text = " ".join(filter(None, [item.description, item.source] if item else []))
            hits.append(
                DetectorHit(
                    detector=self.name,
                    opportunity_type=OpportunityType.AFFILIATE_PLACEMENT,
                    title=f'Add affiliate links to "{label}"',
                    description=(
                        f"This page had {page.pageviews} pageviews but only "
                        f"{page.affiliate_clicks} affiliate clicks. Adding affiliate links "
                        f"could earn about ${impact:.2f}/month."
                    ),
                    confidence=min(0.9, 0.5 + page.pageviews / 1000 * 0.1),
                    priority=clamp_priority(math.ceil(page.pageviews / 100)),
                    estimated_revenue_impact=impact,
                    page_url=page.page_url,
                    subject_id=item.id if item else None,
                    category=item.category if item else page.page_type,
                    actions=[
                        ActionDraft(
                            action_type=ActionType.ADD_AFFILIATE_LINK,
                            action_data={
                                "page_url": page.page_url,
                                "suggested_programs": suggest_programs(text),
                                "placement": "below_description",
                            },
                        )
                    ],
                )
            )
        return hits


class BuyerIntentDetector(BaseDetector):
    """Content whose copy signals purchase intent but whose page converts poorly."""

    name = "buyer_intent"
    description = "Content with buyer-intent language and weak affiliate click-through"

    def __init__(self, *, min_signals: int = 2, max_click_rate: float = 0.05) -> None:
        self.min_signals = min_signals
        self.max_click_rate = max_click_rate

    def check_preconditions(self, ctx: DetectionContext) -> tuple[bool, str]:
        if not ctx.content:
            return False, "No content records"
        return True, ""

    def detect(self, ctx: DetectionContext) -> list[DetectorHit]:
        hits: list[DetectorHit] = []
        for item in ctx.content:
            text = " ".join(filter(None, [item.title, item.description, item.source]))
            signals = intent_signals(text)
            if len(signals) < self.min_signals:
                continue
            page = ctx.page(item.page_url)
            if page is not None and page.click_rate > self.max_click_rate:
                continue
            pageviews = page.pageviews if page else 0
            hits.append(
                DetectorHit(
                    detector=self.name,
                    opportunity_type=OpportunityType.AFFILIATE_PLACEMENT,
                    title=f'Optimize affiliate placement for "{item.title}"',
                    description=(
                        f"This content shows {len(signals)} buyer intent signals. "
                        "Better affiliate placement could improve conversion."
                    ),
                    confidence=min(0.85, 0.4 + 0.1 * len(signals)),
                    priority=clamp_priority(3 + len(signals)),
                    estimated_revenue_impact=estimate_affiliate_revenue(pageviews) if page else None,
                    page_url=item.page_url,
                    subject_id=item.id,
                    category=item.category,
                    actions=[
                        ActionDraft(
                            action_type=ActionType.ADD_AFFILIATE_LINK,
                            action_data={
                                "page_url": item.page_url,
                                "intent_signals": signals,
                                "suggested_programs": suggest_programs(text),
                                "placement": "download_button_adjacent",
                            },
                        )
                    ],
                )
            )
        return hits


class PinterestHeavyDetector(BaseDetector):
    """Pages whose traffic is dominated by Pinterest."""

    name = "pinterest_heavy"
    description = "Pages where Pinterest drives most traffic"

    def __init__(self, *, min_share: float = 0.4, min_pinterest_views: int = 50) -> None:
        self.min_share = min_share
        self.min_pinterest_views = min_pinterest_views

    def check_preconditions(self, ctx: DetectionContext) -> tuple[bool, str]:
        if not any(p.traffic_pinterest for p in ctx.pages):
            return False, "No Pinterest traffic in window"
        return True, ""

    def detect(self, ctx: DetectionContext) -> list[DetectorHit]:
        hits: list[DetectorHit] = []
        for page in ctx.pages:
            if page.traffic_pinterest < self.min_pinterest_views:
                continue
            share = page.pinterest_share
            if share <= self.min_share:
                continue
            hits.append(
                DetectorHit(
                    detector=self.name,
                    opportunity_type=OpportunityType.TRAFFIC_SOURCE_OPTIMIZATION,
                    title=f"Optimize {page.page_url} for Pinterest traffic",
                    description=(
                        f"{share * 100:.0f}% of traffic comes from Pinterest. Visual, "
                        "aesthetic-focused recommendations tend to convert better there."
                    ),
                    confidence=0.7,
                    priority=6,
                    estimated_revenue_impact=estimate_affiliate_revenue(page.traffic_pinterest),
                    page_url=page.page_url,
                    category=page.page_type,
                    actions=[
                        ActionDraft(
                            action_type=ActionType.OPTIMIZE_SEO,
                            action_data={
                                "page_url": page.page_url,
                                "channel": "pinterest",
                                "pinterest_share": round(share, 4),
                                "recommendations": ["rich_pins", "vertical_images", "visual_affiliate_cards"],
                            },
                        )
                    ],
                )
            )
        return hits


class UnmonetizedCollectionDetector(BaseDetector):
    """Category and search pages with traffic but few affiliate clicks."""

    name = "unmonetized_collection"
    description = "Collection pages with low affiliate click rate"

    page_types = ("category", "search", "collection")

    def __init__(self, *, min_pageviews: int = 200, max_click_rate: float = 0.02) -> None:
        self.min_pageviews = min_pageviews
        self.max_click_rate = max_click_rate

    def check_preconditions(self, ctx: DetectionContext) -> tuple[bool, str]:
        if not any(p.page_type in self.page_types for p in ctx.pages):
            return False, "No collection pages in window"
        return True, ""

    def detect(self, ctx: DetectionContext) -> list[DetectorHit]:
        hits: list[DetectorHit] = []
        for page in ctx.pages:
            if page.page_type not in self.page_types:
                continue
            if page.pageviews <= self.min_pageviews or page.click_rate >= self.max_click_rate:
                continue
            hits.append(
                DetectorHit(
                    detector=self.name,
                    opportunity_type=OpportunityType.AFFILIATE_PLACEMENT,
                    title="Add affiliate recommendations to collection page",
                    description=(
                        f"{page.page_url} has {page.pageviews} pageviews but only a "
                        f"{page.click_rate * 100:.1f}% click rate. A curated affiliate "
                        "section could improve monetization."
                    ),
                    confidence=0.65,
                    priority=clamp_priority(math.ceil(page.pageviews / 200)),
                    estimated_revenue_impact=estimate_affiliate_revenue(page.pageviews),
                    page_url=page.page_url,
                    category=page.page_type,
                    actions=[
                        ActionDraft(
                            action_type=ActionType.CREATE_COLLECTION,
                            action_data={
                                "page_url": page.page_url,
                                "section": "curated_affiliate_picks",
                                "click_rate": round(page.click_rate, 4),
                            },
                        )
                    ],
                )
            )
        return hits
