"""Opportunity detectors: pluggable detector registries."""

from app.services.monetization.detectors.affiliate import (
    BuyerIntentDetector,
    PinterestHeavyDetector,
    UnmonetizedCollectionDetector,
    UntappedTrafficDetector,
)
from app.services.monetization.detectors.base import (
    BaseDetector,
    ContentSnapshot,
    DetectionContext,
    DetectorHit,
    DetectorRegistry,
)
from app.services.monetization.detectors.yield_detectors import (
    HighBounceDetector,
    LowYieldDetector,
    TrafficSpikeDetector,
)
from app.settings import settings

__all__ = [
    "BaseDetector",
    "BuyerIntentDetector",
    "ContentSnapshot",
    "DetectionContext",
    "DetectorHit",
    "DetectorRegistry",
    "HighBounceDetector",
    "LowYieldDetector",
    "PinterestHeavyDetector",
    "TrafficSpikeDetector",
    "UnmonetizedCollectionDetector",
    "UntappedTrafficDetector",
    "build_scan_registry",
    "build_yield_registry",
]


def build_scan_registry() -> DetectorRegistry:
    """Detectors run by the opportunity scanner."""
    registry = DetectorRegistry()
    registry.register(UntappedTrafficDetector())
    registry.register(BuyerIntentDetector())
    registry.register(PinterestHeavyDetector())
    registry.register(UnmonetizedCollectionDetector())
    return registry


def build_yield_registry() -> DetectorRegistry:
    """Detectors run by the RPM analysis."""
    registry = DetectorRegistry()
    registry.register(
        LowYieldDetector(
            low_percentile=settings.RPM_LOW_PERCENTILE,
            min_pageviews=settings.RPM_MIN_PAGEVIEWS,
        )
    )
    registry.register(TrafficSpikeDetector(recent_days=settings.RPM_SPIKE_WINDOW_DAYS))
    registry.register(HighBounceDetector(min_pageviews=settings.RPM_MIN_PAGEVIEWS))
    return registry
