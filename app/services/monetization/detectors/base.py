"""Base abstractions for pluggable opportunity detectors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date

from app.services.monetization.action_queue import ActionDraft, OpportunityDraft
from app.services.monetization.page_stats import PageSummary


@dataclass(frozen=True)
class ContentSnapshot:
    """The parts of a content record detectors look at."""

    id: str
    title: str
    page_url: str
    description: str = ""
    author: str | None = None
    source: str | None = None
    category: str | None = None


@dataclass(frozen=True)
class DetectionContext:
    """Immutable snapshot a detector evaluates."""

    window_start: date
    window_end: date
    pages: list[PageSummary] = field(default_factory=list)
    content: list[ContentSnapshot] = field(default_factory=list)
    site_rpm: float = 0.0

    def page(self, page_url: str) -> PageSummary | None:
        for summary in self.pages:
            if summary.page_url == page_url:
                return summary
        return None


@dataclass(frozen=True)
class DetectorHit:
    """A finding that may become an opportunity."""

    detector: str
    opportunity_type: str
    title: str
    confidence: float  # 0.0–1.0
    priority: int  # 0–10, higher first
    actions: list[ActionDraft]
    description: str = ""
    estimated_revenue_impact: float | None = None
    page_url: str | None = None
    subject_id: str | None = None
    category: str | None = None

    def to_draft(self) -> OpportunityDraft:
        return OpportunityDraft(
            opportunity_type=self.opportunity_type,
            title=self.title,
            description=self.description,
            priority=self.priority,
            confidence=self.confidence,
            estimated_revenue_impact=self.estimated_revenue_impact,
            page_url=self.page_url,
            subject_id=self.subject_id,
            category=self.category,
        )


class BaseDetector(ABC):
    """Abstract base for all detectors.

    Subclasses must implement ``check_preconditions`` and ``detect``.
    """

    name: str = ""
    description: str = ""

    @abstractmethod
    def check_preconditions(self, ctx: DetectionContext) -> tuple[bool, str]:
        """Return ``(ok, reason)``.  If ``ok`` is False the detector is skipped."""
        ...

    @abstractmethod
    def detect(self, ctx: DetectionContext) -> list[DetectorHit]:
        ...


class DetectorRegistry:
    def __init__(self) -> None:
        self._detectors: dict[str, BaseDetector] = {}

    def register(self, detector: BaseDetector) -> None:
        """Register a detector.  Overwrites one with the same name."""
        self._detectors[detector.name] = detector

    def get(self, name: str) -> BaseDetector | None:
        return self._detectors.get(name)

    def list_detectors(self) -> list[BaseDetector]:
        return list(self._detectors.values())

    def detect_all(self, ctx: DetectionContext) -> list[DetectorHit]:
        hits: list[DetectorHit] = []
        for detector in self._detectors.values():
            ok, _reason = detector.check_preconditions(ctx)
            if not ok:
                continue
            hits.extend(detector.detect(ctx))
        return hits


def clamp_priority(value: float) -> int:
    return max(0, min(10, int(value)))
