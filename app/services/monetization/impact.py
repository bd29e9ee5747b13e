"""Impact tracker: measures what executed actions actually changed.

Executing an action opens a measurement for its opportunity's page. The
metric and both window lengths depend on the action type. The baseline
window ends on the day the action executed and the measurement window starts
on that day. Once the measurement window has elapsed, ``process_pending``
compares per-day averages of the two windows. It also extrapolates the
change in daily revenue to a month, which is scored against the
opportunity's estimated impact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import (
    Action,
    ActionStatus,
    ActionType,
    ImpactMeasurement,
    MeasurementStatus,
    MonetizationMetric,
    Opportunity,
)

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class MeasurementConfig:
    measurement_type: str
    measurement_window: int
    baseline_window: int


MEASUREMENT_CONFIG: dict[str, MeasurementConfig] = {
    ActionType.ADD_AFFILIATE_LINK: MeasurementConfig("affiliate_clicks", 14, 14),
    # Search rankings move slowly.
    ActionType.OPTIMIZE_SEO: MeasurementConfig("traffic", 21, 14),
    ActionType.CREATE_COLLECTION: MeasurementConfig("pageviews", 7, 7),
    ActionType.UPDATE_AD_PLACEMENT: MeasurementConfig("rpm", 14, 14),
}
DEFAULT_CONFIG = MeasurementConfig("revenue", 14, 14)

MEASUREMENT_TYPES = ("affiliate_clicks", "traffic", "pageviews", "rpm", "revenue")


def measurement_config(action_type: str) -> MeasurementConfig:
    return MEASUREMENT_CONFIG.get(action_type, DEFAULT_CONFIG)


def calculate_impact(baseline: float, measured: float) -> tuple[float, float]:
    """Absolute and percent change from *baseline* to *measured*."""
    absolute = measured - baseline
    percent = absolute / baseline * 100 if baseline else 0.0
    return absolute, percent


def prediction_score(estimated: float, actual: float) -> tuple[float | None, float | None]:
    """Relative error of an estimate and the matching accuracy (0 to 1).

    Both are None when there was no estimate to score.
    """
    if not estimated:
        return None, None
    error = (actual - estimated) / estimated
    return error, max(0.0, 1 - abs(error))


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Window aggregation
# ---------------------------------------------------------------------------


@dataclass
class WindowStats:
    """Sums over the daily metric rows of one page in a date window."""

    days: int = 0
    pageviews: float = 0.0
    traffic_google: float = 0.0
    affiliate_clicks: float = 0.0
    ad_revenue: float = 0.0
    affiliate_revenue: float = 0.0

    def _per_day(self, total: float) -> float:
        return total / self.days if self.days else 0.0

    @property
    def daily_revenue(self) -> float:
        return self._per_day(self.ad_revenue + self.affiliate_revenue)

    def value(self, measurement_type: str) -> float:
        if measurement_type not in MEASUREMENT_TYPES:
            raise ValueError(f"Unknown measurement type '{measurement_type}'")
        if measurement_type == "rpm":
            return self.ad_revenue / self.pageviews * 1000 if self.pageviews else 0.0
        if measurement_type == "traffic":
            return self._per_day(self.traffic_google)
        if measurement_type == "pageviews":
            return self._per_day(self.pageviews)
        if measurement_type == "affiliate_clicks":
            return self._per_day(self.affiliate_clicks)
        return self.daily_revenue


async def window_stats(
    db: AsyncSession, page_url: str | None, start: date, end: date
) -> WindowStats:
    """Aggregate ``[start, end)`` for *page_url*."""
    if not page_url:
        return WindowStats()
    row = (
        await db.execute(
            select(
                func.count(),
                func.coalesce(func.sum(MonetizationMetric.pageviews), 0),
                func.coalesce(func.sum(MonetizationMetric.traffic_google), 0),
                func.coalesce(func.sum(MonetizationMetric.affiliate_clicks), 0),
                func.coalesce(func.sum(MonetizationMetric.ad_revenue), 0.0),
                func.coalesce(func.sum(MonetizationMetric.affiliate_revenue), 0.0),
            ).where(
                MonetizationMetric.page_url == page_url,
                MonetizationMetric.metric_date >= start,
                MonetizationMetric.metric_date < end,
            )
        )
    ).one()
    days, pageviews, google, clicks, ad_revenue, affiliate_revenue = row
    return WindowStats(
        days=int(days),
        pageviews=float(pageviews),
        traffic_google=float(google),
        affiliate_clicks=float(clicks),
        ad_revenue=float(ad_revenue),
        affiliate_revenue=float(affiliate_revenue),
    )


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ImpactProcessingResult:
    processed: int = 0
    completed: int = 0
    inconclusive: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ActionTypeImpact:
    action_type: str
    count: int
    avg_accuracy: float
    total_impact: float


@dataclass
class ImpactSummary:
    total_measurements: int = 0
    pending: int = 0
    completed: int = 0
    inconclusive: int = 0
    avg_prediction_accuracy: float = 0.0
    total_verified_impact: float = 0.0
    by_action_type: list[ActionTypeImpact] = field(default_factory=list)


# ---------------------------------------------------------------------------
# ImpactTracker
# ---------------------------------------------------------------------------


class ImpactTracker:
    async def open_measurement(
        self, db: AsyncSession, action: Action
    ) -> ImpactMeasurement | None:
        """Add a PENDING measurement for an executed action without committing.

        Returns None for actions that have not executed. An action that is
        already tracked returns its existing measurement.
        """
        if action.status != ActionStatus.EXECUTED or action.executed_at is None:
            return None

        existing = (
            await db.execute(
                select(ImpactMeasurement).where(ImpactMeasurement.action_id == action.id)
            )
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        opportunity = await db.get(Opportunity, action.opportunity_id)
        page_url = opportunity.page_url if opportunity is not None else None
        config = measurement_config(action.action_type)
        executed_on = _as_utc(action.executed_at).date()
        baseline_start = executed_on - timedelta(days=config.baseline_window)

        baseline = await window_stats(db, page_url, baseline_start, executed_on)
        measurement = ImpactMeasurement(
            action_id=action.id,
            measurement_type=config.measurement_type,
            measurement_window=config.measurement_window,
            baseline_window=config.baseline_window,
            baseline_start=baseline_start,
            baseline_end=executed_on,
            start_date=executed_on,
            end_date=executed_on + timedelta(days=config.measurement_window),
            baseline_value=baseline.value(config.measurement_type),
            baseline_revenue=baseline.daily_revenue,
            estimated_impact=float(
                (opportunity.estimated_revenue_impact if opportunity is not None else None) or 0.0
            ),
            status=MeasurementStatus.PENDING,
            notes=None if page_url else "Opportunity has no page to measure",
        )
        db.add(measurement)
        return measurement

    async def start_tracking(self, db: AsyncSession, action: Action) -> ImpactMeasurement | None:
        measurement = await self.open_measurement(db, action)
        if measurement is not None:
            await db.commit()
            logger.info(
                "Tracking %s for action %s until %s",
                measurement.measurement_type,
                action.id,
                measurement.end_date,
            )
        return measurement

    async def _complete(self, db: AsyncSession, measurement: ImpactMeasurement) -> None:
        page_url = measurement.action.opportunity.page_url
        stats = await window_stats(db, page_url, measurement.start_date, measurement.end_date)
        measured = stats.value(measurement.measurement_type)
        measurement.completed_at = datetime.now(timezone.utc)

        if stats.days == 0:
            measurement.status = MeasurementStatus.INCONCLUSIVE
            measurement.notes = measurement.notes or "No metrics recorded in the measurement window"
            return

        absolute, percent = calculate_impact(measurement.baseline_value, measured)
        revenue_impact = (stats.daily_revenue - measurement.baseline_revenue) * DAYS_PER_MONTH
        error, accuracy = prediction_score(measurement.estimated_impact, revenue_impact)

        measurement.measured_value = measured
        measurement.measured_revenue = stats.daily_revenue
        measurement.absolute_impact = absolute
        measurement.percent_impact = percent
        measurement.revenue_impact = revenue_impact
        measurement.prediction_error = error
        measurement.prediction_accuracy = accuracy
        measurement.status = MeasurementStatus.COMPLETE

    async def process_pending(
        self, db: AsyncSession, today: date | None = None
    ) -> ImpactProcessingResult:
        """Complete every PENDING measurement whose window has elapsed by *today*."""
        today = today or datetime.now(timezone.utc).date()
        due = (
            await db.execute(
                select(ImpactMeasurement.id)
                .where(
                    ImpactMeasurement.status == MeasurementStatus.PENDING,
                    ImpactMeasurement.end_date <= today,
                )
                .order_by(ImpactMeasurement.end_date)
            )
        ).scalars().all()

        result = ImpactProcessingResult()
        for measurement_id in due:
            try:
                measurement = (
                    await db.execute(
                        select(ImpactMeasurement)
                        .options(
                            selectinload(ImpactMeasurement.action).selectinload(Action.opportunity)
                        )
                        .where(ImpactMeasurement.id == measurement_id)
                        .execution_options(populate_existing=True)
                    )
                ).scalar_one()
                await self._complete(db, measurement)
                await db.commit()
            except Exception as exc:
                logger.exception("Impact measurement %s could not be completed", measurement_id)
                await db.rollback()
                failed = await db.get(ImpactMeasurement, measurement_id)
                failed.status = MeasurementStatus.INCONCLUSIVE
                failed.notes = f"Error: {exc}"
                failed.completed_at = datetime.now(timezone.utc)
                await db.commit()
                result.errors.append(f"{measurement_id}: {exc}")
                status = MeasurementStatus.INCONCLUSIVE
            else:
                status = measurement.status

            result.processed += 1
            if status == MeasurementStatus.COMPLETE:
                result.completed += 1
            else:
                result.inconclusive += 1

        if result.processed:
            logger.info(
                "Processed %d impact measurements: %d complete, %d inconclusive",
                result.processed,
                result.completed,
                result.inconclusive,
            )
        return result

    async def get_impact_summary(self, db: AsyncSession) -> ImpactSummary:
        summary = ImpactSummary()
        counts = (
            await db.execute(
                select(ImpactMeasurement.status, func.count()).group_by(ImpactMeasurement.status)
            )
        ).all()
        for status, count in counts:
            summary.total_measurements += count
            if status == MeasurementStatus.PENDING:
                summary.pending = count
            elif status == MeasurementStatus.COMPLETE:
                summary.completed = count
            elif status == MeasurementStatus.INCONCLUSIVE:
                summary.inconclusive = count

        complete = ImpactMeasurement.status == MeasurementStatus.COMPLETE
        accuracy, impact = (
            await db.execute(
                select(
                    func.avg(ImpactMeasurement.prediction_accuracy),
                    func.sum(ImpactMeasurement.revenue_impact),
                ).where(complete)
            )
        ).one()
        summary.avg_prediction_accuracy = round(float(accuracy or 0.0), 4)
        summary.total_verified_impact = round(float(impact or 0.0), 2)

        rows = (
            await db.execute(
                select(
                    Action.action_type,
                    func.count(),
                    func.avg(ImpactMeasurement.prediction_accuracy),
                    func.sum(ImpactMeasurement.revenue_impact),
                )
                .join(Action, ImpactMeasurement.action_id == Action.id)
                .where(complete)
                .group_by(Action.action_type)
                .order_by(Action.action_type)
            )
        ).all()
        summary.by_action_type = [
            ActionTypeImpact(
                action_type=action_type,
                count=count,
                avg_accuracy=round(float(avg_accuracy or 0.0), 4),
                total_impact=round(float(total or 0.0), 2),
            )
            for action_type, count, avg_accuracy, total in rows
        ]
        return summary

    async def list_measurements(
        self, db: AsyncSession, limit: int = 20, status: str | None = None
    ) -> list[ImpactMeasurement]:
        query = select(ImpactMeasurement).options(selectinload(ImpactMeasurement.action))
        if status:
            query = query.where(ImpactMeasurement.status == status)
        result = await db.execute(
            query.order_by(ImpactMeasurement.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
