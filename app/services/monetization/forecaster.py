"""Revenue forecaster.

Model ``v1``:
  1. Monthly revenue totals for complete months in the history window.
  2. Remove seasonality with fixed per-month multipliers.
  3. Baseline = weighted moving average of the last three months.
  4. Extrapolate with the compound monthly growth rate (clamped to ±50%).
  5. Re-apply the target month's seasonal multiplier.

Months that already have actuals are never regenerated. Once a forecast
month has fully elapsed, ``update_actuals`` fills in what really happened so
``get_forecast_accuracy`` can score the model.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import MonetizationMetric, RevenueForecast
from app.settings import settings

logger = logging.getLogger(__name__)

MODEL_VERSION = "v1"

SEASONAL_MULTIPLIERS: dict[int, float] = {
    1: 0.95,
    2: 0.98,
    3: 1.0,
    4: 1.02,
    5: 1.05,
    6: 1.12,
    7: 1.18,
    8: 1.15,
    9: 1.08,
    10: 1.05,
    11: 1.1,
    12: 1.2,
}

MAX_MONTHLY_GROWTH = 0.5
CONFIDENCE_DECAY = 0.95


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------


def month_start(day: date) -> date:
    return day.replace(day=1)


def add_months(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def month_end(day: date) -> date:
    return add_months(month_start(day), 1) - timedelta(days=1)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class MonthlyRevenue:
    month: date
    ad_revenue: float = 0.0
    affiliate_revenue: float = 0.0

    @property
    def total(self) -> float:
        return self.ad_revenue + self.affiliate_revenue


@dataclass
class GrowthMetrics:
    avg_mom_growth: float = 0.0
    cmgr: float = 0.0
    variance: float = 0.0
    trend: str = "stable"  # "up", "down" or "stable"


@dataclass
class ForecastAccuracy:
    total_forecasts: int = 0
    with_actuals: int = 0
    average_error: float = 0.0
    accuracy_percent: float = 0.0


def calculate_growth_metrics(values: list[float]) -> GrowthMetrics:
    """Month-over-month growth statistics for a series of monthly totals."""
    rates = [
        (current - previous) / previous
        for previous, current in zip(values, values[1:])
        if previous > 0
    ]
    if not rates:
        return GrowthMetrics()

    avg = sum(rates) / len(rates)
    variance = sum((r - avg) ** 2 for r in rates) / len(rates)
    if len(values) >= 2 and values[0] > 0 and values[-1] > 0:
        cmgr = (values[-1] / values[0]) ** (1 / (len(values) - 1)) - 1
    else:
        cmgr = avg

    recent = rates[-3:]
    recent_avg = sum(recent) / len(recent)
    if recent_avg > 0.05:
        trend = "up"
    elif recent_avg < -0.05:
        trend = "down"
    else:
        trend = "stable"
    return GrowthMetrics(avg_mom_growth=avg, cmgr=cmgr, variance=variance, trend=trend)


def forecast_confidence(variance: float, distance: int) -> float:
    """Confidence for a forecast *distance* months past the current month."""
    base = 0.9 - min(0.3, variance * 2)
    return round(base * CONFIDENCE_DECAY**distance, 4)


# ---------------------------------------------------------------------------
# RevenueForecaster
# ---------------------------------------------------------------------------


class RevenueForecaster:
    def __init__(self, history_days: int | None = None) -> None:
        self.history_days = history_days or settings.FORECAST_HISTORY_DAYS

    async def _sum_revenue(self, db: AsyncSession, start: date, end: date) -> tuple[float, float]:
        row = (
            await db.execute(
                select(
                    func.coalesce(func.sum(MonetizationMetric.ad_revenue), 0.0),
                    func.coalesce(func.sum(MonetizationMetric.affiliate_revenue), 0.0),
                ).where(
                    MonetizationMetric.metric_date >= start,
                    MonetizationMetric.metric_date <= end,
                )
            )
        ).one()
        return float(row[0] or 0.0), float(row[1] or 0.0)

    async def get_historical_revenue(
        self, db: AsyncSession, days: int | None = None, today: date | None = None
    ) -> list[MonthlyRevenue]:
        """Revenue per complete month within the last *days* days."""
        today = today or datetime.now(timezone.utc).date()
        current = month_start(today)
        since = today - timedelta(days=days or self.history_days)

        result = await db.execute(
            select(
                MonetizationMetric.metric_date,
                MonetizationMetric.ad_revenue,
                MonetizationMetric.affiliate_revenue,
            ).where(
                MonetizationMetric.metric_date >= since,
                MonetizationMetric.metric_date < current,
            )
        )
        months: dict[date, MonthlyRevenue] = {}
        for metric_date, ad_revenue, affiliate_revenue in result.all():
            key = month_start(metric_date)
            bucket = months.setdefault(key, MonthlyRevenue(month=key))
            bucket.ad_revenue += float(ad_revenue or 0)
            bucket.affiliate_revenue += float(affiliate_revenue or 0)
        return [months[key] for key in sorted(months)]

    async def generate_forecast(
        self, db: AsyncSession, months_ahead: int = 3, today: date | None = None
    ) -> int:
        """Write forecasts for the *months_ahead* months after the current one.

        Returns the number of forecast rows written.
        """
        if months_ahead < 1:
            raise ValueError("months_ahead must be at least 1")

        today = today or datetime.now(timezone.utc).date()
        history = await self.get_historical_revenue(db, today=today)
        if len(history) < 2:
            logger.info("Not enough revenue history to forecast (%d months)", len(history))
            return 0

        deseasonalized = [m.total / SEASONAL_MULTIPLIERS[m.month.month] for m in history]
        growth = calculate_growth_metrics(deseasonalized)
        rate = max(-MAX_MONTHLY_GROWTH, min(MAX_MONTHLY_GROWTH, growth.cmgr))

        recent = deseasonalized[-3:]
        weights = range(1, len(recent) + 1)
        baseline = sum(w * v for w, v in zip(weights, recent)) / sum(weights)

        recent_months = history[-3:]
        recent_total = sum(m.total for m in recent_months)
        ad_share = (
            sum(m.ad_revenue for m in recent_months) / recent_total if recent_total > 0 else 0.0
        )

        snapshot = {
            "history": [
                {"month": m.month.isoformat(), "ad_revenue": round(m.ad_revenue, 2),
                 "affiliate_revenue": round(m.affiliate_revenue, 2), "total": round(m.total, 2)}
                for m in history
            ],
            "growth": asdict(growth),
            "baseline": round(baseline, 2),
            "applied_growth_rate": rate,
        }

        current = month_start(today)
        last_history_month = history[-1].month
        previous_total = history[-1].total
        written = 0
        for step in range(1, months_ahead + 1):
            target = add_months(current, step)
            periods = (target.year - last_history_month.year) * 12 + (
                target.month - last_history_month.month
            )
            total = max(0.0, baseline * (1 + rate) ** periods * SEASONAL_MULTIPLIERS[target.month])
            mom = ((total - previous_total) / previous_total * 100) if previous_total > 0 else 0.0
            previous_total = total

            existing = (
                await db.execute(
                    select(RevenueForecast).where(RevenueForecast.forecast_month == target)
                )
            ).scalars().first()
            if existing is not None and existing.actual_total_revenue is not None:
                logger.info("Skipping forecast for %s: actuals already recorded", target)
                continue

            row = existing or RevenueForecast(forecast_month=target)
            row.forecasted_total_revenue = round(total, 2)
            row.forecasted_ad_revenue = round(total * ad_share, 2)
            row.forecasted_affiliate_revenue = round(total * (1 - ad_share), 2)
            row.confidence_level = forecast_confidence(growth.variance, step)
            row.month_over_month_growth = round(mom, 2)
            row.growth_rate = round(rate, 4)
            row.model_version = MODEL_VERSION
            row.input_snapshot = snapshot
            row.generated_at = datetime.now(timezone.utc)
            if existing is None:
                db.add(row)
            written += 1

        await db.commit()
        logger.info("Generated %d revenue forecasts from %d months of history", written, len(history))
        return written

    async def update_actuals(self, db: AsyncSession, today: date | None = None) -> int:
        """Fill actual revenue for elapsed forecast months. Returns rows updated."""
        current = month_start(today or datetime.now(timezone.utc).date())
        pending = (
            await db.execute(
                select(RevenueForecast).where(
                    RevenueForecast.forecast_month < current,
                    RevenueForecast.actual_total_revenue.is_(None),
                )
            )
        ).scalars().all()

        updated = 0
        for forecast in pending:
            ad, affiliate = await self._sum_revenue(
                db, forecast.forecast_month, month_end(forecast.forecast_month)
            )
            if ad + affiliate <= 0:
                continue
            forecast.actual_ad_revenue = round(ad, 2)
            forecast.actual_affiliate_revenue = round(affiliate, 2)
            forecast.actual_total_revenue = round(ad + affiliate, 2)
            updated += 1

        await db.commit()
        if updated:
            logger.info("Recorded actuals for %d forecast months", updated)
        return updated

    async def get_forecast_accuracy(self, db: AsyncSession) -> ForecastAccuracy:
        forecasts = (await db.execute(select(RevenueForecast))).scalars().all()
        with_actuals = [f for f in forecasts if f.actual_total_revenue is not None]
        errors = [
            abs(float(f.forecasted_total_revenue) - float(f.actual_total_revenue))
            / float(f.actual_total_revenue)
            * 100
            for f in with_actuals
            if float(f.actual_total_revenue) > 0
        ]
        if not errors:
            return ForecastAccuracy(total_forecasts=len(forecasts), with_actuals=len(with_actuals))

        average_error = sum(errors) / len(errors)
        return ForecastAccuracy(
            total_forecasts=len(forecasts),
            with_actuals=len(with_actuals),
            average_error=round(average_error, 2),
            accuracy_percent=round(max(0.0, 100 - average_error), 2),
        )

    async def list_forecasts(self, db: AsyncSession, limit: int = 12) -> list[RevenueForecast]:
        result = await db.execute(
            select(RevenueForecast).order_by(RevenueForecast.forecast_month.desc()).limit(limit)
        )
        return list(reversed(result.scalars().all()))
