"""Tests for the revenue forecaster."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from app.models import RevenueForecast
from app.services.monetization.forecaster import (
    MODEL_VERSION,
    SEASONAL_MULTIPLIERS,
    RevenueForecaster,
    add_months,
    calculate_growth_metrics,
    forecast_confidence,
    month_end,
)
from tests.conftest import add_metrics, make_metric


TODAY = date(2026, 7, 15)


async def _seed_history(factory, totals: dict[date, tuple[float, float]]) -> None:
    await add_metrics(
        factory,
        [
            make_metric(day, "/content/1", ad_revenue=ad, affiliate_revenue=aff)
            for day, (ad, aff) in totals.items()
        ],
    )


def _forecast(month: date, total: float, actual: float | None = None) -> RevenueForecast:
    return RevenueForecast(
        forecast_month=month,
        forecasted_total_revenue=total,
        forecasted_ad_revenue=total,
        forecasted_affiliate_revenue=0,
        confidence_level=0.8,
        model_version=MODEL_VERSION,
        input_snapshot={},
        actual_total_revenue=actual,
        generated_at=datetime.now(timezone.utc),
    )


async def _rows(factory) -> list[RevenueForecast]:
    async with factory() as db:
        result = await db.execute(select(RevenueForecast).order_by(RevenueForecast.forecast_month))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_add_months_wraps_year(self):
        assert add_months(date(2026, 11, 1), 3) == date(2027, 2, 1)
        assert add_months(date(2026, 1, 1), -1) == date(2025, 12, 1)

    def test_month_end(self):
        assert month_end(date(2026, 2, 10)) == date(2026, 2, 28)
        assert month_end(date(2026, 12, 1)) == date(2026, 12, 31)

    def test_growth_metrics_trend(self):
        up = calculate_growth_metrics([100, 110, 121, 133.1])
        assert up.trend == "up"
        assert up.cmgr == pytest.approx(0.1)
        assert up.variance == pytest.approx(0.0, abs=1e-9)

        assert calculate_growth_metrics([100, 80, 60]).trend == "down"
        assert calculate_growth_metrics([100, 101, 100]).trend == "stable"
        assert calculate_growth_metrics([0, 0]).cmgr == 0.0

    def test_confidence_decreases_with_distance(self):
        values = [forecast_confidence(0.01, d) for d in range(1, 6)]
        assert values == sorted(values, reverse=True)
        assert len(set(values)) == 5
        assert forecast_confidence(1.0, 1) == pytest.approx(0.6 * 0.95)


# ---------------------------------------------------------------------------
# generate_forecast
# ---------------------------------------------------------------------------


class TestGenerateForecast:
    @pytest.mark.asyncio
    async def test_writes_one_row_per_month(self, session_factory):
        await _seed_history(
            session_factory,
            {
                date(2026, 3, 10): (90.0, 10.0),
                date(2026, 4, 10): (100.0, 10.0),
                date(2026, 5, 10): (110.0, 10.0),
                date(2026, 6, 10): (120.0, 10.0),
                date(2026, 7, 10): (999.0, 0.0),  # current month, excluded
            },
        )
        forecaster = RevenueForecaster()
        async with session_factory() as db:
            written = await forecaster.generate_forecast(db, months_ahead=3, today=TODAY)

        assert written == 3
        rows = await _rows(session_factory)
        assert [r.forecast_month for r in rows] == [
            date(2026, 8, 1),
            date(2026, 9, 1),
            date(2026, 10, 1),
        ]
        confidences = [r.confidence_level for r in rows]
        assert confidences[0] > confidences[1] > confidences[2]
        assert all(r.model_version == MODEL_VERSION for r in rows)
        assert all(r.forecasted_total_revenue > 0 for r in rows)
        assert rows[0].input_snapshot["history"][-1]["month"] == "2026-06-01"
        assert len(rows[0].input_snapshot["history"]) == 4
        for row in rows:
            assert float(row.forecasted_ad_revenue) + float(
                row.forecasted_affiliate_revenue
            ) == pytest.approx(float(row.forecasted_total_revenue), abs=0.02)

    @pytest.mark.asyncio
    async def test_flat_history_follows_seasonality(self, session_factory):
        # Deseasonalized revenue is constant, so forecasts are baseline x multiplier.
        history = {}
        for month in (3, 4, 5, 6):
            history[date(2026, month, 5)] = (100.0 * SEASONAL_MULTIPLIERS[month], 0.0)
        await _seed_history(session_factory, history)

        async with session_factory() as db:
            await RevenueForecaster().generate_forecast(db, months_ahead=2, today=TODAY)
        rows = await _rows(session_factory)

        assert float(rows[0].forecasted_total_revenue) == pytest.approx(
            100.0 * SEASONAL_MULTIPLIERS[8], abs=0.01
        )
        assert float(rows[1].forecasted_total_revenue) == pytest.approx(
            100.0 * SEASONAL_MULTIPLIERS[9], abs=0.01
        )

    @pytest.mark.asyncio
    async def test_insufficient_history(self, session_factory):
        await _seed_history(session_factory, {date(2026, 6, 10): (100.0, 0.0)})
        async with session_factory() as db:
            assert await RevenueForecaster().generate_forecast(db, today=TODAY) == 0
        assert await _rows(session_factory) == []

    @pytest.mark.asyncio
    async def test_regenerate_overwrites_but_keeps_actuals(self, session_factory):
        await _seed_history(
            session_factory,
            {date(2026, 5, 10): (100.0, 0.0), date(2026, 6, 10): (100.0, 0.0)},
        )
        async with session_factory() as db:
            db.add(_forecast(date(2026, 8, 1), 1.0, actual=5.0))
            db.add(_forecast(date(2026, 9, 1), 2.0))
            await db.commit()

            written = await RevenueForecaster().generate_forecast(db, months_ahead=3, today=TODAY)

        assert written == 2
        rows = {r.forecast_month: r for r in await _rows(session_factory)}
        assert len(rows) == 3
        assert float(rows[date(2026, 8, 1)].forecasted_total_revenue) == pytest.approx(1.0)
        assert float(rows[date(2026, 8, 1)].actual_total_revenue) == pytest.approx(5.0)
        assert float(rows[date(2026, 9, 1)].forecasted_total_revenue) != pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_invalid_months_ahead(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(ValueError):
                await RevenueForecaster().generate_forecast(db, months_ahead=0, today=TODAY)


# ---------------------------------------------------------------------------
# update_actuals / accuracy
# ---------------------------------------------------------------------------


class TestActualsAndAccuracy:
    @pytest.mark.asyncio
    async def test_update_actuals_only_elapsed_months(self, session_factory):
        await _seed_history(
            session_factory,
            {
                date(2026, 5, 3): (40.0, 5.0),
                date(2026, 5, 20): (50.0, 5.0),
                date(2026, 7, 3): (70.0, 0.0),
            },
        )
        async with session_factory() as db:
            db.add(_forecast(date(2026, 5, 1), 90.0))
            db.add(_forecast(date(2026, 6, 1), 90.0))  # no metrics
            db.add(_forecast(date(2026, 7, 1), 90.0))  # current month
            await db.commit()

            updated = await RevenueForecaster().update_actuals(db, today=TODAY)

        assert updated == 1
        rows = {r.forecast_month: r for r in await _rows(session_factory)}
        may = rows[date(2026, 5, 1)]
        assert float(may.actual_total_revenue) == pytest.approx(100.0)
        assert float(may.actual_ad_revenue) == pytest.approx(90.0)
        assert float(may.actual_affiliate_revenue) == pytest.approx(10.0)
        assert rows[date(2026, 6, 1)].actual_total_revenue is None
        assert rows[date(2026, 7, 1)].actual_total_revenue is None

    @pytest.mark.asyncio
    async def test_accuracy_without_actuals(self, session_factory):
        async with session_factory() as db:
            db.add(_forecast(date(2026, 8, 1), 100.0))
            await db.commit()
            accuracy = await RevenueForecaster().get_forecast_accuracy(db)

        assert accuracy.total_forecasts == 1
        assert accuracy.with_actuals == 0
        assert accuracy.average_error == 0.0
        assert accuracy.accuracy_percent == 0.0

    @pytest.mark.asyncio
    async def test_accuracy_mape(self, session_factory):
        async with session_factory() as db:
            db.add(_forecast(date(2026, 4, 1), 100.0, actual=80.0))  # 25% error
            db.add(_forecast(date(2026, 5, 1), 90.0, actual=100.0))  # 10% error
            db.add(_forecast(date(2026, 8, 1), 100.0))
            await db.commit()
            accuracy = await RevenueForecaster().get_forecast_accuracy(db)

        assert accuracy.total_forecasts == 3
        assert accuracy.with_actuals == 2
        assert accuracy.average_error == pytest.approx(17.5)
        assert accuracy.accuracy_percent == pytest.approx(82.5)

    @pytest.mark.asyncio
    async def test_accuracy_floored_at_zero(self, session_factory):
        async with session_factory() as db:
            db.add(_forecast(date(2026, 4, 1), 500.0, actual=100.0))
            await db.commit()
            accuracy = await RevenueForecaster().get_forecast_accuracy(db)
        assert accuracy.accuracy_percent == 0.0

    @pytest.mark.asyncio
    async def test_list_forecasts_ascending(self, session_factory):
        async with session_factory() as db:
            for month in (9, 7, 8):
                db.add(_forecast(date(2026, month, 1), 10.0))
            await db.commit()
            forecasts = await RevenueForecaster().list_forecasts(db)
        assert [f.forecast_month.month for f in forecasts] == [7, 8, 9]
