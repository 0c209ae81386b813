"""
Tests for Spending Trends & Forecast.

Covers:
  - Trend direction (±10% half-over-half)
  - Population variance / coefficient of variation
  - OLS forecast: minimum points, floor at 0, confidence decay
  - Weekly / monthly bucketing
  - Full analysis over six weekly buckets growing 15% each
"""

from datetime import timedelta

import pandas as pd
import pytest

from procurement.trends import (
    analyze_spending_trends,
    build_buckets,
    buckets_to_records,
    calculate_statistics,
    calculate_trend_direction,
    generate_insights,
    linear_forecast,
    resolve_time_range,
)

# ── Direction & statistics ─────────────────────────────────────────────


class TestTrendDirection:
    def test_increasing(self):
        assert calculate_trend_direction([100, 100, 120, 120]) == "increasing"

    def test_decreasing(self):
        assert calculate_trend_direction([120, 120, 100, 100]) == "decreasing"

    def test_within_ten_percent_is_stable(self):
        assert calculate_trend_direction([100, 100, 109, 109]) == "stable"

    def test_single_bucket_is_stable(self):
        assert calculate_trend_direction([500]) == "stable"


class TestStatistics:
    def test_population_variance(self):
        stats = calculate_statistics([1.0, 2.0, 3.0, 4.0])
        assert stats["variance"] == 1.25
        assert stats["averagePerPeriod"] == 2.5
        assert stats["coefficientOfVariation"] == pytest.approx(1.118 / 2.5, abs=1e-3)

    def test_empty(self):
        stats = calculate_statistics([])
        assert stats["periodCount"] == 0
        assert stats["trendDirection"] == "stable"


class TestLinearForecast:
    def test_needs_three_points(self):
        assert linear_forecast([1.0, 2.0]) == []

    def test_confidence_decay(self):
        points = linear_forecast([10.0, 20.0, 30.0])
        assert [p["value"] for p in points] == [40.0, 50.0, 60.0]
        assert [p["confidence"] for p in points] == [0.8, 0.6, 0.4]

    def test_floored_at_zero(self):
        points = linear_forecast([30.0, 20.0, 10.0])
        assert [p["value"] for p in points] == [0.0, 0.0, 0.0]

    def test_confidence_floor(self):
        points = linear_forecast([1.0, 2.0, 3.0], periods=5)
        assert [p["confidence"] for p in points] == [0.8, 0.6, 0.4, 0.3, 0.3]


# ── Bucketing ──────────────────────────────────────────────────────────


class TestBucketing:
    def _orders(self):
        return pd.DataFrame(
            {
                "order_id": ["A", "B", "C"],
                "purchase_date": pd.to_datetime(["2024-05-06", "2024-05-12", "2024-06-03"]),
                "total_price": [10.0, 30.0, 50.0],
            }
        )

    def test_weekly_buckets_start_monday(self):
        buckets = build_buckets(self._orders(), "total_price", "weekly")
        records = buckets_to_records(buckets, "weekly")
        assert [r["period"] for r in records] == ["2024-05-06", "2024-06-03"]
        assert records[0]["totalSpending"] == 40.0
        assert records[0]["orderCount"] == 2
        assert records[0]["averageOrderValue"] == 20.0

    def test_monthly_buckets(self):
        records = buckets_to_records(build_buckets(self._orders(), "total_price", "monthly"), "monthly")
        assert [r["period"] for r in records] == ["2024-05", "2024-06"]

    def test_empty_frame(self):
        assert build_buckets(pd.DataFrame(), "total_price", "daily").empty

    def test_time_range_aliases(self):
        assert resolve_time_range("quarter") == 90
        assert resolve_time_range("year") == 365
        assert resolve_time_range(45) == 45


class TestInsights:
    def test_no_spending(self):
        assert generate_insights(calculate_statistics([]), []) == ["分析期内没有支出记录"]

    def test_increasing_category_called_out(self):
        insights = generate_insights(
            calculate_statistics([100, 100, 100, 100]),
            [{"category": "食品", "trendDirection": "increasing"}],
        )
        assert any("食品" in line for line in insights)


# ── Analysis ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestAnalyzeSpendingTrends:
    async def _seed_growth(self, add_order, now):
        """Six weekly orders, each 15% above the previous one."""
        for i in range(6):
            amount = round(100 * 1.15**i, 2)
            day = now - timedelta(days=1 + 7 * (5 - i))
            await add_order(f"TB-W{i}", day, [("大米", 1, amount, "食品")])

    async def test_weekly_growth_scenario(self, test_db, add_order, now):
        await self._seed_growth(add_order, now)
        await test_db.commit()

        result = await analyze_spending_trends(test_db, time_range=90, granularity="weekly", now=now)

        assert len(result["trends"]) == 6
        assert result["statistics"]["trendDirection"] == "increasing"
        forecast = result["forecast"]
        values = [f["predictedSpending"] for f in forecast]
        assert values == sorted(values) and len(set(values)) == 3
        assert [f["confidence"] for f in forecast] == [0.8, 0.6, 0.4]
        assert result["categoryTrends"][0]["category"] == "食品"
        assert result["categoryTrends"][0]["trendDirection"] == "increasing"

    async def test_without_forecast(self, test_db, add_order, now):
        await self._seed_growth(add_order, now)
        await test_db.commit()

        result = await analyze_spending_trends(test_db, granularity="weekly", include_forecasting=False, now=now)
        assert result["forecast"] == []

    async def test_category_filter_uses_line_items(self, test_db, add_order, now):
        await add_order(
            "TB-MIX",
            now - timedelta(days=3),
            [("大米", 1, 50.0, "食品"), ("洗衣液", 1, 30.0, "清洁用品")],
        )
        await test_db.commit()

        result = await analyze_spending_trends(test_db, categories=["清洁用品"], now=now)
        assert result["statistics"]["totalSpending"] == 30.0
        assert result["categoryTrends"] == []

    async def test_invalid_granularity(self, test_db, now):
        with pytest.raises(ValueError):
            await analyze_spending_trends(test_db, granularity="hourly", now=now)
