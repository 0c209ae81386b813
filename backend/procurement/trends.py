"""
Spending Trends & Forecast — bucketed spend, direction, variance, OLS projection.

Buckets (daily / weekly / monthly) hold total spend, order count and
average order value. Only buckets with spending appear.

  trend direction: mean of second half vs first half of buckets,
                   > +10% increasing, < -10% decreasing, else stable
  variance:        population variance of per-bucket spend
  forecast:        least-squares line over bucket index → spend, next 3
                   buckets, floored at 0, confidence max(0.3, 1 - 0.2·i)
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

import numpy as np
import pandas as pd
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import utcnow
from procurement.history import fetch_line_items, fetch_orders

logger = structlog.get_logger()

GRANULARITIES = ("daily", "weekly", "monthly")
TIME_RANGE_ALIASES = {"month": 30, "quarter": 90, "year": 365}
TREND_CHANGE_THRESHOLD = 0.10
FORECAST_PERIODS = 3
HIGH_VOLATILITY_CV = 0.5
LOW_VOLATILITY_CV = 0.2


# ── Bucketing ───────────────────────────────────────────────────────────────


def bucket_start(dates: pd.Series, granularity: str) -> pd.Series:
    """Start timestamp of the bucket containing each date (weeks start Monday)."""
    if granularity == "daily":
        return dates.dt.normalize()
    elif granularity == "weekly":
        return dates.dt.to_period("W-SUN").dt.start_time
    elif granularity == "monthly":
        return dates.dt.to_period("M").dt.start_time
    raise ValueError(f"Unknown granularity: {granularity}")


def format_period(start: pd.Timestamp, granularity: str) -> str:
    if granularity == "monthly":
        return start.strftime("%Y-%m")
    return start.strftime("%Y-%m-%d")


def next_period_start(last: pd.Timestamp, granularity: str, steps: int) -> pd.Timestamp:
    if granularity == "daily":
        return last + pd.Timedelta(days=steps)
    elif granularity == "weekly":
        return last + pd.Timedelta(weeks=steps)
    return last + pd.DateOffset(months=steps)


def build_buckets(
    df: pd.DataFrame,
    value_col: str,
    granularity: str,
) -> pd.DataFrame:
    """Per bucket: period_start, total_spending, order_count, avg_order_value."""
    columns = ["period_start", "total_spending", "order_count", "avg_order_value"]
    if df.empty:
        return pd.DataFrame(columns=columns)

    work = df.assign(period_start=bucket_start(df["purchase_date"], granularity))
    grouped = work.groupby("period_start")
    buckets = pd.DataFrame(
        {
            "total_spending": grouped[value_col].sum().astype(float),
            "order_count": grouped["order_id"].nunique(),
        }
    ).reset_index()
    buckets["avg_order_value"] = buckets["total_spending"] / buckets["order_count"].where(
        buckets["order_count"] > 0
    )
    buckets["avg_order_value"] = buckets["avg_order_value"].fillna(0.0)
    return buckets.sort_values("period_start").reset_index(drop=True)[columns]


def buckets_to_records(buckets: pd.DataFrame, granularity: str) -> list[dict[str, Any]]:
    return [
        {
            "period": format_period(row.period_start, granularity),
            "totalSpending": round(float(row.total_spending), 2),
            "orderCount": int(row.order_count),
            "averageOrderValue": round(float(row.avg_order_value), 2),
        }
        for row in buckets.itertuples(index=False)
    ]


# ── Statistics ─────────────────────────────────────────────────────────────


def calculate_trend_change(values: Sequence[float]) -> float:
    """Relative change of the second-half mean over the first-half mean."""
    if len(values) < 2:
        return 0.0
    half = len(values) // 2
    first = float(np.mean(values[:half]))
    second = float(np.mean(values[half:]))
    if first == 0:
        return 1.0 if second > 0 else 0.0
    return (second - first) / first


def calculate_trend_direction(values: Sequence[float]) -> str:
    change = calculate_trend_change(values)
    if change > TREND_CHANGE_THRESHOLD:
        return "increasing"
    elif change < -TREND_CHANGE_THRESHOLD:
        return "decreasing"
    return "stable"


def calculate_statistics(values: Sequence[float]) -> dict[str, Any]:
    if len(values) == 0:
        return {
            "periodCount": 0,
            "totalSpending": 0.0,
            "averagePerPeriod": 0.0,
            "variance": 0.0,
            "standardDeviation": 0.0,
            "coefficientOfVariation": 0.0,
            "trendDirection": "stable",
            "trendChangePercent": 0.0,
        }
    arr = np.asarray(values, dtype=float)
    mean = float(arr.mean())
    variance = float(arr.var())  # population
    stddev = float(np.sqrt(variance))
    cv = stddev / mean if mean > 0 else 0.0
    return {
        "periodCount": int(arr.size),
        "totalSpending": round(float(arr.sum()), 2),
        "averagePerPeriod": round(mean, 2),
        "variance": round(variance, 2),
        "standardDeviation": round(stddev, 2),
        "coefficientOfVariation": round(cv, 4),
        "trendDirection": calculate_trend_direction(arr),
        "trendChangePercent": round(calculate_trend_change(arr) * 100, 2),
    }


def linear_forecast(values: Sequence[float], periods: int = FORECAST_PERIODS) -> list[dict[str, float]]:
    """Ordinary least squares over index → value, projected ``periods`` ahead.

    Needs at least 3 points; returns [] otherwise.
    """
    n = len(values)
    if n < 3:
        return []
    x = np.arange(n, dtype=float)
    y = np.asarray(values, dtype=float)
    x_mean = x.mean()
    y_mean = y.mean()
    denom = float(((x - x_mean) ** 2).sum())
    slope = float(((x - x_mean) * (y - y_mean)).sum()) / denom if denom else 0.0
    intercept = y_mean - slope * x_mean

    forecast = []
    for i in range(1, periods + 1):
        value = intercept + slope * (n - 1 + i)
        forecast.append(
            {
                "step": i,
                "value": round(max(0.0, value), 2),
                "confidence": round(max(0.3, 1 - i * 0.2), 2),
            }
        )
    return forecast


def generate_insights(
    statistics: dict[str, Any],
    category_trends: list[dict[str, Any]],
) -> list[str]:
    insights = []
    direction = statistics["trendDirection"]
    change = abs(statistics["trendChangePercent"])
    if statistics["periodCount"] == 0:
        return ["分析期内没有支出记录"]

    if direction == "increasing":
        insights.append(f"支出呈上升趋势，后半期较前半期增长 {change:.1f}%")
    elif direction == "decreasing":
        insights.append(f"支出呈下降趋势，后半期较前半期减少 {change:.1f}%")
    else:
        insights.append("支出整体保持稳定")

    cv = statistics["coefficientOfVariation"]
    if cv > HIGH_VOLATILITY_CV:
        insights.append(f"支出波动较大 (变异系数 {cv:.2f})，建议关注大额或突发消费")
    elif cv < LOW_VOLATILITY_CV:
        insights.append(f"支出波动较小 (变异系数 {cv:.2f})，消费习惯较为规律")

    for trend in category_trends:
        if trend["trendDirection"] == "increasing":
            insights.append(f"{trend['category']} 类支出呈上升趋势")
    return insights


# ── Analysis ───────────────────────────────────────────────────────────────


def resolve_time_range(time_range: int | str | None) -> int:
    if time_range is None:
        return 90
    if isinstance(time_range, str):
        if time_range in TIME_RANGE_ALIASES:
            return TIME_RANGE_ALIASES[time_range]
        return int(time_range)
    return int(time_range)


def _forecast_records(buckets: pd.DataFrame, granularity: str) -> list[dict[str, Any]]:
    values = buckets["total_spending"].tolist()
    points = linear_forecast(values)
    if not points:
        return []
    last = buckets["period_start"].iloc[-1]
    return [
        {
            "period": format_period(next_period_start(last, granularity, p["step"]), granularity),
            "predictedSpending": p["value"],
            "confidence": p["confidence"],
        }
        for p in points
    ]


def category_breakdown(items: pd.DataFrame, granularity: str) -> list[dict[str, Any]]:
    scoped = items[items["category"].notna()]
    trends = []
    for category, group in scoped.groupby("category"):
        buckets = build_buckets(group, "amount", granularity)
        values = buckets["total_spending"].tolist()
        trends.append(
            {
                "category": str(category),
                "totalSpending": round(float(sum(values)), 2),
                "trendDirection": calculate_trend_direction(values),
                "trends": buckets_to_records(buckets, granularity),
            }
        )
    trends.sort(key=lambda t: t["totalSpending"], reverse=True)
    return trends


async def analyze_spending_trends(
    db: AsyncSession,
    time_range: int | str | None = 90,
    granularity: str = "monthly",
    categories: Sequence[str] | None = None,
    include_forecasting: bool = True,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Bucketed spending trend with statistics, forecast and insights.

    Without a category filter spend is whole-order total_price and a
    per-category breakdown is included; with one, spend is the filtered
    line items' unit_price × quantity.
    """
    if granularity not in GRANULARITIES:
        raise ValueError(f"Unknown granularity: {granularity}")
    days = resolve_time_range(time_range)
    now = now or utcnow()
    start = now - timedelta(days=days)

    logger.info("trends.analyze_start", time_range_days=days, granularity=granularity, categories=categories)

    items = await fetch_line_items(db, start, now, categories=categories)
    if categories:
        buckets = build_buckets(items, "amount", granularity)
        category_trends: list[dict[str, Any]] = []
    else:
        orders = await fetch_orders(db, start, now)
        buckets = build_buckets(orders, "total_price", granularity)
        category_trends = category_breakdown(items, granularity)

    values = buckets["total_spending"].tolist()
    statistics = calculate_statistics(values)
    forecast = _forecast_records(buckets, granularity) if include_forecasting else []
    insights = generate_insights(statistics, category_trends)

    logger.info(
        "trends.analyze_complete",
        periods=statistics["periodCount"],
        direction=statistics["trendDirection"],
        forecast_points=len(forecast),
    )

    return {
        "timeRangeDays": days,
        "granularity": granularity,
        "trends": buckets_to_records(buckets, granularity),
        "statistics": statistics,
        "categoryTrends": category_trends,
        "forecast": forecast,
        "insights": insights,
    }
