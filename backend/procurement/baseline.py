"""
Spending Baselines — mean / stddev of historical per-day spend.

The baseline window is the fixed 90 days immediately before the analysis
window starts. Only days with spending count as samples. A window without
any spending yields ``mean=None, stddev=None``; callers must skip the
corresponding check rather than compare against a zero baseline.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

import pandas as pd
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from procurement.history import daily_totals, fetch_line_items, fetch_orders


@dataclass
class BaselineStats:
    """Population mean/stddev of daily spend over the history window."""

    mean: float | None
    stddev: float | None
    sample_days: int = 0

    @property
    def has_history(self) -> bool:
        return self.mean is not None and self.stddev is not None

    def threshold(self, multiplier: float) -> float | None:
        if not self.has_history:
            return None
        return self.mean + multiplier * self.stddev

    def is_exceeded_by(self, value: float, multiplier: float) -> bool:
        """True when ``value`` is above mean + multiplier × stddev.

        With stddev 0 the threshold is the mean itself, so any spend above
        the mean counts. Without history nothing is ever exceeded.
        """
        threshold = self.threshold(multiplier)
        if threshold is None:
            return False
        return value > threshold

    def to_dict(self) -> dict:
        return {
            "mean": round(self.mean, 2) if self.mean is not None else None,
            "stddev": round(self.stddev, 2) if self.stddev is not None else None,
            "sampleDays": self.sample_days,
        }


def baseline_from_daily(daily: pd.Series) -> BaselineStats:
    if daily.empty:
        return BaselineStats(mean=None, stddev=None, sample_days=0)
    mean = float(daily.mean())
    stddev = float(daily.std(ddof=0))
    if math.isnan(stddev):
        stddev = 0.0
    return BaselineStats(mean=mean, stddev=stddev, sample_days=int(daily.size))


def baseline_window(analysis_start: datetime, lookback_days: int | None = None) -> tuple[datetime, datetime]:
    if lookback_days is None:
        lookback_days = get_settings().anomaly.baseline_lookback_days
    return analysis_start - timedelta(days=lookback_days), analysis_start


async def compute_spending_baseline(
    db: AsyncSession,
    analysis_start: datetime,
    category: str | None = None,
) -> BaselineStats:
    """
    Baseline of per-day spend before ``analysis_start``.

    With a category, spend is the sum of that category's line items
    (unit_price × quantity); otherwise it is whole-order total_price.
    """
    start, end = baseline_window(analysis_start)
    if category is None:
        orders = await fetch_orders(db, start, end)
        return baseline_from_daily(daily_totals(orders, "total_price"))

    items = await fetch_line_items(db, start, end, categories=[category])
    return baseline_from_daily(daily_totals(items, "amount"))


async def compute_category_baselines(
    db: AsyncSession,
    analysis_start: datetime,
) -> dict[str, BaselineStats]:
    """Category-scoped baselines for every category seen in the history window.

    Equivalent to calling ``compute_spending_baseline`` per category, with a
    single query. Categories absent from the window are absent from the map.
    """
    start, end = baseline_window(analysis_start)
    items = await fetch_line_items(db, start, end)
    items = items[items["category"].notna()]

    baselines: dict[str, BaselineStats] = {}
    for category, group in items.groupby("category"):
        baselines[str(category)] = baseline_from_daily(daily_totals(group, "amount"))
    return baselines
