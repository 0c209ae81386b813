"""
Spending Anomaly Detection — statistical + rule-based checks.

Detects, over a trailing analysis window:
  - Daily spending above baseline mean + k·σ (whole-order spend)
  - Category-day spending above the category's own baseline + k·σ
  - Unusually expensive line items (unit price or line total over a cap)
  - Purchase bursts: ≥5 purchases of one item within a ≤7 day span

Baselines come from the 90 days before the analysis window. A scope
with no history there is skipped, never compared against zero.

Risk level from the total anomaly count:
  high ≥ 10, medium ≥ 5, low ≥ 1, else normal
"""

from datetime import datetime, timedelta
from typing import Any

import pandas as pd
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import AnomalyThresholds, get_settings
from db.models import utcnow
from procurement.baseline import BaselineStats, compute_category_baselines, compute_spending_baseline
from procurement.history import daily_totals, fetch_line_items, fetch_orders

logger = structlog.get_logger()

RISK_LEVEL_THRESHOLDS = {
    "high": 10,
    "medium": 5,
    "low": 1,
}


def classify_risk_level(total_anomalies: int) -> str:
    """Map a total anomaly count to normal/low/medium/high."""
    if total_anomalies >= RISK_LEVEL_THRESHOLDS["high"]:
        return "high"
    elif total_anomalies >= RISK_LEVEL_THRESHOLDS["medium"]:
        return "medium"
    elif total_anomalies >= RISK_LEVEL_THRESHOLDS["low"]:
        return "low"
    return "normal"


def _deviation(value: float, baseline: BaselineStats) -> float | None:
    if not baseline.has_history or baseline.stddev == 0:
        return None
    return round((value - baseline.mean) / baseline.stddev, 2)


# ── Individual checks ───────────────────────────────────────────────────────


def find_daily_anomalies(
    daily: pd.Series,
    baseline: BaselineStats,
    multiplier: float,
) -> list[dict[str, Any]]:
    """Days whose total spend exceeds the whole-order baseline threshold."""
    if not baseline.has_history:
        return []

    threshold = baseline.threshold(multiplier)
    anomalies = []
    for day, amount in daily.items():
        if baseline.is_exceeded_by(amount, multiplier):
            anomalies.append(
                {
                    "date": day.date().isoformat(),
                    "amount": round(float(amount), 2),
                    "threshold": round(threshold, 2),
                    "baselineMean": round(baseline.mean, 2),
                    "deviation": _deviation(amount, baseline),
                }
            )
    return anomalies


def find_category_anomalies(
    items: pd.DataFrame,
    baselines: dict[str, BaselineStats],
    multiplier: float,
) -> list[dict[str, Any]]:
    """Category × day combinations above that category's baseline threshold."""
    scoped = items[items["category"].notna()]
    if scoped.empty:
        return []

    anomalies = []
    for category, group in scoped.groupby("category"):
        baseline = baselines.get(str(category))
        if baseline is None or not baseline.has_history:
            continue
        threshold = baseline.threshold(multiplier)
        for day, amount in daily_totals(group, "amount").items():
            if baseline.is_exceeded_by(amount, multiplier):
                anomalies.append(
                    {
                        "category": str(category),
                        "date": day.date().isoformat(),
                        "amount": round(float(amount), 2),
                        "threshold": round(threshold, 2),
                        "baselineMean": round(baseline.mean, 2),
                        "deviation": _deviation(amount, baseline),
                    }
                )
    anomalies.sort(key=lambda a: (a["date"], a["category"]))
    return anomalies


def find_unusual_items(items: pd.DataFrame, threshold: float) -> list[dict[str, Any]]:
    """Line items whose unit price or line total exceeds ``threshold``."""
    if items.empty:
        return []

    flagged = items[(items["unit_price"] > threshold) | (items["amount"] > threshold)]
    anomalies = []
    for row in flagged.sort_values("amount", ascending=False).itertuples(index=False):
        if row.unit_price > threshold:
            reason = f"单价 ¥{row.unit_price:.2f} 超过阈值 ¥{threshold:.2f}"
        else:
            reason = f"总价 ¥{row.amount:.2f} 超过阈值 ¥{threshold:.2f}"
        anomalies.append(
            {
                "orderId": row.order_id,
                "itemName": row.item_name,
                "category": row.category,
                "quantity": int(row.quantity),
                "unitPrice": round(float(row.unit_price), 2),
                "totalAmount": round(float(row.amount), 2),
                "purchaseDate": row.purchase_date.isoformat(),
                "reason": reason,
            }
        )
    return anomalies


def find_frequency_anomalies(
    items: pd.DataFrame,
    min_purchases: int,
    max_span_days: int,
) -> list[dict[str, Any]]:
    """(item, category) pairs bought ≥ min_purchases times within max_span_days."""
    if items.empty:
        return []

    anomalies = []
    for (item_name, category), group in items.groupby(["item_name", "category"], dropna=False):
        count = len(group)
        if count < min_purchases:
            continue
        first = group["purchase_date"].min()
        last = group["purchase_date"].max()
        span_days = (last.normalize() - first.normalize()).days
        if span_days > max_span_days:
            continue
        anomalies.append(
            {
                "itemName": item_name,
                "category": None if pd.isna(category) else category,
                "purchaseCount": int(count),
                "totalQuantity": int(group["quantity"].sum()),
                "firstPurchase": first.isoformat(),
                "lastPurchase": last.isoformat(),
                "spanDays": int(span_days),
            }
        )
    anomalies.sort(key=lambda a: a["purchaseCount"], reverse=True)
    return anomalies


# ── Detector ────────────────────────────────────────────────────────────────


async def detect_anomalous_spending(
    db: AsyncSession,
    thresholds: AnomalyThresholds | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Run all four anomaly checks over the trailing analysis window.

    Read-only. Returns:
        {
            "analysisParameters": {...},
            "baseline": {"daily": {...}, "categories": {...}},
            "anomalies": {"dailySpending": [...], "categorySpending": [...],
                          "unusualItems": [...], "frequencyAnomalies": [...]},
            "summary": {"totalAnomalies": 3, "riskLevel": "low", ...},
        }
    """
    params = thresholds or get_settings().anomaly
    now = now or utcnow()
    analysis_start = now - timedelta(days=params.analysis_depth_days)

    logger.info(
        "anomaly.detect_start",
        analysis_depth_days=params.analysis_depth_days,
        analysis_start=analysis_start.isoformat(),
    )

    daily_baseline = await compute_spending_baseline(db, analysis_start)
    category_baselines = await compute_category_baselines(db, analysis_start)

    orders = await fetch_orders(db, analysis_start, now)
    items = await fetch_line_items(db, analysis_start, now)

    if not daily_baseline.has_history:
        logger.info("anomaly.no_daily_history", analysis_start=analysis_start.isoformat())

    daily = find_daily_anomalies(
        daily_totals(orders, "total_price"),
        daily_baseline,
        params.daily_threshold_multiplier,
    )
    category = find_category_anomalies(items, category_baselines, params.category_threshold_multiplier)
    unusual = find_unusual_items(items, params.unusual_item_threshold)
    frequency = find_frequency_anomalies(items, params.frequency_min_purchases, params.frequency_max_span_days)

    total = len(daily) + len(category) + len(unusual) + len(frequency)
    risk_level = classify_risk_level(total)

    logger.info(
        "anomaly.detect_complete",
        daily=len(daily),
        category=len(category),
        unusual_items=len(unusual),
        frequency=len(frequency),
        risk_level=risk_level,
    )

    return {
        "analysisParameters": {
            "analysisDepthDays": params.analysis_depth_days,
            "dailyThresholdMultiplier": params.daily_threshold_multiplier,
            "categoryThresholdMultiplier": params.category_threshold_multiplier,
            "unusualItemThreshold": params.unusual_item_threshold,
            "analysisStart": analysis_start.isoformat(),
            "analysisEnd": now.isoformat(),
        },
        "baseline": {
            "daily": daily_baseline.to_dict(),
            "categories": {name: stats.to_dict() for name, stats in sorted(category_baselines.items())},
        },
        "anomalies": {
            "dailySpending": daily,
            "categorySpending": category,
            "unusualItems": unusual,
            "frequencyAnomalies": frequency,
        },
        "summary": {
            "totalAnomalies": total,
            "riskLevel": risk_level,
            "ordersAnalyzed": int(len(orders)),
            "itemsAnalyzed": int(len(items)),
        },
    }
