"""
Spending Reports — category totals, monthly report and budget status.

Category spend is line-item unit_price × quantity; order spend is the
order's total_price. Line items with no category are reported as 未分类.

Budget status compares the current calendar month's category spend with
Settings.budget_limits:
  usage < 80%   → ok
  usage ≥ 80%   → warning
  usage > 100%  → exceeded
"""

from datetime import datetime
from typing import Any

import pandas as pd
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import as_utc, utcnow
from procurement.history import fetch_line_items, fetch_orders

logger = structlog.get_logger()

UNCATEGORIZED = "未分类"
BUDGET_WARNING_RATIO = 0.8
TOP_STORES = 10


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def summarize_by_category(items: pd.DataFrame) -> list[dict[str, Any]]:
    if items.empty:
        return []
    work = items.assign(category=items["category"].fillna(UNCATEGORIZED))
    grouped = work.groupby("category")
    summary = pd.DataFrame(
        {
            "total_amount": grouped["amount"].sum(),
            "item_count": grouped["line_id"].count(),
            "total_quantity": grouped["quantity"].sum(),
            "avg_price": grouped["unit_price"].mean(),
        }
    ).sort_values("total_amount", ascending=False)
    return [
        {
            "category": str(category),
            "total_amount": round(float(row.total_amount), 2),
            "item_count": int(row.item_count),
            "total_quantity": int(row.total_quantity),
            "avg_price": round(float(row.avg_price), 2),
        }
        for category, row in summary.iterrows()
    ]


def summarize_by_store(orders: pd.DataFrame, limit: int = TOP_STORES) -> list[dict[str, Any]]:
    if orders.empty:
        return []
    grouped = orders.groupby("store_name")
    stores = pd.DataFrame(
        {
            "total_spending": grouped["total_price"].sum(),
            "order_count": grouped["order_id"].nunique(),
        }
    ).sort_values("total_spending", ascending=False)
    return [
        {
            "store_name": str(store),
            "total_spending": round(float(row.total_spending), 2),
            "order_count": int(row.order_count),
        }
        for store, row in stores.head(limit).iterrows()
    ]


def budget_state(spent: float, budget: float) -> tuple[float, str]:
    """Usage percent and ok / warning / exceeded."""
    if budget <= 0:
        return (100.0 if spent > 0 else 0.0), ("exceeded" if spent > 0 else "ok")
    ratio = spent / budget
    if ratio > 1:
        status = "exceeded"
    elif ratio >= BUDGET_WARNING_RATIO:
        status = "warning"
    else:
        status = "ok"
    return round(ratio * 100, 2), status


async def get_spending_by_category(
    db: AsyncSession,
    start_date: datetime,
    end_date: datetime,
) -> dict[str, Any]:
    start_date, end_date = as_utc(start_date), as_utc(end_date)
    items = await fetch_line_items(db, start_date, end_date)
    categories = summarize_by_category(items)
    return {
        "start_date": start_date.isoformat(),
        "end_date": end_date.isoformat(),
        "categories": categories,
        "total_amount": round(sum(c["total_amount"] for c in categories), 2),
    }


async def generate_monthly_report(
    db: AsyncSession,
    year: int | None = None,
    month: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Totals, category breakdown and top stores for one calendar month."""
    now = now or utcnow()
    year = year or now.year
    month = month or now.month
    start, end = month_bounds(year, month)

    orders = await fetch_orders(db, start, end)
    items = await fetch_line_items(db, start, end)
    total = float(orders["total_price"].sum()) if not orders.empty else 0.0
    order_count = int(orders["order_id"].nunique()) if not orders.empty else 0

    logger.info("spending.monthly_report", year=year, month=month, orders=order_count)
    return {
        "period": f"{year:04d}-{month:02d}",
        "total_spending": round(total, 2),
        "order_count": order_count,
        "average_order_value": round(total / order_count, 2) if order_count else 0.0,
        "categories": summarize_by_category(items),
        "top_stores": summarize_by_store(orders),
    }


async def get_budget_status(
    db: AsyncSession,
    now: datetime | None = None,
    budget_limits: dict[str, float] | None = None,
) -> dict[str, Any]:
    """
    Current-month spend per budgeted category.

    Spend in categories without their own budget counts toward 其他 when
    that budget exists.
    """
    now = now or utcnow()
    limits = budget_limits if budget_limits is not None else get_settings().budget_limits
    start, end = month_bounds(now.year, now.month)
    items = await fetch_line_items(db, start, end)

    spent: dict[str, float] = {name: 0.0 for name in limits}
    if not items.empty:
        for category, amount in items.groupby(items["category"].fillna(UNCATEGORIZED))["amount"].sum().items():
            key = category if category in limits else "其他"
            if key in spent:
                spent[key] += float(amount)

    budgets = []
    for category, budget in limits.items():
        usage, status = budget_state(spent[category], budget)
        budgets.append(
            {
                "category": category,
                "budget": round(float(budget), 2),
                "spent": round(spent[category], 2),
                "remaining": round(float(budget) - spent[category], 2),
                "usage_percent": usage,
                "status": status,
            }
        )

    alerts = [b["category"] for b in budgets if b["status"] != "ok"]
    if alerts:
        logger.warning("spending.budget_alert", categories=alerts)
    return {
        "period": f"{now.year:04d}-{now.month:02d}",
        "budgets": budgets,
        "total_budget": round(sum(float(v) for v in limits.values()), 2),
        "total_spent": round(sum(spent.values()), 2),
        "categories_over_threshold": alerts,
    }
