"""
Purchase Recommendations — low-stock detection from purchase history.

Per item purchased inside the analysis window:
  consumption_rate   = total_purchased / max(1, days since first purchase)
  days_until_empty   = current_quantity / consumption_rate   (∞ when rate is 0)
  priority (first match wins):
      out of stock              → 5
      empty within 7 days       → 4
      empty within 14 days      → 3
      >30 days since purchase   → 2   (only if the item is consumed at all)
      otherwise                 → 1
  seasonal bump: +1 (cap 5) when the category × month multiplier > 1.2
  suggested_quantity = max(1, ceil(consumption_rate × 30))

Items already pending on the shopping list are skipped. Priority ≥ 2 is
kept, ranked by priority desc then days_until_empty asc, top 20.
"""

import hashlib
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import pandas as pd
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import RecommendationDefaults, get_settings
from db.models import InventoryItem, utcnow
from db.session import transactional
from procurement.history import fetch_line_items
from procurement.seasonality import apply_seasonal_adjustment, get_seasonal_multiplier
from procurement.shopping_list import get_pending_item_names, upsert_pending_entry

logger = structlog.get_logger()


@dataclass
class Recommendation:
    """One ranked purchase suggestion."""

    recommendation_id: str
    item_name: str
    category: str | None
    current_quantity: int
    suggested_quantity: int
    priority: int
    reason: str
    consumption_rate: float
    days_until_empty: float
    days_since_last_purchase: int
    avg_price: float
    estimated_cost: float
    seasonal_multiplier: float = 1.0
    learning_confidence: float = 0.0
    adjustments: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recommendation_id": self.recommendation_id,
            "item_name": self.item_name,
            "category": self.category,
            "current_quantity": self.current_quantity,
            "suggested_quantity": self.suggested_quantity,
            "priority": self.priority,
            "reason": self.reason,
            "consumption_rate": round(self.consumption_rate, 4),
            # JSON has no infinity
            "days_until_empty": round(self.days_until_empty, 1) if math.isfinite(self.days_until_empty) else None,
            "days_since_last_purchase": self.days_since_last_purchase,
            "avg_price": round(self.avg_price, 2),
            "estimated_cost": round(self.estimated_cost, 2),
            "seasonal_multiplier": self.seasonal_multiplier,
            "learning_confidence": round(self.learning_confidence, 3),
            "adjustments": list(self.adjustments),
        }


@dataclass
class RecommendationBatch:
    recommendations: list[Recommendation]
    analysis_period_days: int
    total_items_analyzed: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "recommendations": [r.to_dict() for r in self.recommendations],
            "analysis_period_days": self.analysis_period_days,
            "total_items_analyzed": self.total_items_analyzed,
            "recommendations_generated": len(self.recommendations),
        }


# ── Scoring ────────────────────────────────────────────────────────────────


def calculate_consumption_rate(total_purchased: float, days_since_first: int) -> float:
    return total_purchased / max(1, days_since_first)


def calculate_days_until_empty(current_quantity: int, consumption_rate: float) -> float:
    if consumption_rate > 0:
        return current_quantity / consumption_rate
    return math.inf


def calculate_priority(
    current_quantity: int,
    days_until_empty: float,
    days_since_last_purchase: int,
    consumption_rate: float,
) -> int:
    """Priority 1-5, first matching rule wins."""
    if current_quantity == 0:
        return 5
    elif days_until_empty <= 7:
        return 4
    elif days_until_empty <= 14:
        return 3
    elif days_since_last_purchase > 30 and consumption_rate > 0:
        return 2
    return 1


def calculate_suggested_quantity(consumption_rate: float, supply_days: int = 30) -> int:
    return max(1, math.ceil(consumption_rate * supply_days))


def build_reason(priority: int, days_until_empty: float, days_since_last_purchase: int) -> str:
    if priority == 5:
        return "库存已用完，需要立即补货"
    elif priority in (4, 3):
        return f"按当前消耗速度，预计 {days_until_empty:.0f} 天内用完"
    elif priority == 2:
        return f"距上次购买已 {days_since_last_purchase} 天，建议检查库存"
    return "库存充足"


def make_recommendation_id(item_name: str, now: datetime) -> str:
    digest = hashlib.sha1(item_name.encode("utf-8")).hexdigest()[:8]
    return f"REC-{now:%Y%m%d}-{digest}"


def rank_recommendations(
    recommendations: list[Recommendation],
    min_priority: int,
    limit: int,
) -> list[Recommendation]:
    kept = [r for r in recommendations if r.priority >= min_priority]
    kept.sort(key=lambda r: (-r.priority, r.days_until_empty))
    return kept[:limit]


# ── Data gathering ─────────────────────────────────────────────────────────


def _summarize_items(items: pd.DataFrame) -> pd.DataFrame:
    """Per item: total purchased, first/last purchase, average unit price, category."""
    items = items.sort_values("purchase_date")
    grouped = items.groupby("item_name")
    summary = pd.DataFrame(
        {
            "total_purchased": grouped["quantity"].sum(),
            "first_purchase": grouped["purchase_date"].min(),
            "last_purchase": grouped["purchase_date"].max(),
            "avg_price": grouped["unit_price"].mean(),
            # most recent non-null category
            "category": grouped["category"].agg(lambda s: s.dropna().iloc[-1] if s.notna().any() else None),
        }
    )
    return summary


async def _load_inventory(db: AsyncSession, item_names: Sequence[str]) -> dict[str, InventoryItem]:
    if not item_names:
        return {}
    result = await db.execute(select(InventoryItem).where(InventoryItem.item_name.in_(list(item_names))))
    return {item.item_name: item for item in result.scalars().all()}


def _days_between(later: datetime, earlier: datetime) -> int:
    return (later.date() - earlier.date()).days


async def generate_recommendations(
    db: AsyncSession,
    analysis_depth_days: int | None = None,
    categories: Sequence[str] | None = None,
    include_seasonality: bool = True,
    now: datetime | None = None,
    defaults: RecommendationDefaults | None = None,
) -> RecommendationBatch:
    """Ranked low-stock recommendations. Read-only."""
    settings = get_settings()
    defaults = defaults or settings.recommendations
    depth = analysis_depth_days or defaults.analysis_depth_days
    now = now or utcnow()

    logger.info(
        "recommendations.generate_start",
        analysis_depth_days=depth,
        categories=list(categories) if categories else None,
        include_seasonality=include_seasonality,
    )

    items = await fetch_line_items(db, now - timedelta(days=depth), now, categories=categories)
    if items.empty:
        logger.info("recommendations.no_history", analysis_depth_days=depth)
        return RecommendationBatch(recommendations=[], analysis_period_days=depth, total_items_analyzed=0)

    summary = _summarize_items(items)
    inventory = await _load_inventory(db, list(summary.index))
    pending = await get_pending_item_names(db)

    candidates: list[Recommendation] = []
    for item_name, row in summary.iterrows():
        if item_name in pending:
            continue

        inv = inventory.get(item_name)
        # purchased but never stocked in counts as empty
        current_quantity = max(0, int(inv.current_quantity or 0)) if inv else 0
        category = row["category"] if pd.notna(row["category"]) else (inv.category if inv else None)

        first = row["first_purchase"].to_pydatetime()
        last = row["last_purchase"].to_pydatetime()
        days_since_first = max(1, _days_between(now, first))
        days_since_last = max(0, _days_between(now, last))

        rate = calculate_consumption_rate(float(row["total_purchased"]), days_since_first)
        days_until_empty = calculate_days_until_empty(current_quantity, rate)
        priority = calculate_priority(current_quantity, days_until_empty, days_since_last, rate)
        reason = build_reason(priority, days_until_empty, days_since_last)

        multiplier = 1.0
        if include_seasonality:
            multiplier = get_seasonal_multiplier(category, now.month, settings.seasonal_multipliers)
            priority, bumped = apply_seasonal_adjustment(priority, multiplier, defaults.seasonal_bump_threshold)
            if bumped:
                reason = f"{reason}；{now.month}月为季节性需求高峰 (系数 {multiplier:.2f})，优先级上调"

        suggested = calculate_suggested_quantity(rate, defaults.supply_target_days)
        avg_price = float(row["avg_price"]) if pd.notna(row["avg_price"]) else 0.0
        candidates.append(
            Recommendation(
                recommendation_id=make_recommendation_id(str(item_name), now),
                item_name=str(item_name),
                category=category,
                current_quantity=current_quantity,
                suggested_quantity=suggested,
                priority=priority,
                reason=reason,
                consumption_rate=rate,
                days_until_empty=days_until_empty,
                days_since_last_purchase=days_since_last,
                avg_price=avg_price,
                estimated_cost=suggested * avg_price,
                seasonal_multiplier=multiplier,
            )
        )

    ranked = rank_recommendations(candidates, defaults.min_priority, defaults.max_results)

    logger.info(
        "recommendations.generate_complete",
        items_analyzed=len(summary),
        skipped_pending=len(pending & set(summary.index)),
        generated=len(ranked),
    )
    return RecommendationBatch(
        recommendations=ranked,
        analysis_period_days=depth,
        total_items_analyzed=int(len(summary)),
    )


async def apply_recommendations(
    db: AsyncSession,
    recommendations: Sequence[Recommendation],
    item_names: Sequence[str] | None = None,
) -> dict[str, Any]:
    """Upsert recommendations into the shopping list in one transaction.

    With ``item_names`` only those recommendations are applied.
    """
    wanted = set(item_names) if item_names is not None else None
    selected = [r for r in recommendations if wanted is None or r.item_name in wanted]
    added: list[str] = []
    updated: list[str] = []

    async with transactional(db):
        for rec in selected:
            _, created = await upsert_pending_entry(
                db,
                item_name=rec.item_name,
                suggested_quantity=rec.suggested_quantity,
                priority=rec.priority,
                reason=rec.reason,
            )
            (added if created else updated).append(rec.item_name)

    logger.info("recommendations.applied", added=len(added), updated=len(updated))
    return {"added": added, "updated": updated, "applied_count": len(added) + len(updated)}
