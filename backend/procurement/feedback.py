"""
Feedback Learning Loop — turn accept / reject / modify decisions into
preference weights that re-rank future recommendations.

Each recorded decision may update up to four preferences:
  category_priority[category]          ← 1.2 accepted / 0.8 rejected / 1.0 otherwise
  quantity_adjustment[item]            ← actual_quantity / recommended_quantity
  priority_adjustment[category|general]← actual_priority / recommended_priority
  seasonal_adjustment[category:month]  ← 1.1, accepted only

Preferences are cumulative running means:
  value      = (value × n + incoming) / (n + 1)
  confidence = min(1.0, confidence + increment)     (0.05 per record, 0.1 bulk)
  n         += 1

Concurrent updates of the same (type, key) are read-modify-write without a
row lock; two racing writers can lose one sample.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

import pandas as pd
import structlog
from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InvalidRequestError, ProcurementError
from db.models import (
    USER_ACTIONS,
    RecommendationMetrics,
    UserFeedback,
    UserPreference,
    as_utc,
    utcnow,
)
from db.session import transactional
from procurement.recommendations import Recommendation, generate_recommendations

logger = structlog.get_logger()

CATEGORY_WEIGHTS = {"accepted": 1.2, "rejected": 0.8}
NEUTRAL_WEIGHT = 1.0
SEASONAL_ACCEPT_WEIGHT = 1.1

CONFIDENCE_SEEDS = {
    "category_priority": 0.6,
    "quantity_adjustment": 0.7,
    "priority_adjustment": 0.5,
    "seasonal_adjustment": 0.4,
}
SINGLE_RECORD_INCREMENT = 0.05
BULK_RECOMPUTE_INCREMENT = 0.1

MIN_PREFERENCE_CONFIDENCE = 0.3
MIN_ITEM_FEEDBACK = 2
LOW_ACCEPTANCE_RATE = 0.3
HIGH_ACCEPTANCE_RATE = 0.8


@dataclass
class FeedbackEvent:
    """One user decision on a recommendation."""

    recommendation_id: str
    item_name: str
    user_action: str
    category: str | None = None
    recommended_quantity: int | None = None
    recommended_priority: int | None = None
    actual_quantity: int | None = None
    actual_priority: int | None = None
    feedback: str | None = None
    recommendation_reason: str | None = None
    recommendation_date: datetime | None = None
    context_data: dict[str, Any] | None = None

    def validate(self) -> None:
        if not self.recommendation_id:
            raise InvalidRequestError("recommendation_id is required")
        if not self.item_name:
            raise InvalidRequestError("item_name is required")
        if self.user_action not in USER_ACTIONS:
            raise InvalidRequestError(
                f"Invalid user_action '{self.user_action}', expected one of {', '.join(USER_ACTIONS)}"
            )


@dataclass
class PreferenceUpdate:
    preference_type: str
    preference_key: str
    value: float
    confidence_seed: float


@dataclass
class ItemFeedbackStats:
    feedback_count: int
    accepted_count: int
    avg_actual_quantity: float | None = None

    @property
    def acceptance_rate(self) -> float:
        return self.accepted_count / self.feedback_count if self.feedback_count else 0.0


@dataclass
class PreferenceSnapshot:
    value: float
    confidence: float
    sample_count: int = 1


# ── Pure learning rules ────────────────────────────────────────────────────


def category_weight(user_action: str) -> float:
    return CATEGORY_WEIGHTS.get(user_action, NEUTRAL_WEIGHT)


def derive_preference_updates(event: FeedbackEvent, month: int) -> list[PreferenceUpdate]:
    """Preference updates implied by one decision; each applies independently."""
    updates = []
    if event.category:
        updates.append(
            PreferenceUpdate(
                "category_priority",
                event.category,
                category_weight(event.user_action),
                CONFIDENCE_SEEDS["category_priority"],
            )
        )
    if event.actual_quantity is not None and event.recommended_quantity:
        updates.append(
            PreferenceUpdate(
                "quantity_adjustment",
                event.item_name,
                event.actual_quantity / event.recommended_quantity,
                CONFIDENCE_SEEDS["quantity_adjustment"],
            )
        )
    if event.actual_priority is not None and event.recommended_priority:
        updates.append(
            PreferenceUpdate(
                "priority_adjustment",
                event.category or "general",
                event.actual_priority / event.recommended_priority,
                CONFIDENCE_SEEDS["priority_adjustment"],
            )
        )
    if event.user_action == "accepted" and event.category:
        updates.append(
            PreferenceUpdate(
                "seasonal_adjustment",
                f"{event.category}:{month}",
                SEASONAL_ACCEPT_WEIGHT,
                CONFIDENCE_SEEDS["seasonal_adjustment"],
            )
        )
    return updates


def merge_preference_value(old_value: float, sample_count: int, incoming: float) -> float:
    return (old_value * sample_count + incoming) / (sample_count + 1)


def merge_confidence(old_confidence: float, increment: float) -> float:
    return round(min(1.0, old_confidence + increment), 4)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp_priority(value: int) -> int:
    return max(1, min(5, value))


def personalize_recommendation(
    rec: Recommendation,
    category_pref: PreferenceSnapshot | None,
    item_stats: ItemFeedbackStats | None,
) -> Recommendation:
    """Re-rank one recommendation in place from learned preferences."""
    confidences = []

    if category_pref is not None and category_pref.confidence >= MIN_PREFERENCE_CONFIDENCE:
        rec.priority = _clamp_priority(_round_half_up(rec.priority * category_pref.value))
        rec.reason = f"{rec.reason}（已按您的分类偏好调整，置信度 {category_pref.confidence:.0%}）"
        rec.adjustments.append(f"category_priority x{category_pref.value:.2f}")
        confidences.append(category_pref.confidence)

    if item_stats is not None and item_stats.feedback_count >= MIN_ITEM_FEEDBACK:
        rate = item_stats.acceptance_rate
        if rate < LOW_ACCEPTANCE_RATE:
            rec.priority = _clamp_priority(rec.priority - 1)
            rec.adjustments.append(f"low acceptance {rate:.0%}")
        elif rate > HIGH_ACCEPTANCE_RATE:
            rec.priority = _clamp_priority(rec.priority + 1)
            rec.adjustments.append(f"high acceptance {rate:.0%}")

        if item_stats.avg_actual_quantity is not None:
            blended = max(1, _round_half_up((rec.suggested_quantity + item_stats.avg_actual_quantity) / 2))
            if blended != rec.suggested_quantity:
                rec.adjustments.append(f"quantity {rec.suggested_quantity}->{blended}")
                rec.suggested_quantity = blended
                rec.estimated_cost = blended * rec.avg_price
        confidences.append(min(1.0, item_stats.feedback_count / 10))

    rec.learning_confidence = max(confidences, default=0.0)
    return rec


def compute_daily_metrics(rows: Sequence[UserFeedback]) -> dict[str, Any]:
    """Counts, acceptance rate (%) and accuracy scores for one day of feedback."""
    total = len(rows)
    accepted = sum(1 for r in rows if r.user_action == "accepted")
    rejected = sum(1 for r in rows if r.user_action == "rejected")
    modified = sum(1 for r in rows if r.user_action == "modified")

    acted = [r for r in rows if r.user_action in ("accepted", "modified")]
    priority_diffs = [
        abs(r.recommended_priority - r.actual_priority)
        for r in acted
        if r.recommended_priority is not None and r.actual_priority is not None
    ]
    quantity_ratios = [
        abs(r.recommended_quantity - r.actual_quantity) / r.recommended_quantity
        for r in acted
        if r.recommended_quantity and r.actual_quantity is not None
    ]

    priority_accuracy = max(0.0, 100 - (sum(priority_diffs) / len(priority_diffs)) * 25) if priority_diffs else 0.0
    quantity_accuracy = (
        max(0.0, 100 - (sum(quantity_ratios) / len(quantity_ratios)) * 100) if quantity_ratios else 0.0
    )
    return {
        "total_recommendations": total,
        "accepted_recommendations": accepted,
        "rejected_recommendations": rejected,
        "modified_recommendations": modified,
        "acceptance_rate": round(accepted / total * 100, 2) if total else 0.0,
        "avg_priority_accuracy": round(priority_accuracy, 2),
        "avg_quantity_accuracy": round(quantity_accuracy, 2),
    }


# ── Persistence ────────────────────────────────────────────────────────────


def preference_to_dict(pref: UserPreference) -> dict[str, Any]:
    return {
        "preference_type": pref.preference_type,
        "preference_key": pref.preference_key,
        "preference_value": round(pref.preference_value, 4),
        "confidence_score": pref.confidence_score,
        "sample_count": pref.sample_count,
    }


def metrics_to_dict(metrics: RecommendationMetrics) -> dict[str, Any]:
    return {
        "metric_date": metrics.metric_date.isoformat(),
        "total_recommendations": metrics.total_recommendations,
        "accepted_recommendations": metrics.accepted_recommendations,
        "rejected_recommendations": metrics.rejected_recommendations,
        "modified_recommendations": metrics.modified_recommendations,
        "acceptance_rate": metrics.acceptance_rate,
        "avg_priority_accuracy": metrics.avg_priority_accuracy,
        "avg_quantity_accuracy": metrics.avg_quantity_accuracy,
    }


async def apply_preference_update(
    db: AsyncSession,
    update: PreferenceUpdate,
    increment: float = SINGLE_RECORD_INCREMENT,
) -> UserPreference:
    """Insert a fresh preference or fold ``update`` into the running mean. Caller commits."""
    result = await db.execute(
        select(UserPreference).where(
            UserPreference.preference_type == update.preference_type,
            UserPreference.preference_key == update.preference_key,
        )
    )
    pref = result.scalar_one_or_none()
    if pref is None:
        pref = UserPreference(
            preference_type=update.preference_type,
            preference_key=update.preference_key,
            preference_value=update.value,
            confidence_score=update.confidence_seed,
            sample_count=1,
        )
        db.add(pref)
    else:
        pref.preference_value = merge_preference_value(pref.preference_value, pref.sample_count, update.value)
        pref.confidence_score = merge_confidence(pref.confidence_score, increment)
        pref.sample_count = pref.sample_count + 1
        pref.last_updated = utcnow()
    await db.flush()
    return pref


async def _store_feedback(db: AsyncSession, event: FeedbackEvent, now: datetime) -> dict[str, Any]:
    event.validate()
    row = UserFeedback(
        recommendation_id=event.recommendation_id,
        item_name=event.item_name,
        category=event.category,
        recommended_quantity=event.recommended_quantity,
        recommended_priority=event.recommended_priority,
        recommendation_reason=event.recommendation_reason,
        user_action=event.user_action,
        user_feedback=event.feedback,
        actual_quantity=event.actual_quantity,
        actual_priority=event.actual_priority,
        feedback_date=now,
        recommendation_date=as_utc(event.recommendation_date),
        context_data=event.context_data,
    )
    db.add(row)
    await db.flush()

    applied = []
    for update in derive_preference_updates(event, now.month):
        pref = await apply_preference_update(db, update, SINGLE_RECORD_INCREMENT)
        applied.append(preference_to_dict(pref))
    return {"feedback_id": row.id, "preference_updates": applied}


async def record_feedback(
    db: AsyncSession,
    event: FeedbackEvent,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Append one decision and apply its preference updates atomically."""
    now = now or utcnow()
    async with transactional(db):
        outcome = await _store_feedback(db, event, now)

    logger.info(
        "feedback.recorded",
        recommendation_id=event.recommendation_id,
        item_name=event.item_name,
        user_action=event.user_action,
        preference_updates=len(outcome["preference_updates"]),
    )
    return outcome


async def process_feedback_batch(
    db: AsyncSession,
    events: Sequence[FeedbackEvent],
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Record many decisions in one transaction.

    Each event runs in its own SAVEPOINT: a failing event is rolled back and
    reported, the rest of the batch still commits.
    """
    now = now or utcnow()
    results = []
    async with transactional(db):
        for index, event in enumerate(events):
            try:
                async with db.begin_nested():
                    outcome = await _store_feedback(db, event, now)
            except (ProcurementError, SQLAlchemyError) as exc:
                logger.warning("feedback.batch_item_failed", index=index, item_name=event.item_name, error=str(exc))
                results.append({"index": index, "item_name": event.item_name, "success": False, "error": str(exc)})
                continue
            results.append({"index": index, "item_name": event.item_name, "success": True, **outcome})

    succeeded = sum(1 for r in results if r["success"])
    logger.info("feedback.batch_processed", total=len(results), succeeded=succeeded)
    return {
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": results,
    }


async def load_preferences(
    db: AsyncSession,
    preference_type: str,
    min_confidence: float = MIN_PREFERENCE_CONFIDENCE,
) -> dict[str, PreferenceSnapshot]:
    result = await db.execute(
        select(UserPreference).where(
            UserPreference.preference_type == preference_type,
            UserPreference.confidence_score >= min_confidence,
        )
    )
    return {
        p.preference_key: PreferenceSnapshot(p.preference_value, p.confidence_score, p.sample_count)
        for p in result.scalars().all()
    }


async def load_item_feedback_stats(
    db: AsyncSession,
    item_names: Sequence[str],
) -> dict[str, ItemFeedbackStats]:
    if not item_names:
        return {}
    result = await db.execute(
        select(
            UserFeedback.item_name,
            func.count(UserFeedback.id).label("feedback_count"),
            func.count(case((UserFeedback.user_action == "accepted", 1))).label("accepted_count"),
            func.avg(UserFeedback.actual_quantity).label("avg_actual_quantity"),
        )
        .where(UserFeedback.item_name.in_(list(item_names)))
        .group_by(UserFeedback.item_name)
    )
    return {
        row.item_name: ItemFeedbackStats(
            feedback_count=int(row.feedback_count),
            accepted_count=int(row.accepted_count or 0),
            avg_actual_quantity=float(row.avg_actual_quantity) if row.avg_actual_quantity is not None else None,
        )
        for row in result.all()
    }


async def get_personalized_recommendations(
    db: AsyncSession,
    analysis_depth_days: int | None = None,
    categories: Sequence[str] | None = None,
    include_seasonality: bool = True,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Base recommendations re-ranked by learned preferences and item acceptance history."""
    batch = await generate_recommendations(
        db,
        analysis_depth_days=analysis_depth_days,
        categories=categories,
        include_seasonality=include_seasonality,
        now=now,
    )
    category_prefs = await load_preferences(db, "category_priority")
    item_stats = await load_item_feedback_stats(db, [r.item_name for r in batch.recommendations])

    preferences_applied = 0
    for rec in batch.recommendations:
        pref = category_prefs.get(rec.category) if rec.category else None
        stats = item_stats.get(rec.item_name)
        if pref is not None:
            preferences_applied += 1
        personalize_recommendation(rec, pref, stats)

    batch.recommendations.sort(key=lambda r: (-r.priority, -r.learning_confidence))
    with_history = sum(1 for s in item_stats.values() if s.feedback_count >= MIN_ITEM_FEEDBACK)

    logger.info(
        "feedback.personalized",
        recommendations=len(batch.recommendations),
        preferences_applied=preferences_applied,
        items_with_history=with_history,
    )
    payload = batch.to_dict()
    payload["personalization"] = {
        "preferences_applied": preferences_applied,
        "items_with_feedback_history": with_history,
        "min_confidence": MIN_PREFERENCE_CONFIDENCE,
    }
    return payload


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


async def update_recommendation_metrics(
    db: AsyncSession,
    metric_date: date | None = None,
    force_recalculate: bool = False,
) -> dict[str, Any]:
    """
    Roll up one day's feedback into recommendation_metrics.

    An existing row is returned unchanged unless ``force_recalculate``.
    """
    metric_date = metric_date or utcnow().date()
    result = await db.execute(select(RecommendationMetrics).where(RecommendationMetrics.metric_date == metric_date))
    existing = result.scalar_one_or_none()
    if existing is not None and not force_recalculate:
        return {"metrics": metrics_to_dict(existing), "recalculated": False}

    start, end = _day_bounds(metric_date)
    feedback = await db.execute(
        select(UserFeedback).where(UserFeedback.feedback_date >= start, UserFeedback.feedback_date < end)
    )
    values = compute_daily_metrics(feedback.scalars().all())

    async with transactional(db):
        if existing is None:
            existing = RecommendationMetrics(metric_date=metric_date, **values)
            db.add(existing)
        else:
            for key, value in values.items():
                setattr(existing, key, value)
        await db.flush()

    logger.info("feedback.metrics_updated", metric_date=metric_date.isoformat(), **values)
    return {"metrics": metrics_to_dict(existing), "recalculated": True}


async def get_recommendation_metrics(
    db: AsyncSession,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict[str, Any]:
    """Stored daily metrics in [start_date, end_date] (default: last 30 days)."""
    end_date = end_date or utcnow().date()
    start_date = start_date or end_date - timedelta(days=30)
    result = await db.execute(
        select(RecommendationMetrics)
        .where(RecommendationMetrics.metric_date >= start_date, RecommendationMetrics.metric_date <= end_date)
        .order_by(RecommendationMetrics.metric_date)
    )
    daily = [metrics_to_dict(m) for m in result.scalars().all()]

    summary: dict[str, Any] = {"days": len(daily)}
    if daily:
        frame = pd.DataFrame(daily)
        totals = frame[
            ["total_recommendations", "accepted_recommendations", "rejected_recommendations", "modified_recommendations"]
        ].sum()
        summary.update({key: int(value) for key, value in totals.items()})
        total = summary["total_recommendations"]
        summary["acceptance_rate"] = round(summary["accepted_recommendations"] / total * 100, 2) if total else 0.0
        summary["avg_priority_accuracy"] = round(float(frame["avg_priority_accuracy"].mean()), 2)
        summary["avg_quantity_accuracy"] = round(float(frame["avg_quantity_accuracy"].mean()), 2)

    return {
        "start_date": start_date.isoformat(),
        "end_date": end_date.isoformat(),
        "daily": daily,
        "summary": summary,
    }


async def recompute_user_preferences(
    db: AsyncSession,
    lookback_days: int = 30,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Fold each category's mean decision weight over the lookback window into
    category_priority as one sample, with the bulk confidence increment.
    """
    now = now or utcnow()
    result = await db.execute(
        select(UserFeedback.category, UserFeedback.user_action).where(
            UserFeedback.feedback_date >= now - timedelta(days=lookback_days),
            UserFeedback.feedback_date <= now,
            UserFeedback.category.is_not(None),
        )
    )
    weights: dict[str, list[float]] = {}
    for row in result.all():
        weights.setdefault(row.category, []).append(category_weight(row.user_action))

    updated = []
    async with transactional(db):
        for category in sorted(weights):
            samples = weights[category]
            pref = await apply_preference_update(
                db,
                PreferenceUpdate(
                    "category_priority",
                    category,
                    sum(samples) / len(samples),
                    CONFIDENCE_SEEDS["category_priority"],
                ),
                BULK_RECOMPUTE_INCREMENT,
            )
            updated.append(preference_to_dict(pref))

    logger.info("feedback.preferences_recomputed", lookback_days=lookback_days, categories=len(updated))
    return {"lookback_days": lookback_days, "updated": updated}
