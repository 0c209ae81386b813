"""
Tool Registry — named engine operations behind one JSON-in / JSON-out call.

invoke_tool(db, name, payload):
  1. look up the ToolSpec                   (UnknownToolError if missing)
  2. parse payload into its request model   (pydantic ValidationError)
  3. run the async handler                  (DomainError / SQLAlchemyError / anything else)
  4. wrap the result: {"success", "data", "error": {"type", "message"}}

Failures are logged and returned as an envelope; unexpected exceptions
become error type "internal".
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api import schemas
from core.errors import ProcurementError, UnknownToolError
from procurement import feedback, inventory, purchases, shopping_list, spending
from procurement.anomaly import detect_anomalous_spending
from procurement.recommendations import apply_recommendations, generate_recommendations
from procurement.trends import analyze_spending_trends

logger = structlog.get_logger()

Handler = Callable[[AsyncSession, Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    request_model: type[BaseModel]
    handler: Handler


# ─── Handlers ───────────────────────────────────────────────────────────────


async def _generate_recommendations(db: AsyncSession, req: schemas.GenerateRecommendationsRequest):
    batch = await generate_recommendations(
        db,
        analysis_depth_days=req.analysis_depth_days,
        categories=req.categories,
        include_seasonality=req.include_seasonality,
    )
    return batch.to_dict()


async def _apply_recommendations(db: AsyncSession, req: schemas.ApplyRecommendationsRequest):
    batch = await generate_recommendations(
        db,
        analysis_depth_days=req.analysis_depth_days,
        categories=req.categories,
        include_seasonality=req.include_seasonality,
    )
    return await apply_recommendations(db, batch.recommendations, item_names=req.item_names)


async def _detect_anomalies(db: AsyncSession, req: schemas.DetectAnomaliesRequest):
    return await detect_anomalous_spending(db, thresholds=req.to_thresholds())


async def _analyze_trends(db: AsyncSession, req: schemas.AnalyzeTrendsRequest):
    return await analyze_spending_trends(
        db,
        time_range=req.time_range,
        granularity=req.granularity,
        categories=req.categories,
        include_forecasting=req.include_forecasting,
    )


async def _record_feedback(db: AsyncSession, req: schemas.FeedbackRequest):
    return await feedback.record_feedback(db, req.to_event())


async def _process_feedback(db: AsyncSession, req: schemas.FeedbackBatchRequest):
    return await feedback.process_feedback_batch(db, [item.to_event() for item in req.feedback_list])


async def _personalized(db: AsyncSession, req: schemas.PersonalizedRecommendationsRequest):
    return await feedback.get_personalized_recommendations(
        db,
        analysis_depth_days=req.analysis_depth_days,
        categories=req.categories,
        include_seasonality=req.include_seasonality,
    )


async def _update_metrics(db: AsyncSession, req: schemas.UpdateMetricsRequest):
    return await feedback.update_recommendation_metrics(db, req.metric_date, req.force_recalculate)


async def _get_metrics(db: AsyncSession, req: schemas.MetricsRangeRequest):
    return await feedback.get_recommendation_metrics(db, req.start_date, req.end_date)


async def _recompute_preferences(db: AsyncSession, req: schemas.RecomputePreferencesRequest):
    return await feedback.recompute_user_preferences(db, lookback_days=req.lookback_days)


async def _import_orders(db: AsyncSession, req: schemas.ImportOrdersRequest):
    return await purchases.import_orders(
        db,
        [o.model_dump() for o in req.orders],
        stock_in_inventory=req.stock_in_inventory,
    )


async def _order_history(db: AsyncSession, req: schemas.OrderHistoryRequest):
    return await purchases.get_order_history(db, **req.model_dump())


async def _spending_by_category(db: AsyncSession, req: schemas.SpendingByCategoryRequest):
    return await spending.get_spending_by_category(db, req.start_date, req.end_date)


async def _monthly_report(db: AsyncSession, req: schemas.MonthlyReportRequest):
    return await spending.generate_monthly_report(db, year=req.year, month=req.month)


async def _budget_status(db: AsyncSession, req: schemas.BudgetStatusRequest):
    return await spending.get_budget_status(db)


async def _inventory_items(db: AsyncSession, req: schemas.InventoryQueryRequest):
    items = await inventory.get_inventory_items(db, **req.model_dump())
    return {"items": items, "count": len(items)}


async def _update_inventory(db: AsyncSession, req: schemas.UpdateInventoryRequest):
    return await inventory.update_inventory_quantity(db, req.item_name, req.quantity_change)


async def _shopping_list(db: AsyncSession, req: schemas.ShoppingListRequest):
    entries = await shopping_list.list_entries(db, status=req.status)
    return {"items": entries, "count": len(entries)}


async def _manage_shopping_list(db: AsyncSession, req: schemas.ManageShoppingListRequest):
    item_data = req.item_data.model_dump(exclude_none=True) if req.item_data else None
    return await shopping_list.manage_shopping_list(db, req.action, item_id=req.item_id, item_data=item_data)


# ─── Registry ───────────────────────────────────────────────────────────────


TOOLS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            "generate_purchase_recommendations",
            "Rank low-stock items from purchase history and inventory",
            schemas.GenerateRecommendationsRequest,
            _generate_recommendations,
        ),
        ToolSpec(
            "apply_purchase_recommendations",
            "Add generated recommendations to the shopping list",
            schemas.ApplyRecommendationsRequest,
            _apply_recommendations,
        ),
        ToolSpec(
            "detect_anomalous_spending",
            "Flag daily, category, item-level and frequency spending anomalies",
            schemas.DetectAnomaliesRequest,
            _detect_anomalies,
        ),
        ToolSpec(
            "analyze_spending_trends",
            "Bucketed spending trend with statistics, forecast and insights",
            schemas.AnalyzeTrendsRequest,
            _analyze_trends,
        ),
        ToolSpec(
            "record_user_feedback",
            "Record one decision on a recommendation and learn from it",
            schemas.FeedbackRequest,
            _record_feedback,
        ),
        ToolSpec(
            "process_recommendation_feedback",
            "Record a batch of decisions, reporting per-item results",
            schemas.FeedbackBatchRequest,
            _process_feedback,
        ),
        ToolSpec(
            "get_personalized_recommendations",
            "Recommendations re-ranked by learned preferences",
            schemas.PersonalizedRecommendationsRequest,
            _personalized,
        ),
        ToolSpec(
            "update_recommendation_metrics",
            "Roll up one day of feedback into acceptance and accuracy metrics",
            schemas.UpdateMetricsRequest,
            _update_metrics,
        ),
        ToolSpec(
            "get_recommendation_metrics",
            "Stored daily recommendation metrics over a date range",
            schemas.MetricsRangeRequest,
            _get_metrics,
        ),
        ToolSpec(
            "recompute_user_preferences",
            "Fold recent feedback into category preferences",
            schemas.RecomputePreferencesRequest,
            _recompute_preferences,
        ),
        ToolSpec(
            "import_orders",
            "Import parsed orders and their line items",
            schemas.ImportOrdersRequest,
            _import_orders,
        ),
        ToolSpec(
            "get_order_history",
            "Search imported orders",
            schemas.OrderHistoryRequest,
            _order_history,
        ),
        ToolSpec(
            "get_spending_by_category",
            "Line-item spending per category over a date range",
            schemas.SpendingByCategoryRequest,
            _spending_by_category,
        ),
        ToolSpec(
            "generate_monthly_report",
            "Monthly totals, category breakdown and top stores",
            schemas.MonthlyReportRequest,
            _monthly_report,
        ),
        ToolSpec(
            "get_budget_status",
            "Current-month category spending against budget limits",
            schemas.BudgetStatusRequest,
            _budget_status,
        ),
        ToolSpec(
            "get_inventory_items",
            "Search household inventory",
            schemas.InventoryQueryRequest,
            _inventory_items,
        ),
        ToolSpec(
            "update_inventory_quantity",
            "Adjust an inventory item's quantity",
            schemas.UpdateInventoryRequest,
            _update_inventory,
        ),
        ToolSpec(
            "get_shopping_list",
            "List shopping list entries by status",
            schemas.ShoppingListRequest,
            _shopping_list,
        ),
        ToolSpec(
            "manage_shopping_list",
            "Add, update, remove or complete a shopping list entry",
            schemas.ManageShoppingListRequest,
            _manage_shopping_list,
        ),
    )
}


def _failure(error_type: str, message: str) -> dict[str, Any]:
    return {"success": False, "data": None, "error": {"type": error_type, "message": message}}


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "payload"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def list_tools() -> list[dict[str, str]]:
    return [{"name": spec.name, "description": spec.description} for spec in TOOLS.values()]


def get_tool(name: str) -> ToolSpec:
    spec = TOOLS.get(name)
    if spec is None:
        raise UnknownToolError(name)
    return spec


async def invoke_tool(db: AsyncSession, name: str, payload: dict[str, Any] | None) -> dict[str, Any]:
    """Run one tool and return its result envelope. Never raises."""
    try:
        spec = get_tool(name)
        request = spec.request_model.model_validate(payload or {})
        data = await spec.handler(db, request)
    except ValidationError as exc:
        logger.warning("tool.failed", tool=name, error_type="validation", error=str(exc))
        return _failure("validation", _validation_message(exc))
    except SQLAlchemyError as exc:
        logger.error("tool.failed", tool=name, error_type="store", error=str(exc))
        return _failure("store", str(exc.orig) if getattr(exc, "orig", None) is not None else str(exc))
    except ProcurementError as exc:
        logger.warning("tool.failed", tool=name, error_type=exc.error_type, error=str(exc))
        return _failure(exc.error_type, str(exc))
    except ValueError as exc:
        logger.warning("tool.failed", tool=name, error_type="validation", error=str(exc))
        return _failure("validation", str(exc))
    except Exception as exc:
        logger.exception("tool.failed", tool=name, error_type="internal", error=str(exc))
        return _failure("internal", f"{type(exc).__name__}: {exc}")

    logger.info("tool.completed", tool=name)
    return {"success": True, "data": data, "error": None}
