"""
Tool request schemas.

Every tool argument object is parsed into one of these models before any
query runs. Wire names are camelCase (``analysisDepthDays``); snake_case
names are accepted too. Threshold defaults come from ``Settings`` so the
detector and its callers cannot drift apart.
"""

from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.config import AnomalyThresholds, get_settings
from db.models import as_utc
from procurement.feedback import FeedbackEvent

UserAction = Literal["accepted", "rejected", "modified", "ignored"]
Granularity = Literal["daily", "weekly", "monthly"]
LookbackDays = Annotated[int, Field(ge=1, le=3650)]
# offset-aware input is converted to the stored zone (naive UTC)
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class ToolRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ─── Recommendations ────────────────────────────────────────────────────────


class GenerateRecommendationsRequest(ToolRequest):
    analysis_depth_days: int = Field(
        default_factory=lambda: get_settings().recommendations.analysis_depth_days, ge=1, le=3650
    )
    categories: list[str] | None = None
    include_seasonality: bool = True


class ApplyRecommendationsRequest(GenerateRecommendationsRequest):
    item_names: list[str] | None = None


# ─── Anomalies & Trends ─────────────────────────────────────────────────────


class DetectAnomaliesRequest(ToolRequest):
    analysis_depth_days: int = Field(
        default_factory=lambda: get_settings().anomaly.analysis_depth_days, ge=1, le=3650
    )
    daily_threshold_multiplier: float = Field(
        default_factory=lambda: get_settings().anomaly.daily_threshold_multiplier, ge=0
    )
    category_threshold_multiplier: float = Field(
        default_factory=lambda: get_settings().anomaly.category_threshold_multiplier, ge=0
    )
    unusual_item_threshold: float = Field(
        default_factory=lambda: get_settings().anomaly.unusual_item_threshold, ge=0
    )

    def to_thresholds(self) -> AnomalyThresholds:
        return get_settings().anomaly.model_copy(
            update={
                "analysis_depth_days": self.analysis_depth_days,
                "daily_threshold_multiplier": self.daily_threshold_multiplier,
                "category_threshold_multiplier": self.category_threshold_multiplier,
                "unusual_item_threshold": self.unusual_item_threshold,
            }
        )


class AnalyzeTrendsRequest(ToolRequest):
    time_range: LookbackDays | Literal["month", "quarter", "year"] = 90
    granularity: Granularity = "monthly"
    categories: list[str] | None = None
    include_forecasting: bool = True


# ─── Feedback ───────────────────────────────────────────────────────────────


class FeedbackRequest(ToolRequest):
    recommendation_id: str = Field(min_length=1)
    item_name: str = Field(min_length=1)
    user_action: UserAction
    category: str | None = None
    recommended_quantity: int | None = Field(default=None, ge=0)
    recommended_priority: int | None = Field(default=None, ge=1, le=5)
    actual_quantity: int | None = Field(default=None, ge=0)
    actual_priority: int | None = Field(default=None, ge=1, le=5)
    feedback: str | None = None
    recommendation_reason: str | None = None
    recommendation_date: UtcDatetime | None = None
    context_data: dict[str, Any] | None = None

    def to_event(self) -> FeedbackEvent:
        return FeedbackEvent(
            recommendation_id=self.recommendation_id,
            item_name=self.item_name,
            user_action=self.user_action,
            category=self.category,
            recommended_quantity=self.recommended_quantity,
            recommended_priority=self.recommended_priority,
            actual_quantity=self.actual_quantity,
            actual_priority=self.actual_priority,
            feedback=self.feedback,
            recommendation_reason=self.recommendation_reason,
            recommendation_date=self.recommendation_date,
            context_data=self.context_data,
        )


class FeedbackBatchItem(FeedbackRequest):
    # checked per item by the engine so one bad action does not reject the batch
    user_action: str


class FeedbackBatchRequest(ToolRequest):
    feedback_list: list[FeedbackBatchItem] = Field(min_length=1)


class PersonalizedRecommendationsRequest(GenerateRecommendationsRequest):
    pass


class UpdateMetricsRequest(ToolRequest):
    metric_date: date | None = Field(default=None, alias="date")
    force_recalculate: bool = False


class MetricsRangeRequest(ToolRequest):
    start_date: date | None = None
    end_date: date | None = None


class RecomputePreferencesRequest(ToolRequest):
    lookback_days: int = Field(default=30, ge=1, le=3650)


# ─── Orders & Spending ──────────────────────────────────────────────────────


class LineItemInput(ToolRequest):
    item_name: str = Field(min_length=1)
    purchase_quantity: int = Field(default=1, ge=0)
    model: str | None = None
    unit_price: float | None = Field(default=None, ge=0)
    category: str | None = None


class OrderInput(ToolRequest):
    id: str = Field(min_length=1, max_length=45)
    store_name: str = Field(min_length=1)
    total_price: float | None = Field(default=None, ge=0)
    delivery_cost: float | None = Field(default=None, ge=0)
    pay_fee: float | None = Field(default=None, ge=0)
    purchase_date: UtcDatetime
    purchase_channel: str | None = None
    items: list[LineItemInput] = Field(default_factory=list)


class ImportOrdersRequest(ToolRequest):
    orders: list[OrderInput] = Field(min_length=1)
    stock_in_inventory: bool = False


class OrderHistoryRequest(ToolRequest):
    start_date: UtcDatetime | None = None
    end_date: UtcDatetime | None = None
    store_name: str | None = None
    purchase_channel: str | None = None
    min_amount: float | None = Field(default=None, ge=0)
    max_amount: float | None = Field(default=None, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)


class SpendingByCategoryRequest(ToolRequest):
    start_date: UtcDatetime
    end_date: UtcDatetime


class MonthlyReportRequest(ToolRequest):
    year: int | None = Field(default=None, ge=2000, le=2100)
    month: int | None = Field(default=None, ge=1, le=12)


class BudgetStatusRequest(ToolRequest):
    pass


# ─── Inventory & Shopping List ──────────────────────────────────────────────


class InventoryQueryRequest(ToolRequest):
    category: str | None = None
    name: str | None = None
    low_stock_threshold: int | None = Field(default=None, ge=0)
    expiring_within_days: int | None = Field(default=None, ge=0, le=3650)


class UpdateInventoryRequest(ToolRequest):
    item_name: str = Field(min_length=1)
    quantity_change: int


class ShoppingListRequest(ToolRequest):
    status: Literal["pending", "completed", "all"] = "all"


class ShoppingListItemData(ToolRequest):
    item_name: str | None = None
    suggested_quantity: int | None = Field(default=None, ge=0)
    priority: int | None = Field(default=None, ge=1, le=5)
    reason: str | None = None
    status: Literal["pending", "completed"] | None = None


class ManageShoppingListRequest(ToolRequest):
    action: Literal["add", "update", "remove", "complete"]
    item_id: int | None = None
    item_data: ShoppingListItemData | None = None
