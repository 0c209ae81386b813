"""
HomeOps Database Models

7 tables for the household procurement engine.

Tables:
  Household data (written by ingestion / inventory collaborators):
  1. inventory               - What is on hand, one row per item name
  2. purchase_history        - Imported orders (platform-prefixed ids)
  3. purchase_sub_list       - Order line items (parent_id → purchase_history)
  4. shopping_list           - Pending / completed purchases

  Learning loop (owned by the engine):
  5. user_feedback           - Append-only accept/reject/modify decisions
  6. user_preferences        - Running-mean preference weights
  7. recommendation_metrics  - Daily acceptance / accuracy rollup
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from db.session import Base

USER_ACTIONS = ("accepted", "rejected", "modified", "ignored")
SHOPPING_LIST_STATUSES = ("pending", "completed")


def utcnow() -> datetime:
    """Naive UTC timestamp; all stored times share this zone."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime | None) -> datetime | None:
    """Convert an offset-aware timestamp to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# SQLite only autoincrements INTEGER PRIMARY KEY columns
_BigId = BigInteger().with_variant(Integer, "sqlite")


# ─── 1. Inventory ───────────────────────────────────────────────────────────


class InventoryItem(Base):
    __tablename__ = "inventory"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    item_name = Column(String(255), nullable=False, unique=True)
    category = Column(String(100))
    current_quantity = Column(Integer, nullable=False, default=0)
    unit = Column(String(50))
    storage_location = Column(String(255))
    production_date = Column(Date)
    expiry_date = Column(Date)
    warranty_period_days = Column(Integer, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_inventory_category", "category"),
        CheckConstraint("current_quantity >= 0", name="ck_inventory_quantity_nonneg"),
    )


# ─── 2. Purchase History ────────────────────────────────────────────────────


class PurchaseOrder(Base):
    __tablename__ = "purchase_history"

    id = Column(String(45), primary_key=True)  # e.g. "TB-2024011512345"
    store_name = Column(String(255), nullable=False)
    total_price = Column(Numeric(10, 2))
    delivery_cost = Column(Numeric(10, 2))
    pay_fee = Column(Numeric(10, 2))
    purchase_date = Column(DateTime)
    purchase_channel = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("ix_purchase_history_date", "purchase_date"),)

    items = relationship(
        "PurchaseLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="PurchaseLineItem.id",
    )


# ─── 3. Purchase Line Items ─────────────────────────────────────────────────


class PurchaseLineItem(Base):
    __tablename__ = "purchase_sub_list"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    parent_id = Column(String(45), ForeignKey("purchase_history.id"), nullable=False)
    item_name = Column(String(225), nullable=False)
    purchase_quantity = Column(Integer, nullable=False, default=1)
    model = Column(String(100))
    unit_price = Column(Numeric(10, 2))
    category = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_purchase_sub_list_parent", "parent_id"),
        Index("ix_purchase_sub_list_item", "item_name"),
        CheckConstraint("purchase_quantity >= 0", name="ck_line_item_quantity_nonneg"),
    )

    order = relationship("PurchaseOrder", back_populates="items")


# ─── 4. Shopping List ───────────────────────────────────────────────────────


class ShoppingListEntry(Base):
    __tablename__ = "shopping_list"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_name = Column(String(255), nullable=False)
    suggested_quantity = Column(Integer)
    priority = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="pending")
    reason = Column(Text)
    added_date = Column(DateTime, nullable=False, default=utcnow)
    completed_date = Column(DateTime)

    __table_args__ = (
        Index("ix_shopping_list_item_status", "item_name", "status"),
        CheckConstraint("priority BETWEEN 1 AND 5", name="ck_shopping_list_priority"),
        CheckConstraint("status IN ('pending', 'completed')", name="ck_shopping_list_status"),
    )


# ─── 5. User Feedback ───────────────────────────────────────────────────────


class UserFeedback(Base):
    __tablename__ = "user_feedback"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    recommendation_id = Column(String(100), nullable=False)
    item_name = Column(String(255), nullable=False)
    category = Column(String(100))
    recommended_quantity = Column(Integer)
    recommended_priority = Column(Integer)
    recommendation_reason = Column(Text)
    user_action = Column(String(20), nullable=False)
    user_feedback = Column(Text)
    actual_quantity = Column(Integer)
    actual_priority = Column(Integer)
    feedback_date = Column(DateTime, nullable=False, default=utcnow)
    recommendation_date = Column(DateTime)
    context_data = Column(JSON)
    learning_weight = Column(Numeric(3, 2), default=1.0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_user_feedback_item", "item_name"),
        Index("ix_user_feedback_category", "category"),
        Index("ix_user_feedback_date", "feedback_date"),
        CheckConstraint(
            "user_action IN ('accepted', 'rejected', 'modified', 'ignored')",
            name="ck_user_feedback_action",
        ),
    )


# ─── 6. User Preferences ────────────────────────────────────────────────────


class UserPreference(Base):
    __tablename__ = "user_preferences"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    preference_type = Column(String(50), nullable=False)  # category_priority, quantity_adjustment, ...
    preference_key = Column(String(100), nullable=False)  # category, item name, "category:month"
    preference_value = Column(Float, nullable=False, default=1.0)
    confidence_score = Column(Float, nullable=False, default=0.5)
    sample_count = Column(Integer, nullable=False, default=1)
    last_updated = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("preference_type", "preference_key", name="uq_user_preference"),
        Index("ix_user_preferences_type", "preference_type"),
        CheckConstraint("confidence_score >= 0 AND confidence_score <= 1", name="ck_preference_confidence"),
        CheckConstraint("sample_count >= 1", name="ck_preference_samples"),
    )


# ─── 7. Recommendation Metrics ──────────────────────────────────────────────


class RecommendationMetrics(Base):
    __tablename__ = "recommendation_metrics"

    id = Column(_BigId, primary_key=True, autoincrement=True)
    metric_date = Column(Date, nullable=False, unique=True)
    total_recommendations = Column(Integer, nullable=False, default=0)
    accepted_recommendations = Column(Integer, nullable=False, default=0)
    rejected_recommendations = Column(Integer, nullable=False, default=0)
    modified_recommendations = Column(Integer, nullable=False, default=0)
    acceptance_rate = Column(Float, nullable=False, default=0.0)  # percent
    avg_priority_accuracy = Column(Float, nullable=False, default=0.0)
    avg_quantity_accuracy = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
