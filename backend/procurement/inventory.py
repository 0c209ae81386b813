"""
Household inventory — search, quantity adjustments and stock-in.

Quantities never go negative: a delta that would take an item below zero
leaves it at 0.
"""

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import DomainError
from db.models import InventoryItem, utcnow
from db.session import transactional

logger = structlog.get_logger()


def item_to_dict(item: InventoryItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "item_name": item.item_name,
        "category": item.category,
        "current_quantity": item.current_quantity,
        "unit": item.unit,
        "storage_location": item.storage_location,
        "production_date": item.production_date.isoformat() if item.production_date else None,
        "expiry_date": item.expiry_date.isoformat() if item.expiry_date else None,
        "warranty_period_days": item.warranty_period_days,
    }


async def get_inventory_items(
    db: AsyncSession,
    category: str | None = None,
    name: str | None = None,
    low_stock_threshold: int | None = None,
    expiring_within_days: int | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Inventory rows matching every supplied filter, ordered by name."""
    query = select(InventoryItem)
    if category:
        query = query.where(InventoryItem.category == category)
    if name:
        query = query.where(InventoryItem.item_name.contains(name))
    if low_stock_threshold is not None:
        query = query.where(InventoryItem.current_quantity <= low_stock_threshold)
    if expiring_within_days is not None:
        today = (now or utcnow()).date()
        query = query.where(
            InventoryItem.expiry_date.is_not(None),
            InventoryItem.expiry_date <= today + timedelta(days=expiring_within_days),
        )
    result = await db.execute(query.order_by(InventoryItem.item_name))
    return [item_to_dict(i) for i in result.scalars().all()]


async def _get_item(db: AsyncSession, item_name: str) -> InventoryItem | None:
    result = await db.execute(select(InventoryItem).where(InventoryItem.item_name == item_name))
    return result.scalar_one_or_none()


async def update_inventory_quantity(
    db: AsyncSession,
    item_name: str,
    delta: int,
) -> dict[str, Any]:
    """Apply ``delta`` to an existing item, flooring the result at 0."""
    async with transactional(db):
        item = await _get_item(db, item_name)
        if item is None:
            raise DomainError(f"Inventory item '{item_name}' not found")
        previous = item.current_quantity or 0
        item.current_quantity = max(0, previous + delta)
        await db.flush()

    logger.info(
        "inventory.quantity_updated",
        item_name=item_name,
        delta=delta,
        previous=previous,
        current=item.current_quantity,
    )
    return {
        "item": item_to_dict(item),
        "previous_quantity": previous,
        "delta": delta,
    }


async def stock_in(
    db: AsyncSession,
    item_name: str,
    quantity: int,
    category: str | None = None,
) -> tuple[InventoryItem, bool]:
    """Add purchased units; creates the row on first stock-in. Caller commits.

    Returns (item, created).
    """
    item = await _get_item(db, item_name)
    if item is None:
        item = InventoryItem(item_name=item_name, category=category, current_quantity=max(0, quantity))
        db.add(item)
        await db.flush()
        return item, True

    item.current_quantity = max(0, (item.current_quantity or 0) + quantity)
    if item.category is None and category:
        item.category = category
    await db.flush()
    return item, False
