"""
Purchase Orders — import already-parsed orders and query order history.

Order ids carry the platform prefix assigned upstream (e.g. "TB-…", "JD-…")
and are unique: re-importing an id is refused, never merged.
"""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.errors import DomainError
from db.models import PurchaseLineItem, PurchaseOrder, as_utc
from db.session import transactional
from procurement.inventory import stock_in

logger = structlog.get_logger()

DEFAULT_HISTORY_LIMIT = 100


def _money(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value)).quantize(Decimal("0.01"))


def _float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def order_to_dict(order: PurchaseOrder, include_items: bool = True) -> dict[str, Any]:
    data = {
        "id": order.id,
        "store_name": order.store_name,
        "total_price": _float(order.total_price),
        "delivery_cost": _float(order.delivery_cost),
        "pay_fee": _float(order.pay_fee),
        "purchase_date": order.purchase_date.isoformat() if order.purchase_date else None,
        "purchase_channel": order.purchase_channel,
    }
    if include_items:
        data["items"] = [
            {
                "id": li.id,
                "item_name": li.item_name,
                "purchase_quantity": li.purchase_quantity,
                "model": li.model,
                "unit_price": _float(li.unit_price),
                "category": li.category,
            }
            for li in order.items
        ]
    return data


async def import_orders(
    db: AsyncSession,
    orders: Sequence[dict[str, Any]],
    stock_in_inventory: bool = False,
) -> dict[str, Any]:
    """
    Insert orders and their line items in a single transaction.

    Any order id that already exists (in the store or earlier in the same
    batch) raises DomainError and nothing is written. With
    ``stock_in_inventory`` each line item's quantity is added to inventory.
    """
    ids = [o["id"] for o in orders]
    seen: set[str] = set()
    for order_id in ids:
        if order_id in seen:
            raise DomainError(f"Order '{order_id}' appears more than once in the import")
        seen.add(order_id)

    stocked: list[str] = []
    line_count = 0
    async with transactional(db):
        if ids:
            result = await db.execute(select(PurchaseOrder.id).where(PurchaseOrder.id.in_(ids)))
            existing = sorted(result.scalars().all())
            if existing:
                raise DomainError(f"Order already imported: {', '.join(existing)}")

        for data in orders:
            order = PurchaseOrder(
                id=data["id"],
                store_name=data["store_name"],
                total_price=_money(data.get("total_price")),
                delivery_cost=_money(data.get("delivery_cost")),
                pay_fee=_money(data.get("pay_fee")),
                purchase_date=as_utc(data.get("purchase_date")),
                purchase_channel=data.get("purchase_channel"),
            )
            for item in data.get("items") or []:
                order.items.append(
                    PurchaseLineItem(
                        item_name=item["item_name"],
                        purchase_quantity=item.get("purchase_quantity", 1),
                        model=item.get("model"),
                        unit_price=_money(item.get("unit_price")),
                        category=item.get("category"),
                    )
                )
                line_count += 1
            db.add(order)
            await db.flush()

            if stock_in_inventory:
                for line in order.items:
                    await stock_in(db, line.item_name, line.purchase_quantity or 0, line.category)
                    stocked.append(line.item_name)

    logger.info(
        "purchases.imported",
        orders=len(ids),
        line_items=line_count,
        stocked_items=len(stocked),
    )
    return {
        "imported_order_ids": ids,
        "orders_imported": len(ids),
        "line_items_imported": line_count,
        "inventory_updated": sorted(set(stocked)),
    }


async def get_order_history(
    db: AsyncSession,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    store_name: str | None = None,
    purchase_channel: str | None = None,
    min_amount: float | None = None,
    max_amount: float | None = None,
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> dict[str, Any]:
    """Orders matching every supplied filter, newest first, with line items."""
    query = select(PurchaseOrder).options(selectinload(PurchaseOrder.items))
    if start_date is not None:
        query = query.where(PurchaseOrder.purchase_date >= as_utc(start_date))
    if end_date is not None:
        query = query.where(PurchaseOrder.purchase_date <= as_utc(end_date))
    if store_name:
        query = query.where(PurchaseOrder.store_name.contains(store_name))
    if purchase_channel:
        query = query.where(PurchaseOrder.purchase_channel == purchase_channel)
    if min_amount is not None:
        query = query.where(PurchaseOrder.total_price >= _money(min_amount))
    if max_amount is not None:
        query = query.where(PurchaseOrder.total_price <= _money(max_amount))
    query = query.order_by(PurchaseOrder.purchase_date.desc(), PurchaseOrder.id).limit(limit)

    result = await db.execute(query)
    orders = [order_to_dict(o) for o in result.scalars().all()]
    return {
        "orders": orders,
        "count": len(orders),
        "total_amount": round(sum(o["total_price"] or 0.0 for o in orders), 2),
    }
