"""
Purchase History Loaders — rows from purchase_history / purchase_sub_list
as pandas DataFrames.

All aggregation (per-day, per-category, per-bucket) happens in-process so
the engine does not depend on dialect-specific date functions.
"""

from collections.abc import Sequence
from datetime import datetime

import pandas as pd
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import PurchaseLineItem, PurchaseOrder

ORDER_COLUMNS = ["order_id", "store_name", "purchase_channel", "purchase_date", "total_price"]
LINE_ITEM_COLUMNS = [
    "line_id",
    "order_id",
    "item_name",
    "category",
    "model",
    "quantity",
    "unit_price",
    "purchase_date",
    "amount",
]


async def fetch_orders(
    db: AsyncSession,
    start: datetime,
    end: datetime,
) -> pd.DataFrame:
    """Orders with a known total in [start, end)."""
    result = await db.execute(
        select(
            PurchaseOrder.id,
            PurchaseOrder.store_name,
            PurchaseOrder.purchase_channel,
            PurchaseOrder.purchase_date,
            PurchaseOrder.total_price,
        ).where(
            PurchaseOrder.purchase_date >= start,
            PurchaseOrder.purchase_date < end,
            PurchaseOrder.total_price.is_not(None),
        )
    )
    rows = result.all()
    if not rows:
        return pd.DataFrame(columns=ORDER_COLUMNS)

    df = pd.DataFrame(
        [
            {
                "order_id": row.id,
                "store_name": row.store_name,
                "purchase_channel": row.purchase_channel,
                "purchase_date": row.purchase_date,
                "total_price": float(row.total_price),
            }
            for row in rows
        ],
        columns=ORDER_COLUMNS,
    )
    df["purchase_date"] = pd.to_datetime(df["purchase_date"])
    return df


async def fetch_line_items(
    db: AsyncSession,
    start: datetime,
    end: datetime,
    categories: Sequence[str] | None = None,
) -> pd.DataFrame:
    """Line items of orders placed in [start, end), optionally category-scoped.

    ``amount`` is unit_price × quantity, with a missing unit price counted as 0.
    """
    query = (
        select(
            PurchaseLineItem.id,
            PurchaseLineItem.parent_id,
            PurchaseLineItem.item_name,
            PurchaseLineItem.category,
            PurchaseLineItem.model,
            PurchaseLineItem.purchase_quantity,
            PurchaseLineItem.unit_price,
            PurchaseOrder.purchase_date,
        )
        .join(PurchaseOrder, PurchaseLineItem.parent_id == PurchaseOrder.id)
        .where(
            PurchaseOrder.purchase_date >= start,
            PurchaseOrder.purchase_date < end,
        )
    )
    if categories:
        query = query.where(PurchaseLineItem.category.in_(list(categories)))

    result = await db.execute(query)
    rows = result.all()
    if not rows:
        return pd.DataFrame(columns=LINE_ITEM_COLUMNS)

    records = []
    for row in rows:
        quantity = int(row.purchase_quantity or 0)
        unit_price = float(row.unit_price) if row.unit_price is not None else 0.0
        records.append(
            {
                "line_id": row.id,
                "order_id": row.parent_id,
                "item_name": row.item_name,
                "category": row.category,
                "model": row.model,
                "quantity": quantity,
                "unit_price": unit_price,
                "purchase_date": row.purchase_date,
                "amount": unit_price * quantity,
            }
        )
    df = pd.DataFrame(records, columns=LINE_ITEM_COLUMNS)
    df["purchase_date"] = pd.to_datetime(df["purchase_date"])
    return df


def daily_totals(df: pd.DataFrame, value_col: str) -> pd.Series:
    """Sum ``value_col`` per calendar day; index is a normalized Timestamp."""
    if df.empty:
        return pd.Series(dtype=float)
    days = df["purchase_date"].dt.normalize()
    return df.groupby(days)[value_col].sum().astype(float).sort_index()
