"""
Tests for order import / history, inventory and spending reports.

Covers:
  - Import in one transaction, duplicate ids refused, optional stock-in
  - Order history filters and ordering
  - Inventory search and quantity deltas (floored at 0)
  - Category spending, monthly report, budget status
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from core.errors import DomainError
from db.models import InventoryItem, PurchaseLineItem, PurchaseOrder
from procurement.inventory import get_inventory_items, update_inventory_quantity
from procurement.purchases import get_order_history, import_orders
from procurement.spending import (
    budget_state,
    generate_monthly_report,
    get_budget_status,
    get_spending_by_category,
    month_bounds,
)


def _order(order_id: str, purchase_date: datetime, items: list[dict], store: str = "盒马", total: float = 0.0):
    return {
        "id": order_id,
        "store_name": store,
        "total_price": total or sum(i["unit_price"] * i["purchase_quantity"] for i in items),
        "purchase_date": purchase_date,
        "purchase_channel": "淘宝",
        "items": items,
    }


# ── Import ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestImportOrders:
    async def test_import_with_stock_in(self, test_db, now):
        test_db.add(InventoryItem(item_name="牛奶", category="食品", current_quantity=2))
        await test_db.commit()

        result = await import_orders(
            test_db,
            [
                _order(
                    "TB-1001",
                    now - timedelta(days=1),
                    [
                        {"item_name": "牛奶", "purchase_quantity": 6, "unit_price": 5.5, "category": "食品"},
                        {"item_name": "抽纸", "purchase_quantity": 10, "unit_price": 2.5, "category": "日用品"},
                    ],
                )
            ],
            stock_in_inventory=True,
        )

        assert result["orders_imported"] == 1
        assert result["line_items_imported"] == 2
        assert result["inventory_updated"] == ["抽纸", "牛奶"]

        items = {i["item_name"]: i for i in await get_inventory_items(test_db)}
        assert items["牛奶"]["current_quantity"] == 8
        assert items["抽纸"]["current_quantity"] == 10
        assert items["抽纸"]["category"] == "日用品"

    async def test_duplicate_id_rejected_atomically(self, test_db, now):
        item = {"item_name": "大米", "purchase_quantity": 1, "unit_price": 59.0, "category": "食品"}
        await import_orders(test_db, [_order("JD-1", now, [item])])

        with pytest.raises(DomainError):
            await import_orders(test_db, [_order("JD-2", now, [item]), _order("JD-1", now, [item])])

        orders = await test_db.scalar(select(func.count()).select_from(PurchaseOrder))
        lines = await test_db.scalar(select(func.count()).select_from(PurchaseLineItem))
        assert orders == 1
        assert lines == 1

    async def test_duplicate_within_batch(self, test_db, now):
        item = {"item_name": "大米", "purchase_quantity": 1, "unit_price": 59.0, "category": "食品"}
        with pytest.raises(DomainError):
            await import_orders(test_db, [_order("JD-9", now, [item]), _order("JD-9", now, [item])])

    async def test_offset_purchase_date_converted_to_utc(self, test_db):
        pacific = timezone(timedelta(hours=-8))
        item = {"item_name": "面包", "purchase_quantity": 1, "unit_price": 12.0, "category": "食品"}
        await import_orders(test_db, [_order("TB-TZ", datetime(2024, 6, 14, 23, 30, tzinfo=pacific), [item])])

        stored = await test_db.scalar(select(PurchaseOrder.purchase_date).where(PurchaseOrder.id == "TB-TZ"))
        assert stored == datetime(2024, 6, 15, 7, 30)

        window = await get_order_history(
            test_db,
            start_date=datetime(2024, 6, 15, 15, 0, tzinfo=timezone(timedelta(hours=8))),
            end_date=datetime(2024, 6, 15, 8, 0),
        )
        assert [o["id"] for o in window["orders"]] == ["TB-TZ"]

    async def test_without_stock_in_inventory_untouched(self, test_db, now):
        item = {"item_name": "大米", "purchase_quantity": 1, "unit_price": 59.0, "category": "食品"}
        result = await import_orders(test_db, [_order("JD-3", now, [item])])
        assert result["inventory_updated"] == []
        assert await get_inventory_items(test_db) == []


@pytest.mark.asyncio
class TestOrderHistory:
    async def _seed(self, add_order, now):
        await add_order("TB-OLD", now - timedelta(days=30), [("大米", 1, 59.0, "食品")], store_name="盒马鲜生")
        await add_order("JD-MID", now - timedelta(days=10), [("洗衣液", 2, 40.0, "清洁用品")], channel="京东")
        await add_order("TB-NEW", now - timedelta(days=1), [("牛奶", 12, 5.0, "食品")], store_name="盒马鲜生")

    async def test_newest_first_with_items(self, test_db, add_order, now):
        await self._seed(add_order, now)
        await test_db.commit()

        result = await get_order_history(test_db)
        assert [o["id"] for o in result["orders"]] == ["TB-NEW", "JD-MID", "TB-OLD"]
        assert result["orders"][0]["items"][0]["item_name"] == "牛奶"
        assert result["total_amount"] == 199.0

    async def test_filters(self, test_db, add_order, now):
        await self._seed(add_order, now)
        await test_db.commit()

        by_store = await get_order_history(test_db, store_name="盒马")
        assert {o["id"] for o in by_store["orders"]} == {"TB-NEW", "TB-OLD"}

        by_channel = await get_order_history(test_db, purchase_channel="京东")
        assert [o["id"] for o in by_channel["orders"]] == ["JD-MID"]

        by_amount = await get_order_history(test_db, min_amount=70, max_amount=80)
        assert [o["id"] for o in by_amount["orders"]] == ["JD-MID"]

        by_date = await get_order_history(test_db, start_date=now - timedelta(days=15))
        assert {o["id"] for o in by_date["orders"]} == {"TB-NEW", "JD-MID"}


# ── Inventory ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestInventory:
    async def _seed(self, db, now):
        db.add_all(
            [
                InventoryItem(item_name="牛奶", category="食品", current_quantity=1, expiry_date=now.date() + timedelta(days=3)),
                InventoryItem(item_name="酸奶", category="食品", current_quantity=8, expiry_date=now.date() + timedelta(days=20)),
                InventoryItem(item_name="洗衣液", category="清洁用品", current_quantity=0),
            ]
        )
        await db.commit()

    async def test_search_filters(self, test_db, now):
        await self._seed(test_db, now)

        food = await get_inventory_items(test_db, category="食品")
        assert [i["item_name"] for i in food] == sorted(["牛奶", "酸奶"])

        low = await get_inventory_items(test_db, low_stock_threshold=1)
        assert {i["item_name"] for i in low} == {"牛奶", "洗衣液"}

        expiring = await get_inventory_items(test_db, expiring_within_days=7, now=now)
        assert [i["item_name"] for i in expiring] == ["牛奶"]

        by_name = await get_inventory_items(test_db, name="奶")
        assert {i["item_name"] for i in by_name} == {"牛奶", "酸奶"}

    async def test_quantity_delta_floors_at_zero(self, test_db, now):
        await self._seed(test_db, now)

        result = await update_inventory_quantity(test_db, "酸奶", -3)
        assert result["item"]["current_quantity"] == 5
        assert result["previous_quantity"] == 8

        result = await update_inventory_quantity(test_db, "牛奶", -5)
        assert result["item"]["current_quantity"] == 0

    async def test_unknown_item(self, test_db):
        with pytest.raises(DomainError):
            await update_inventory_quantity(test_db, "不存在的物品", -1)


# ── Spending reports ───────────────────────────────────────────────────


class TestBudgetState:
    def test_thresholds(self):
        assert budget_state(100, 1000) == (10.0, "ok")
        assert budget_state(800, 1000) == (80.0, "warning")
        assert budget_state(1000, 1000) == (100.0, "warning")
        assert budget_state(1000.01, 1000)[1] == "exceeded"

    def test_month_bounds_wraps_year(self):
        assert month_bounds(2024, 12) == (datetime(2024, 12, 1), datetime(2025, 1, 1))


@pytest.mark.asyncio
class TestSpendingReports:
    async def _seed(self, add_order, now):
        day = now - timedelta(days=2)
        await add_order("TB-F", day, [("大米", 1, 1700.0, "食品")], store_name="盒马")
        await add_order("TB-C", day, [("洗衣液", 10, 60.0, "清洁用品")], store_name="沃尔玛")
        await add_order("TB-D", day, [("抽纸", 4, 25.0, "日用品"), ("薯片", 3, 10.0, None)], store_name="盒马")
        await add_order("TB-PREV", datetime(2024, 5, 20), [("大米", 1, 59.0, "食品")], store_name="盒马")

    async def test_budget_status(self, test_db, add_order, now):
        await self._seed(add_order, now)
        await test_db.commit()

        result = await get_budget_status(test_db, now=now)
        budgets = {b["category"]: b for b in result["budgets"]}

        assert budgets["食品"]["spent"] == 1700.0
        assert budgets["食品"]["status"] == "warning"
        assert budgets["清洁用品"]["status"] == "exceeded"
        assert budgets["日用品"]["status"] == "ok"
        # uncategorized spend counts toward 其他
        assert budgets["其他"]["spent"] == 30.0
        assert result["categories_over_threshold"] == ["食品", "清洁用品"]
        assert result["period"] == "2024-06"

    async def test_monthly_report(self, test_db, add_order, now):
        await self._seed(add_order, now)
        await test_db.commit()

        report = await generate_monthly_report(test_db, year=2024, month=6)
        assert report["order_count"] == 3
        assert report["total_spending"] == 2430.0
        assert report["top_stores"][0] == {"store_name": "盒马", "total_spending": 1830.0, "order_count": 2}
        assert report["categories"][0]["category"] == "食品"

    async def test_spending_by_category(self, test_db, add_order, now):
        await self._seed(add_order, now)
        await test_db.commit()

        result = await get_spending_by_category(test_db, datetime(2024, 5, 1), now)
        categories = {c["category"]: c for c in result["categories"]}
        assert categories["食品"]["total_amount"] == 1759.0
        assert categories["食品"]["item_count"] == 2
        assert categories["食品"]["avg_price"] == 879.5
        assert categories["未分类"]["total_quantity"] == 3

    async def test_empty_month(self, test_db):
        report = await generate_monthly_report(test_db, year=2023, month=1)
        assert report["total_spending"] == 0.0
        assert report["top_stores"] == []
        assert report["period"] == "2023-01"
