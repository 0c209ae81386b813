"""
Tests for Shopping List management.
"""

import pytest

from core.errors import DomainError
from procurement.shopping_list import list_entries, manage_shopping_list


@pytest.mark.asyncio
class TestManageShoppingList:
    async def test_add_creates_pending_entry(self, test_db):
        result = await manage_shopping_list(
            test_db, "add", item_data={"item_name": "牛奶", "suggested_quantity": 6, "priority": 3}
        )
        assert result["created"] is True
        assert result["entry"]["status"] == "pending"
        assert result["entry"]["priority"] == 3

    async def test_add_existing_pending_updates_instead(self, test_db):
        first = await manage_shopping_list(test_db, "add", item_data={"item_name": "牛奶", "priority": 2})
        second = await manage_shopping_list(
            test_db, "add", item_data={"item_name": "牛奶", "priority": 4, "reason": "快喝完了"}
        )

        assert second["created"] is False
        assert second["entry"]["id"] == first["entry"]["id"]
        entries = await list_entries(test_db, status="pending")
        assert len(entries) == 1
        assert entries[0]["priority"] == 4

    async def test_complete_sets_timestamp(self, test_db):
        added = await manage_shopping_list(test_db, "add", item_data={"item_name": "鸡蛋"})
        entry_id = added["entry"]["id"]

        result = await manage_shopping_list(test_db, "complete", item_id=entry_id)
        assert result["entry"]["status"] == "completed"
        assert result["entry"]["completed_date"] is not None

        # a completed entry does not block a new pending one
        again = await manage_shopping_list(test_db, "add", item_data={"item_name": "鸡蛋"})
        assert again["created"] is True

    async def test_reopen_blocked_by_other_pending_entry(self, test_db):
        added = await manage_shopping_list(test_db, "add", item_data={"item_name": "鸡蛋"})
        await manage_shopping_list(test_db, "complete", item_id=added["entry"]["id"])
        await manage_shopping_list(test_db, "add", item_data={"item_name": "鸡蛋"})

        with pytest.raises(DomainError):
            await manage_shopping_list(
                test_db, "update", item_id=added["entry"]["id"], item_data={"status": "pending"}
            )

    async def test_update_and_remove(self, test_db):
        added = await manage_shopping_list(test_db, "add", item_data={"item_name": "面包", "priority": 1})
        entry_id = added["entry"]["id"]

        updated = await manage_shopping_list(test_db, "update", item_id=entry_id, item_data={"priority": 5})
        assert updated["entry"]["priority"] == 5

        await manage_shopping_list(test_db, "remove", item_id=entry_id)
        assert await list_entries(test_db) == []

    async def test_unknown_entry(self, test_db):
        with pytest.raises(DomainError):
            await manage_shopping_list(test_db, "complete", item_id=999)

    async def test_missing_arguments(self, test_db):
        with pytest.raises(DomainError):
            await manage_shopping_list(test_db, "add")
        with pytest.raises(DomainError):
            await manage_shopping_list(test_db, "remove")

    async def test_listing_order_and_status_filter(self, test_db):
        await manage_shopping_list(test_db, "add", item_data={"item_name": "低", "priority": 1})
        await manage_shopping_list(test_db, "add", item_data={"item_name": "高", "priority": 5})
        done = await manage_shopping_list(test_db, "add", item_data={"item_name": "完成", "priority": 3})
        await manage_shopping_list(test_db, "complete", item_id=done["entry"]["id"])

        assert [e["item_name"] for e in await list_entries(test_db)] == ["高", "完成", "低"]
        assert [e["item_name"] for e in await list_entries(test_db, status="pending")] == ["高", "低"]
        assert [e["item_name"] for e in await list_entries(test_db, status="completed")] == ["完成"]
