"""
Shopping List — pending / completed purchase entries.

At most one ``pending`` entry exists per item name: adding an item that is
already pending updates that entry instead of inserting a second one.
"""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import DomainError
from db.models import SHOPPING_LIST_STATUSES, ShoppingListEntry, utcnow
from db.session import transactional

logger = structlog.get_logger()

UPDATABLE_FIELDS = ("item_name", "suggested_quantity", "priority", "reason", "status")


def entry_to_dict(entry: ShoppingListEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "item_name": entry.item_name,
        "suggested_quantity": entry.suggested_quantity,
        "priority": entry.priority,
        "status": entry.status,
        "reason": entry.reason,
        "added_date": entry.added_date.isoformat() if entry.added_date else None,
        "completed_date": entry.completed_date.isoformat() if entry.completed_date else None,
    }


async def list_entries(db: AsyncSession, status: str = "all") -> list[dict[str, Any]]:
    """Entries ordered by priority (desc) then added date (asc)."""
    query = select(ShoppingListEntry)
    if status != "all":
        query = query.where(ShoppingListEntry.status == status)
    query = query.order_by(ShoppingListEntry.priority.desc(), ShoppingListEntry.added_date.asc())
    result = await db.execute(query)
    return [entry_to_dict(e) for e in result.scalars().all()]


async def get_pending_item_names(db: AsyncSession) -> set[str]:
    result = await db.execute(
        select(ShoppingListEntry.item_name).where(ShoppingListEntry.status == "pending")
    )
    return set(result.scalars().all())


async def _get_pending_entry(db: AsyncSession, item_name: str) -> ShoppingListEntry | None:
    result = await db.execute(
        select(ShoppingListEntry).where(
            ShoppingListEntry.item_name == item_name,
            ShoppingListEntry.status == "pending",
        )
    )
    return result.scalars().first()


async def upsert_pending_entry(
    db: AsyncSession,
    item_name: str,
    suggested_quantity: int | None,
    priority: int,
    reason: str | None,
) -> tuple[ShoppingListEntry, bool]:
    """Insert a pending entry or refresh the existing one. Caller commits.

    Returns (entry, created).
    """
    entry = await _get_pending_entry(db, item_name)
    if entry is None:
        entry = ShoppingListEntry(
            item_name=item_name,
            suggested_quantity=suggested_quantity,
            priority=priority,
            status="pending",
            reason=reason,
            added_date=utcnow(),
        )
        db.add(entry)
        await db.flush()
        return entry, True

    entry.suggested_quantity = suggested_quantity
    entry.priority = priority
    entry.reason = reason
    await db.flush()
    return entry, False


async def _require_entry(db: AsyncSession, entry_id: int) -> ShoppingListEntry:
    entry = await db.get(ShoppingListEntry, entry_id)
    if entry is None:
        raise DomainError(f"Shopping list entry {entry_id} not found")
    return entry


async def add_entry(db: AsyncSession, item_data: dict[str, Any]) -> dict[str, Any]:
    item_name = item_data.get("item_name")
    if not item_name:
        raise DomainError("item_name is required to add a shopping list entry")

    async with transactional(db):
        entry, created = await upsert_pending_entry(
            db,
            item_name=item_name,
            suggested_quantity=item_data.get("suggested_quantity"),
            priority=int(item_data.get("priority") or 1),
            reason=item_data.get("reason"),
        )
    logger.info("shopping_list.added", item_name=item_name, created=created)
    return {"entry": entry_to_dict(entry), "created": created}


async def update_entry(db: AsyncSession, entry_id: int, updates: dict[str, Any]) -> dict[str, Any]:
    changes = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS and v is not None}
    if not changes:
        raise DomainError("No updatable fields supplied")
    status = changes.get("status")
    if status is not None and status not in SHOPPING_LIST_STATUSES:
        raise DomainError(f"Invalid shopping list status: {status}")

    async with transactional(db):
        entry = await _require_entry(db, entry_id)
        target_name = changes.get("item_name", entry.item_name)
        target_status = changes.get("status", entry.status)
        if target_status == "pending":
            existing = await _get_pending_entry(db, target_name)
            if existing is not None and existing.id != entry.id:
                raise DomainError(f"'{target_name}' already has a pending shopping list entry")

        for key, value in changes.items():
            setattr(entry, key, value)
        if target_status == "completed" and entry.completed_date is None:
            entry.completed_date = utcnow()
        elif target_status == "pending":
            entry.completed_date = None
        await db.flush()

    logger.info("shopping_list.updated", entry_id=entry_id, fields=sorted(changes))
    return {"entry": entry_to_dict(entry)}


async def remove_entry(db: AsyncSession, entry_id: int) -> dict[str, Any]:
    async with transactional(db):
        entry = await _require_entry(db, entry_id)
        await db.delete(entry)
    logger.info("shopping_list.removed", entry_id=entry_id)
    return {"removed": entry_id}


async def complete_entry(db: AsyncSession, entry_id: int) -> dict[str, Any]:
    return await update_entry(db, entry_id, {"status": "completed"})


async def manage_shopping_list(
    db: AsyncSession,
    action: str,
    item_id: int | None = None,
    item_data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Dispatch add / update / remove / complete."""
    if action == "add":
        if not item_data:
            raise DomainError("Item data required for add action")
        return await add_entry(db, item_data)

    if item_id is None:
        raise DomainError(f"Item id required for {action} action")

    if action == "update":
        if not item_data:
            raise DomainError("Item data required for update action")
        return await update_entry(db, item_id, item_data)
    elif action == "remove":
        return await remove_entry(db, item_id)
    elif action == "complete":
        return await complete_entry(db, item_id)
    raise DomainError(f"Unknown shopping list action: {action}")
