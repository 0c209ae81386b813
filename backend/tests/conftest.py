"""
Test Configuration — Fixtures for async DB, test client, and seed data.

Each test gets its own in-memory SQLite database. The session is bound to
an outer transaction and joins it through SAVEPOINTs, so engine code may
commit and roll back freely while the test still discards everything.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_db
from api.main import app
from db.models import InventoryItem, PurchaseLineItem, PurchaseOrder
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock for engine calls that take ``now``
NOW = datetime(2024, 6, 15, 12, 0, 0)


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    # pysqlite defers BEGIN; take over transaction control so SAVEPOINT works
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Session inside an outer transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(
            bind=conn,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
async def client(test_db):
    """Async test client with the DB dependency pointed at the test session."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


async def insert_order(
    db: AsyncSession,
    order_id: str,
    purchase_date: datetime,
    items: list[tuple],
    store_name: str = "测试超市",
    channel: str = "淘宝",
    total_price: float | None = None,
) -> PurchaseOrder:
    """Insert one order; items are (item_name, quantity, unit_price, category)."""
    if total_price is None:
        total_price = sum(qty * price for _, qty, price, _ in items)
    order = PurchaseOrder(
        id=order_id,
        store_name=store_name,
        total_price=Decimal(str(total_price)),
        purchase_date=purchase_date,
        purchase_channel=channel,
    )
    for name, qty, price, category in items:
        order.items.append(
            PurchaseLineItem(
                item_name=name,
                purchase_quantity=qty,
                unit_price=Decimal(str(price)),
                category=category,
            )
        )
    db.add(order)
    await db.flush()
    return order


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def add_order(test_db):
    """Order factory bound to the test session."""

    async def _add(order_id: str, purchase_date: datetime, items: list[tuple], **kwargs) -> PurchaseOrder:
        return await insert_order(test_db, order_id, purchase_date, items, **kwargs)

    return _add


@pytest.fixture
async def seeded_db(test_db):
    """
    Household with three tracked items relative to NOW:
      抽纸    bought 1/day for 90 days, none left
      洗衣液  bought 40 days ago, 2 on hand
      大米    bought 10 days ago, plenty on hand
    """
    start = NOW - timedelta(days=90)
    # 抽纸: 9 orders of 10 packs, 90 packs over 90 days
    for i in range(9):
        await insert_order(
            test_db,
            f"TB-TISSUE-{i:02d}",
            start + timedelta(days=i * 10),
            [("抽纸", 10, 2.5, "日用品")],
        )
    await insert_order(test_db, "JD-DETERGENT-01", NOW - timedelta(days=40), [("洗衣液", 1, 39.9, "清洁用品")])
    await insert_order(test_db, "JD-RICE-01", NOW - timedelta(days=10), [("大米", 1, 59.0, "食品")])

    test_db.add_all(
        [
            InventoryItem(item_name="抽纸", category="日用品", current_quantity=0, unit="包"),
            InventoryItem(item_name="洗衣液", category="清洁用品", current_quantity=2, unit="瓶"),
            InventoryItem(item_name="大米", category="食品", current_quantity=20, unit="kg"),
        ]
    )
    await test_db.commit()
    return test_db
