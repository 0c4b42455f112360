"""
Pytest configuration and shared fixtures for the fulfillment service tests.

Business data lives in a throwaway SQLite file (aiosqlite), Redis is
fakeredis, ledgers are written under tmp_path.
"""

from typing import AsyncGenerator
from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest
from fakeredis import FakeServer
from sqlalchemy.ext.asyncio import AsyncEngine

from app.db import create_tables, make_engine, make_session_factory, order_items, orders, products
from app.event_bus import EventBus
from app.ledger import InventoryTrendLedger, SalesLedger
from app.queue import JobQueue
from app.repositories import OrderRepository, ProductRepository, SaleRepository
from app.steps import RetryPolicy, StepContext, build_registry
from app.worker import FlowWorker
from app.workflow import OrderCompletionWorkflow

NO_WAIT = RetryPolicy(attempts=3, backoff_delay=0)


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def seed(engine):
    """Insert products and orders: await seed(products_rows=[...], orders_rows=[...], items_rows=[...])."""

    async def _seed(products_rows=(), orders_rows=(), items_rows=()):
        async with engine.begin() as conn:
            if products_rows:
                await conn.execute(products.insert(), list(products_rows))
            if orders_rows:
                await conn.execute(orders.insert(), list(orders_rows))
            if items_rows:
                await conn.execute(order_items.insert(), list(items_rows))

    return _seed


@pytest.fixture
async def order_42(seed):
    """Order 42: product 7 x2 @ 10 (stock 10), product 9 x1 @ 5 (stock 1)."""
    await seed(
        products_rows=[
            {"id": 7, "name": "Maize Flour", "price": 10.0, "stock_quantity": 10},
            {"id": 9, "name": "Cooking Oil", "price": 5.0, "stock_quantity": 1},
        ],
        orders_rows=[{"id": 42, "customer_id": 1, "total_amount": 25.0, "status": "paid"}],
        items_rows=[
            {"order_id": 42, "product_id": 7, "quantity": 2},
            {"order_id": 42, "product_id": 9, "quantity": 1},
        ],
    )
    return 42


@pytest.fixture
def order_repo(session_factory):
    return OrderRepository(session_factory)


@pytest.fixture
def product_repo(session_factory):
    return ProductRepository(session_factory)


@pytest.fixture
def sale_repo(session_factory):
    return SaleRepository(session_factory)


@pytest.fixture
def sales_ledger(tmp_path):
    return SalesLedger(tmp_path / "Sales")


@pytest.fixture
def trend_ledger(tmp_path):
    return InventoryTrendLedger(tmp_path / "Inventory_Trends")


@pytest.fixture
def step_context(order_repo, product_repo, sale_repo, sales_ledger, trend_ledger):
    return StepContext(
        orders=order_repo,
        products=product_repo,
        sales=sale_repo,
        sales_ledger=sales_ledger,
        trend_ledger=trend_ledger,
    )


@pytest.fixture
def registry():
    return build_registry(NO_WAIT)


@pytest.fixture
def redis_server():
    return FakeServer()


@pytest.fixture
def redis_factory(redis_server):
    def _factory():
        return fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)

    return _factory


@pytest.fixture
async def redis_client(redis_factory):
    client = redis_factory()
    yield client
    await client.aclose()


@pytest.fixture
async def bus(redis_factory) -> AsyncGenerator[EventBus, None]:
    bus = EventBus(client_factory=redis_factory, retry_delay=0.01)
    yield bus
    await bus.shutdown()


@pytest.fixture
def mock_bus():
    bus = AsyncMock(spec=EventBus)
    bus.publish.return_value = 0
    return bus


@pytest.fixture
def queue(redis_client):
    return JobQueue(redis_client, name="test-order-completion", keep_finished=10)


@pytest.fixture
def workflow(queue, mock_bus):
    return OrderCompletionWorkflow(queue, mock_bus)


@pytest.fixture
def worker(queue, registry, step_context, mock_bus):
    return FlowWorker(queue, registry, step_context, mock_bus, concurrency=2)
