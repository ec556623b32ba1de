"""
Fulfillment Engine test fixtures

Each test gets its own SQLite file database (aiosqlite), so several
sessions can race on the same rows the way concurrent requests do.
"""
import itertools
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.db import product_ops, stock_ops
from app.db.database import Base
from app.models import audit, billing, inventory, order  # noqa: F401  (register tables)
from app.schemas.order import OrderCreate

MERCHANT_ID = "merchant-1"


# ─── Database ──────────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ─── Factories ─────────────────────────────────────────────────────────────────
@pytest.fixture
def make_product(db):
    counter = itertools.count(1)

    async def _make(merchant_id: str = MERCHANT_ID, unit_price: Decimal = Decimal("100.00")):
        n = next(counter)
        return await product_ops.create_product(
            db, merchant_id, f"SKU{n:04d}", f"Product {n}", category="general", unit_price=unit_price,
        )

    return _make


@pytest.fixture
def make_stock(db):
    async def _make(product_id: str, warehouse_id: str, quantity: int, batch_number: str | None = None, **kwargs):
        return await stock_ops.receive(db, product_id, warehouse_id, batch_number, quantity, **kwargs)

    return _make


@pytest.fixture
def order_payload():
    def _payload(*lines, merchant_id: str = MERCHANT_ID) -> OrderCreate:
        return OrderCreate(
            merchant_id=merchant_id,
            customer_name="Ada Obi",
            customer_email="ada.obi@shopmail.ng",
            customer_phone="+2348000000000",
            shipping_address={"street": "1 Marina Rd", "city": "Lagos", "state": "Lagos"},
            items=[
                {"product_id": product_id, "quantity": quantity, "unit_price": "100.00"}
                for product_id, quantity in lines
            ],
            delivery_fee="500.00",
        )

    return _payload


# ─── Redis stand-in ────────────────────────────────────────────────────────────
class RecordingRedis:
    """Records cache writes and published events instead of talking to Redis."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.cache: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []

    async def setex(self, key, ttl, value):
        if self.fail:
            raise ConnectionError("redis down")
        self.cache[key] = str(value)

    async def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1

    async def ping(self):
        if self.fail:
            raise ConnectionError("redis down")
        return True


@pytest.fixture
def fake_redis():
    return RecordingRedis()
