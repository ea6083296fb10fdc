"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Fake Redis and a mocked WMS client
- Test data factories (orders, products, webhook jobs)
"""
import pytest
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from wms_sync.db.database import Base, get_db
from wms_sync.db import models  # noqa: F401  - registers every table on Base.metadata
from wms_sync.db.models.order import Order, OrderStatus
from wms_sync.db.models.product import Product
from wms_sync.core.config import settings
from wms_sync.domain.events import OrderEventBus
from wms_sync.domain.services.wms import WmsClient
from wms_sync.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_CUSTOMER_ID = "0b7c3a52-6d1e-4f2a-9c33-5a8e2f0d1b47"
TEST_ADMIN_KEY = "test-admin-key"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio מטפל בזה
# אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_KEY}


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def wms_test_settings():
    """הגדרות WMS קבועות לכל הבדיקות"""
    with patch.object(settings, "WMS_CUSTOMER_ID", TEST_CUSTOMER_ID), \
         patch.object(settings, "WMS_DEFAULT_SHIPPING_METHOD_ID", ""), \
         patch.object(settings, "WMS_WEBHOOK_SECRET", ""), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_KEY), \
         patch.object(settings, "WMS_ACCESS_TOKEN", "test-token"):
        yield


# ============================================================================
# Mock External Services
# ============================================================================

@pytest.fixture
def mock_wms_client():
    """WmsClient עם כל קריאות ה-API כ-AsyncMock"""
    client = MagicMock(spec=WmsClient)
    for name in (
        "authenticate", "test_connection", "get_orders", "get_order", "create_order",
        "update_order", "cancel_order", "get_articles", "get_variant", "get_stock",
        "get_customers", "get_shipments", "get_shipment", "get_inbounds",
        "get_shipping_methods", "get_location_types", "get_webhooks", "register_webhook",
    ):
        setattr(client, name, AsyncMock())
    client.test_connection.return_value = {"connected": True, "base_url": "https://wms.test"}
    client.get_orders.return_value = []
    client.get_articles.return_value = []
    client.get_stock.return_value = []
    client.get_customers.return_value = []
    client.get_shipments.return_value = []
    client.get_inbounds.return_value = []
    client.get_shipping_methods.return_value = []
    client.get_location_types.return_value = []
    client.get_webhooks.return_value = []
    client.get_variant.return_value = {}
    return client


class FakeClock:
    """שעון מדומה - sleep() מקדם את הזמן במקום לחכות"""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_bus() -> OrderEventBus:
    """Bus נקי לכל בדיקה - לא ה-bus הגלובלי של התהליך"""
    return OrderEventBus()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def product_factory(db_session: AsyncSession):
    """Factory for creating test products"""
    async def _create_product(
        sku: str = "SKU-1",
        name: str = "Test Product",
        price: Decimal = Decimal("12.50"),
        wms_article_code: str | None = None,
        wms_variant_id: str | None = None,
    ) -> Product:
        product = Product(
            sku=sku,
            name=name,
            price=price,
            wms_article_code=wms_article_code,
            wms_variant_id=wms_variant_id,
            meta={},
        )
        db_session.add(product)
        await db_session.commit()
        return product

    return _create_product


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating test orders (lines are added from (product, qty) pairs)"""
    from wms_sync.db.models.order import OrderLine

    async def _create_order(
        external_reference: str | None = "1001",
        status: str = OrderStatus.PROCESSING.value,
        lines: list[tuple[Product, int]] | None = None,
        shipping_address: dict | None = None,
        meta: dict | None = None,
        shipping_method_key: str | None = None,
    ) -> Order:
        order = Order(
            external_reference=external_reference,
            status=status,
            currency="EUR",
            total=Decimal("0"),
            billing_address={},
            shipping_address=shipping_address if shipping_address is not None else {
                "first_name": "Dana",
                "last_name": "Levi",
                "street": "Main Street 12a",
                "postcode": "1011AB",
                "city": "Amsterdam",
                "country": "NL",
                "email": "dana@example.com",
            },
            shipping_method_key=shipping_method_key,
            meta=meta if meta is not None else {},
            # explicit collections stay loaded after commit, so tests never lazy-load
            lines=[
                OrderLine(
                    product_id=product.id,
                    sku=product.sku,
                    name=product.name,
                    quantity=quantity,
                    unit_price=product.price,
                    total=product.price * quantity,
                )
                for product, quantity in lines or []
            ],
            notes=[],
        )
        db_session.add(order)
        await db_session.commit()
        return order

    return _create_order


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from wms_sync.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = value
        self._ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("wms_sync.core.redis_client.get_redis", _get_fake_redis), \
         patch("wms_sync.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# הערה: אין צורך בניקוי תור ה-webhooks בין בדיקות -
# כל בדיקה מקבלת DB in-memory חדש דרך async_engine (function-scoped).
