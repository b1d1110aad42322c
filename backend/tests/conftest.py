"""
Centralized Test Configuration.
"""

import pytest
from decimal import Decimal
from typing import List, Optional
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from backend.app.main import app
from backend.app.db.session import get_db, get_session_factory, build_engine, Base
from backend.app.core.redis_client import get_redis
from backend.app.core.jwt import create_access_token
from backend.app.core.reliability import CircuitBreaker
from backend.app.models.enums import UserRole
from backend.app.models.product import Product
from backend.app.models.commission_policy import CommissionPolicy
from backend.app.models.billing_enums import LedgerReason
from backend.app.models.order_enums import StockPolicy, DeliveryMode
from backend.app.domain.settlement.engine import SettlementEngine
from backend.app.domain.settlement.wallet_ledger import WalletLedger
from backend.app.services.notification_service import NotificationDispatcher, NotificationSink
import backend.app.core.redis_client as redis_client_module


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def exists(self, key):
        if self._closed:
            return 0
        return 1 if key in self.store else 0

    async def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


class RecordingSink(NotificationSink):
    """Collects delivered notifications; set `fail` to make every send raise."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, notification):
        if self.fail:
            raise ConnectionError("sink unreachable")
        self.sent.append(notification)


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()


@pytest.fixture(scope="session", autouse=True)
def apply_redis_override(redis_client_session):
    """Patch the global redis client once for the session."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client_session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_redis] = override_get_redis
    yield

    app.dependency_overrides.pop(get_redis, None)
    redis_client_module.redis_client = original_client


@pytest.fixture
async def session_factory(tmp_path, redis_client_session):
    """
    Fresh file-backed SQLite database per test.

    A file (not :memory:) so concurrent transactions get separate
    connections and really contend for the write lock.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    """Shared session for fixture data creation and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(session_factory, sink):
    return NotificationDispatcher(session_factory, sink=sink, breaker=CircuitBreaker(failure_threshold=3, reset_timeout=60))


@pytest.fixture
def settlement_engine(session_factory, dispatcher):
    return SettlementEngine(session_factory, dispatcher=dispatcher)


@pytest.fixture
async def client(session_factory):
    """Async client for testing, bound to the per-test database."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_session_factory, None)


@pytest.fixture
def auth_headers():
    """Build a bearer header for any user id / role, as the identity service would."""
    def _headers(user_id: str, role: UserRole = UserRole.BUYER) -> dict:
        token = create_access_token(data={"sub": f"{user_id}@test.com", "user_id": user_id, "role": role.value})
        return {"Authorization": f"Bearer {token}"}
    return _headers


class Marketplace:
    """Seeds products, wallets and policies directly through the database."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def product(
        self,
        seller_id: Optional[str] = "seller-1",
        price: str = "10.00",
        stock_policy: StockPolicy = StockPolicy.UNLIMITED,
        stock: Optional[int] = None,
        allow_manual_fallback: bool = False,
        requires_email: bool = False,
        name: str = "Game key",
        is_available: bool = True,
    ) -> Product:
        delivery_mode = DeliveryMode.AUTO if stock_policy == StockPolicy.POOLED else DeliveryMode.MANUAL
        product = Product(
            seller_id=seller_id,
            name=name,
            price=Decimal(price),
            stock_policy=stock_policy,
            stock=stock,
            delivery_mode=delivery_mode,
            allow_manual_fallback=allow_manual_fallback,
            requires_email=requires_email,
            is_available=is_available,
            auto_hidden=False,
        )
        async with self.session_factory() as db:
            async with db.begin():
                db.add(product)
        return product

    async def fund(self, user_id: str, amount: str) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                await WalletLedger.credit(db, user_id, Decimal(amount), reason=LedgerReason.TOP_UP)

    async def policy(self, rate: str, seller_id: Optional[str] = None, **kwargs) -> CommissionPolicy:
        policy = CommissionPolicy(seller_id=seller_id, rate=Decimal(rate), **kwargs)
        async with self.session_factory() as db:
            async with db.begin():
                db.add(policy)
        return policy

    async def balance(self, user_id: str):
        async with self.session_factory() as db:
            return await WalletLedger.get_balance(db, user_id)

    async def items(self, engine: SettlementEngine, product: Product, payloads: List) -> None:
        result = await engine.add_delivery_items(
            product.id, product.seller_id, [{"payload": payload} for payload in payloads], is_admin=True
        )
        assert result.ok, result.message


@pytest.fixture
def market(session_factory):
    return Marketplace(session_factory)
