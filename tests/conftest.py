"""
Shared fixtures.

Every test gets its own SQLite file database, a small seeded restaurant
and mock payment/notification services. The environment is set before
any ``bistro`` import so the cached settings pick it up.
"""

import hashlib
import hmac
import json
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

_DATA_DIR = tempfile.mkdtemp(prefix="bistro-test-")
WEBHOOK_SECRET = "whsec_test_secret"

os.environ["ENV_MODE"] = "development"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DATA_DIR}/unused.db"
os.environ["DATA_DIRECTORY"] = _DATA_DIR
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["REDIS_URL"] = "redis://127.0.0.1:1/0"

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from bistro.core.config import get_settings  # noqa: E402
from bistro.core.security import RequestContext, context_for, create_access_token  # noqa: E402
from bistro.database import build_engine, get_db, init_db  # noqa: E402
from bistro.main import app  # noqa: E402
from bistro.models import (  # noqa: E402
    Category,
    Menu,
    MenuItem,
    OrderType,
    Promotion,
    PromotionType,
    Role,
    User,
)
from bistro.schemas import CartItemIn  # noqa: E402
from bistro.services import orders  # noqa: E402
from bistro.services.notifications import MockNotificationService, get_notification_service  # noqa: E402
from bistro.services.payment import MockPaymentService, get_payment_service  # noqa: E402


@dataclass
class World:
    """Seeded restaurant: staff, two customers, two categories, four dishes."""
    admin: User
    manager: User
    chef: User
    waiter: User
    customer: User
    other_customer: User
    menu: Menu
    mains: Category
    drinks: Category
    burger: MenuItem   # $10.00, mains
    salad: MenuItem    # $5.00, mains
    soda: MenuItem     # $2.00, drinks
    juice: MenuItem    # $4.00, drinks

    @staticmethod
    def ctx(user: User) -> RequestContext:
        return context_for(user)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def world(session_maker) -> World:
    async with session_maker() as session:
        users = {
            "admin": User(email="admin@bistro.test", name="Ada Admin", role=Role.ADMIN),
            "manager": User(email="manager@bistro.test", name="Max Manager", role=Role.MANAGER),
            "chef": User(email="chef@bistro.test", name="Cleo Chef", role=Role.CHEF),
            "waiter": User(email="waiter@bistro.test", name="Wes Waiter", role=Role.WAITER),
            "customer": User(
                email="kim@example.com", name="Kim Customer", phone="+15550001111", role=Role.CUSTOMER
            ),
            "other_customer": User(email="lee@example.com", name="Lee Customer", role=Role.CUSTOMER),
        }
        menu = Menu(name="All Day")
        mains = Category(name="Mains")
        drinks = Category(name="Drinks")
        dishes = {
            "burger": MenuItem(name="Burger", price=Decimal("10.00"), menu=menu, category=mains),
            "salad": MenuItem(name="Salad", price=Decimal("5.00"), menu=menu, category=mains),
            "soda": MenuItem(name="Soda", price=Decimal("2.00"), menu=menu, category=drinks),
            "juice": MenuItem(name="Juice", price=Decimal("4.00"), menu=menu, category=drinks),
        }
        session.add_all([*users.values(), menu, mains, drinks, *dishes.values()])
        await session.commit()

        return World(menu=menu, mains=mains, drinks=drinks, **users, **dishes)


# =============================================================================
# BUILDERS
# =============================================================================

@pytest.fixture
def make_promotion(session_maker):
    """Insert a promotion that is active right now; override any column."""

    async def factory(menu_items=(), categories=(), **overrides) -> Promotion:
        now = datetime.now(timezone.utc)
        values = {
            "name": "Test promotion",
            "promotion_type": PromotionType.PERCENTAGE_DISCOUNT,
            "value": Decimal("10"),
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=1),
            "is_active": True,
            "apply_to_all_items": True,
        }
        values.update(overrides)
        async with session_maker() as session:
            promotion = Promotion(**values)
            if menu_items:
                promotion.menu_items = [await session.get(MenuItem, i.id) for i in menu_items]
            if categories:
                promotion.categories = [await session.get(Category, c.id) for c in categories]
            session.add(promotion)
            await session.commit()
            return promotion

    return factory


@pytest.fixture
def place_order(session_maker):
    """Create an order through the lifecycle manager in its own session."""

    async def factory(user: User, lines, coupon_code=None, order_type=OrderType.PICKUP, notes=None):
        items = [CartItemIn(menu_item_id=item.id, quantity=qty) for item, qty in lines]
        async with session_maker() as session:
            return await orders.create_order(
                session,
                context_for(user),
                items,
                order_type=order_type,
                notes=notes,
                coupon_code=coupon_code,
            )

    return factory


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def ledger_dir(tmp_path, monkeypatch, settings):
    directory = tmp_path / "ledger"
    monkeypatch.setattr(settings, "data_directory", str(directory))
    return directory


# =============================================================================
# EXTERNAL SERVICES
# =============================================================================

@pytest.fixture
def payment_service() -> MockPaymentService:
    return MockPaymentService(failure_rate=0.0, max_latency=0, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def notifier() -> MockNotificationService:
    return MockNotificationService(failure_rate=0.0, latency=0)


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def signed_event():
    """Serialize an event and build its Stripe-Signature header."""

    def build(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[str, dict]:
        body = json.dumps(event)
        return body, {"Stripe-Signature": sign(body, secret), "Content-Type": "application/json"}

    return build


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
async def client(session_maker, payment_service, notifier, ledger_dir):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_service] = lambda: payment_service
    app.dependency_overrides[get_notification_service] = lambda: notifier

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return headers
