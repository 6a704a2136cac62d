import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from config import Config
from database.core import Base, create_engine, create_session_maker
from database.models import (
    Booking, BookingStatus, DeliveryOrder, DeliveryStatus, OrderType, ParentOrder, ParentOrderStatus, User,
    UserRole,
)


def make_config(**overrides) -> Config:
    values = {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "LOG_FILE": "",
        "JWT_SECRET": "test-secret-0123456789abcdef0123456789",
        "REDIS_ENABLED": False,
        "RATE_LIMIT_MAX": 10_000,
        "BOT_TOKEN": "",
        "PARENT_STATUS_RULE": "all",
    }
    values.update(overrides)
    return Config(**values)


class RecordingBroadcaster:
    """Collects emitted events instead of sending them."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any], Optional[str]]] = []

    async def emit(self, event: str, data: Dict[str, Any], room: Optional[str] = None) -> None:
        self.events.append((event, data, room))

    def named(self, event: str) -> List[Tuple[str, Dict[str, Any], Optional[str]]]:
        return [e for e in self.events if e[0] == event]


class Factory:
    """Creates committed rows in the test database."""

    def __init__(self, session):
        self.session = session
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.commit()
        return obj

    async def user(self, role: UserRole = UserRole.CUSTOMER, name: Optional[str] = None, **kw) -> User:
        n = self._next()
        return await self._save(User(name=name or f"{role.value}-{n}", role=role, phone=f"+2010000{n:04d}", **kw))

    async def courier(self, name: Optional[str] = None, **kw) -> User:
        kw.setdefault("is_available", True)
        return await self.user(UserRole.COURIER, name=name, **kw)

    async def order(
        self,
        courier: Optional[User] = None,
        status: DeliveryStatus = DeliveryStatus.PENDING,
        order_type: OrderType = OrderType.APP,
        **kw,
    ) -> DeliveryOrder:
        n = self._next()
        kw.setdefault("customer_name", f"Customer {n}")
        kw.setdefault("customer_phone", "01000000000")
        kw.setdefault("pickup_address", "Restaurant street 1")
        kw.setdefault("delivery_address", "Home street 2")
        return await self._save(DeliveryOrder(
            order_number=f"HLN-TEST{n}",
            courier_id=courier.id if courier else None,
            status=status,
            order_type=order_type,
            **kw,
        ))

    async def orders(self, courier: Optional[User], count: int, **kw) -> List[DeliveryOrder]:
        return [await self.order(courier, **kw) for _ in range(count)]

    async def parent(self, user: Optional[User] = None, **kw) -> ParentOrder:
        kw.setdefault("status", ParentOrderStatus.PENDING)
        return await self._save(ParentOrder(user_id=user.id if user else None, **kw))

    async def booking(
        self,
        parent: Optional[ParentOrder] = None,
        order: Optional[DeliveryOrder] = None,
        status: BookingStatus = BookingStatus.PENDING,
        **kw,
    ) -> Booking:
        return await self._save(Booking(
            parent_order_id=parent.id if parent else None,
            delivery_order_id=order.id if order else None,
            status=status,
            **kw,
        ))


@pytest.fixture
def test_config() -> Config:
    return make_config()


@pytest.fixture
async def engine(test_config):
    engine = create_engine(test_config)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def factory(session) -> Factory:
    return Factory(session)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


# --- API (FastAPI app on a temp-file SQLite database) ---

@pytest.fixture
def api_config(tmp_path) -> Config:
    db_path = (tmp_path / "api.sqlite3").as_posix()
    return make_config(DATABASE_URL=f"sqlite+aiosqlite:///{db_path}")


async def _seed(config: Config) -> Dict[str, int]:
    engine = create_engine(config)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with create_session_maker(engine)() as session:
            f = Factory(session)
            admin = await f.user(UserRole.ADMIN, name="Admin")
            supervisor = await f.user(UserRole.SUPERVISOR, name="Supervisor")
            busy = await f.courier(name="Busy Courier")
            idle = await f.courier(name="Idle Courier")
            provider_a = await f.user(UserRole.PROVIDER, name="Pizza Place")
            provider_b = await f.user(UserRole.PROVIDER, name="Pharmacy")
            customer = await f.user(UserRole.CUSTOMER, name="Customer")
            await f.orders(busy, 3, status=DeliveryStatus.ASSIGNED)
            await f.orders(idle, 1, status=DeliveryStatus.IN_TRANSIT)
            return {
                "admin": admin.id,
                "supervisor": supervisor.id,
                "busy": busy.id,
                "idle": idle.id,
                "provider_a": provider_a.id,
                "provider_b": provider_b.id,
                "customer": customer.id,
            }
    finally:
        await engine.dispose()


@pytest.fixture
def seeded(api_config) -> Dict[str, int]:
    return asyncio.run(_seed(api_config))
