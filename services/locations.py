"""
Courier location state: last known fix per courier (Redis or memory) and
the matching columns on the users table.

The store holds a CourierLocation dataclass, not the ORM User, so a
location can be read and broadcast without a DB session.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import User, UserRole, utcnow

logger = logging.getLogger(__name__)

DEFAULT_ACCURACY_THRESHOLD_M = 520.0


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True, slots=True)
class CourierLocation:
    courier_id: int
    latitude: float
    longitude: float
    name: Optional[str] = None
    heading: float = 0.0
    speed: float = 0.0
    accuracy: float = 0.0
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> dict:
        """Wire shape of the updateLocation event."""
        return {
            "driverId": self.courier_id,
            "name": self.name,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "heading": self.heading,
            "speed": self.speed,
            "accuracy": self.accuracy,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> CourierLocation:
        return cls(
            courier_id=int(d["driverId"]),
            latitude=float(d["latitude"]),
            longitude=float(d["longitude"]),
            name=d.get("name"),
            heading=_to_float(d.get("heading")),
            speed=_to_float(d.get("speed")),
            accuracy=_to_float(d.get("accuracy")),
            timestamp=d.get("timestamp") or utcnow().isoformat(),
        )


def is_accurate_enough(accuracy: Any, threshold: float = DEFAULT_ACCURACY_THRESHOLD_M) -> bool:
    """A reading without accuracy is kept; one worse than the threshold (metres) or unreadable is dropped."""
    if accuracy is None or accuracy == "":
        return True
    try:
        return float(accuracy) <= threshold
    except (TypeError, ValueError):
        return False


class RedisLocationStore:
    """Courier locations and online status in Redis, shared by all instances."""

    def __init__(self, redis_client, ttl_seconds: int = 24 * 60 * 60):
        self.redis = redis_client
        self.ttl = ttl_seconds
        self._prefix = "courier_location:"
        self._status_prefix = "courier_status:"

    def _key(self, courier_id: int) -> str:
        return f"{self._prefix}{courier_id}"

    def _status_key(self, courier_id: int) -> str:
        return f"{self._status_prefix}{courier_id}"

    async def get(self, courier_id: int) -> Optional[CourierLocation]:
        try:
            data = await self.redis.get(self._key(courier_id))
            if data:
                return CourierLocation.from_dict(json.loads(data))
        except Exception as e:
            logger.debug("Location get error for courier %s: %s", courier_id, e)
        return None

    async def set(self, location: CourierLocation) -> None:
        try:
            await self.redis.setex(self._key(location.courier_id), self.ttl, json.dumps(location.to_dict()))
        except Exception as e:
            logger.warning("Location set error for courier %s: %s", location.courier_id, e)

    async def delete(self, courier_id: int) -> None:
        try:
            await self.redis.delete(self._key(courier_id))
        except Exception as e:
            logger.debug("Location delete error for courier %s: %s", courier_id, e)

    async def all(self) -> List[CourierLocation]:
        locations = []
        try:
            keys = [key async for key in self.redis.scan_iter(match=f"{self._prefix}*")]
            if keys:
                for data in await self.redis.mget(keys):
                    if data:
                        locations.append(CourierLocation.from_dict(json.loads(data)))
        except Exception as e:
            logger.warning("Location scan error: %s", e)
        return locations

    async def get_status(self, courier_id: int) -> Optional[str]:
        try:
            value = await self.redis.get(self._status_key(courier_id))
            if isinstance(value, bytes):
                value = value.decode()
            return value
        except Exception as e:
            logger.debug("Status get error for courier %s: %s", courier_id, e)
            return None

    async def set_status(self, courier_id: int, status: str) -> None:
        try:
            await self.redis.setex(self._status_key(courier_id), self.ttl, status)
        except Exception as e:
            logger.warning("Status set error for courier %s: %s", courier_id, e)


class MemoryLocationStore:
    """In-memory location store (fallback if Redis is unavailable)."""

    def __init__(self, ttl_seconds: int = 24 * 60 * 60):
        self._locations: Dict[int, tuple[CourierLocation, datetime]] = {}
        self._statuses: Dict[int, str] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._lock = asyncio.Lock()

    async def get(self, courier_id: int) -> Optional[CourierLocation]:
        async with self._lock:
            if courier_id in self._locations:
                location, expiry = self._locations[courier_id]
                if utcnow() < expiry:
                    return location
                del self._locations[courier_id]
        return None

    async def set(self, location: CourierLocation) -> None:
        async with self._lock:
            self._locations[location.courier_id] = (location, utcnow() + self._ttl)

    async def delete(self, courier_id: int) -> None:
        async with self._lock:
            self._locations.pop(courier_id, None)

    async def all(self) -> List[CourierLocation]:
        now = utcnow()
        async with self._lock:
            expired = [cid for cid, (_, expiry) in self._locations.items() if expiry <= now]
            for cid in expired:
                del self._locations[cid]
            return [location for location, _ in self._locations.values()]

    async def get_status(self, courier_id: int) -> Optional[str]:
        async with self._lock:
            return self._statuses.get(courier_id)

    async def set_status(self, courier_id: int, status: str) -> None:
        async with self._lock:
            self._statuses[courier_id] = status


LocationStore = RedisLocationStore | MemoryLocationStore


async def init_location_store(redis_client=None, ttl_seconds: int = 24 * 60 * 60) -> LocationStore:
    """Redis store when the client answers a ping, memory store otherwise."""
    if redis_client:
        try:
            await redis_client.ping()
            logger.info("Using Redis for courier locations")
            return RedisLocationStore(redis_client, ttl_seconds=ttl_seconds)
        except Exception as e:
            logger.warning("Redis not available for courier locations, using memory: %s", e)

    logger.info("Using memory store for courier locations")
    return MemoryLocationStore(ttl_seconds=ttl_seconds)


# --- users table columns ---

async def persist_location(session: AsyncSession, courier_id: int, latitude: float, longitude: float) -> bool:
    result = await session.execute(
        update(User)
        .where(User.id == courier_id)
        .values(latitude=latitude, longitude=longitude, last_location_update=utcnow(), is_online=True)
    )
    await session.commit()
    return bool(result.rowcount)


async def set_online(session: AsyncSession, courier_id: int, online: bool) -> bool:
    result = await session.execute(update(User).where(User.id == courier_id).values(is_online=online))
    await session.commit()
    return bool(result.rowcount)


async def clear_location(session: AsyncSession, courier_id: int) -> bool:
    """Forget a courier's position after an explicit logout."""
    result = await session.execute(
        update(User)
        .where(User.id == courier_id)
        .values(latitude=None, longitude=None, last_location_update=None, is_online=False)
    )
    await session.commit()
    return bool(result.rowcount)


async def clear_stale_locations(
    session: AsyncSession,
    hours: int = 24,
    now: Optional[datetime] = None,
    store: Optional[LocationStore] = None,
) -> int:
    """
    Clear couriers whose last fix is older than `hours`.

    Their coordinates are nulled, they stop being available and their
    entries leave the location store.

    Returns:
        Number of couriers cleared
    """
    cutoff = (now or utcnow()) - timedelta(hours=hours)
    stale_ids = (await session.execute(
        select(User.id).where(
            User.role == UserRole.COURIER,
            User.last_location_update.is_not(None),
            User.last_location_update < cutoff,
        )
    )).scalars().all()
    if not stale_ids:
        await session.commit()
        return 0

    await session.execute(
        update(User)
        .where(User.id.in_(stale_ids))
        .values(latitude=None, longitude=None, is_available=False)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    if store is not None:
        for courier_id in stale_ids:
            await store.delete(courier_id)
    return len(stale_ids)


async def run_stale_location_sweep(
    session_maker: async_sessionmaker[AsyncSession],
    hours: int = 24,
    interval_seconds: float = 60 * 60,
    store: Optional[LocationStore] = None,
) -> None:
    """Sweep stale locations now and then every interval, until cancelled."""
    while True:
        try:
            async with session_maker() as session:
                cleared = await clear_stale_locations(session, hours, store=store)
            logger.info("Cleared %s stale courier location(s) older than %sh", cleared, hours)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Failed to clear stale courier locations: %s", e, exc_info=True)
        await asyncio.sleep(interval_seconds)
