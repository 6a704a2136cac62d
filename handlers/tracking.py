"""
Live courier tracking over a WebSocket.

Frames in both directions are JSON objects {"event": <name>, "data": ...}.
Every room join is answered with a "joined" event carrying the room name.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from database.models import User, utcnow
from services.locations import (
    CourierLocation, LocationStore, clear_location, is_accurate_enough, persist_location, set_online,
)
from services.realtime import Client, ConnectionHub

logger = logging.getLogger(__name__)

router = APIRouter()

MANAGERS_ROOM = "managers"


def _int_from(data: Any, *keys: str) -> Optional[int]:
    """Id sent either bare (42, "42") or inside an object under one of keys."""
    value = data
    if isinstance(data, dict):
        value = next((data[k] for k in keys if data.get(k) not in (None, "")), None)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _float_from(data: dict, *keys: str) -> Optional[float]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


class TrackingChannel:
    """Event handlers of one socket server, sharing the hub and the location store."""

    def __init__(
        self,
        hub: ConnectionHub,
        store: LocationStore,
        session_maker: async_sessionmaker[AsyncSession],
        config: Config,
    ):
        self.hub = hub
        self.store = store
        self.session_maker = session_maker
        self.config = config
        self._handlers: Dict[str, Callable[[Client, Any], Awaitable[None]]] = {
            "driver-online": self.driver_online,
            "sendLocation": self.send_location,
            "driver-location": self.send_location,
            "driver-offline": self.driver_offline,
            "driver-logout": self.driver_offline,
            "join-managers": self.join_managers,
            "join-driver-tracking": self.join_driver_tracking,
            "join-tracking": self.join_tracking,
            "user-join": self.user_join,
            "ping": self.ping,
        }

    async def dispatch(self, client: Client, event: Optional[str], data: Any) -> None:
        handler = self._handlers.get(event or "")
        if handler is None:
            await self.hub.send(client, "error", {"message": f"Unknown event: {event}"})
            return
        await handler(client, data)

    async def _join(self, client: Client, room: str) -> None:
        self.hub.join(client, room)
        await self.hub.send(client, "joined", {"room": room})

    async def _set_db_online(self, courier_id: int, online: bool) -> None:
        try:
            async with self.session_maker() as session:
                await set_online(session, courier_id, online)
        except Exception as e:
            logger.error("Error saving online=%s for courier %s: %s", online, courier_id, e, exc_info=True)

    async def _status_changed(self, courier_id: int, status: str) -> None:
        await self.store.set_status(courier_id, status)
        await self.hub.emit("driver-status-changed", {"driverId": courier_id, "status": status})

    async def driver_online(self, client: Client, data: Any) -> None:
        courier_id = _int_from(data, "driverId", "courierId", "id")
        if courier_id is None:
            return
        client.driver_id = courier_id
        await self._set_db_online(courier_id, True)
        await self._status_changed(courier_id, "online")
        logger.info("Courier %s is now online", courier_id)

        location = await self.store.get(courier_id)
        if location is not None:
            await self.hub.emit("updateLocation", location.to_dict(), room=f"driver-{courier_id}")

    async def send_location(self, client: Client, data: Any) -> None:
        if not isinstance(data, dict):
            return
        courier_id = _int_from(data, "courierId", "driverId")
        latitude = _float_from(data, "latitude", "lat")
        longitude = _float_from(data, "longitude", "lng")
        if courier_id is None or latitude is None or longitude is None:
            logger.debug("Location without courier or coordinates dropped: %s", data)
            return

        accuracy = data.get("accuracy")
        if not is_accurate_enough(accuracy, self.config.LOCATION_ACCURACY_THRESHOLD_M):
            logger.debug("Inaccurate fix from courier %s dropped (accuracy=%s)", courier_id, accuracy)
            return

        client.driver_id = courier_id
        previous = await self.store.get(courier_id)
        name = data.get("name") or (previous.name if previous else None)
        if not name:
            async with self.session_maker() as session:
                name = await session.scalar(select(User.name).where(User.id == courier_id))

        location = CourierLocation(
            courier_id=courier_id,
            latitude=latitude,
            longitude=longitude,
            name=name,
            heading=_float_from(data, "heading") or 0.0,
            speed=_float_from(data, "speed") or 0.0,
            accuracy=_float_from(data, "accuracy") or 0.0,
            timestamp=utcnow().isoformat(),
        )
        await self.store.set(location)

        if await self.store.get_status(courier_id) != "online":
            await self._status_changed(courier_id, "online")

        payload = location.to_dict()
        order_id = _int_from(data, "orderId")
        if order_id is not None:
            await self.hub.emit("updateLocation", payload, room=f"order-{order_id}")
        await self.hub.emit("updateLocation", payload, room=f"driver-{courier_id}")
        await self.hub.emit("updateLocation", payload, room=MANAGERS_ROOM)

        try:
            async with self.session_maker() as session:
                await persist_location(session, courier_id, latitude, longitude)
        except Exception as e:
            logger.error("Error persisting location of courier %s: %s", courier_id, e, exc_info=True)

        logger.debug("Location from courier %s (%s) at (%s, %s)", courier_id, name, latitude, longitude)

    async def driver_offline(self, client: Client, data: Any) -> None:
        courier_id = _int_from(data, "driverId", "courierId", "id")
        if courier_id is None:
            return
        if client.driver_id == courier_id:
            client.driver_id = None

        await self.store.delete(courier_id)
        try:
            async with self.session_maker() as session:
                await clear_location(session, courier_id)
        except Exception as e:
            logger.error("Error clearing location of courier %s: %s", courier_id, e, exc_info=True)

        await self.hub.emit("driver-offline", {"driverId": courier_id}, room=MANAGERS_ROOM)
        await self._status_changed(courier_id, "offline")
        logger.info("Courier %s logged out, location cleared", courier_id)

    async def join_managers(self, client: Client, data: Any) -> None:
        await self._join(client, MANAGERS_ROOM)
        for location in await self.store.all():
            await self.hub.send(client, "updateLocation", location.to_dict())

    async def join_driver_tracking(self, client: Client, data: Any) -> None:
        courier_id = _int_from(data, "driverId", "courierId", "id")
        if courier_id is None:
            return
        await self._join(client, f"driver-{courier_id}")

        status = await self.store.get_status(courier_id)
        if status:
            await self.hub.send(client, "driver-status-changed", {"driverId": courier_id, "status": status})
        location = await self.store.get(courier_id)
        if location is not None:
            await self.hub.send(client, "updateLocation", location.to_dict())

    async def join_tracking(self, client: Client, data: Any) -> None:
        order_id = _int_from(data, "orderId", "id")
        if order_id is None:
            return
        await self._join(client, f"order-{order_id}")

    async def user_join(self, client: Client, data: Any) -> None:
        user_id = _int_from(data, "userId", "id")
        if user_id is None:
            return
        await self._join(client, f"user-{user_id}")

    async def ping(self, client: Client, data: Any) -> None:
        await self.hub.send(client, "pong", {"timestamp": utcnow().isoformat()})

    async def disconnect(self, client: Client) -> None:
        courier_id = client.driver_id
        self.hub.unregister(client)
        if courier_id is None or self.hub.driver_connections(courier_id):
            return
        # last socket of the courier: offline, but the location stays
        await self._set_db_online(courier_id, False)
        await self._status_changed(courier_id, "offline")
        logger.info("Courier %s is now offline (no more sockets), location preserved", courier_id)


@router.websocket("/ws")
async def tracking_socket(websocket: WebSocket):
    await websocket.accept()
    state = websocket.app.state
    channel = TrackingChannel(state.hub, state.location_store, state.session_maker, state.config)
    client = state.hub.register(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await state.hub.send(client, "error", {"message": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await state.hub.send(client, "error", {"message": "Expected {event, data}"})
                continue
            try:
                await channel.dispatch(client, message.get("event"), message.get("data"))
            except Exception as e:
                logger.error("Socket event %r failed: %s", message.get("event"), e, exc_info=True)
                await state.hub.send(client, "error", {"message": "Internal error"})
    except WebSocketDisconnect:
        pass
    finally:
        await channel.disconnect(client)
