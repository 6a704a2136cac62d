"""
In-process WebSocket hub with named rooms.

Messages on the wire are JSON objects {"event": <name>, "data": {...}}.
Rooms in use: "managers" (fleet map), "driver-<id>", "order-<id>", "user-<id>".
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class Broadcaster(Protocol):
    async def emit(self, event: str, data: Dict[str, Any], room: Optional[str] = None) -> None:
        ...


@dataclass(eq=False)
class Client:
    websocket: WebSocket
    sid: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    driver_id: Optional[int] = None
    rooms: Set[str] = field(default_factory=set)


class ConnectionHub:
    """Keeps connected sockets and their rooms; also the broadcaster handed to services."""

    def __init__(self):
        self._clients: Dict[str, Client] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def register(self, websocket: WebSocket) -> Client:
        client = Client(websocket=websocket)
        self._clients[client.sid] = client
        logger.info("Client connected: %s", client.sid)
        return client

    def unregister(self, client: Client) -> None:
        self.leave_all(client)
        self._clients.pop(client.sid, None)
        logger.info("Client disconnected: %s", client.sid)

    def join(self, client: Client, room: str) -> None:
        self._rooms.setdefault(room, set()).add(client.sid)
        client.rooms.add(room)

    def leave_all(self, client: Client) -> None:
        for room in list(client.rooms):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(client.sid)
                if not members:
                    del self._rooms[room]
        client.rooms.clear()

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def driver_connections(self, driver_id: int) -> int:
        """Open sockets bound to a courier."""
        return sum(1 for c in self._clients.values() if c.driver_id == driver_id)

    async def send(self, client: Client, event: str, data: Dict[str, Any]) -> bool:
        try:
            await client.websocket.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            # a dead socket must not break delivery to the others
            logger.warning("Send to %s failed, dropping client: %r", client.sid, e)
            self.unregister(client)
            return False

    async def emit(
        self,
        event: str,
        data: Dict[str, Any],
        room: Optional[str] = None,
        exclude: Optional[Client] = None,
    ) -> int:
        """Send an event to a room, or to everybody when room is None. Returns the delivery count."""
        if room is None:
            targets = list(self._clients.values())
        else:
            targets = [self._clients[sid] for sid in list(self._rooms.get(room, ())) if sid in self._clients]

        delivered = 0
        for client in targets:
            if client is exclude:
                continue
            if await self.send(client, event, data):
                delivered += 1
        return delivered
