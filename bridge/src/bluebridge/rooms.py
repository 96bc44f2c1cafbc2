from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Set

logger = logging.getLogger(__name__)

GLOBAL_ROOM = "global"

Callback = Callable[[Dict[str, Any]], None]


def event_frame(event: str, body: Any) -> Dict[str, Any]:
    return {"v": 1, "t": event, "body": body}


@dataclass
class Connection:
    conn_id: str
    callback: Callback
    rooms: Set[str] = field(default_factory=set)

    def deliver(self, frame: Dict[str, Any]) -> None:
        self.callback(frame)


class RoomHub:
    """Tracks realtime connections and the chat rooms each one has joined.

    Every connection sits in ``global``.  Chat rooms are keyed by chat guid
    and hold exactly the connections that joined them and have not left or
    disconnected since.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def connect(self, conn_id: str, callback: Callback) -> Connection:
        if conn_id in self._connections:
            self.disconnect(conn_id)
        connection = Connection(conn_id=conn_id, callback=callback)
        self._connections[conn_id] = connection
        self._rooms.setdefault(GLOBAL_ROOM, set()).add(conn_id)
        return connection

    def disconnect(self, conn_id: str) -> None:
        connection = self._connections.pop(conn_id, None)
        if connection is None:
            return
        for room in list(connection.rooms):
            self._discard(room, conn_id)
        connection.rooms.clear()
        self._discard(GLOBAL_ROOM, conn_id)

    def join(self, conn_id: str, room: str) -> bool:
        connection = self._connections.get(conn_id)
        if connection is None or not room or room == GLOBAL_ROOM:
            return False
        connection.rooms.add(room)
        self._rooms.setdefault(room, set()).add(conn_id)
        logger.debug("connection %s joined room %s", conn_id, room)
        return True

    def leave(self, conn_id: str, room: str) -> bool:
        connection = self._connections.get(conn_id)
        if connection is None or room not in connection.rooms:
            return False
        connection.rooms.discard(room)
        self._discard(room, conn_id)
        logger.debug("connection %s left room %s", conn_id, room)
        return True

    def rooms_of(self, conn_id: str) -> FrozenSet[str]:
        connection = self._connections.get(conn_id)
        if connection is None:
            return frozenset()
        return frozenset(connection.rooms)

    def member_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def broadcast(self, room: str, event: str, body: Any) -> int:
        """Deliver ``event`` to every member of ``room``; returns the number reached."""

        frame = event_frame(event, body)
        delivered = 0
        for conn_id in list(self._rooms.get(room, ())):
            connection = self._connections.get(conn_id)
            if connection is None:
                continue
            connection.deliver(frame)
            delivered += 1
        return delivered

    def broadcast_global(self, event: str, body: Any) -> int:
        return self.broadcast(GLOBAL_ROOM, event, body)

    def _discard(self, room: str, conn_id: str) -> None:
        members = self._rooms.get(room)
        if not members:
            return
        members.discard(conn_id)
        if not members:
            self._rooms.pop(room, None)
