"""Room router: chat-room membership and best-effort event fan-out."""

from __future__ import annotations

import logging
import threading
from typing import Any, List, Optional

from realtime.errors import DeliveryFailure
from realtime.registry import ConnectionRegistry


class SocketIOTransport:
    """Deliver events to a single Socket.IO session id.

    The transport contract: send() either delivers or raises DeliveryFailure.
    """

    def __init__(self, socketio):
        self.socketio = socketio

    def send(self, connection_id: str, event: str, payload: Any) -> None:
        try:
            self.socketio.emit(event, payload, to=connection_id)
        except Exception as exc:
            raise DeliveryFailure(f"{event} -> {connection_id}: {exc}") from exc


class RoomRouter:
    """Maps room ids to the connections subscribed to them.

    Joining and leaving are routing subscriptions only; whether a user may
    post into a chat is checked against the store when a message is sent.
    """

    def __init__(self, registry: ConnectionRegistry, transport):
        self.registry = registry
        self.transport = transport
        self._lock = threading.Lock()
        self._rooms: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    def join_room(self, connection_id: str, room_id: str) -> bool:
        """Subscribe a connection. Returns False for an unknown connection."""
        with self._lock:
            # Checked under the lock so a concurrent leave_all() cannot miss it.
            conn = self.registry.get_connection(connection_id)
            if conn is None:
                return False
            self._rooms.setdefault(room_id, set()).add(connection_id)
            conn.rooms.add(room_id)
        return True

    def leave_room(self, connection_id: str, room_id: str) -> bool:
        """Unsubscribe a connection. Returns True if it was a member."""
        conn = self.registry.get_connection(connection_id)
        with self._lock:
            members = self._rooms.get(room_id)
            if not members or connection_id not in members:
                return False
            members.discard(connection_id)
            if not members:
                del self._rooms[room_id]
            if conn is not None:
                conn.rooms.discard(room_id)
        return True

    def leave_all(self, connection_id: str, connection=None) -> List[str]:
        """Drop every membership of a connection in one locked step.

        Pass `connection` when it has already been closed in the registry.
        """
        conn = connection or self.registry.get_connection(connection_id)
        left = []
        with self._lock:
            for room_id, members in list(self._rooms.items()):
                if connection_id in members:
                    members.discard(connection_id)
                    left.append(room_id)
                    if not members:
                        del self._rooms[room_id]
            if conn is not None:
                conn.rooms.clear()
        return left

    def members(self, room_id: str) -> set[str]:
        with self._lock:
            return set(self._rooms.get(room_id, ()))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def _deliver(self, connection_id: str, event: str, payload: Any) -> bool:
        try:
            self.transport.send(connection_id, event, payload)
            return True
        except DeliveryFailure as exc:
            # At-most-once: a failed recipient is dropped, the batch goes on.
            logging.debug("[router] %s to %s dropped: %s", event, connection_id, exc)
            return False
        except Exception:
            # Outside the transport contract; still scoped to this recipient.
            logging.exception("[router] transport error sending %s to %s", event, connection_id)
            return False

    def relay(self, room_id: str, event: str, payload: Any, exclude_connection_id: Optional[str] = None) -> int:
        """Send `event` to every member of `room_id` except the excluded one.

        Returns the number of recipients the transport accepted.
        """
        delivered = 0
        for connection_id in self.members(room_id):
            if connection_id == exclude_connection_id:
                continue
            if self._deliver(connection_id, event, payload):
                delivered += 1
        return delivered

    def send_to_user(self, user_id: str, event: str, payload: Any) -> bool:
        """Send directly to the user's current connection, if they are online."""
        entry = self.registry.lookup(user_id)
        if entry is None:
            return False
        return self._deliver(entry.connection_id, event, payload)

    def broadcast(self, event: str, payload: Any) -> int:
        """Send to every open connection."""
        delivered = 0
        for conn in self.registry.connections():
            if self._deliver(conn.connection_id, event, payload):
                delivered += 1
        return delivered
