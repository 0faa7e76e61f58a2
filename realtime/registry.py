"""Connection registry: who is online right now, and through which socket.

Replaces the old module-level CONNECTED_USERS dict. One registry instance is
created per app and injected wherever it is needed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Connection:
    """One live Socket.IO session. Identity is fixed for its lifetime."""

    connection_id: str
    user_id: str
    profile: Dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)
    rooms: set = field(default_factory=set)

    @property
    def username(self) -> Optional[str]:
        return self.profile.get("username")


@dataclass(frozen=True)
class ConnectedUserEntry:
    user_id: str
    connection_id: str
    profile: Dict[str, Any]
    connected_at: datetime

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "socketId": self.connection_id,
            "user": dict(self.profile),
            "connectedAt": self.connected_at.isoformat(),
        }


class ConnectionRegistry:
    """Thread-safe map of user id -> current connection (last connect wins).

    Also tracks every open transport session, including ones that have been
    superseded by a newer connection for the same user.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._users: dict[str, ConnectedUserEntry] = {}
        self._connections: dict[str, Connection] = {}

    # ------------------------------------------------------------------
    # Transport sessions
    # ------------------------------------------------------------------
    def open_connection(self, connection_id: str, user_id: str, profile: Dict[str, Any]) -> Connection:
        conn = Connection(connection_id=connection_id, user_id=user_id, profile=dict(profile or {}))
        with self._lock:
            self._connections[connection_id] = conn
        return conn

    def close_connection(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.pop(connection_id, None)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def connections(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    # ------------------------------------------------------------------
    # Online users
    # ------------------------------------------------------------------
    def register(self, user_id: str, connection_id: str, profile: Dict[str, Any]) -> bool:
        """Insert or replace the entry for user_id.

        Returns True only when the user was not online before.
        """
        entry = ConnectedUserEntry(
            user_id=user_id,
            connection_id=connection_id,
            profile=dict(profile or {}),
            connected_at=utcnow(),
        )
        with self._lock:
            is_new = user_id not in self._users
            self._users[user_id] = entry
        return is_new

    def unregister(self, user_id: str, connection_id: str) -> bool:
        """Remove the entry only if it still belongs to connection_id."""
        with self._lock:
            entry = self._users.get(user_id)
            if entry is None or entry.connection_id != connection_id:
                return False
            del self._users[user_id]
            return True

    def lookup(self, user_id: str) -> Optional[ConnectedUserEntry]:
        with self._lock:
            return self._users.get(user_id)

    def is_online(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users

    def snapshot_all(self) -> List[ConnectedUserEntry]:
        with self._lock:
            return list(self._users.values())
