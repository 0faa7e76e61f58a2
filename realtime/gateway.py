"""Presence & messaging gateway.

Glue between the Socket.IO event handlers and the three in-memory pieces
(registry, router, presence broadcaster) plus the chat store. Handlers call
one method per transport event; HTTP routes call deliver_new_message() and
send_notification().
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Mapping, Optional

from realtime.errors import PersistenceFailure, ValidationFailure
from realtime.handshake import authenticate, verify_access_token
from realtime.presence import PresenceBroadcaster
from realtime.registry import Connection, ConnectionRegistry, utcnow
from realtime.router import RoomRouter

MESSAGE_TYPES = {"text", "image", "video", "audio", "file", "location"}
_ID_MAX = 128


def _identifier(raw, code: str) -> str:
    if raw is None or isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise ValidationFailure(code)
    value = str(raw).strip()
    if not value or len(value) > _ID_MAX:
        raise ValidationFailure(code)
    return value


def _room_id(data) -> str:
    data = data if isinstance(data, Mapping) else {}
    raw = data.get("roomId")
    if raw is None:
        # Older clients still send chatId.
        raw = data.get("chatId")
    return _identifier(raw, "bad_room_id")


class Gateway:
    def __init__(
        self,
        store,
        transport,
        settings: Optional[dict] = None,
        registry: Optional[ConnectionRegistry] = None,
        spawn: Optional[Callable] = None,
        verifier: Callable[[str], str] = verify_access_token,
    ):
        self.settings = settings if settings is not None else {}
        self.store = store
        self.registry = registry or ConnectionRegistry()
        self.router = RoomRouter(self.registry, transport)
        self.presence = PresenceBroadcaster(self.router, store, spawn=spawn)
        self.verifier = verifier

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def connect(self, connection_id: str, auth: Any = None, query_args: Optional[Mapping[str, str]] = None) -> Connection:
        """Admit an authenticated connection. Raises AuthenticationFailure."""
        user_id, profile = authenticate(auth, query_args, self.store, verifier=self.verifier)
        conn = self.registry.open_connection(connection_id, user_id, profile)
        is_new = self.registry.register(user_id, connection_id, profile)
        logging.info(
            "[gateway] %s connected (user=%s sid=%s new=%s)", conn.username, user_id, connection_id, is_new
        )
        if is_new:
            self.presence.announce_online(user_id)
        return conn

    def disconnect(self, connection_id: str) -> Optional[Connection]:
        conn = self.registry.close_connection(connection_id)
        if conn is None:
            logging.debug("[gateway] disconnect from unknown sid %s", connection_id)
            return None
        self.router.leave_all(connection_id, connection=conn)
        went_offline = self.registry.unregister(conn.user_id, connection_id)
        logging.info(
            "[gateway] %s disconnected (user=%s sid=%s offline=%s)",
            conn.username, conn.user_id, connection_id, went_offline,
        )
        if went_offline:
            self.presence.announce_offline(conn.user_id)
        return conn

    def _connection(self, connection_id: str) -> Connection:
        conn = self.registry.get_connection(connection_id)
        if conn is None:
            raise ValidationFailure("not_connected")
        return conn

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    def join_room(self, connection_id: str, data) -> dict:
        conn = self._connection(connection_id)
        room_id = _room_id(data)
        self.router.join_room(connection_id, room_id)
        logging.info("[gateway] %s joined room %s", conn.username, room_id)
        return {"success": True, "roomId": room_id}

    def leave_room(self, connection_id: str, data) -> dict:
        conn = self._connection(connection_id)
        room_id = _room_id(data)
        was_member = self.router.leave_room(connection_id, room_id)
        logging.info("[gateway] %s left room %s", conn.username, room_id)
        return {"success": True, "roomId": room_id, "wasMember": was_member}

    def typing(self, connection_id: str, data, started: bool) -> dict:
        conn = self._connection(connection_id)
        room_id = _room_id(data)
        payload = {"userId": conn.user_id, "roomId": room_id, "username": conn.username}
        event = "typing_started" if started else "typing_stopped"
        self.router.relay(room_id, event, payload, exclude_connection_id=connection_id)
        return {"success": True}

    def message_read(self, connection_id: str, data) -> dict:
        conn = self._connection(connection_id)
        room_id = _room_id(data)
        message_id = _identifier(data.get("messageId"), "bad_message_id")

        try:
            if not self.store.mark_read(message_id, room_id, conn.user_id):
                return {"success": False, "error": "not_found"}
        except PersistenceFailure as exc:
            logging.warning("[gateway] mark_read %s in %s failed: %s", message_id, room_id, exc)

        payload = {
            "messageId": message_id,
            "roomId": room_id,
            "userId": conn.user_id,
            "username": conn.username,
            "readAt": utcnow().isoformat(),
        }
        self.router.relay(room_id, "message_read", payload, exclude_connection_id=connection_id)
        return {"success": True}

    def send_message(self, connection_id: str, data) -> dict:
        conn = self._connection(connection_id)
        room_id = _room_id(data)
        content, msg_type = self._validate_content(data)

        try:
            allowed = self.store.is_participant(room_id, conn.user_id)
        except PersistenceFailure as exc:
            logging.warning("[gateway] participant check for %s in %s failed: %s", conn.user_id, room_id, exc)
            return {"success": False, "error": "store_unavailable"}
        if not allowed:
            return {"success": False, "error": "not_a_participant"}

        persisted = True
        try:
            message = self.store.store_message(room_id, conn.user_id, content, msg_type)
        except PersistenceFailure as exc:
            # Online recipients still get the message; storage lags behind.
            logging.warning("[gateway] could not store message in %s from %s: %s", room_id, conn.user_id, exc)
            persisted = False
            message = self._transient_message(conn, content, msg_type)

        self.deliver_new_message(room_id, message, conn.user_id, sender_connection_id=connection_id)
        return {"success": True, "message": message, "persisted": persisted}

    def _validate_content(self, data) -> tuple[str, str]:
        data = data if isinstance(data, Mapping) else {}
        content = data.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationFailure("empty_content")
        max_chars = int(self.settings.get("max_message_chars") or 4000)
        if len(content) > max_chars:
            raise ValidationFailure("content_too_long")
        msg_type = data.get("type") or "text"
        if msg_type not in MESSAGE_TYPES:
            raise ValidationFailure("bad_message_type")
        return content, msg_type

    @staticmethod
    def _transient_message(conn: Connection, content: str, msg_type: str) -> dict:
        now = utcnow().isoformat()
        profile = conn.profile
        return {
            "id": str(uuid.uuid4()),
            "content": content,
            "type": msg_type,
            "senderId": conn.user_id,
            "sender": {
                "id": conn.user_id,
                "username": profile.get("username"),
                "firstName": profile.get("firstName"),
                "lastName": profile.get("lastName"),
                "profilePicture": profile.get("avatarRef"),
            },
            "createdAt": now,
            "updatedAt": now,
            "persisted": False,
        }

    # ------------------------------------------------------------------
    # Server-side entry points
    # ------------------------------------------------------------------
    def deliver_new_message(
        self,
        room_id: str,
        message: dict,
        sender_id: str,
        sender_connection_id: Optional[str] = None,
    ) -> int:
        """Push a stored message to the chat's participants.

        Participants get `new_message` on their personal connection whether
        or not they joined the room; the room then gets `message_delivered`.
        Returns the number of `new_message` deliveries.
        """
        payload = {"message": message, "roomId": room_id}
        delivered = 0
        try:
            participants = self.store.get_participants(room_id)
        except PersistenceFailure as exc:
            logging.warning("[gateway] participants of %s unavailable, relaying to room only: %s", room_id, exc)
            if sender_connection_id is None:
                entry = self.registry.lookup(sender_id)
                sender_connection_id = entry.connection_id if entry else None
            delivered = self.router.relay(room_id, "new_message", payload, exclude_connection_id=sender_connection_id)
        else:
            for participant_id in participants:
                if str(participant_id) == str(sender_id):
                    continue
                if self.router.send_to_user(str(participant_id), "new_message", payload):
                    delivered += 1

        self.router.relay(
            room_id,
            "message_delivered",
            {"messageId": message.get("id"), "roomId": room_id, "deliveredAt": utcnow().isoformat()},
        )
        return delivered

    def send_notification(self, user_id: str, notification: Any) -> bool:
        return self.router.send_to_user(user_id, "notification", notification)

    def online_users(self) -> list[dict]:
        return [entry.to_dict() for entry in self.registry.snapshot_all()]

    def connection_count(self) -> int:
        return len(self.registry.connections())
