"""Shared fixtures: an in-memory chat store, recording transports and an app."""

import os

# Must be set before server_init is imported: eventlet monkey-patching under
# pytest is not wanted.
os.environ["RELAYCHAT_SOCKETIO_ASYNC"] = "threading"

import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from flask_jwt_extended import create_access_token

from config import get_default_settings
from database import render_message
from realtime.errors import AuthenticationFailure, DeliveryFailure, PersistenceFailure
from realtime.gateway import Gateway
from realtime.registry import ConnectionRegistry


class FakeStore:
    """In-memory stand-in for PostgresChatStore.

    Put a method name into ``failing`` to make it raise PersistenceFailure.
    """

    def __init__(self):
        self.users = {}
        self.chats = {}
        self.rows = {}
        self.reads = []
        self.statuses = []
        self.presence = {}
        self.failing = set()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def _check(self, name):
        if name in self.failing:
            raise PersistenceFailure(f"{name}: database is down")

    # seeding ---------------------------------------------------------
    def add_user(self, username):
        user_id = str(uuid.uuid4())
        self.users[user_id] = {
            "id": user_id,
            "username": username,
            "firstName": username.title(),
            "lastName": None,
            "avatarRef": None,
        }
        return user_id

    def add_chat(self, *user_ids):
        chat_id = str(uuid.uuid4())
        self.chats[chat_id] = list(user_ids)
        return chat_id

    # store interface -------------------------------------------------
    def get_minimal_profile(self, user_id):
        self._check("get_minimal_profile")
        profile = self.users.get(user_id)
        return dict(profile) if profile else None

    def store_message(self, chat_id, sender_id, content, msg_type="text"):
        self._check("store_message")
        with self._lock:
            self._clock += timedelta(seconds=1)
            sender = self.users.get(sender_id, {})
            row = {
                "id": str(uuid.uuid4()),
                "chat_id": chat_id,
                "sender_id": sender_id,
                "content": content,
                "message_type": msg_type,
                "created_at": self._clock,
                "updated_at": self._clock,
                "username": sender.get("username"),
                "first_name": sender.get("firstName"),
                "last_name": sender.get("lastName"),
                "profile_picture": sender.get("avatarRef"),
            }
            self.rows[row["id"]] = row
        return render_message(row)

    def mark_read(self, message_id, chat_id, reader_id):
        self._check("mark_read")
        row = self.rows.get(message_id)
        if row is None or row["chat_id"] != chat_id or reader_id not in self.chats.get(chat_id, ()):
            return False
        self.reads.append((message_id, chat_id, reader_id))
        return True

    def set_online_status(self, user_id, is_online, when):
        self._check("set_online_status")
        current = self.presence.get(user_id)
        if current is not None and current[1] > when:
            return
        self.presence[user_id] = (is_online, when)
        self.statuses.append((user_id, is_online, when))

    def get_participants(self, chat_id):
        self._check("get_participants")
        return list(self.chats.get(chat_id, ()))

    def is_participant(self, chat_id, user_id):
        self._check("is_participant")
        return user_id in self.chats.get(chat_id, ())

    def reset_online_flags(self):
        return 0

    def chat_exists(self, chat_id):
        self._check("chat_exists")
        return chat_id in self.chats

    def list_messages(self, chat_id, limit, offset):
        self._check("list_messages")
        rows = sorted(
            (r for r in self.rows.values() if r["chat_id"] == chat_id),
            key=lambda r: r["created_at"],
            reverse=True,
        )
        page = rows[offset:offset + limit]
        return [render_message(r) for r in reversed(page)], len(rows)

    def get_message_owner(self, message_id):
        row = self.rows.get(message_id)
        return row["sender_id"] if row else None

    def update_message(self, message_id, content):
        row = self.rows.get(message_id)
        if row is None:
            return None
        row["content"] = content
        return render_message(row)

    def delete_message(self, message_id):
        return self.rows.pop(message_id, None) is not None


class RecordingTransport:
    def __init__(self):
        self.sent = []

    def send(self, connection_id, event, payload):
        self.sent.append((connection_id, event, payload))

    def events_for(self, connection_id, event=None):
        return [
            p for (cid, ev, p) in self.sent
            if cid == connection_id and (event is None or ev == event)
        ]

    def clear(self):
        self.sent.clear()


class FailingTransport(RecordingTransport):
    """Raises for the listed connection ids, records everything else."""

    def __init__(self, broken):
        super().__init__()
        self.broken = set(broken)

    def send(self, connection_id, event, payload):
        if connection_id in self.broken:
            raise DeliveryFailure(f"socket {connection_id} is gone")
        super().send(connection_id, event, payload)


def fake_verifier(token):
    """Tokens look like 'tok:<user id>'; anything else is invalid."""
    if token == "expired":
        raise AuthenticationFailure("expired_token")
    if not token.startswith("tok:"):
        raise AuthenticationFailure("invalid_token")
    return token[4:]


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def gateway(store, transport, registry):
    return Gateway(store, transport, {"max_message_chars": 4000}, registry=registry, verifier=fake_verifier)


@pytest.fixture
def settings(monkeypatch):
    for var in ("REDIS_URL", "SOCKETIO_MESSAGE_QUEUE", "RELAYCHAT_SOCKETIO_MESSAGE_QUEUE"):
        monkeypatch.delenv(var, raising=False)
    s = get_default_settings()
    s.update(
        {
            "secret_key": "test-secret-key",
            "jwt_secret": "test-jwt-secret-with-enough-bytes-for-hs256",
            "environment": "test",
            "socketio_message_queue": "",
        }
    )
    return s


@pytest.fixture
def app_and_socketio(settings, store):
    from server_init import create_app

    app, socketio = create_app(settings, store=store)
    app.config["TESTING"] = True
    return app, socketio


@pytest.fixture
def app(app_and_socketio):
    return app_and_socketio[0]


@pytest.fixture
def socketio(app_and_socketio):
    return app_and_socketio[1]


@pytest.fixture
def token_for(app):
    def _mint(user_id):
        with app.app_context():
            return create_access_token(identity=user_id)

    return _mint
