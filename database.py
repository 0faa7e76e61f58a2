#!/usr/bin/env python3
"""
RelayChat – database helpers (PostgreSQL version)

• psycopg2 ThreadedConnectionPool, one connection per Flask request via g
• Fresh pooled connections for non-request contexts (Socket.IO background tasks)
• Idempotent schema check for the tables the gateway touches
• PostgresChatStore: the persistence collaborator used by realtime.gateway
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from flask import g

from constants import get_db_connection_string, sanitize_postgres_dsn
from realtime.errors import PersistenceFailure


# ----------------------------------------------------------------------
# Connection helpers
# ----------------------------------------------------------------------

# Optional global connection pool. Enabled by calling init_db_pool().
_POOL: ThreadedConnectionPool | None = None
_DSN: str | None = None


def init_db_pool(minconn: int = 1, maxconn: int = 10, dsn: str | None = None) -> None:
    """Initialise a global ThreadedConnectionPool.

    Safe to call multiple times (no-op after first init).
    """
    global _POOL
    if _POOL is not None:
        return

    global _DSN
    _DSN = str(sanitize_postgres_dsn(dsn or get_db_connection_string()))

    try:
        _POOL = ThreadedConnectionPool(
            minconn=int(minconn),
            maxconn=int(maxconn),
            dsn=_DSN,
        )
        logging.info("Postgres connection pool ready (min=%s max=%s)", minconn, maxconn)
    except psycopg2.Error as e:
        _POOL = None
        logging.warning("Could not initialise Postgres pool; falling back to direct connects: %s", e)


def _acquire_conn():
    """Acquire a connection either from the pool or by direct connect.

    Returns (conn, from_pool: bool)
    """
    if _POOL is not None:
        return _POOL.getconn(), True
    return psycopg2.connect(_DSN or get_db_connection_string()), False


def _release_conn(conn, from_pool: bool) -> None:
    if conn is None:
        return
    if _POOL is not None and from_pool:
        try:
            # Ensure a clean connection is returned to the pool.
            conn.rollback()
        except psycopg2.Error:
            pass
        _POOL.putconn(conn)
    else:
        conn.close()


@contextmanager
def _pooled():
    """Short-lived connection for code running outside a Flask request."""
    conn, from_pool = _acquire_conn()
    try:
        yield conn
    finally:
        _release_conn(conn, from_pool)


def get_db() -> psycopg2.extensions.connection:
    """
    Return one psycopg2 connection per Flask request context (stored in g.db).
    """
    if not hasattr(g, "db"):
        conn, from_pool = _acquire_conn()
        g.db = conn
        g.db_from_pool = from_pool
    return g.db


def close_db(error=None):
    """
    Teardown: release the connection stored in g.db (if any).
    Called automatically via app.teardown_appcontext.
    """
    db_conn = g.pop("db", None)
    from_pool = bool(g.pop("db_from_pool", False))
    if db_conn is not None:
        try:
            _release_conn(db_conn, from_pool)
        except psycopg2.Error as e:
            logging.error("Error releasing DB connection: %s", e)
    if error:
        logging.error("DB teardown error: %s", error)


# ----------------------------------------------------------------------
# Schema
# ----------------------------------------------------------------------
_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        username VARCHAR(30) UNIQUE NOT NULL,
        email VARCHAR(255) UNIQUE,
        first_name VARCHAR(50),
        last_name VARCHAR(50),
        profile_picture VARCHAR(500),
        is_online BOOLEAN DEFAULT FALSE,
        last_seen TIMESTAMPTZ DEFAULT NOW(),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        type VARCHAR(20) NOT NULL DEFAULT 'private',
        title VARCHAR(255),
        is_group BOOLEAN DEFAULT FALSE,
        member_count INTEGER DEFAULT 0,
        last_message_at TIMESTAMPTZ,
        last_message_content TEXT,
        last_message_sender_id UUID REFERENCES users(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_participants (
        id SERIAL PRIMARY KEY,
        chat_id UUID NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        role VARCHAR(20) DEFAULT 'member',
        joined_at TIMESTAMPTZ DEFAULT NOW(),
        UNIQUE (chat_id, user_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id UUID PRIMARY KEY,
        chat_id UUID NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
        sender_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        message_type VARCHAR(20) NOT NULL DEFAULT 'text',
        delivery_status VARCHAR(20) NOT NULL DEFAULT 'sent',
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat_created ON messages (chat_id, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_chat_participants_user ON chat_participants (user_id);",
)


def init_database():
    """Create the tables the gateway and message routes rely on (idempotent)."""
    conn = get_db()
    with conn.cursor() as cur:
        for stmt in _SCHEMA:
            cur.execute(stmt)
    conn.commit()
    logging.info("Database schema verified")


def get_db_identity() -> dict:
    """Return who/where we are connected to (for the boot log)."""
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute(
            "SELECT current_user, current_database(), inet_server_addr()::text, inet_server_port();"
        )
        user, db, addr, port = cur.fetchone()
    return {"current_user": user, "current_database": db, "server_addr": addr, "server_port": port}


# ----------------------------------------------------------------------
# Row shaping
# ----------------------------------------------------------------------
def _iso(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return str(value)


def render_message(row: dict) -> dict:
    """Wire shape of a message row joined with its sender."""
    return {
        "id": str(row["id"]),
        "content": row["content"],
        "type": row["message_type"],
        "senderId": str(row["sender_id"]),
        "sender": {
            "id": str(row["sender_id"]),
            "username": row.get("username"),
            "firstName": row.get("first_name"),
            "lastName": row.get("last_name"),
            "profilePicture": row.get("profile_picture"),
        },
        "createdAt": _iso(row.get("created_at")),
        "updatedAt": _iso(row.get("updated_at")),
    }


_MESSAGE_SELECT = """
    SELECT m.id, m.chat_id, m.content, m.message_type, m.sender_id,
           m.created_at, m.updated_at,
           u.username, u.first_name, u.last_name, u.profile_picture
      FROM messages m
      JOIN users u ON u.id = m.sender_id
"""


# ----------------------------------------------------------------------
# Gateway persistence collaborator
# ----------------------------------------------------------------------
class PostgresChatStore:
    """Chat store used by the realtime gateway.

    Every method takes its own pooled connection so it can run from a
    Socket.IO handler or from a background task. psycopg2 errors surface as
    PersistenceFailure.
    """

    def get_minimal_profile(self, user_id: str) -> dict | None:
        try:
            with _pooled() as conn, conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, username, first_name, last_name, profile_picture
                      FROM users
                     WHERE id = %s;
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
        except pg_errors.InvalidTextRepresentation:
            # Not a UUID: cannot be one of our users.
            return None
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        if not row:
            return None
        return {
            "id": str(row[0]),
            "username": row[1],
            "firstName": row[2],
            "lastName": row[3],
            "avatarRef": row[4],
        }

    def store_message(self, chat_id: str, sender_id: str, content: str, msg_type: str = "text") -> dict:
        """Insert a message, bump the chat's last-message columns, return it rendered."""
        message_id = str(uuid.uuid4())
        try:
            with _pooled() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        """
                        INSERT INTO messages (id, chat_id, sender_id, content, message_type)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING created_at;
                        """,
                        (message_id, chat_id, sender_id, content, msg_type),
                    )
                    created_at = cur.fetchone()["created_at"]
                    cur.execute(
                        """
                        UPDATE chats
                           SET last_message_at = %s,
                               last_message_content = %s,
                               last_message_sender_id = %s,
                               updated_at = NOW()
                         WHERE id = %s;
                        """,
                        (created_at, content, sender_id, chat_id),
                    )
                    cur.execute(_MESSAGE_SELECT + " WHERE m.id = %s;", (message_id,))
                    row = cur.fetchone()
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return render_message(row)

    def mark_read(self, message_id: str, chat_id: str, reader_id: str) -> bool:
        """Mark a message read. Only participants of the chat may do so."""
        try:
            with _pooled() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE messages m
                           SET delivery_status = 'read'
                         WHERE m.id = %s
                           AND m.chat_id = %s
                           AND EXISTS (
                               SELECT 1 FROM chat_participants cp
                                WHERE cp.chat_id = m.chat_id AND cp.user_id = %s
                           );
                        """,
                        (message_id, chat_id, reader_id),
                    )
                    updated = cur.rowcount > 0
                conn.commit()
        except pg_errors.InvalidTextRepresentation:
            return False
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return updated

    def set_online_status(self, user_id: str, is_online: bool, when: datetime) -> None:
        """Record a presence transition unless a newer one is already stored."""
        try:
            with _pooled() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE users
                           SET is_online = %s, last_seen = %s
                         WHERE id = %s
                           AND (last_seen IS NULL OR last_seen <= %s);
                        """,
                        (bool(is_online), when, user_id, when),
                    )
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc

    def get_participants(self, chat_id: str) -> list[str]:
        try:
            with _pooled() as conn, conn.cursor() as cur:
                cur.execute("SELECT user_id FROM chat_participants WHERE chat_id = %s;", (chat_id,))
                return [str(r[0]) for r in cur.fetchall()]
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc

    def is_participant(self, chat_id: str, user_id: str) -> bool:
        try:
            with _pooled() as conn, conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM chat_participants WHERE chat_id = %s AND user_id = %s;",
                    (chat_id, user_id),
                )
                return cur.fetchone() is not None
        except pg_errors.InvalidTextRepresentation:
            return False
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc

    def reset_online_flags(self) -> int:
        """Clear every is_online flag (nobody is connected right after boot)."""
        try:
            with _pooled() as conn:
                with conn.cursor() as cur:
                    cur.execute("UPDATE users SET is_online = FALSE WHERE is_online;")
                    n = cur.rowcount
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return n

    # ------------------------------------------------------------------
    # Message history (HTTP routes)
    # ------------------------------------------------------------------
    def chat_exists(self, chat_id: str) -> bool:
        try:
            with _pooled() as conn, conn.cursor() as cur:
                cur.execute("SELECT 1 FROM chats WHERE id = %s;", (chat_id,))
                return cur.fetchone() is not None
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc

    def list_messages(self, chat_id: str, limit: int, offset: int) -> tuple[list[dict], int]:
        """Return (one page of messages oldest-first, total count)."""
        try:
            with _pooled() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    _MESSAGE_SELECT
                    + """
                     WHERE m.chat_id = %s
                     ORDER BY m.created_at DESC
                     LIMIT %s OFFSET %s;
                    """,
                    (chat_id, limit, offset),
                )
                rows = cur.fetchall() or []
                cur.execute("SELECT COUNT(*) AS total FROM messages WHERE chat_id = %s;", (chat_id,))
                total = int(cur.fetchone()["total"])
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return [render_message(r) for r in reversed(rows)], total

    def get_message_owner(self, message_id: str) -> str | None:
        try:
            with _pooled() as conn, conn.cursor() as cur:
                cur.execute("SELECT sender_id FROM messages WHERE id = %s;", (message_id,))
                row = cur.fetchone()
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return str(row[0]) if row else None

    def update_message(self, message_id: str, content: str) -> dict | None:
        try:
            with _pooled() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        "UPDATE messages SET content = %s, updated_at = NOW() WHERE id = %s;",
                        (content, message_id),
                    )
                    cur.execute(_MESSAGE_SELECT + " WHERE m.id = %s;", (message_id,))
                    row = cur.fetchone()
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return render_message(row) if row else None

    def delete_message(self, message_id: str) -> bool:
        try:
            with _pooled() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM messages WHERE id = %s;", (message_id,))
                    deleted = cur.rowcount > 0
                conn.commit()
        except psycopg2.Error as exc:
            raise PersistenceFailure(str(exc)) from exc
        return deleted
