#!/usr/bin/env python3
"""
server_init.py
Initialises and runs the RelayChat Flask + Socket.IO application.
Builds the chat store, the realtime gateway and the HTTP routes, and wires
the Socket.IO event handlers onto them.
"""

from __future__ import annotations

import json
import os
import logging

# Optional WebSocket support
# - Default: auto (use eventlet if available, otherwise fall back to threading/polling)
# - Override with: RELAYCHAT_SOCKETIO_ASYNC=threading|eventlet
RELAYCHAT_SOCKETIO_ASYNC = os.environ.get("RELAYCHAT_SOCKETIO_ASYNC", "auto").strip().lower()
_EVENTLET_AVAILABLE = False
if RELAYCHAT_SOCKETIO_ASYNC in {"auto", "eventlet"}:
    try:
        import eventlet  # type: ignore

        eventlet.monkey_patch()
        _EVENTLET_AVAILABLE = True
    except ImportError:
        _EVENTLET_AVAILABLE = False
import secrets
from datetime import timedelta, datetime
from pathlib import Path
from typing import Any, Dict, Optional

import psycopg2
from flask import Flask, request
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO
from werkzeug.exceptions import HTTPException

from constants import APP_VERSION, sanitize_postgres_dsn, get_db_connection_string, redact_postgres_dsn, postgres_dsn_parts
from secrets_policy import persist_secrets_enabled
from database import PostgresChatStore, close_db, get_db_identity, init_database, init_db_pool
from realtime.errors import PersistenceFailure
from realtime.gateway import Gateway
from realtime.router import SocketIOTransport
from routes_main import json_error, register_main_routes
from routes_messages import messages_bp
from socket_handlers import register_socketio_handlers


def _get_socketio_message_queue(settings: Dict[str, Any]) -> Optional[str]:
    """Resolve the Socket.IO message queue URL.

    Priority:
      1) RELAYCHAT_SOCKETIO_MESSAGE_QUEUE
      2) SOCKETIO_MESSAGE_QUEUE
      3) server_config.json -> socketio_message_queue
      4) REDIS_URL (common convention)
    """
    for key in ("RELAYCHAT_SOCKETIO_MESSAGE_QUEUE", "SOCKETIO_MESSAGE_QUEUE"):
        v = (os.environ.get(key) or "").strip()
        if v:
            return v

    v = (settings.get("socketio_message_queue") or "").strip()
    if v:
        return v

    v = (os.environ.get("REDIS_URL") or "").strip()
    return v or None


def _require_redis_connectivity(redis_url: str) -> None:
    """Fail fast if a Redis message queue is configured but not reachable."""
    if not redis_url:
        return

    if not (redis_url.startswith("redis://") or redis_url.startswith("rediss://")):
        # Only validate redis:// style URLs here.
        return

    try:
        import redis  # type: ignore
    except ImportError:
        logging.critical(
            "[socketio] Redis message queue configured (%s) but python package 'redis' is not installed. "
            "Install with: pip install redis",
            redis_url,
        )
        raise SystemExit(2)

    try:
        client = redis.Redis.from_url(
            redis_url,
            socket_connect_timeout=1,
            socket_timeout=1,
            health_check_interval=10,
        )
        client.ping()
        logging.info("[socketio] Redis message queue reachable")
    except redis.RedisError as exc:
        logging.critical(
            "[socketio] Redis message queue configured (%s) but Redis is not reachable: %s",
            redis_url,
            exc,
        )
        raise SystemExit(2)


def _log_startup_banner(settings: Dict[str, Any], settings_file: Optional[Path]) -> None:
    """Log a boot banner that makes 'wrong DB / wrong config' obvious."""
    cfg_path = Path(settings_file) if settings_file else None
    cfg_exists = bool(cfg_path and cfg_path.exists())

    dsn = get_db_connection_string(settings)
    parts = postgres_dsn_parts(dsn)

    logging.info("==================== RelayChat Boot ====================")
    logging.info("RelayChat version: %s", APP_VERSION)
    logging.info("Settings file: %s (exists=%s)", str(cfg_path) if cfg_path else "<none>", cfg_exists)
    logging.info("Environment: %s", settings.get("environment"))
    logging.info(
        "Configured DB: host=%s port=%s db=%s user=%s",
        parts.get("host"), parts.get("port"), parts.get("db"), parts.get("user"),
    )
    logging.info("Configured DSN: %s", redact_postgres_dsn(dsn))
    logging.info("=========================================================")


def _normalize_cors_origins(val):
    if val is None:
        return None
    if isinstance(val, str):
        raw = val.strip()
        if not raw:
            return None
        # Support comma-separated strings
        if "," in raw:
            items = [x.strip() for x in raw.split(",") if x.strip()]
            return items or None
        return raw
    if isinstance(val, (list, tuple, set)):
        items = [str(x).strip() for x in val if str(x).strip()]
        return items or None
    return None


def _open_postgres_store(app: Flask, settings: Dict[str, Any]) -> PostgresChatStore:
    with app.app_context():
        # Common: pasted placeholder angle brackets around the DSN.
        if settings.get("database_url"):
            settings["database_url"] = str(sanitize_postgres_dsn(str(settings["database_url"])))
        init_db_pool(
            minconn=int(settings.get("db_pool_min", 1)),
            maxconn=int(settings.get("db_pool_max", 10)),
            dsn=str(settings.get("database_url")) if settings.get("database_url") else None,
        )
        init_database()

        # Log live DB identity (detect wrong DB/role quickly)
        try:
            ident = get_db_identity()
            logging.info(
                "Connected DB: user=%s db=%s server=%s:%s",
                ident.get("current_user"),
                ident.get("current_database"),
                ident.get("server_addr"),
                ident.get("server_port"),
            )
        except psycopg2.Error as exc:
            logging.warning("Could not read DB identity: %s", exc)

    store = PostgresChatStore()
    # Nobody can be connected to a process that just started.
    if settings.get("reset_presence_on_start", True):
        try:
            cleared = store.reset_online_flags()
            logging.info("Cleared stale online flags for %d user(s)", cleared)
        except PersistenceFailure as exc:
            logging.warning("Could not reset online flags: %s", exc)
    return store


def create_app(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] = None,
    settings_file: Optional[Path] = None,
    store=None,
) -> tuple[Flask, SocketIO]:
    """Create and configure the Flask + Socket.IO application.

    This function does **not** start a server. It is safe to import from a
    Gunicorn `wsgi.py` module. Pass ``store`` to run against something other
    than the PostgreSQL chat store; no database pool is opened in that case.
    """

    settings_file = Path(settings_file) if isinstance(settings_file, str) else settings_file

    # ───── Flask App Core ─────
    app = Flask(__name__)
    app.config["RELAYCHAT_SETTINGS_FILE"] = str(settings_file) if settings_file else None
    # Expose the live runtime settings dict to blueprints that need it.
    app.config["RELAYCHAT_SETTINGS"] = settings

    app.secret_key = _ensure_secret_key(settings, settings_file)

    app.config.update(
        SECRET_KEY=app.secret_key,
        JWT_SECRET_KEY=_ensure_jwt_secret(settings, settings_file),
        # Mobile and web clients send "Authorization: Bearer <token>".
        JWT_TOKEN_LOCATION=["headers"],
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=int(settings.get("access_token_days", 7))),
    )

    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def _missing_token(reason):
        return json_error(401, "Access denied", "No token provided", "NO_TOKEN")

    @jwt.invalid_token_loader
    def _invalid_token(reason):
        return json_error(401, "Invalid token", "Token is not valid", "INVALID_TOKEN")

    @jwt.expired_token_loader
    def _expired_token(jwt_header, jwt_payload):
        return json_error(401, "Token expired", "Token has expired", "TOKEN_EXPIRED")

    # ------------------------------------------------------------------
    # CORS (hardened defaults)
    # ------------------------------------------------------------------
    cors_origins = _normalize_cors_origins(settings.get("cors_allowed_origins"))
    if cors_origins is not None:
        # Disallow wildcard with credentials.
        if cors_origins == "*" or (isinstance(cors_origins, (list, tuple)) and "*" in cors_origins):
            logging.warning("CORS origins includes '*'. Disabling CORS because credentials are allowed.")
            cors_origins = None

    if cors_origins is not None:
        CORS(
            app,
            supports_credentials=True,
            origins=cors_origins,
        )

    storage_uri = settings.get("rate_limit_storage_uri") or "memory://"
    if limiter is None:
        limiter = Limiter(
            key_func=get_remote_address,
            storage_uri=storage_uri,
        )
    limiter.init_app(app)
    app.teardown_appcontext(close_db)

    # ───── JSON errors ─────
    @app.errorhandler(HTTPException)
    def _http_error(exc):
        code = (exc.name or "error").upper().replace(" ", "_")
        return json_error(exc.code or 500, exc.name, exc.description, code)

    @app.errorhandler(PersistenceFailure)
    def _persistence_error(exc):
        pgcode = getattr(exc.__cause__, "pgcode", None)
        if pgcode == "23505":
            return json_error(409, "Conflict", "Resource already exists", "DUPLICATE_ENTRY")
        if pgcode == "23503":
            return json_error(400, "Bad request", "Referenced resource not found", "FOREIGN_KEY_VIOLATION")
        logging.error("[http] %s %s failed in the chat store: %s", request.method, request.path, exc)
        return json_error(500, "Internal Server Error", "Internal Server Error", "INTERNAL_ERROR")

    @app.errorhandler(Exception)
    def _unexpected_error(exc):
        if isinstance(exc, HTTPException):
            return _http_error(exc)
        logging.exception("[http] unhandled error on %s %s", request.method, request.path)
        return json_error(500, "Internal Server Error", "Internal Server Error", "INTERNAL_ERROR")

    _log_startup_banner(settings, settings_file)

    # ───── Chat store ─────
    if store is None:
        store = _open_postgres_store(app, settings)
    app.config["RELAYCHAT_STORE"] = store

    # ───── SocketIO Setup ─────
    # NOTE: long-polling generates a *ton* of HTTP requests (and log lines). If
    # eventlet is available, we prefer it to enable WebSockets and dramatically
    # cut request volume.
    async_mode = "threading"
    if RELAYCHAT_SOCKETIO_ASYNC == "eventlet" and not _EVENTLET_AVAILABLE:
        logging.warning("[socketio] RELAYCHAT_SOCKETIO_ASYNC=eventlet but eventlet is not installed; falling back to threading")
    if (RELAYCHAT_SOCKETIO_ASYNC in {"auto", "eventlet"}) and _EVENTLET_AVAILABLE:
        async_mode = "eventlet"

    app.config["RELAYCHAT_SOCKETIO_ASYNC_MODE"] = async_mode

    # A Redis message queue lets other processes (workers, scripts) emit to
    # our sockets. The connection registry itself stays per process.
    message_queue = _get_socketio_message_queue(settings)
    if message_queue:
        _require_redis_connectivity(message_queue)

    socketio = SocketIO(
        app,
        async_mode=async_mode,
        cors_allowed_origins=cors_origins,
        logger=False,
        engineio_logger=False,
        ping_interval=int(settings.get("socketio_ping_interval", 25)),
        ping_timeout=int(settings.get("socketio_ping_timeout", 20)),
        message_queue=message_queue,
        # Events from one client are handled in arrival order.
        async_handlers=False,
    )
    app.config["RELAYCHAT_SOCKETIO"] = socketio

    gateway = Gateway(
        store,
        SocketIOTransport(socketio),
        settings,
        spawn=socketio.start_background_task,
    )
    app.config["RELAYCHAT_GATEWAY"] = gateway

    # ───── Global Socket.IO Error Handler ─────
    # Unexpected handler errors are logged and acked. A failure while
    # connecting must refuse the connection: any truthy return admits it.
    @socketio.on_error_default  # applies to all namespaces
    def _socketio_default_error_handler(e):
        sid = getattr(request, "sid", None)
        event = (getattr(request, "event", None) or {}).get("message")

        logging.exception("[socketio] %s handler error on %s: %s", event, sid, e)
        if event == "connect":
            return False
        return {"success": False, "error": "internal_error"}

    # ───── Routes ─────
    register_main_routes(app, settings, gateway, limiter=limiter)
    limiter.limit(settings.get("api_rate_limit") or "1000 per minute")(messages_bp)
    app.register_blueprint(messages_bp)

    register_socketio_handlers(socketio, settings, gateway)

    return app, socketio


def run_web_server(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] = None,
    settings_file: Optional[Path] = None,
) -> None:
    """Bootstrap the Flask-SocketIO app, attach blueprints & handlers, then run it."""

    app, socketio = create_app(settings, limiter=limiter, settings_file=settings_file)

    # ───── Run Server (dev / single-process) ─────
    host = settings.get("host") or "0.0.0.0"
    port = int(settings.get("port") or 3000)
    debug = bool(settings.get("debug") or False)

    logging.info("Starting RelayChat on http://%s:%s (debug=%s, async=%s)",
                 host, port, debug, app.config.get("RELAYCHAT_SOCKETIO_ASYNC_MODE"))

    # Reduce console spam from long-polling by filtering Werkzeug access logs for /socket.io.
    class _RelayChatSocketIOAccessFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            return "/socket.io/" not in record.getMessage()

    logging.getLogger("werkzeug").addFilter(_RelayChatSocketIOAccessFilter())

    use_reloader = bool(debug and app.config.get("RELAYCHAT_SOCKETIO_ASYNC_MODE") == "threading")
    socketio.run(
        app,
        host=host,
        port=port,
        debug=debug,
        use_reloader=use_reloader,
        log_output=False,
        allow_unsafe_werkzeug=True,
    )


# ───── Helpers ─────
def _ensure_secret_key(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    key = settings.get("secret_key") or os.getenv("SECRET_KEY")
    if key:
        return key

    key = secrets.token_urlsafe(64)
    settings["secret_key"] = key
    if _persist_generated_key(settings, settings_file):
        logging.info("secret_key generated and saved to settings.")
    else:
        logging.warning("Generated a one-off secret_key (NOT saved).")
    return key


def _ensure_jwt_secret(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    # Prefer explicit config, then env var. Only persist if we *generated* it
    # and secret persistence is enabled.
    key = settings.get("jwt_secret")
    if key:
        return str(key)

    env_key = os.getenv("JWT_SECRET_KEY")
    if env_key and str(env_key).strip():
        return str(env_key).strip()

    key = secrets.token_hex(32)
    settings["jwt_secret"] = key
    if _persist_generated_key(settings, settings_file):
        logging.info("jwt_secret generated and saved to settings.")
    else:
        logging.warning("Generated a one-off jwt_secret (NOT saved). Issued tokens stop verifying on restart.")
    return key


def _persist_generated_key(settings: Dict[str, Any], settings_file: Optional[Path]) -> bool:
    # If persistence is disabled, never write secrets into server_config.json.
    if not persist_secrets_enabled():
        return False
    if not settings_file:
        return False
    if settings_file.suffix.lower() != ".json":
        logging.warning("Unsupported settings file format: %s", settings_file)
        return False

    # Only write if the settings file is valid JSON or does not exist.
    existing: dict | None = None
    if settings_file.exists():
        try:
            with settings_file.open("r", encoding="utf-8") as fp:
                existing = json.load(fp)
        except (OSError, ValueError):
            existing = None

        if not isinstance(existing, dict):
            ts = datetime.now().strftime("%Y%m%d-%H%M%S")
            bad_path = settings_file.with_suffix(settings_file.suffix + f".bad-{ts}")
            try:
                settings_file.rename(bad_path)
                logging.warning("Backed up invalid settings file to: %s", bad_path)
            except OSError as exc:
                logging.warning("Could not back up invalid settings file: %s", exc)
                return False
            existing = {}

    merged = dict(existing or {})
    merged.update(settings)
    try:
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        with settings_file.open("w", encoding="utf-8") as fp:
            json.dump(merged, fp, indent=2)
    except OSError as exc:
        logging.warning("Could not persist generated secret to %s: %s", settings_file, exc)
        return False

    return True
