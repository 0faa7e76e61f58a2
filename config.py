#!/usr/bin/env python3
"""config.py

Settings for the RelayChat server.

``server_config.json`` is a *plaintext* JSON settings file merged over
``get_default_settings()``. Prefer environment variables for secrets
(``DATABASE_URL``, ``SECRET_KEY``, ``JWT_SECRET_KEY``); they always win over
the file.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from constants import DEFAULT_DB_CONNECTION_STRING, sanitize_postgres_dsn
from secrets_policy import scrub_secrets_for_persist


def get_default_settings() -> Dict[str, Any]:
    """Return the defaults every settings dict starts from."""
    dsn = sanitize_postgres_dsn(
        os.getenv("DATABASE_URL")
        or os.getenv("DB_CONNECTION_STRING")
        or DEFAULT_DB_CONNECTION_STRING
    )

    return {
        # ── Core server ──────────────────────────────────────────────────
        "server_name": "RelayChat",
        "host": "0.0.0.0",
        "port": 3000,
        "debug": False,
        "environment": "development",

        # Secrets (server_init.py will generate/persist if missing)
        "secret_key": "",
        "jwt_secret": "",

        # ── Database ─────────────────────────────────────────────────────
        "database_url": dsn,
        "db_pool_min": 1,
        "db_pool_max": 10,
        # Nobody is connected right after boot; clear stale is_online flags.
        "reset_presence_on_start": True,

        # ── Auth ─────────────────────────────────────────────────────────
        "access_token_days": 7,

        # ── HTTP ─────────────────────────────────────────────────────────
        "cors_allowed_origins": ["http://localhost:3000", "http://localhost:19006"],
        "api_rate_limit": "1000 per minute",
        "rate_limit_storage_uri": "memory://",

        # ── Realtime ─────────────────────────────────────────────────────
        "socketio_message_queue": "",
        "socketio_ping_interval": 25,
        "socketio_ping_timeout": 20,
        "max_message_chars": 4000,

        # ── Logging ──────────────────────────────────────────────────────
        "log_level": "INFO",
        "log_format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "log_file_path": "logs/server.log",
    }


def load_settings(path: Path) -> dict:
    """Load settings from JSON over the defaults. Returns defaults if missing."""
    settings = get_default_settings()
    if not path.exists():
        return settings

    try:
        with path.open("r", encoding="utf-8") as fp:
            data = json.load(fp)
    except (OSError, ValueError) as exc:
        logging.warning("Could not parse %s as JSON: %s", path, exc)
        # Back the broken file up so generated secrets can be persisted into
        # a fresh one.
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        bad_path = path.with_suffix(path.suffix + f".bad-{ts}")
        try:
            path.rename(bad_path)
            logging.warning("Backed up invalid settings file to: %s", bad_path)
        except OSError as e2:
            logging.warning("Could not back up invalid settings file: %s", e2)
        return settings

    if not isinstance(data, dict):
        logging.warning("Ignoring %s: top level is not a JSON object", path)
        return settings
    settings.update(data)
    return settings


def save_settings(path: Path, settings: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # With RELAYCHAT_PERSIST_SECRETS=0 secrets stay in env/.env only.
    to_save = scrub_secrets_for_persist(settings)
    with path.open("w", encoding="utf-8") as fp:
        json.dump(to_save, fp, indent=2)


def _bool_env(*names: str) -> bool | None:
    for n in names:
        v = os.getenv(n)
        if v is None:
            continue
        v = v.strip().lower()
        if v in ("1", "true", "yes", "y", "on"):
            return True
        if v in ("0", "false", "no", "n", "off"):
            return False
    return None


def _str_env(*names: str) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v.strip()
    return None


def _int_env(*names: str) -> int | None:
    v = _str_env(*names)
    if v is None:
        return None
    try:
        return int(v)
    except ValueError:
        return None


def apply_env_overrides(settings: dict) -> None:
    """Apply env overrides for secrets and runtime deployment."""
    db = os.getenv("DB_CONNECTION_STRING") or os.getenv("DATABASE_URL")
    if db:
        settings["database_url"] = str(sanitize_postgres_dsn(db))

    secret = _str_env("SECRET_KEY")
    if secret:
        settings["secret_key"] = secret

    jwt_secret = _str_env("JWT_SECRET_KEY", "JWT_SECRET", "RELAYCHAT_JWT_SECRET")
    if jwt_secret:
        settings["jwt_secret"] = jwt_secret

    host = _str_env("RELAYCHAT_HOST", "HOST")
    if host:
        settings["host"] = host

    port = _int_env("RELAYCHAT_PORT", "PORT")
    if port:
        settings["port"] = port

    debug = _bool_env("RELAYCHAT_DEBUG")
    if debug is not None:
        settings["debug"] = debug

    env_name = _str_env("RELAYCHAT_ENV", "NODE_ENV")
    if env_name:
        settings["environment"] = env_name

    log_level = _str_env("RELAYCHAT_LOG_LEVEL", "LOG_LEVEL")
    if log_level:
        settings["log_level"] = log_level.upper()

    origins = _str_env("RELAYCHAT_CORS_ORIGINS", "CORS_ORIGIN")
    if origins:
        settings["cors_allowed_origins"] = [o.strip() for o in origins.split(",") if o.strip()]

    mq = _str_env("RELAYCHAT_SOCKETIO_MESSAGE_QUEUE", "SOCKETIO_MESSAGE_QUEUE")
    if mq:
        settings["socketio_message_queue"] = mq

    reset = _bool_env("RELAYCHAT_RESET_PRESENCE_ON_START")
    if reset is not None:
        settings["reset_presence_on_start"] = reset
