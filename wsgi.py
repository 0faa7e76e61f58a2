"""wsgi.py

Gunicorn entrypoint for RelayChat.

Run (example):
  RELAYCHAT_SOCKETIO_ASYNC=eventlet \
  gunicorn -c gunicorn_conf.py wsgi:app

Notes:
- The connection registry lives in process memory, so run ONE worker.
  A Redis message queue only lets other processes emit to our sockets; it
  does not share the registry.
"""

from __future__ import annotations

import os

# ---- Ensure eventlet monkey_patch happens as early as possible ----
_async = (os.environ.get("RELAYCHAT_SOCKETIO_ASYNC", "auto") or "auto").strip().lower()
if _async in {"auto", "eventlet"}:
    try:
        import eventlet  # type: ignore

        eventlet.monkey_patch()
    except ImportError:
        # Without eventlet RelayChat falls back to threading.
        pass

from pathlib import Path

from config import apply_env_overrides, load_settings
from constants import CONFIG_FILE
from main import configure_logging
from server_init import create_app


def _resolve_config_path() -> Path:
    # Prefer explicit env path when running under systemd.
    p = os.environ.get("RELAYCHAT_CONFIG") or os.environ.get("RELAYCHAT_CONFIG_FILE") or CONFIG_FILE
    return Path(p)


_settings_path = _resolve_config_path()
_settings = load_settings(_settings_path)
apply_env_overrides(_settings)
configure_logging(_settings)

app, socketio = create_app(_settings, settings_file=_settings_path)

app.config["RELAYCHAT_GUNICORN"] = True
app.config["RELAYCHAT_SETTINGS_PATH"] = str(_settings_path)
