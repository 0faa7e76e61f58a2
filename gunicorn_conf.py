"""gunicorn_conf.py

Default Gunicorn config for RelayChat + Flask-SocketIO using Eventlet.

Environment variables:
  RELAYCHAT_BIND=0.0.0.0:3000
  RELAYCHAT_GUNICORN_LOGLEVEL=info
  RELAYCHAT_GUNICORN_ACCESSLOG=-
  RELAYCHAT_GUNICORN_ERRORLOG=-
  RELAYCHAT_GUNICORN_TIMEOUT=60
"""

from __future__ import annotations

import os

bind = os.environ.get("RELAYCHAT_BIND", "0.0.0.0:3000")
# The connection registry is per process.
workers = 1
worker_class = "eventlet"

# WebSockets keep connections open; avoid overly low timeouts.
timeout = int(os.environ.get("RELAYCHAT_GUNICORN_TIMEOUT", "60"))
keepalive = int(os.environ.get("RELAYCHAT_GUNICORN_KEEPALIVE", "5"))

loglevel = os.environ.get("RELAYCHAT_GUNICORN_LOGLEVEL", "info")
accesslog = os.environ.get("RELAYCHAT_GUNICORN_ACCESSLOG", "-")
errorlog = os.environ.get("RELAYCHAT_GUNICORN_ERRORLOG", "-")

# Important for Socket.IO upgrades through reverse proxies.
forwarded_allow_ips = os.environ.get("RELAYCHAT_FORWARDED_ALLOW_IPS", "*")
