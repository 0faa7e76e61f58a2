#!/usr/bin/env python3
"""routes_main.py

Probe and status routes: /health, /ws/status and the online-user listing.
Also home of json_error(), the shape every HTTP error body takes.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone

from flask import jsonify
from flask_jwt_extended import jwt_required

from constants import APP_VERSION


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_error(status: int, error: str, message: str, code: str, details=None):
    body = {"error": error, "message": message, "code": code, "timestamp": _now_iso()}
    if details:
        body["details"] = details
    return jsonify(body), status


def register_main_routes(app, settings, gateway, limiter=None):
    started = time.monotonic()

    # Health check must stay safe for unauthenticated monitors.
    @app.route("/health", methods=["GET"])
    def health_check():
        return jsonify(
            {
                "status": "OK",
                "version": APP_VERSION,
                "timestamp": _now_iso(),
                "uptime": round(time.monotonic() - started, 3),
                "environment": settings.get("environment"),
            }
        )

    @app.route("/ws/status", methods=["GET"])
    def ws_status():
        return jsonify(
            {
                "status": "WebSocket server running",
                "timestamp": _now_iso(),
                "connections": gateway.connection_count(),
            }
        )

    @jwt_required()
    def ws_online_users():
        users = gateway.online_users()
        return jsonify({"success": True, "count": len(users), "users": users})

    if limiter is not None:
        ws_online_users = limiter.limit(settings.get("api_rate_limit") or "1000 per minute")(ws_online_users)
    app.add_url_rule("/api/v1/ws/online", "ws_online_users", ws_online_users, methods=["GET"])
