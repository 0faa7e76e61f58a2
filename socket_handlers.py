#!/usr/bin/env python3
"""
socket_handlers.py

Socket.IO event handlers for the RelayChat gateway.

Each handler resolves the session id and hands the payload to the Gateway.
Handlers answer with an acknowledgement dict; malformed payloads are acked
with {"success": False, "error": <code>} and the connection stays open.
"""

import logging

from flask import request
from flask_socketio import ConnectionRefusedError

from realtime.errors import AuthenticationFailure, ValidationFailure


def register_socketio_handlers(socketio, settings, gateway):
    """
    Registers all Socket.IO event handlers against one Gateway instance.
    """

    def _ack(method, *args):
        try:
            return method(request.sid, *args)
        except ValidationFailure as exc:
            logging.debug("[socketio] %s rejected payload from %s: %s", method.__name__, request.sid, exc.code)
            return {"success": False, "error": exc.code}

    @socketio.on("connect")
    def handle_connect(auth=None):
        try:
            gateway.connect(request.sid, auth, request.args)
        except AuthenticationFailure as exc:
            # The reason is for the log only; clients get a generic refusal.
            logging.info("[socketio] refused connection %s: %s", request.sid, exc.reason)
            raise ConnectionRefusedError("authentication error") from exc

    @socketio.on("disconnect")
    def handle_disconnect(*args, **kwargs):
        # Socket.IO may pass a reason depending on version.
        gateway.disconnect(request.sid)

    @socketio.on("join_room")
    def handle_join_room(data=None):
        return _ack(gateway.join_room, data)

    @socketio.on("leave_room")
    def handle_leave_room(data=None):
        return _ack(gateway.leave_room, data)

    @socketio.on("typing_start")
    def handle_typing_start(data=None):
        return _ack(gateway.typing, data, True)

    @socketio.on("typing_stop")
    def handle_typing_stop(data=None):
        return _ack(gateway.typing, data, False)

    @socketio.on("message_read")
    def handle_message_read(data=None):
        return _ack(gateway.message_read, data)

    @socketio.on("send_message")
    def handle_send_message(data=None):
        return _ack(gateway.send_message, data)
