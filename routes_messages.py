#!/usr/bin/env python3
"""routes_messages.py

Message history HTTP endpoints under /api/v1/messages.

A message is only ever sent into an existing chat by one of its
participants; sending never creates a chat. After a successful insert the
message is pushed to online participants through the realtime gateway.
"""

from __future__ import annotations

import logging
import uuid

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from realtime.gateway import MESSAGE_TYPES
from routes_main import json_error

messages_bp = Blueprint("messages", __name__, url_prefix="/api/v1/messages")


def _store():
    return current_app.config["RELAYCHAT_STORE"]


def _gateway():
    return current_app.config["RELAYCHAT_GATEWAY"]


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _int_arg(name: str, default: int, lo: int, hi: int) -> int:
    try:
        v = int(request.args.get(name, default))
    except (TypeError, ValueError):
        v = default
    return max(lo, min(v, hi))


def _validate_body(require_type: bool) -> tuple[dict, list[dict]]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    errors = []
    content = data.get("content")
    max_chars = int(current_app.config["RELAYCHAT_SETTINGS"].get("max_message_chars") or 4000)
    if not isinstance(content, str) or not content.strip():
        errors.append({"field": "content", "msg": "Message content is required"})
    elif len(content) > max_chars:
        errors.append({"field": "content", "msg": f"Message content must be {max_chars} characters or less"})
    if require_type:
        msg_type = data.get("type") or "text"
        if msg_type not in MESSAGE_TYPES:
            errors.append({"field": "type", "msg": "Invalid message type"})
        data["type"] = msg_type
    return data, errors


@messages_bp.route("/<chat_id>", methods=["GET"])
@jwt_required()
def get_chat_messages(chat_id: str):
    user_id = get_jwt_identity()
    limit = _int_arg("limit", 50, 1, 200)
    offset = _int_arg("offset", 0, 0, 10**9)

    if not _is_uuid(chat_id) or not _store().chat_exists(chat_id):
        return json_error(404, "Chat not found", "The specified chat does not exist", "CHAT_NOT_FOUND")
    if not _store().is_participant(chat_id, user_id):
        return json_error(403, "Access denied", "You are not a participant in this chat", "ACCESS_DENIED")

    messages, total = _store().list_messages(chat_id, limit, offset)
    return jsonify(
        {
            "success": True,
            "messages": messages,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": total > offset + len(messages),
            },
        }
    )


@messages_bp.route("/<chat_id>", methods=["POST"])
@jwt_required()
def send_message(chat_id: str):
    user_id = get_jwt_identity()
    data, errors = _validate_body(require_type=True)
    if errors:
        return json_error(400, "Validation failed", "Invalid input data", "VALIDATION_ERROR", errors)

    if not _is_uuid(chat_id) or not _store().chat_exists(chat_id):
        return json_error(404, "Chat not found", "The specified chat does not exist", "CHAT_NOT_FOUND")
    if not _store().is_participant(chat_id, user_id):
        return json_error(403, "Access denied", "You are not a participant in this chat", "ACCESS_DENIED")

    message = _store().store_message(chat_id, user_id, data["content"], data["type"])
    delivered = _gateway().deliver_new_message(chat_id, message, user_id)
    logging.info("[messages] %s -> chat %s stored as %s (live=%s)", user_id, chat_id, message["id"], delivered)

    return jsonify({"success": True, "message": "Message sent successfully", "data": message}), 201


@messages_bp.route("/<message_id>", methods=["PUT"])
@jwt_required()
def update_message(message_id: str):
    user_id = get_jwt_identity()
    data, errors = _validate_body(require_type=False)
    if errors:
        return json_error(400, "Validation failed", "Invalid input data", "VALIDATION_ERROR", errors)

    owner = _store().get_message_owner(message_id) if _is_uuid(message_id) else None
    if owner is None:
        return json_error(404, "Message not found", "Message does not exist", "MESSAGE_NOT_FOUND")
    if owner != str(user_id):
        return json_error(403, "Access denied", "You can only edit your own messages", "ACCESS_DENIED")

    updated = _store().update_message(message_id, data["content"])
    return jsonify({"success": True, "message": "Message updated successfully", "data": updated})


@messages_bp.route("/<message_id>", methods=["DELETE"])
@jwt_required()
def delete_message(message_id: str):
    user_id = get_jwt_identity()
    owner = _store().get_message_owner(message_id) if _is_uuid(message_id) else None
    if owner is None:
        return json_error(404, "Message not found", "Message does not exist", "MESSAGE_NOT_FOUND")
    if owner != str(user_id):
        return json_error(403, "Access denied", "You can only delete your own messages", "ACCESS_DENIED")

    _store().delete_message(message_id)
    return jsonify({"success": True, "message": "Message deleted successfully"})
