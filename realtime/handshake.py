"""Connect-time authentication for Socket.IO sessions.

The token is checked once, when the transport connects. Identity is then
fixed for the lifetime of the connection; expiry is not re-checked.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Tuple

from flask import current_app
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt import ExpiredSignatureError, InvalidTokenError

from realtime.errors import AuthenticationFailure, PersistenceFailure


def extract_token(auth: Any, query_args: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the bearer token from the Socket.IO auth payload or ?token=."""
    token = None
    if isinstance(auth, Mapping):
        token = auth.get("token")
    elif isinstance(auth, str):
        token = auth
    if not token and query_args is not None:
        token = query_args.get("token")
    if not token:
        return None
    token = str(token).strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token or None


def verify_access_token(token: str) -> str:
    """Decode a Flask-JWT-Extended access token and return its subject."""
    try:
        claims = decode_token(token)
    except ExpiredSignatureError as exc:
        raise AuthenticationFailure("expired_token") from exc
    except (InvalidTokenError, JWTExtendedException) as exc:
        raise AuthenticationFailure("invalid_token") from exc

    if claims.get("type") != "access":
        raise AuthenticationFailure("invalid_token")
    identity = claims.get(current_app.config.get("JWT_IDENTITY_CLAIM", "sub"))
    if not identity:
        raise AuthenticationFailure("invalid_token")
    return str(identity)


def authenticate(
    auth: Any,
    query_args: Optional[Mapping[str, str]],
    store,
    verifier: Callable[[str], str] = verify_access_token,
) -> Tuple[str, dict]:
    """Resolve a connecting client to (user_id, profile snapshot).

    Raises AuthenticationFailure with a reason code; callers must not pass
    the reason on to the client.
    """
    token = extract_token(auth, query_args)
    if not token:
        raise AuthenticationFailure("no_token")

    user_id = verifier(token)

    try:
        profile = store.get_minimal_profile(user_id)
    except PersistenceFailure as exc:
        logging.warning("[handshake] profile lookup failed for %s: %s", user_id, exc)
        raise AuthenticationFailure("lookup_failed") from exc
    if not profile:
        raise AuthenticationFailure("user_not_found")
    return user_id, profile
