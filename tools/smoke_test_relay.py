#!/usr/bin/env python3
"""Smoke test: presence + message relay against a running server.

What it checks
- /health answers.
- Two users can connect to Socket.IO with a bearer token.
- B sees A come online (user_status_changed).
- typing_start from A reaches B as typing_started.
- A message POSTed over HTTP by A is pushed to B as new_message.

Tokens are minted locally with the server's JWT secret, so the two user ids
and the chat (with both as participants) must already exist in the database.

Usage:
  JWT_SECRET_KEY=... python tools/smoke_test_relay.py \
      --base http://127.0.0.1:3000 --user-a <uuid> --user-b <uuid> --chat <uuid>
"""

from __future__ import annotations

import argparse
import os
import sys
import threading
from dataclasses import dataclass, field

import requests
import socketio
from flask import Flask
from flask_jwt_extended import JWTManager, create_access_token


def mint_token(secret: str, user_id: str) -> str:
    app = Flask("relaychat-smoke")
    app.config["JWT_SECRET_KEY"] = secret
    JWTManager(app)
    with app.app_context():
        return create_access_token(identity=user_id)


@dataclass
class SioWrap:
    sio: socketio.Client
    received: dict = field(default_factory=dict)
    events: dict = field(default_factory=dict)

    def wait_for(self, name: str, timeout: float = 5.0) -> list:
        self.events.setdefault(name, threading.Event()).wait(timeout)
        return self.received.get(name, [])


def make_client(base: str, token: str, watch: tuple[str, ...]) -> SioWrap:
    wrap = SioWrap(sio=socketio.Client(logger=False, engineio_logger=False))

    def _recorder(name):
        def _on(data):
            wrap.received.setdefault(name, []).append(data)
            wrap.events.setdefault(name, threading.Event()).set()

        return _on

    for name in watch:
        wrap.sio.on(name, _recorder(name))

    wrap.sio.connect(base, auth={"token": token}, transports=["websocket", "polling"], wait_timeout=10)
    return wrap


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--base", default=os.environ.get("RELAYCHAT_BASE", "http://127.0.0.1:3000"))
    ap.add_argument("--jwt-secret", default=os.environ.get("JWT_SECRET_KEY", ""))
    ap.add_argument("--user-a", required=True)
    ap.add_argument("--user-b", required=True)
    ap.add_argument("--chat", required=True)
    args = ap.parse_args()

    if not args.jwt_secret:
        print("FAIL: --jwt-secret (or JWT_SECRET_KEY) is required")
        return 2

    base = args.base.rstrip("/")

    # 1) Health
    r = requests.get(f"{base}/health", timeout=10)
    r.raise_for_status()
    print(f"OK health: {r.json().get('status')} v{r.json().get('version')}")

    token_a = mint_token(args.jwt_secret, args.user_a)
    token_b = mint_token(args.jwt_secret, args.user_b)

    # 2) B first, so B sees A come online
    b = make_client(base, token_b, ("user_status_changed", "typing_started", "new_message"))
    a = make_client(base, token_a, ("message_delivered",))
    try:
        online = [e for e in b.wait_for("user_status_changed") if e.get("userId") == args.user_a]
        if not online:
            print("FAIL: B did not see A come online")
            return 1
        print("OK presence")

        # 3) Typing relay needs both in the room
        for c in (a, b):
            ack = c.sio.call("join_room", {"roomId": args.chat}, timeout=5)
            if not (ack or {}).get("success"):
                print(f"FAIL: join_room ack {ack}")
                return 1
        a.sio.call("typing_start", {"roomId": args.chat}, timeout=5)
        if not b.wait_for("typing_started"):
            print("FAIL: typing_started not relayed")
            return 1
        print("OK typing relay")

        # 4) HTTP send -> socket push
        r = requests.post(
            f"{base}/api/v1/messages/{args.chat}",
            json={"content": "smoke test"},
            headers={"Authorization": f"Bearer {token_a}"},
            timeout=10,
        )
        if r.status_code != 201:
            print(f"FAIL: POST message {r.status_code} {r.text[:200]}")
            return 1
        sent_id = r.json()["data"]["id"]
        pushed = [m for m in b.wait_for("new_message") if m.get("message", {}).get("id") == sent_id]
        if not pushed:
            print("FAIL: new_message not pushed to B")
            return 1
        print("OK message relay")
    finally:
        a.sio.disconnect()
        b.sio.disconnect()

    print("PASS")
    return 0


if __name__ == "__main__":
    sys.exit(main())
