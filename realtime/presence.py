"""Presence broadcaster.

Turns registry transitions into a durable users.is_online / last_seen update
and a global `user_status_changed` event. The two are only eventually
consistent: the broadcast never waits on, or depends on, the store.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from realtime.errors import PersistenceFailure
from realtime.registry import utcnow
from realtime.router import RoomRouter


def _run_inline(fn, *args, **kwargs):
    return fn(*args, **kwargs)


class PresenceBroadcaster:
    def __init__(self, router: RoomRouter, store, spawn: Optional[Callable] = None):
        self.router = router
        self.store = store
        # socketio.start_background_task in production
        self.spawn = spawn or _run_inline

    def announce_online(self, user_id: str) -> dict:
        return self._announce(user_id, True)

    def announce_offline(self, user_id: str) -> dict:
        return self._announce(user_id, False)

    def _announce(self, user_id: str, is_online: bool) -> dict:
        now = utcnow()
        self.spawn(self._persist_status, user_id, is_online, now)
        payload = {"userId": user_id, "isOnline": is_online, "lastSeen": now.isoformat()}
        self.router.broadcast("user_status_changed", payload)
        return payload

    def _persist_status(self, user_id: str, is_online: bool, when: datetime) -> None:
        try:
            self.store.set_online_status(user_id, is_online, when)
        except PersistenceFailure as exc:
            logging.warning(
                "[presence] could not store is_online=%s for %s: %s", is_online, user_id, exc
            )
