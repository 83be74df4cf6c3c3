from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any

from fastapi import WebSocket

_LOGGER = logging.getLogger("z2m_bridge.realtime")


def _concerns(uid: str | None, event: dict[str, Any]) -> bool:
    # events without a uid (bridge wide) go to every follower
    return uid is None or event["data"].get("uid", uid) == uid


class RealtimeHub:
    """Fan-out of host-side device events to websocket clients.

    Every event gets a sequence number. A client follows either all devices or
    a single uid, and can catch up from the retained history after `seq`.
    """

    def __init__(self, *, history: int = 100) -> None:
        self._followers: dict[WebSocket, str | None] = {}
        self._lock = asyncio.Lock()
        self._seq = 0
        self._history: deque[dict[str, Any]] = deque(maxlen=max(0, history))

    @property
    def client_count(self) -> int:
        return len(self._followers)

    @property
    def last_seq(self) -> int:
        return self._seq

    def history(self, uid: str | None = None, *, since: int = 0) -> list[dict[str, Any]]:
        return [evt for evt in self._history if evt["seq"] > since and _concerns(uid, evt)]

    async def connect(self, ws: WebSocket, *, uid: str | None = None) -> None:
        await ws.accept()
        async with self._lock:
            self._followers[ws] = uid
        _LOGGER.debug("Websocket client following %s", uid or "all devices")

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            self._followers.pop(ws, None)

    async def broadcast(self, event_type: str, data: dict[str, Any]) -> int:
        """Record the event and send it to interested clients; returns how many got it."""
        self._seq += 1
        evt = {"seq": self._seq, "type": event_type, "data": data}
        self._history.append(evt)
        async with self._lock:
            targets = [ws for ws, uid in self._followers.items() if _concerns(uid, evt)]
        if not targets:
            return 0

        msg = json.dumps(evt, ensure_ascii=False, default=str)
        dead: list[WebSocket] = []
        for ws in targets:
            try:
                await ws.send_text(msg)
            except Exception as e:
                _LOGGER.debug("Websocket send failed: %s", e)
                dead.append(ws)
        if dead:
            async with self._lock:
                for ws in dead:
                    self._followers.pop(ws, None)
        return len(targets) - len(dead)

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._followers)
            self._followers.clear()
        for ws in clients:
            try:
                await ws.close()
            except Exception:
                _LOGGER.debug("Websocket already closed")
