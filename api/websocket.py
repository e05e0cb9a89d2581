"""
websocket.py — WebSocket manager and broadcast for KartTiming.

Protocol:
- Server → Client: lap_completed, session_reset (session topic only);
  session_created, session_status_changed, kart_added, kart_removed,
  karts_cleared (everyone)
- Client → Server: {"type": "join-session", "session_id": N},
  acknowledged with {"type": "joined", "session_id": N}

Single endpoint: ws://{host}:5000/ws. Delivery is best effort: a socket
that fails a send is dropped, nothing is queued for replay.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger("karttiming.ws")

router = APIRouter()


def session_topic(session_id: int) -> str:
    return f"session-{session_id}"


class ConnectionManager:
    """Manages WebSocket connections, topic subscriptions and broadcasting."""

    def __init__(self):
        self.active: list[WebSocket] = []
        self.topics: dict[str, set[WebSocket]] = {}

    async def connect(self, ws: WebSocket):
        await ws.accept()
        self.active.append(ws)
        logger.info("WS connected (%d total)", len(self.active))

    def disconnect(self, ws: WebSocket):
        if ws in self.active:
            self.active.remove(ws)
        for members in self.topics.values():
            members.discard(ws)
        logger.info("WS disconnected (%d total)", len(self.active))

    def join(self, ws: WebSocket, topic: str):
        self.topics.setdefault(topic, set()).add(ws)
        logger.debug("WS joined %s", topic)

    async def _send(self, targets: list[WebSocket], message: dict):
        if not targets:
            return
        data = json.dumps(message, ensure_ascii=False, default=str)
        disconnected = []
        for ws in targets:
            try:
                await ws.send_text(data)
            except Exception:
                disconnected.append(ws)
        for ws in disconnected:
            self.disconnect(ws)

    async def broadcast(self, message: dict):
        """Send message to all connected clients."""
        await self._send(list(self.active), message)

    async def publish(self, topic: str, message: dict):
        """Send message to the clients subscribed to one topic."""
        await self._send(list(self.topics.get(topic, ())), message)

    async def broadcast_lap(self, session_id: int, lap: dict, kart: dict,
                            leaderboard: list[dict], session_stats: dict,
                            recent_laps: list[dict]):
        """Push a completed lap with the refreshed dashboard views."""
        msg = {
            "type": "lap_completed",
            "session_id": session_id,
            "lap": lap,
            "kart": kart,
            "leaderboard": leaderboard,
            "session_stats": session_stats,
            "recent_laps": recent_laps,
        }
        await self.publish(session_topic(session_id), msg)

    async def broadcast_session_reset(self, session_id: int):
        await self.publish(session_topic(session_id),
                           {"type": "session_reset", "session_id": session_id})

    async def broadcast_session(self, event_type: str, session: dict):
        """Session created / status changed."""
        await self.broadcast({"type": event_type, "session": session})

    async def broadcast_kart(self, event_type: str, kart: Optional[dict] = None):
        """Kart added / removed / all cleared."""
        msg: dict = {"type": event_type}
        if kart is not None:
            msg["kart"] = kart
        await self.broadcast(msg)

    @property
    def connection_count(self) -> int:
        return len(self.active)


# Singleton manager
manager = ConnectionManager()


# ─── WebSocket endpoint ───────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await manager.connect(ws)
    try:
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("WS ignored non-JSON message")
                continue
            if isinstance(msg, dict) and msg.get("type") == "join-session":
                try:
                    session_id = int(msg.get("session_id"))
                except (TypeError, ValueError):
                    logger.debug("WS join-session without valid session_id: %s", msg)
                    continue
                manager.join(ws, session_topic(session_id))
                await ws.send_text(json.dumps({"type": "joined", "session_id": session_id}))
    except WebSocketDisconnect:
        manager.disconnect(ws)
