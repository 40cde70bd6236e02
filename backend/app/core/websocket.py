"""
Live device alerts for operator consoles.

WS /ws/alerts         : snapshot of the last evaluation, then live alerts
alerts_to_ws_bridge   : background task, Redis PubSub -> AlertFeed.publish

Every frame is ``{"type": "snapshot" | "alert", "data": ...}``. A console may
narrow its feed by sending ``{"watch": ["SN1", "SN2"]}``; ``{"watch": null}``
restores the full feed. Plain ``ping`` is answered with ``pong``.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from redis.asyncio import Redis

from config import settings

logger = logging.getLogger("devsync.websocket")

router = APIRouter()


# ---------------------------------------------------------------------------
# Alert feed
# ---------------------------------------------------------------------------

class AlertFeed:
    """Operator consoles and the device serials each one watches (None = all)."""

    def __init__(self) -> None:
        self.subscribers: dict[WebSocket, frozenset[str] | None] = {}

    async def join(self, ws: WebSocket) -> None:
        await ws.accept()
        self.subscribers[ws] = None
        logger.info("Alert console joined (%d total)", len(self.subscribers))

    def leave(self, ws: WebSocket) -> None:
        self.subscribers.pop(ws, None)
        logger.info("Alert console left (%d remaining)", len(self.subscribers))

    def watch(self, ws: WebSocket, serials) -> None:
        if ws not in self.subscribers:
            return
        if isinstance(serials, str):
            serials = [serials]
        self.subscribers[ws] = frozenset(serials) if serials is not None else None

    def wants(self, ws: WebSocket, device: str | None) -> bool:
        serials = self.subscribers.get(ws)
        return serials is None or device in serials

    async def publish(self, alert: dict) -> int:
        """Send one alert to every console watching its device. Returns deliveries."""
        frame = json.dumps({"type": "alert", "data": alert})
        device = alert.get("device")
        dead: list[WebSocket] = []
        sent = 0
        for ws in list(self.subscribers):
            if not self.wants(ws, device):
                continue
            try:
                await ws.send_text(frame)
                sent += 1
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.subscribers.pop(ws, None)
        if dead:
            logger.debug("Dropped %d unreachable alert consoles", len(dead))
        return sent


feed = AlertFeed()


def snapshot_for(ws: WebSocket, alerts) -> dict:
    return {
        "type": "snapshot",
        "data": [a.model_dump(mode="json") for a in alerts if feed.wants(ws, a.device)],
    }


def decode_alert(raw) -> dict | None:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        alert = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Skipping malformed alert message: %r", raw)
        return None
    return alert if isinstance(alert, dict) else None


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------

@router.websocket("/ws/alerts")
async def ws_alerts(websocket: WebSocket) -> None:
    await feed.join(websocket)
    monitor = getattr(websocket.app.state, "health_monitor", None)
    try:
        await websocket.send_json(snapshot_for(websocket, monitor.last_alerts if monitor else []))

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
                continue
            try:
                request = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(request, dict) and "watch" in request:
                feed.watch(websocket, request["watch"])
                await websocket.send_json(snapshot_for(websocket, monitor.last_alerts if monitor else []))
    except WebSocketDisconnect:
        feed.leave(websocket)
    except Exception as exc:
        logger.debug("Alert console error: %s", exc)
        feed.leave(websocket)


# ---------------------------------------------------------------------------
# Redis -> WebSocket bridge (background task)
# ---------------------------------------------------------------------------

async def alerts_to_ws_bridge(redis: Redis, channel: str = settings.ALERTS_CHANNEL) -> None:
    """Forward alerts published by the health monitor to connected consoles."""
    logger.info("Alert bridge subscribing to %s", channel)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)

    try:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            alert = decode_alert(message["data"])
            if alert is not None:
                await feed.publish(alert)
    except Exception as exc:
        logger.error("Alert bridge error: %s", exc)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.close()
