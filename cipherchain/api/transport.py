"""
Real-time Message Transport

WebSocket endpoint that turns "send-message" frames into ledger appends
and pushes the resulting block to the recipient if connected.

Frames (JSON):
    client -> server  {"type": "send-message", "to": "bob", "encryptedPayload": "..."}
    server -> sender  {"type": "connected", "username": "alice"}
                      {"type": "message-sent", "blockNumber": 4, "hash": "...", "timestamp": "..."}
                      {"type": "error", "message": "Failed to send message"}
    server -> to      {"type": "receive-message", "from": "alice",
                       "block": {"index", "timestamp", "hash", "prevHash", "payload"}}

The path identity is trusted: session authentication happens in front
of this service.
"""

import json
from threading import Lock
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from ..observability import get_logger, get_metrics

logger = get_logger(__name__)

router = APIRouter(tags=["Transport"])


class ConnectionRegistry:
    """
    Live connections keyed by identity.

    One connection per identity: a newer connection replaces the older one.
    """

    def __init__(self):
        self._connections: dict[str, WebSocket] = {}
        self._lock = Lock()

    def connect(self, identity: str, websocket: WebSocket) -> None:
        with self._lock:
            self._connections[identity] = websocket

    def disconnect(self, identity: str, websocket: WebSocket) -> None:
        """Remove identity, unless a newer connection already replaced it."""
        with self._lock:
            if self._connections.get(identity) is websocket:
                del self._connections[identity]

    def get(self, identity: str) -> Optional[WebSocket]:
        with self._lock:
            return self._connections.get(identity)

    def is_connected(self, identity: str) -> bool:
        return self.get(identity) is not None


async def _handle_send(websocket: WebSocket, username: str, data: dict) -> None:
    chain_store = websocket.app.state.chain_store
    registry: ConnectionRegistry = websocket.app.state.connections

    to = data.get("to")
    payload = data.get("encryptedPayload")

    try:
        block = await run_in_threadpool(chain_store.append, username, to, payload)
    except Exception:
        logger.exception("Send message error", sender=username, recipient=to)
        await websocket.send_json({"type": "error", "message": "Failed to send message"})
        return

    recipient = registry.get(to)
    if recipient is not None:
        try:
            await recipient.send_json({
                "type": "receive-message",
                "from": username,
                "block": {
                    "index": block.index,
                    "timestamp": block.timestamp,
                    "hash": block.hash,
                    "prevHash": block.prev_hash,
                    "payload": block.payload,
                },
            })
        except (RuntimeError, WebSocketDisconnect):
            # The block is committed; the recipient reads it from its ledger view
            logger.warning("Recipient push failed", recipient=to, index=block.index)

    await websocket.send_json({
        "type": "message-sent",
        "blockNumber": block.index,
        "hash": block.hash,
        "timestamp": block.timestamp,
    })


@router.websocket("/ws/{username}")
async def message_socket(websocket: WebSocket, username: str):
    registry: ConnectionRegistry = websocket.app.state.connections
    metrics = get_metrics()

    await websocket.accept()
    registry.connect(username, websocket)
    metrics.connection_opened()
    logger.info(f"User connected: {username}")

    try:
        await websocket.send_json({"type": "connected", "username": username})

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(data, dict) or data.get("type") != "send-message":
                await websocket.send_json({"type": "error", "message": "Unknown message type"})
                continue
            await _handle_send(websocket, username, data)

    except WebSocketDisconnect:
        pass
    finally:
        registry.disconnect(username, websocket)
        metrics.connection_closed()
        logger.info(f"User disconnected: {username}")
