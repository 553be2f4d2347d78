"""WebSocket route streaming live queue snapshots."""

from __future__ import annotations

import json
import queue
from typing import Any, Dict

from flask_sock import Sock
from loguru import logger
from simple_websocket import ConnectionClosed

from dispatch.scheduler.task_queue import QueueSnapshot
from routes import get_runtime

WELCOME_MESSAGE: Dict[str, Any] = {
    "type": "connection_ack",
    "data": {
        "message": "WS connected (queue stream ready)",
    },
}

PING_RESPONSE: Dict[str, Any] = {
    "type": "pong",
    "data": {},
}

RECEIVE_TIMEOUT_SECONDS = 0.5


def queue_state_message(snapshot: QueueSnapshot) -> Dict[str, Any]:
    return {"type": "queue_state", "data": snapshot.to_dict()}


def register_ws_routes(sock: Sock) -> None:
    """Register WebSocket endpoints on the provided Sock instance."""

    @sock.route("/ws/queue")
    def queue_stream(ws):  # pragma: no cover - network interaction
        logger.info("Queue stream client connected")
        # snapshots arrive on the loop thread; only this handler thread touches the socket
        outbox: "queue.Queue[QueueSnapshot]" = queue.Queue()
        ws.send(json.dumps(WELCOME_MESSAGE))
        unsubscribe = get_runtime().queue.subscribe(outbox.put)

        try:
            while True:
                while True:
                    try:
                        snapshot = outbox.get_nowait()
                    except queue.Empty:
                        break
                    ws.send(json.dumps(queue_state_message(snapshot)))

                raw_message = ws.receive(timeout=RECEIVE_TIMEOUT_SECONDS)
                if raw_message is None:
                    continue
                try:
                    message = json.loads(raw_message)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON WebSocket message")
                    continue
                if isinstance(message, dict) and message.get("type") == "ping":
                    ws.send(json.dumps(PING_RESPONSE))
        except ConnectionClosed:
            logger.info("Queue stream client disconnected")
        finally:
            unsubscribe()
