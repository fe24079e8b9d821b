"""
WebSocket transport for Starlette / FastAPI applications.

Frames are JSON text messages encoded with bson's relaxed extended JSON, so
ObjectIds and datetimes survive the trip:

    server -> client   {"event": "<topic>", "data": <payload>}
    client -> server   {"event": "db:stream[register]", "args": [streamId, correlationId]}
                       {"event": "subscribe", "args": ["db:insert:users", ...]}
                       {"event": "unsubscribe", "args": ["db:insert:users", ...]}

A client that never subscribes receives every topic.

Usage:
    app = Starlette(routes=[
        WebSocketRoute("/realtime", make_endpoint(lambda: engine)),
    ])
"""

import asyncio
import logging
from typing import Any
from typing import Callable
from typing import Optional
from uuid import uuid4

from bson import json_util
from starlette.websockets import WebSocket
from starlette.websockets import WebSocketDisconnect
from starlette.websockets import WebSocketState

from mongo_realtime import errors
from mongo_realtime import events
from mongo_realtime import gate
from mongo_realtime.engine import RealtimeEngine


logger = logging.getLogger(__name__)


WS_CLOSE_NORMAL = 1000
WS_CLOSE_UNAUTHORIZED = 4401
SEND_TIMEOUT_SECONDS = 5.0

SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"


def encode(topic: str, payload: Any) -> str:
    return json_util.dumps(
        {"event": topic, "data": payload}, json_options=json_util.RELAXED_JSON_OPTIONS
    )


class WebSocketConnection(object):
    """A Starlette WebSocket seen as an engine connection."""

    def __init__(
        self, websocket: WebSocket, send_timeout: float = SEND_TIMEOUT_SECONDS
    ) -> None:
        self.id = str(uuid4())
        self.websocket = websocket
        self.send_timeout = send_timeout
        self.handshake = gate.Handshake(
            headers=dict(websocket.headers),
            query=dict(websocket.query_params),
        )
        self.topics: set[str] = set()
        self._send_lock = asyncio.Lock()

    async def send(self, topic: str, payload: Any) -> None:
        message = encode(topic, payload)
        async with self._send_lock:
            await asyncio.wait_for(
                self.websocket.send_text(message), timeout=self.send_timeout
            )

    async def close(
        self, code: int = WS_CLOSE_NORMAL, reason: Optional[str] = None
    ) -> None:
        async with self._send_lock:
            if self.websocket.application_state == WebSocketState.DISCONNECTED:
                return
            await self.websocket.close(code=code, reason=reason)


async def handle_message(
    engine: RealtimeEngine, connection: WebSocketConnection, text: str
) -> None:
    """Act on one client frame. Malformed frames are logged and ignored."""
    try:
        message = json_util.loads(text)
        event = message["event"]
        args = list(message.get("args") or [])
    except (ValueError, KeyError, TypeError) as e:
        logger.debug("Ignoring malformed frame from %s: %s", connection.id, e)
        return

    if event == events.STREAM_REGISTER:
        if len(args) < 2:
            logger.debug("Stream register from %s without correlation id", connection.id)
            return
        await engine.handle_stream_register(connection, str(args[0]), str(args[1]))

    elif event == SUBSCRIBE:
        connection.topics.update(str(topic) for topic in args)

    elif event == UNSUBSCRIBE:
        connection.topics.difference_update(str(topic) for topic in args)

    else:
        logger.debug("Unknown event '%s' from %s", event, connection.id)


async def serve(engine: RealtimeEngine, websocket: WebSocket) -> None:
    """
    Run one client session: admit, relay frames, release.

    Rejected clients are closed with code 4401 and the rejection reason.
    """
    await websocket.accept()
    connection = WebSocketConnection(websocket)

    try:
        await engine.connect(connection)
    except errors.ConnectionRejectedError as e:
        logger.info("Connection %s rejected: %s", connection.id, e.reason)
        await connection.close(code=WS_CLOSE_UNAUTHORIZED, reason=e.reason)
        return

    reason = "server shutdown"
    try:
        while True:
            text = await websocket.receive_text()
            await handle_message(engine, connection, text)
    except WebSocketDisconnect as e:
        reason = f"client disconnect ({e.code})"
    finally:
        await engine.disconnect(connection, reason)


def make_endpoint(
    get_engine: Callable[[], RealtimeEngine],
) -> Callable[[WebSocket], Any]:
    """
    Build a Starlette websocket endpoint.

    Args:
        get_engine (Callable): Returns the engine currently serving. Looked up
            per connection so a re-initialized engine takes over new clients.
    """

    async def endpoint(websocket: WebSocket) -> None:
        await serve(get_engine(), websocket)

    return endpoint
