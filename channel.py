import asyncio
import json
from typing import Any, Dict, Optional

from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from constants import SEND_QUEUE_SIZE
from logging_config import get_logger

logger = get_logger(__name__)

# Queued after the last message so the writer drains and exits
_CLOSE = object()

# Policy close code used when a peer cannot keep up with its outbound queue
WS_CLOSE_TRY_AGAIN_LATER = 1013


def is_ws_connected(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


class PeerChannel:
    """Outbound side of one peer connection.

    `deliver()` never suspends: it appends to a bounded queue that a writer
    task drains onto the WebSocket. The registry keeps a reference to the
    channel for lookups only, the owning connection task is the one that
    starts and closes it.
    """

    def __init__(self, websocket: WebSocket, connection_id: str, max_queue: int = SEND_QUEUE_SIZE):
        self.websocket = websocket
        self.connection_id = connection_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None
        self._closed = False
        self.sent_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._pump(), name=f"peer_writer_{self.connection_id[:8]}")

    def deliver(self, message: Dict[str, Any]) -> bool:
        """Queue a message for this peer. Returns False if the peer is gone."""
        if self._closed:
            logger.debug(f"Dropping {message.get('type')} for closed connection {self.connection_id}")
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                f"Outbound queue full for connection {self.connection_id} "
                f"({self._queue.maxsize} messages), dropping peer"
            )
            self._abort()
            return False
        return True

    async def _pump(self) -> None:
        while True:
            try:
                message = await self._queue.get()
            except asyncio.CancelledError:
                break
            if message is _CLOSE:
                break
            try:
                await self.websocket.send_text(json.dumps(message))
                self.sent_count += 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                # Peer went away mid-send; anything still queued is dropped
                logger.debug(f"Send to connection {self.connection_id} failed: {e}")
                self._closed = True
                break

    def _abort(self) -> None:
        self._closed = True
        if self._writer is not None:
            self._writer.cancel()
        # Closing the socket ends the reader loop, which runs normal cleanup
        self._closer = asyncio.get_running_loop().create_task(
            self._close_transport(WS_CLOSE_TRY_AGAIN_LATER, "Send queue overflow")
        )

    async def _close_transport(self, code: int, reason: str) -> None:
        if not is_ws_connected(self.websocket):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket for connection {self.connection_id}: {e}")

    async def close(self, timeout: float = 1.0) -> None:
        """Stop accepting messages and let the writer flush what is queued."""
        if not self._closed:
            self._closed = True
            try:
                self._queue.put_nowait(_CLOSE)
            except asyncio.QueueFull:
                if self._writer is not None:
                    self._writer.cancel()
        if self._writer is None:
            return
        _, pending = await asyncio.wait([self._writer], timeout=timeout)
        if pending:
            self._writer.cancel()
            logger.debug(f"Writer for connection {self.connection_id} did not drain in {timeout}s")
