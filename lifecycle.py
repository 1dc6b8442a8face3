import asyncio
import uuid
from enum import Enum
from typing import Dict, Optional, Union

from channel import PeerChannel
from constants import SWEEP_INTERVAL_SECONDS
from logging_config import get_logger
from message_router import MessageRouter
from registry import ConnectionRegistry, DuplicatePeerError
from schemas.messages import ErrorMessage, NewPeerMessage, PeerLeftMessage, PeersMessage

logger = get_logger(__name__)


class SessionState(str, Enum):
    CONNECTED = "connected"
    IN_ROOM = "in_room"
    CLOSED = "closed"


class PeerSession:
    """Per-connection state: Connected -> InRoom -> Closed."""

    def __init__(self, connection_id: str, channel):
        self.connection_id = connection_id
        self.channel = channel
        self.state = SessionState.CONNECTED
        self.room_id: Optional[str] = None
        self.peer_id: Optional[str] = None

    @property
    def in_room(self) -> bool:
        return self.state is SessionState.IN_ROOM

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def enter_room(self, room_id: str, peer_id: str) -> None:
        self.state = SessionState.IN_ROOM
        self.room_id = room_id
        self.peer_id = peer_id

    def leave_room(self) -> None:
        if self.state is SessionState.IN_ROOM:
            self.state = SessionState.CONNECTED
        self.room_id = None
        self.peer_id = None

    def __repr__(self):
        return f"PeerSession({self.connection_id!r}, state={self.state.value}, room={self.room_id!r}, peer={self.peer_id!r})"


class LifecycleManager:
    """Turns connection events (open, message, close) into registry changes
    and the membership notifications that go with them."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self.router = MessageRouter(registry, self)
        self.sessions: Dict[str, PeerSession] = {}

    def open(self, websocket) -> PeerSession:
        connection_id = str(uuid.uuid4())
        channel = PeerChannel(websocket, connection_id)
        channel.start()
        session = PeerSession(connection_id, channel)
        self.sessions[connection_id] = session
        logger.info(f"Connection {connection_id} opened ({len(self.sessions)} active)")
        return session

    async def handle(self, session: PeerSession, raw: Union[str, bytes]) -> None:
        if session.closed:
            logger.debug(f"Ignoring message on closed connection {session.connection_id}")
            return
        try:
            await self.router.dispatch(session, raw)
        except Exception as e:
            # One bad message must not take the connection down
            logger.error(f"Error handling message from connection {session.connection_id}: {e}", exc_info=True)

    async def join(self, session: PeerSession, room_id: str, peer_id: str) -> bool:
        """Register the session's peer in a room. A join while in a room switches rooms."""
        if session.closed:
            return False
        if session.in_room:
            logger.info(f"Peer {session.peer_id} switching from room {session.room_id} to {room_id} as {peer_id}")
            await self._leave_room(session)

        try:
            others = await self.registry.register(room_id, peer_id, session.channel)
        except DuplicatePeerError as e:
            logger.warning(f"Join rejected for connection {session.connection_id}: {e}")
            self.router.reply(session, ErrorMessage(
                code="duplicate-peer",
                message=f"Peer id {peer_id} is already in use, join with a new identity",
                peer_id=peer_id,
                room_id=room_id,
            ))
            return False

        # No await between the commit above and the fan-out below
        session.enter_room(room_id, peer_id)
        self.router.reply(session, PeersMessage(peers=[other_id for other_id, _ in others]))
        self.router.fan_out((channel for _, channel in others), NewPeerMessage(peer_id=peer_id))
        logger.info(f"Peer {peer_id} joined room {room_id} ({len(others) + 1} member(s))")
        return True

    async def leave(self, session: PeerSession) -> None:
        """Explicit leave: the session is finished afterwards."""
        await self.close(session)

    async def _leave_room(self, session: PeerSession) -> None:
        room_id, peer_id = session.room_id, session.peer_id
        remaining = await self.registry.unregister(room_id, peer_id)
        session.leave_room()
        self.router.fan_out((channel for _, channel in remaining), PeerLeftMessage(peer_id=peer_id))
        logger.info(f"Peer {peer_id} left room {room_id} ({len(remaining)} member(s) remain)")

    async def close(self, session: PeerSession) -> None:
        """Tear down a connection. Safe to call more than once."""
        if session.in_room:
            await self._leave_room(session)
        if not session.closed:
            session.state = SessionState.CLOSED
            logger.info(f"Connection {session.connection_id} closed")
        self.sessions.pop(session.connection_id, None)
        await session.channel.close()

    async def close_all(self) -> None:
        for session in list(self.sessions.values()):
            await self.close(session)


class RoomReaper:
    """Background task that periodically deletes empty rooms.

    The registry never leaves empty rooms behind, so each sweep is normally
    a no-op.
    """

    def __init__(self, registry: ConnectionRegistry, interval: float = SWEEP_INTERVAL_SECONDS):
        self.registry = registry
        self.interval = interval
        self.sweeps = 0
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> int:
        removed = await self.registry.sweep()
        self.sweeps += 1
        logger.debug(f"Room sweep #{self.sweeps} removed {removed} room(s)")
        return removed

    async def run(self) -> None:
        logger.info(f"Room reaper started (interval {self.interval}s)")
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Room sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="room_reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Room reaper stopped")
