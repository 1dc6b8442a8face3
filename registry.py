import asyncio
from typing import Any, Dict, List, Optional, Tuple

from logging_config import get_logger

logger = get_logger(__name__)


class RegistryError(Exception):
    pass


class DuplicatePeerError(RegistryError):
    def __init__(self, peer_id: str, room_id: str):
        super().__init__(f"Peer {peer_id} is already registered in room {room_id}")
        self.peer_id = peer_id
        self.room_id = room_id


class PeerNotFoundError(RegistryError):
    def __init__(self, room_id: str, peer_id: str):
        super().__init__(f"Peer {peer_id} not found in room {room_id}")
        self.room_id = room_id
        self.peer_id = peer_id


class ConnectionRegistry:
    """Room -> peer -> outbound channel, guarded by a single lock.

    Rooms are plain dicts, so iteration order is join order. A room entry is
    deleted in the same critical section that removes its last member.
    Callers fan out to the returned snapshots after the lock is released;
    as long as they do so without awaiting first, the order in which peers
    see notifications matches the order of the mutations.
    """

    def __init__(self):
        self._rooms: Dict[str, Dict[str, Any]] = {}
        # peer_id -> room_id, for the registry-wide uniqueness check
        self._peer_rooms: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def register(self, room_id: str, peer_id: str, channel: Any) -> List[Tuple[str, Any]]:
        """Add a peer to a room, creating the room if needed.

        Returns (peer_id, channel) pairs for the members already present, in
        join order.
        """
        async with self._lock:
            existing_room = self._peer_rooms.get(peer_id)
            if existing_room is not None:
                raise DuplicatePeerError(peer_id, existing_room)
            room = self._rooms.get(room_id)
            if room is None:
                room = self._rooms[room_id] = {}
                logger.info(f"Room {room_id} created")
            others = list(room.items())
            room[peer_id] = channel
            self._peer_rooms[peer_id] = room_id
            logger.debug(f"Registered peer {peer_id} in room {room_id} (members: {len(room)})")
            return others

    async def unregister(self, room_id: str, peer_id: str) -> List[Tuple[str, Any]]:
        """Remove a peer. Returns (peer_id, channel) pairs for the members left behind.

        Removing a peer that is not there is a no-op and returns an empty list,
        so duplicate disconnect signals are harmless.
        """
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or peer_id not in room:
                logger.debug(f"Unregister of absent peer {peer_id} from room {room_id} ignored")
                return []
            del room[peer_id]
            self._peer_rooms.pop(peer_id, None)
            if not room:
                del self._rooms[room_id]
                logger.info(f"Room {room_id} deleted (last member {peer_id} left)")
                return []
            logger.debug(f"Unregistered peer {peer_id} from room {room_id} (members: {len(room)})")
            return list(room.items())

    async def list_peers(self, room_id: str, excluding: Optional[str] = None) -> List[str]:
        async with self._lock:
            room = self._rooms.get(room_id, {})
            return [peer_id for peer_id in room if peer_id != excluding]

    async def lookup(self, room_id: str, peer_id: str) -> Any:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or peer_id not in room:
                raise PeerNotFoundError(room_id, peer_id)
            return room[peer_id]

    async def snapshot(self, room_id: str, excluding: Optional[str] = None) -> List[Tuple[str, Any]]:
        """(peer_id, channel) pairs for a broadcast, in join order."""
        async with self._lock:
            room = self._rooms.get(room_id, {})
            return [(peer_id, channel) for peer_id, channel in room.items() if peer_id != excluding]

    async def sweep(self) -> int:
        """Delete rooms with no members. Returns how many were removed."""
        async with self._lock:
            empty = [room_id for room_id, room in self._rooms.items() if not room]
            for room_id in empty:
                del self._rooms[room_id]
            if empty:
                logger.warning(f"Sweep removed {len(empty)} empty room(s): {empty}")
            return len(empty)

    def has_room(self, room_id: str) -> bool:
        return room_id in self._rooms

    def room_of(self, peer_id: str) -> Optional[str]:
        return self._peer_rooms.get(peer_id)

    def room_count(self) -> int:
        return len(self._rooms)

    def peer_count(self) -> int:
        return len(self._peer_rooms)
