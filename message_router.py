from typing import Any, Dict, Iterable, Union

from logging_config import get_logger
from registry import ConnectionRegistry, PeerNotFoundError
from schemas.messages import (
    MalformedMessageError,
    PongMessage,
    SignalRelay,
    StatusRelay,
    UnknownMessageTypeError,
    dump,
    parse_envelope,
    validate_message,
)

logger = get_logger(__name__)

# Message types that may fall back to the session's room and identity
SESSION_SCOPED_TYPES = {
    "signal": ("roomId", "from"),
    "mute": ("roomId", "peerId"),
    "speaking": ("roomId", "peerId"),
}


class MessageRouter:
    """Classifies inbound frames and performs the matching delivery.

    Membership changes (`join`, `leave`) are handed to the lifecycle manager,
    which owns per-connection state; everything else is routed here.
    """

    def __init__(self, registry: ConnectionRegistry, lifecycle):
        self.registry = registry
        self.lifecycle = lifecycle
        self.stats = {"routed": 0, "delivered": 0, "dropped": 0, "malformed": 0, "unknown": 0}
        self._handlers = {
            "join": self._handle_join,
            "leave": self._handle_leave,
            "signal": self._handle_signal,
            "mute": self._handle_status,
            "speaking": self._handle_status,
            "ping": self._handle_ping,
        }

    async def dispatch(self, session, raw: Union[str, bytes]) -> None:
        """Route one inbound frame. Bad input is logged and dropped, never raised."""
        try:
            data = parse_envelope(raw)
            data = self._fill_from_session(session, data)
            message = validate_message(data)
        except UnknownMessageTypeError as e:
            self.stats["unknown"] += 1
            logger.warning(f"Ignoring unknown message type {e.message_type!r} from connection {session.connection_id}")
            return
        except MalformedMessageError as e:
            self.stats["malformed"] += 1
            logger.warning(f"Dropping malformed message from connection {session.connection_id}: {e}")
            return

        self.stats["routed"] += 1
        logger.debug(f"Routing {message.type} from connection {session.connection_id}")
        await self._handlers[message.type](session, message)

    def _fill_from_session(self, session, data: Dict[str, Any]) -> Dict[str, Any]:
        fields = SESSION_SCOPED_TYPES.get(data["type"])
        if not fields or not session.in_room:
            return data
        room_field, identity_field = fields
        filled = dict(data)
        filled.setdefault(room_field, session.room_id)
        filled.setdefault(identity_field, session.peer_id)
        return filled

    def fan_out(self, channels: Iterable[Any], message) -> int:
        """Queue one message on every channel; a dead channel only affects itself."""
        payload = dump(message)
        delivered = 0
        for channel in channels:
            if channel.deliver(payload):
                delivered += 1
            else:
                self.stats["dropped"] += 1
        self.stats["delivered"] += delivered
        return delivered

    def reply(self, session, message) -> bool:
        return self.fan_out([session.channel], message) == 1

    async def _handle_join(self, session, message) -> None:
        await self.lifecycle.join(session, message.room_id, message.peer_id)

    async def _handle_leave(self, session, message) -> None:
        await self.lifecycle.leave(session)

    async def _handle_signal(self, session, message) -> None:
        try:
            target = await self.registry.lookup(message.room_id, message.to)
        except PeerNotFoundError:
            # Target probably just disconnected
            self.stats["dropped"] += 1
            logger.debug(f"Signal from {message.sender} to {message.to} in room {message.room_id} dropped: no such peer")
            return
        self.fan_out([target], SignalRelay(sender=message.sender, signal=message.signal))

    async def _handle_status(self, session, message) -> None:
        others = await self.registry.snapshot(message.room_id, excluding=message.peer_id)
        count = self.fan_out(
            (channel for _, channel in others),
            StatusRelay(type=message.type, peer_id=message.peer_id, value=message.value),
        )
        logger.debug(f"{message.type}={message.value} from {message.peer_id} sent to {count} peer(s) in room {message.room_id}")

    async def _handle_ping(self, session, message) -> None:
        self.reply(session, PongMessage())
