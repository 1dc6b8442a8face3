import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError


class MalformedMessageError(ValueError):
    """Inbound frame is not a JSON object with a string `type`, or is missing required fields."""


class UnknownMessageTypeError(ValueError):
    def __init__(self, message_type: str):
        super().__init__(f"Unknown message type: {message_type!r}")
        self.message_type = message_type


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Inbound envelopes

class JoinRequest(_Message):
    type: Literal["join"]
    room_id: str = Field(alias="roomId", min_length=1)
    peer_id: str = Field(alias="peerId", min_length=1)


class SignalRequest(_Message):
    type: Literal["signal"]
    room_id: str = Field(alias="roomId", min_length=1)
    to: str = Field(min_length=1)
    sender: str = Field(alias="from", min_length=1)
    signal: Any


class StatusRequest(_Message):
    """`mute` and `speaking` share one shape."""
    type: Literal["mute", "speaking"]
    room_id: str = Field(alias="roomId", min_length=1)
    peer_id: str = Field(alias="peerId", min_length=1)
    value: StrictBool


class LeaveRequest(_Message):
    type: Literal["leave"]


class PingRequest(_Message):
    type: Literal["ping"]


INBOUND_MODELS = {
    "join": JoinRequest,
    "signal": SignalRequest,
    "mute": StatusRequest,
    "speaking": StatusRequest,
    "leave": LeaveRequest,
    "ping": PingRequest,
}


# Outbound messages

class PeersMessage(_Message):
    type: Literal["peers"] = "peers"
    peers: List[str]


class NewPeerMessage(_Message):
    type: Literal["new-peer"] = "new-peer"
    peer_id: str = Field(alias="peerId")


class SignalRelay(_Message):
    type: Literal["signal"] = "signal"
    sender: str = Field(alias="from")
    signal: Any


class StatusRelay(_Message):
    type: Literal["mute", "speaking"]
    peer_id: str = Field(alias="peerId")
    value: StrictBool


class PeerLeftMessage(_Message):
    type: Literal["peer-left"] = "peer-left"
    peer_id: str = Field(alias="peerId")


class ErrorMessage(_Message):
    type: Literal["error"] = "error"
    code: str
    message: str
    peer_id: Optional[str] = Field(default=None, alias="peerId")
    room_id: Optional[str] = Field(default=None, alias="roomId")


class PongMessage(_Message):
    type: Literal["pong"] = "pong"


def parse_envelope(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Decode one frame into a dict carrying a string `type`.

    Binary frames must be UTF-8. Raises MalformedMessageError when the frame
    does not decode, is not valid JSON, is not an object, or has no usable
    `type`.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessageError(f"Binary frame is not valid UTF-8: {e}") from e
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedMessageError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessageError("Envelope must be a JSON object")
    message_type = data.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise MalformedMessageError("Envelope has no 'type'")
    return data


def validate_message(data: Dict[str, Any]) -> _Message:
    """Validate an envelope against the model registered for its type."""
    message_type = data["type"]
    model = INBOUND_MODELS.get(message_type)
    if model is None:
        raise UnknownMessageTypeError(message_type)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedMessageError(f"Invalid '{message_type}' message ({fields})") from e


def dump(message: _Message) -> Dict[str, Any]:
    return message.model_dump(by_alias=True)
