from pydantic import BaseModel
from typing import Dict, List


class RoomDetailsResponse(BaseModel):
    room_id: str
    peers: List[str]
    peer_count: int


class HealthResponse(BaseModel):
    status: str
    rooms: int
    peers: int
    connections: int
    messages: Dict[str, int]
