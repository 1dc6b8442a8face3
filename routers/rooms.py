from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import HealthResponse, RoomDetailsResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    registry = request.app.state.registry
    lifecycle = request.app.state.lifecycle
    return HealthResponse(
        status="healthy",
        rooms=registry.room_count(),
        peers=registry.peer_count(),
        connections=len(lifecycle.sessions),
        messages=dict(lifecycle.router.stats),
    )


@rooms_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get the peers currently in a room.

    Returns:
    - room_id: Room identifier
    - peers: Peer ids in join order
    - peer_count: Number of peers in the room
    """
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room details request for {room_id} from {client_host}")

    registry = request.app.state.registry
    peers = await registry.list_peers(room_id)
    if not peers:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    return RoomDetailsResponse(room_id=room_id, peers=peers, peer_count=len(peers))
