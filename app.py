from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio

from routers.rooms import rooms_router
from registry import ConnectionRegistry
from lifecycle import LifecycleManager, RoomReaper
from channel import is_ws_connected
from constants import IDLE_TIMEOUT_SECONDS, LOG_FILE, LOG_LEVEL, SWEEP_INTERVAL_SECONDS
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

# Close codes
WS_CLOSE_NORMAL = 1000
WS_CLOSE_GOING_AWAY = 1001


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the in-memory relay state for this process and run the room reaper."""
    registry = ConnectionRegistry()
    app.state.registry = registry
    app.state.lifecycle = LifecycleManager(registry)
    app.state.reaper = RoomReaper(registry, interval=SWEEP_INTERVAL_SECONDS)
    app.state.reaper.start()
    logger.info("Signaling relay started")

    yield

    logger.info("Shutting down signaling relay")
    await app.state.reaper.stop()
    await app.state.lifecycle.close_all()


app = FastAPI(title="Audio room signaling relay", lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


async def receive_frame(websocket: WebSocket):
    """Next frame (text, or raw bytes for a binary frame), or None once the client has gone away.

    Binary frames are passed through undecoded; the router accepts them only
    when they are valid UTF-8 JSON.
    """
    if IDLE_TIMEOUT_SECONDS > 0:
        message = await asyncio.wait_for(websocket.receive(), timeout=IDLE_TIMEOUT_SECONDS)
    else:
        message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        return None
    if message.get("text") is not None:
        return message["text"]
    if message.get("bytes") is not None:
        return message["bytes"]
    return ""


@app.websocket("/")
@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Signaling connection for one browser peer.

    The peer joins a room with a `join` message; after that the connection
    relays `signal`, `mute` and `speaking` messages until it disconnects or
    sends `leave`.
    """
    lifecycle: LifecycleManager = websocket.app.state.lifecycle
    await websocket.accept()
    session = lifecycle.open(websocket)
    close_code = WS_CLOSE_NORMAL

    try:
        message_count = 0
        while not session.closed:
            try:
                raw = await receive_frame(websocket)
            except asyncio.TimeoutError:
                logger.info(f"Connection {session.connection_id} idle for {IDLE_TIMEOUT_SECONDS}s, closing")
                close_code = WS_CLOSE_GOING_AWAY
                break
            if raw is None:
                logger.info(f"WebSocket disconnected normally for connection {session.connection_id}")
                break
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {session.connection_id}")
            await lifecycle.handle(session, raw)
    except Exception as e:
        logger.error(f"WebSocket error for connection {session.connection_id}: {e}", exc_info=True)
        close_code = WS_CLOSE_GOING_AWAY
    finally:
        await lifecycle.close(session)
        if is_ws_connected(websocket):
            try:
                await websocket.close(code=close_code)
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")
