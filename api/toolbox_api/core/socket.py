import socketio
import logging

from toolbox_api import __version__

logger = logging.getLogger(__name__)

# Push channel for scan, download, forwarder and netcat events
sio = socketio.AsyncServer(async_mode='asgi', cors_allowed_origins='*')
_subscribers = set()


@sio.event
async def connect(sid, environ):
    _subscribers.add(sid)
    logger.info(f"Subscriber {sid} connected from {environ.get('REMOTE_ADDR', 'unknown')}")
    await sio.emit("toolbox:hello", {"version": __version__}, to=sid)


@sio.event
async def disconnect(sid, *args):
    _subscribers.discard(sid)
    logger.info(f"Subscriber {sid} disconnected")


def subscriber_count() -> int:
    return len(_subscribers)


async def publish(event: str, data: dict) -> None:
    """Emit an event to every subscriber; emit failures are logged, not raised."""
    if not _subscribers:
        return
    try:
        await sio.emit(event, data)
    except Exception as e:
        logger.warning(f"Failed to emit {event}: {e}")
