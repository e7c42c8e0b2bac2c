"""
Event Broadcaster

Keeps the Server-Sent Events subscribers of every session and fans each
event out to all of them in emission order.
"""

import asyncio
import json
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict

from utils.logger import setup_logger

logger = setup_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000

def now_ms() -> int:
    return int(time.time() * 1000)

def format_sse(event: str, payload: Any) -> str:
    """Encode one SSE frame."""
    return f"event: {event}\ndata: {json.dumps(payload, separators=(',', ':'), default=str)}\n\n"

class Subscriber:
    """One open stream; frames wait in a bounded queue until the client reads them."""

    def __init__(self, session_id: str, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.id = str(uuid.uuid4())
        self.session_id = session_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def push(self, frame: str):
        if self.closed:
            raise RuntimeError("subscriber closed")
        self.queue.put_nowait(frame)

class EventBroadcaster:
    """Registry of SSE subscribers keyed by session id."""

    def __init__(self):
        self._subscribers: Dict[str, Dict[str, Subscriber]] = {}

    def subscribe(self, session_id: str) -> Subscriber:
        subscriber = Subscriber(session_id)
        self._subscribers.setdefault(session_id, {})[subscriber.id] = subscriber
        logger.info(f"[{session_id}] SSE client connected ({self.subscriber_count(session_id)} open)")
        return subscriber

    def unsubscribe(self, session_id: str, subscriber: Subscriber):
        subscriber.closed = True
        clients = self._subscribers.get(session_id)
        if clients is None:
            return
        clients.pop(subscriber.id, None)
        if not clients:
            del self._subscribers[session_id]
        logger.info(f"[{session_id}] SSE client disconnected ({self.subscriber_count(session_id)} open)")

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, {}))

    def total_subscribers(self) -> int:
        return sum(len(clients) for clients in self._subscribers.values())

    def broadcast(self, session_id: str, event: str, payload: Any) -> int:
        """
        Send an event to every subscriber of a session.

        Returns:
            int: Number of subscribers that accepted the frame
        """
        clients = self._subscribers.get(session_id)
        if not clients:
            return 0

        frame = format_sse(event, payload)
        delivered = 0
        for subscriber in list(clients.values()):
            try:
                subscriber.push(frame)
                delivered += 1
            except (asyncio.QueueFull, RuntimeError) as e:
                logger.warning(f"[{session_id}] Dropping {event} for subscriber {subscriber.id[:8]}: {str(e) or 'queue full'}")
        return delivered

async def stream_events(
    broadcaster: EventBroadcaster,
    session_id: str,
    subscriber: Subscriber,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """
    Yield the frames of one SSE connection until the client goes away.

    Starts with a ``ready`` frame and interleaves a ``keepalive`` frame every
    ``keepalive_seconds`` whatever the event traffic. The subscriber is
    always unregistered on exit.
    """
    loop = asyncio.get_running_loop()
    try:
        yield format_sse("ready", {"ts": now_ms()})
        next_keepalive = loop.time() + keepalive_seconds

        while True:
            if await is_disconnected():
                break

            remaining = next_keepalive - loop.time()
            if remaining <= 0:
                yield format_sse("keepalive", {"ts": now_ms()})
                next_keepalive = loop.time() + keepalive_seconds
                continue

            try:
                frame = await asyncio.wait_for(subscriber.queue.get(), timeout=remaining)
            except asyncio.TimeoutError:
                continue
            yield frame
    finally:
        broadcaster.unsubscribe(session_id, subscriber)
