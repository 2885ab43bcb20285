"""
Outbound event channel.

Components publish typed events to an EventBus; listeners and subscriber
queues receive them without ever blocking the publisher.
"""
import asyncio
import json
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
import redis.asyncio as aioredis
import structlog

from .models import MonitoringEvent

logger = structlog.get_logger()

EventListener = Callable[[MonitoringEvent], Union[None, Awaitable[None]]]

ALL_EVENTS = "*"


class EventBus:
    """Fan-out of monitoring events to listeners and bounded subscriber queues"""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self.listeners: Dict[str, List[EventListener]] = defaultdict(list)
        self.queues: List[asyncio.Queue] = []
        self.published_counts: Dict[str, int] = defaultdict(int)
        self.dropped_events = 0
        self._pending: Set[asyncio.Future] = set()

    def subscribe(self, event_type: str, listener: EventListener):
        """Register a listener for one event type, or ALL_EVENTS"""
        self.listeners[event_type].append(listener)

    def unsubscribe(self, event_type: str, listener: EventListener):
        if listener in self.listeners.get(event_type, []):
            self.listeners[event_type].remove(listener)

    def open_queue(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or self.queue_size)
        self.queues.append(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue):
        if queue in self.queues:
            self.queues.remove(queue)

    def publish(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> MonitoringEvent:
        event = MonitoringEvent(event_type=event_type, payload=payload or {})
        self.published_counts[event_type] += 1

        for queue in self.queues:
            if queue.full():
                # Slow consumer: drop its oldest event rather than block the publisher
                queue.get_nowait()
                self.dropped_events += 1
            queue.put_nowait(event)

        for listener in self.listeners.get(event_type, []) + self.listeners.get(ALL_EVENTS, []):
            self._dispatch(listener, event)

        return event

    def _dispatch(self, listener: EventListener, event: MonitoringEvent):
        try:
            result = listener(event)
        except Exception as e:
            logger.error("Event listener failed", event_type=event.event_type, error=str(e))
            return

        if asyncio.iscoroutine(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                result.close()
                logger.warning("No running loop for async listener", event_type=event.event_type)
                return
            future = loop.create_task(result)
            self._pending.add(future)
            future.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, future: asyncio.Future):
        self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error:
            logger.error("Async event listener failed", error=str(error))

    async def drain(self):
        """Wait for in-flight async listeners"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class RedisEventPublisher:
    """Forwards every bus event to a Redis pub/sub channel as JSON"""

    def __init__(self, redis_client: aioredis.Redis, channel: str):
        self.redis = redis_client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, channel: str) -> "RedisEventPublisher":
        client = aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=10,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        return cls(client, channel)

    def attach(self, bus: EventBus):
        bus.subscribe(ALL_EVENTS, self.publish)

    def detach(self, bus: EventBus):
        bus.unsubscribe(ALL_EVENTS, self.publish)

    async def publish(self, event: MonitoringEvent):
        message = json.dumps(event.dict(), default=str)
        try:
            await self.redis.publish(self.channel, message)
        except Exception as e:
            logger.error("Failed to publish event to Redis",
                         event_type=event.event_type, channel=self.channel, error=str(e))

    async def close(self):
        await self.redis.close()
        logger.info("Disconnected from Redis")
