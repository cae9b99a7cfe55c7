"""Seat events published over Redis pub/sub."""

import json
from typing import Awaitable, Callable

import redis.asyncio as redis

from .logger_config import logger


SEAT_EVENTS_CHANNEL = "seat_events"


class EventPublisher:
    def __init__(self, redis_client: redis.Redis, channel: str = SEAT_EVENTS_CHANNEL):
        self._redis = redis_client
        self.channel = channel

    async def publish(self, event: dict) -> None:
        try:
            await self._redis.publish(self.channel, json.dumps(event))
        except redis.RedisError as e:
            # seat events are a best-effort live feed; inventory state is already committed
            logger.warning(f"could not publish {event.get('type')} event: {e}")


async def forward_events(redis_client: redis.Redis, sink: Callable[[dict], Awaitable[None]],
                         channel: str = SEAT_EVENTS_CHANNEL) -> None:
    """Relay every message on the channel to ``sink`` until cancelled."""
    pub = redis_client.pubsub()
    await pub.subscribe(channel)
    try:
        async for msg in pub.listen():
            if msg is None or msg.get("type") != "message":
                continue
            try:
                data = json.loads(msg["data"])
            except (TypeError, ValueError):
                logger.warning(f"dropping malformed event on {channel}")
                continue
            await sink(data)
    finally:
        await pub.unsubscribe(channel)
        await pub.aclose()
