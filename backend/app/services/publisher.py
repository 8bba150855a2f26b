"""Redis pub/sub publisher for live notifications and progress events."""
import json
import logging

from redis.asyncio import Redis

logger = logging.getLogger("linewatch.publisher")


class RedisPublisher:

    def __init__(self, redis: Redis):
        self.redis = redis

    async def publish(self, channel: str, payload: dict) -> int:
        receivers = await self.redis.publish(channel, json.dumps(payload, default=str))
        logger.debug("Published to %s (%d receiver(s))", channel, receivers)
        return receivers
