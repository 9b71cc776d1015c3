import json
import logging
from typing import Optional
import redis.asyncio as redis
from datetime import datetime

from . import metrics

logger = logging.getLogger(__name__)


class RedisStreamClient:
    """Publishes ledger events to Redis Streams for downstream consumers."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        self.redis = redis.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        if self.redis:
            await self.redis.close()

    async def ping(self) -> bool:
        return bool(self.redis and await self.redis.ping())

    async def publish(self, stream: str, data: dict) -> str:
        """Publish a message to a stream. Returns message ID."""
        data["_timestamp"] = datetime.utcnow().isoformat()
        msg_id = await self.redis.xadd(stream, {"payload": json.dumps(data, default=str)})
        metrics.STREAM_MESSAGES_PUBLISHED.labels(stream=stream).inc()
        logger.info(f"Published to {stream}", extra={"stream": stream, "msg_id": msg_id})
        return msg_id


async def emit(client: Optional[RedisStreamClient], stream: str, data: dict):
    """Best-effort publish; the ledger stays authoritative when Redis is down."""
    if client is None:
        return None
    try:
        return await client.publish(stream, data)
    except redis.RedisError as e:
        logger.warning(f"Failed to publish to {stream}: {e}", extra={"stream": stream})
        return None


# Stream names as constants
STREAM_ROUNDS_CREATED = "rounds:created"
STREAM_ROUNDS_DRAWN = "rounds:drawn"
STREAM_TICKETS_ISSUED = "tickets:issued"
