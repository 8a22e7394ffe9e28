import logging

from redis.asyncio import Redis

from app.core.config import Settings

logger = logging.getLogger(__name__)


def create_redis(settings: Settings, max_connections: int | None = None) -> Redis:
    """Build the Redis client shared by the mutation log and the event bus."""
    logger.info(f"Connecting to Redis at {settings.redis_dsn}")
    return Redis.from_url(
        settings.redis_dsn,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections or settings.redis_pool_size,
        socket_connect_timeout=5,
        socket_keepalive=True,
        health_check_interval=30,
    )
