"""
Event pipeline worker.

Runs one mutation log consumer per shard plus the downstream subscribers:

    python -m app.worker
"""
import asyncio
import logging
import socket

from app.core.clients import create_redis
from app.core.config import Settings, get_settings
from app.events.coordinator import BatchCoordinator
from app.events.handlers import AuditLogHandler, CompletionNotifier, EventBusSubscriber
from app.events.mutation_log import MutationLogConsumer, shard_stream
from app.events.publisher import EventPublisher
from app.events.schemas import EventType

logger = logging.getLogger(__name__)


def build_consumers(redis, settings: Settings, consumer_name: str) -> list[MutationLogConsumer]:
    publisher = EventPublisher(
        redis,
        settings.event_bus_stream,
        timeout=settings.publish_timeout_seconds,
        max_length=settings.event_bus_max_length,
    )
    coordinator = BatchCoordinator(publisher, source=settings.event_source)
    return [
        MutationLogConsumer(
            redis,
            coordinator,
            stream=shard_stream(settings.mutation_log_stream, shard),
            group=settings.mutation_log_group,
            dead_letter_stream=settings.dead_letter_stream,
            consumer_name=consumer_name,
            batch_size=settings.batch_size,
            max_retry_attempts=settings.max_retry_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            block_ms=settings.block_ms,
        )
        for shard in range(settings.mutation_log_shards)
    ]


def build_subscribers(redis, settings: Settings, consumer_name: str) -> list[EventBusSubscriber]:
    return [
        EventBusSubscriber(
            redis,
            settings.event_bus_stream,
            group="todo-audit",
            patterns=["todo*"],
            handler=AuditLogHandler(),
            consumer_name=consumer_name,
            block_ms=settings.block_ms,
        ),
        EventBusSubscriber(
            redis,
            settings.event_bus_stream,
            group="todo-notifications",
            patterns=[EventType.COMPLETED.value],
            handler=CompletionNotifier(
                redis,
                settings.notification_channel,
                dedup_ttl_seconds=settings.notification_dedup_ttl_seconds,
                claim_ttl_seconds=settings.notification_claim_ttl_seconds,
            ),
            consumer_name=consumer_name,
            block_ms=settings.block_ms,
        ),
    ]


async def main():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    consumer_name = socket.gethostname()
    # every blocking reader holds a connection of its own
    redis = create_redis(
        settings, max_connections=settings.mutation_log_shards + settings.redis_pool_size + 2
    )
    await redis.ping()

    workers = build_consumers(redis, settings, consumer_name)
    workers += build_subscribers(redis, settings, consumer_name)
    try:
        await asyncio.gather(*(w.run() for w in workers))
    finally:
        for w in workers:
            w.stop()
        await redis.aclose()
        logger.info("Worker stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
