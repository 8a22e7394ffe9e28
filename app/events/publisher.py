import asyncio
import logging

from redis.asyncio import Redis, RedisError

from app.events.schemas import DomainEvent

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """A single publish attempt to the event bus did not succeed."""

    def __init__(self, event: DomainEvent, reason: str):
        super().__init__(f"failed to publish {event.type.value} for {event.payload.id}: {reason}")
        self.event = event
        self.reason = reason


class EventPublisher:
    """
    Delivers domain events to the event bus stream.

    Every call is exactly one XADD carrying:
    - detail-type: the event type discriminator
    - source: the fixed origin tag
    - detail: the JSON-serialized record snapshot

    There is no retry here; the batch coordinator decides what a failure means.
    """

    def __init__(
        self,
        redis: Redis,
        stream: str,
        timeout: float = 5.0,
        max_length: int | None = 10_000,
    ):
        self.redis = redis
        self.stream = stream
        self.timeout = timeout
        self.max_length = max_length

    async def publish(self, event: DomainEvent) -> None:
        fields = {
            "detail-type": event.type.value,
            "source": event.source,
            "detail": event.payload.model_dump_json(),
        }
        try:
            entry_id = await asyncio.wait_for(
                self.redis.xadd(
                    self.stream, fields, maxlen=self.max_length, approximate=True
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise PublishError(event, f"timed out after {self.timeout}s") from e
        except RedisError as e:
            raise PublishError(event, str(e)) from e

        logger.info(f"Event sent: {event.type.value} id={event.payload.id} entry={entry_id}")
