"""
Downstream consumers of the event bus.

Delivery is at-least-once: the pipeline republishes every event of a batch it had
to retry, so a handler can see the same event more than once. Handlers with
external side effects must be idempotent per record.
"""
import asyncio
import fnmatch
import json
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Iterable

from pydantic import ValidationError
from redis.asyncio import Redis, ResponseError

from app.events.schemas import EVENT_SOURCE, DomainEvent, EventType, RecordSnapshot, SnapshotError

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


def decode_event(fields: dict[str, str]) -> DomainEvent:
    """Rebuild a `DomainEvent` from an event bus entry."""
    try:
        return DomainEvent(
            type=EventType(fields["detail-type"]),
            source=fields.get("source", EVENT_SOURCE),
            payload=RecordSnapshot.model_validate_json(fields["detail"]),
        )
    except (KeyError, ValueError, ValidationError) as e:
        raise SnapshotError(f"undecodable event entry: {e}") from e


class AuditLogHandler:
    _verbs = {
        EventType.CREATED: "created",
        EventType.COMPLETED: "completed",
        EventType.DELETED: "deleted",
    }

    async def __call__(self, event: DomainEvent) -> None:
        logger.info(
            f"Todo {event.payload.id} {self._verbs[event.type]}: {event.payload.model_dump_json()}"
        )


class CompletionNotifier:
    """
    Sends a notification for every completed todo.

    Duplicate deliveries of the same completion are a no-op: the notifier claims a
    key built from the record id and its `updated_at` before publishing. The claim
    only lives for `claim_ttl_seconds` until the send went out, and it is released
    if the send is interrupted in any way, so a redelivery can try again.
    """

    def __init__(
        self,
        redis: Redis,
        channel: str,
        dedup_ttl_seconds: int = 86_400,
        claim_ttl_seconds: int = 60,
    ):
        self.redis = redis
        self.channel = channel
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.claim_ttl_seconds = claim_ttl_seconds

    @staticmethod
    def dedup_key(snapshot: RecordSnapshot) -> str:
        return f"todo:notified:{snapshot.id}:{snapshot.updated_at.isoformat()}"

    async def __call__(self, event: DomainEvent) -> None:
        if event.type is not EventType.COMPLETED:
            return

        todo = event.payload
        key = self.dedup_key(todo)
        claimed = await self.redis.set(key, "1", nx=True, ex=self.claim_ttl_seconds)
        if not claimed:
            logger.info(f"Completion of {todo.id} already notified, skipping duplicate")
            return

        message = json.dumps(
            {
                "subject": f'Todo with name "{todo.name}" completed.',
                "message": (
                    "A todo was marked as completed. \n\n"
                    f"todoId: {todo.id} \nname: {todo.name}"
                ),
            }
        )
        try:
            await self.redis.publish(self.channel, message)
        except BaseException:
            await self.redis.delete(key)
            raise
        await self.redis.set(key, "1", ex=self.dedup_ttl_seconds)
        logger.info(f"Completion notification sent for {todo.id}")


class EventBusSubscriber:
    """
    Consumer group on the event bus stream for one handler.

    Only entries whose type matches one of `patterns` reach the handler; the rest
    are acknowledged straight away. A failing handler leaves its entry pending and
    it is retried on the next read, up to `max_handler_retries` times.
    """

    def __init__(
        self,
        redis: Redis,
        stream: str,
        group: str,
        patterns: Iterable[str],
        handler: EventHandler,
        consumer_name: str = "worker",
        batch_size: int = 10,
        max_handler_retries: int = 3,
        block_ms: int = 1000,
    ):
        self.redis = redis
        self.stream = stream
        self.group = group
        self.patterns = list(patterns)
        self.handler = handler
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.max_handler_retries = max_handler_retries
        self.block_ms = block_ms
        self._attempts: dict[str, int] = defaultdict(int)
        self._running = False

    def matches(self, event_type: str) -> bool:
        return any(fnmatch.fnmatchcase(event_type, p) for p in self.patterns)

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _read(self, last_id: str, block: int | None = None):
        response = await self.redis.xreadgroup(
            groupname=self.group,
            consumername=self.consumer_name,
            streams={self.stream: last_id},
            count=self.batch_size,
            block=block,
        )
        return [m for _stream, messages in response or [] for m in messages]

    async def run_once(self) -> int:
        """Handle one read worth of entries; returns how many were acknowledged."""
        entries = await self._read("0") or await self._read(">", block=self.block_ms)
        acked = 0
        for entry_id, fields in entries:
            if await self._handle(entry_id, fields or {}):
                await self.redis.xack(self.stream, self.group, entry_id)
                acked += 1
        return acked

    async def _handle(self, entry_id: str, fields: dict[str, str]) -> bool:
        if not self.matches(fields.get("detail-type", "")):
            return True
        try:
            event = decode_event(fields)
        except SnapshotError as e:
            logger.error(f"Discarding undecodable event {entry_id} on {self.stream}: {e}")
            return True

        try:
            await self.handler(event)
        except Exception:
            self._attempts[entry_id] += 1
            attempts = self._attempts[entry_id]
            logger.exception(
                f"Handler error on {self.stream}/{self.group} entry={entry_id} "
                f"(attempt {attempts}/{self.max_handler_retries})"
            )
            if attempts >= self.max_handler_retries:
                logger.error(
                    f"Giving up on {event.type.value} for {event.payload.id} "
                    f"(entry {entry_id}) after {attempts} attempts"
                )
                self._attempts.pop(entry_id, None)
                return True
            return False

        self._attempts.pop(entry_id, None)
        return True

    async def run(self) -> None:
        await self.ensure_group()
        self._running = True
        logger.info(f"Subscribed {self.group} to {self.patterns} on {self.stream}")
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                self._running = False
                raise
            except Exception:
                logger.exception(f"Subscriber loop error for {self.group}")
                await asyncio.sleep(1)

    def stop(self) -> None:
        self._running = False
