"""
Mutation log backed by Redis Streams.

Writes land on one stream per shard, chosen from the record id, so that all
mutations of a record stay ordered on a single stream. Each shard is drained by a
`MutationLogConsumer` through a consumer group, which gives at-least-once
delivery: entries are only acknowledged after their batch went through the
pipeline (or was dead-lettered).
"""
import asyncio
import logging
import zlib

from redis.asyncio import Redis, ResponseError

from app.events.coordinator import BatchCoordinator, BatchOutcome
from app.events.schemas import MalformedMutationError, MutationKind, MutationRecord
from app.events.schemas import RecordSnapshot, parse_mutation

logger = logging.getLogger(__name__)

Entry = tuple[str, dict[str, str]]


def shard_for(partition_key: str, shards: int) -> int:
    """Stable shard number for a partition key."""
    return zlib.crc32(partition_key.encode("utf-8")) % shards


def shard_stream(prefix: str, shard: int) -> str:
    return f"{prefix}:{shard}"


class MutationLog:
    """Producer side: appends before/after images of committed mutations."""

    def __init__(self, redis: Redis, stream_prefix: str, shards: int = 4):
        self.redis = redis
        self.stream_prefix = stream_prefix
        self.shards = shards

    def stream_for(self, partition_key: str) -> str:
        return shard_stream(self.stream_prefix, shard_for(partition_key, self.shards))

    def streams(self) -> list[str]:
        return [shard_stream(self.stream_prefix, n) for n in range(self.shards)]

    async def append(
        self,
        kind: MutationKind,
        before: RecordSnapshot | None = None,
        after: RecordSnapshot | None = None,
    ) -> str:
        image = after or before
        record = MutationRecord(
            kind=kind, partition_key=image.id if image else "", before=before, after=after
        )
        stream = self.stream_for(record.partition_key)
        entry_id = await self.redis.xadd(stream, record.to_fields())
        logger.debug(f"Appended {kind.value} {record.partition_key} to {stream} as {entry_id}")
        return entry_id


class MutationLogConsumer:
    """
    Drains one shard of the mutation log through the batch coordinator.

    A failed batch is left pending and redelivered as a whole on the next read, up
    to `max_retry_attempts` times. The attempt count is the delivery counter Redis
    keeps for each pending entry, so it survives worker restarts and crashes in the
    middle of a batch. Once exhausted every entry of the batch is copied to the
    dead-letter stream and acknowledged so the shard can move on.
    """

    def __init__(
        self,
        redis: Redis,
        coordinator: BatchCoordinator,
        stream: str,
        group: str,
        dead_letter_stream: str,
        consumer_name: str = "worker",
        batch_size: int = 10,
        max_retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        block_ms: int = 1000,
    ):
        self.redis = redis
        self.coordinator = coordinator
        self.stream = stream
        self.group = group
        self.dead_letter_stream = dead_letter_stream
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.max_retry_attempts = max_retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.block_ms = block_ms
        self._running = False

    async def ensure_group(self) -> None:
        """Create the consumer group, ignoring BUSYGROUP if it already exists."""
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _read(self, last_id: str, block: int | None = None) -> list[Entry]:
        response = await self.redis.xreadgroup(
            groupname=self.group,
            consumername=self.consumer_name,
            streams={self.stream: last_id},
            count=self.batch_size,
            block=block,
        )
        entries: list[Entry] = []
        for _stream, messages in response or []:
            entries.extend(messages)
        return entries

    async def read_batch(self) -> list[Entry]:
        # entries left pending by a crash come back first
        entries = await self._read("0")
        if entries:
            return entries
        return await self._read(">", block=self.block_ms)

    def decode(self, entries: list[Entry]) -> list[MutationRecord]:
        records = []
        for entry_id, fields in entries:
            try:
                records.append(parse_mutation(fields or {}, sequence=entry_id))
            except MalformedMutationError as e:
                logger.error(f"Dropping malformed mutation {entry_id} on {self.stream}: {e}")
        return records

    async def deliveries(self, entries: list[Entry]) -> int:
        """How many times the batch has been handed out, from the pending entries list."""
        ids = [entry_id for entry_id, _ in entries]
        pending = await self.redis.xpending_range(
            self.stream,
            self.group,
            min=ids[0],
            max=ids[-1],
            count=len(ids),
            consumername=self.consumer_name,
        )
        counts = [p["times_delivered"] for p in pending if p["message_id"] in ids]
        return max(counts, default=1)

    async def run_once(self) -> BatchOutcome | None:
        """
        Read and process a single batch.

        Returns None when the shard was idle, or when the batch was dead-lettered
        without processing because its delivery budget was already spent.

        A failed batch stays pending; the next call reads it back first.
        """
        entries = await self.read_batch()
        if not entries:
            return None

        attempts = await self.deliveries(entries)
        if attempts > self.max_retry_attempts + 1:
            # earlier deliveries died before reaching a verdict
            await self._dead_letter(entries, "delivery budget exhausted", attempts)
            await self._ack(entries)
            return None

        outcome = await self.coordinator.process_batch(self.decode(entries))
        if not outcome.failed:
            await self._ack(entries)
            return outcome

        if attempts > self.max_retry_attempts:
            error = "; ".join(str(e) for e in outcome.errors)
            await self._dead_letter(entries, error, attempts)
            await self._ack(entries)
            return outcome

        logger.warning(
            f"Batch of {len(entries)} from {self.stream} failed, redelivering "
            f"(retry {attempts}/{self.max_retry_attempts})"
        )
        await asyncio.sleep(self.retry_backoff_seconds * attempts)
        return outcome

    async def run(self) -> None:
        await self.ensure_group()
        self._running = True
        logger.info(f"Consuming {self.stream} as {self.group}/{self.consumer_name}")
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                self._running = False
                raise
            except Exception:
                logger.exception(f"Consumer loop error on {self.stream}")
                await asyncio.sleep(1)

    def stop(self) -> None:
        self._running = False

    async def _ack(self, entries: list[Entry]) -> None:
        await self.redis.xack(self.stream, self.group, *[entry_id for entry_id, _ in entries])

    async def _dead_letter(self, entries: list[Entry], error: str, attempts: int) -> None:
        logger.error(
            f"Dead-lettering batch of {len(entries)} from {self.stream} "
            f"after {attempts} attempts: {error}"
        )
        for entry_id, fields in entries:
            await self.redis.xadd(
                self.dead_letter_stream,
                {
                    **(fields or {}),
                    "origin_stream": self.stream,
                    "origin_id": entry_id,
                    "error": error,
                    "attempts": str(attempts),
                },
            )
