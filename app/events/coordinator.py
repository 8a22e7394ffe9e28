"""
Batch coordinator for the event-derivation pipeline.

A batch is processed strictly in order: classify -> derive -> publish per record.
Any publish failure fails the whole batch so the log redelivers it; records that
already succeeded are published again on redelivery, which downstream consumers
must tolerate.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from app.events.publisher import EventPublisher, PublishError
from app.events.rules import derive
from app.events.schemas import EVENT_SOURCE, DomainEvent, MutationRecord

logger = logging.getLogger(__name__)


class RecordState(str, Enum):
    NO_EVENT = "no_event"
    PUBLISHED = "published"
    PUBLISH_FAILED = "publish_failed"
    # not attempted: an earlier record with the same partition key failed
    DEFERRED = "deferred"


class BatchStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RecordOutcome:
    record: MutationRecord
    state: RecordState
    event: DomainEvent | None = None
    error: PublishError | None = None


@dataclass
class BatchOutcome:
    records: list[RecordOutcome] = field(default_factory=list)

    @property
    def status(self) -> BatchStatus:
        if any(r.state is RecordState.PUBLISH_FAILED for r in self.records):
            return BatchStatus.FAILED
        return BatchStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status is BatchStatus.FAILED

    @property
    def published(self) -> list[DomainEvent]:
        return [r.event for r in self.records if r.state is RecordState.PUBLISHED]

    @property
    def errors(self) -> list[PublishError]:
        return [r.error for r in self.records if r.error is not None]


class BatchCoordinator:
    def __init__(self, publisher: EventPublisher, source: str = EVENT_SOURCE):
        self.publisher = publisher
        self.source = source

    async def process_batch(self, records: Sequence[MutationRecord]) -> BatchOutcome:
        outcome = BatchOutcome()
        failed_keys: set[str] = set()

        for record in records:
            if record.partition_key in failed_keys:
                outcome.records.append(RecordOutcome(record, RecordState.DEFERRED))
                continue

            event = derive(record, source=self.source)
            if event is None:
                logger.debug(
                    f"No event for {record.kind.value} {record.partition_key} ({record.sequence})"
                )
                outcome.records.append(RecordOutcome(record, RecordState.NO_EVENT))
                continue

            try:
                await self.publisher.publish(event)
            except PublishError as e:
                logger.error(f"Publish failed for record {record.sequence}: {e}")
                failed_keys.add(record.partition_key)
                outcome.records.append(
                    RecordOutcome(record, RecordState.PUBLISH_FAILED, event=event, error=e)
                )
                continue

            outcome.records.append(RecordOutcome(record, RecordState.PUBLISHED, event=event))

        if outcome.failed:
            logger.warning(
                f"Batch of {len(records)} failed: {len(outcome.errors)} publish error(s), "
                f"{len(outcome.published)} published"
            )
        return outcome
