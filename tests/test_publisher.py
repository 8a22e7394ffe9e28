import asyncio
import json

import pytest
from redis.asyncio import ConnectionError as RedisConnectionError
from redis.asyncio import ResponseError

from app.events.publisher import EventPublisher, PublishError
from app.events.schemas import DomainEvent, EventType


@pytest.mark.asyncio
async def test_publish_writes_one_tagged_entry(fake_redis, snapshot):
    payload = snapshot(completed=True, updated_at=200)
    publisher = EventPublisher(fake_redis, "todo:events")

    await publisher.publish(DomainEvent(type=EventType.COMPLETED, payload=payload))

    [(_, fields)] = fake_redis.streams["todo:events"]
    assert fields["detail-type"] == "todoCompleted"
    assert fields["source"] == "TodoService"
    assert json.loads(fields["detail"])["id"] == "a"
    assert json.loads(fields["detail"])["completed"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error", [RedisConnectionError("connection refused"), ResponseError("ERR rejected")]
)
async def test_transport_and_rejection_become_publish_error(fake_redis, snapshot, error):
    fake_redis.xadd_error = lambda stream, fields: error
    publisher = EventPublisher(fake_redis, "todo:events")
    event = DomainEvent(type=EventType.CREATED, payload=snapshot())

    with pytest.raises(PublishError) as info:
        await publisher.publish(event)
    assert info.value.event is event
    assert fake_redis.streams["todo:events"] == []


@pytest.mark.asyncio
async def test_timeout_becomes_publish_error(snapshot):
    class SlowBus:
        calls = 0

        async def xadd(self, *args, **kwargs):
            SlowBus.calls += 1
            await asyncio.sleep(1)

    publisher = EventPublisher(SlowBus(), "todo:events", timeout=0.01)
    with pytest.raises(PublishError, match="timed out"):
        await publisher.publish(DomainEvent(type=EventType.DELETED, payload=snapshot()))
    assert SlowBus.calls == 1
