from collections import defaultdict

import pytest
from redis.asyncio import ResponseError

from app.events.publisher import PublishError
from app.events.schemas import MutationKind, MutationRecord, RecordSnapshot


class FakeRedis:
    """
    In-memory stand-in for the subset of `redis.asyncio.Redis` the service uses:
    streams with consumer groups, SET NX / DELETE and PUBLISH.
    """

    def __init__(self):
        self.streams = defaultdict(list)
        self.groups = {}
        self.kv = {}
        self.ttls = {}
        self.published = []
        self.xadd_error = None  # callable(stream, fields) -> Exception | None
        self._seq = 0

    async def ping(self):
        return True

    async def aclose(self):
        pass

    async def xadd(self, name, fields, maxlen=None, approximate=True, id="*"):
        if self.xadd_error is not None:
            error = self.xadd_error(name, fields)
            if error is not None:
                raise error
        self._seq += 1
        entry_id = f"{self._seq}-0"
        self.streams[name].append((entry_id, {k: str(v) for k, v in fields.items()}))
        return entry_id

    async def xgroup_create(self, name, groupname, id="$", mkstream=False):
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        start = 0 if id == "0" else len(self.streams[name])
        self.groups[(name, groupname)] = {"delivered": start, "pending": {}}
        return True

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None, noack=False):
        response = []
        for name, last_id in streams.items():
            group = self.groups[(name, groupname)]
            if last_id == ">":
                start = group["delivered"]
                end = len(self.streams[name]) if count is None else start + count
                entries = self.streams[name][start:end]
                group["delivered"] = start + len(entries)
                for entry_id, _ in entries:
                    group["pending"][entry_id] = {"consumer": consumername, "times_delivered": 1}
            else:
                mine = {e for e, p in group["pending"].items() if p["consumer"] == consumername}
                entries = [(e, f) for e, f in self.streams[name] if e in mine][:count]
                # reading back the pending list counts as a redelivery
                for entry_id, _ in entries:
                    group["pending"][entry_id]["times_delivered"] += 1
            response.append([name, [(e, dict(f)) for e, f in entries]])
        return response

    async def xack(self, name, groupname, *ids):
        pending = self.groups[(name, groupname)]["pending"]
        return sum(1 for i in ids if pending.pop(i, None) is not None)

    async def xpending_range(self, name, groupname, min, max, count, consumername=None, idle=None):
        pending = self.groups[(name, groupname)]["pending"]
        ids = [e for e, _ in self.streams[name]]
        lo, hi = ids.index(min), ids.index(max)
        return [
            {
                "message_id": e,
                "consumer": pending[e]["consumer"],
                "time_since_delivered": 0,
                "times_delivered": pending[e]["times_delivered"],
            }
            for e in ids[lo : hi + 1]
            if e in pending and consumername in (None, pending[e]["consumer"])
        ][:count]

    def pending(self, name, groupname):
        return list(self.groups[(name, groupname)]["pending"])

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.kv:
            return None
        self.kv[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        for k in keys:
            self.ttls.pop(k, None)
        return sum(1 for k in keys if self.kv.pop(k, None) is not None)

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


class RecordingPublisher:
    """Publisher fake that records every attempt and fails on chosen call numbers."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.attempts = []
        self.delivered = []

    async def publish(self, event):
        self.attempts.append(event)
        if len(self.attempts) in self.fail_on:
            raise PublishError(event, "bus unavailable")
        self.delivered.append(event)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def snapshot():
    def make(id="a", name="buy milk", completed=False, created_at=100, updated_at=100):
        return RecordSnapshot(
            id=id,
            name=name,
            completed=completed,
            created_at=created_at,
            updated_at=updated_at,
        )

    return make


@pytest.fixture
def mutation():
    def make(kind, before=None, after=None, sequence=None):
        image = after or before
        return MutationRecord(
            kind=kind, partition_key=image.id, before=before, after=after, sequence=sequence
        )

    return make


@pytest.fixture
def insert(mutation, snapshot):
    def make(id="a", **fields):
        return mutation(MutationKind.INSERT, after=snapshot(id=id, **fields))

    return make


@pytest.fixture
def complete(mutation, snapshot):
    def make(id="a", **fields):
        return mutation(
            MutationKind.MODIFY,
            before=snapshot(id=id, completed=False, **fields),
            after=snapshot(id=id, completed=True, **fields),
        )

    return make
