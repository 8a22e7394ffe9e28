"""
Typed records flowing through the change-data-capture pipeline.

Raw log entries are loosely typed string mappings. They are parsed exactly once,
at the log-consumption boundary, into `RecordSnapshot` / `MutationRecord`
instances; everything downstream works with the validated models only.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic import field_validator, model_validator

EVENT_SOURCE = "TodoService"


class SnapshotError(ValueError):
    """A snapshot could not be turned into a valid `RecordSnapshot`."""


class MalformedMutationError(SnapshotError):
    """A mutation log entry violates the INSERT / MODIFY / REMOVE shape contract."""


class MutationKind(str, Enum):
    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


class EventType(str, Enum):
    CREATED = "todoCreated"
    COMPLETED = "todoCompleted"
    DELETED = "todoDeleted"


class RecordSnapshot(BaseModel):
    """State of one todo item at a point in time."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    completed: bool = False
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive datetimes
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_timestamps(self) -> "RecordSnapshot":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        return self


class MutationRecord(BaseModel):
    """One entry of the mutation log."""

    model_config = ConfigDict(frozen=True)

    kind: MutationKind
    partition_key: str = Field(min_length=1)
    before: RecordSnapshot | None = None
    after: RecordSnapshot | None = None
    sequence: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "MutationRecord":
        if self.kind is MutationKind.INSERT and (self.before is not None or self.after is None):
            raise ValueError("INSERT must carry an after-image only")
        if self.kind is MutationKind.REMOVE and (self.after is not None or self.before is None):
            raise ValueError("REMOVE must carry a before-image only")
        if self.kind is MutationKind.MODIFY and (self.before is None or self.after is None):
            raise ValueError("MODIFY must carry both images")
        for image in (self.before, self.after):
            if image is not None and image.id != self.partition_key:
                raise ValueError(
                    f"image id {image.id!r} does not match partition key {self.partition_key!r}"
                )
        return self

    def to_fields(self) -> dict[str, str]:
        """Wire form used on the mutation log stream."""
        return {
            "kind": self.kind.value,
            "partition_key": self.partition_key,
            "before": self.before.model_dump_json() if self.before else "",
            "after": self.after.model_dump_json() if self.after else "",
        }


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EventType
    payload: RecordSnapshot
    source: str = EVENT_SOURCE


def parse_snapshot(raw: Mapping[str, Any] | str | bytes | None) -> RecordSnapshot | None:
    """
    Build a `RecordSnapshot` from a raw mapping or JSON document.

    Empty input means "no image" and yields None. Anything else must describe a
    complete snapshot, otherwise `SnapshotError` is raised.
    """
    if raw is None or raw == "" or raw == b"":
        return None
    try:
        if isinstance(raw, (str, bytes)):
            return RecordSnapshot.model_validate_json(raw)
        return RecordSnapshot.model_validate(raw)
    except ValidationError as e:
        raise SnapshotError(f"invalid snapshot: {e}") from e


def parse_mutation(fields: Mapping[str, Any], sequence: str | None = None) -> MutationRecord:
    """Turn a raw mutation log entry into a `MutationRecord`."""
    try:
        kind = MutationKind(fields.get("kind"))
    except ValueError as e:
        raise MalformedMutationError(f"unknown mutation kind {fields.get('kind')!r}") from e

    try:
        before = parse_snapshot(fields.get("before"))
        after = parse_snapshot(fields.get("after"))
    except SnapshotError as e:
        raise MalformedMutationError(str(e)) from e

    partition_key = fields.get("partition_key")
    if not partition_key:
        image = after or before
        partition_key = image.id if image else ""
    try:
        return MutationRecord(
            kind=kind,
            partition_key=partition_key,
            before=before,
            after=after,
            sequence=sequence,
        )
    except ValidationError as e:
        raise MalformedMutationError(f"malformed {kind.value} mutation: {e}") from e

