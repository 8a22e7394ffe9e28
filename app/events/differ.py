from dataclasses import dataclass

from app.events.schemas import RecordSnapshot


@dataclass(frozen=True)
class MutationView:
    """Classification of one before/after snapshot pair."""

    before: RecordSnapshot | None
    after: RecordSnapshot | None

    @property
    def was_created(self) -> bool:
        return self.before is None and self.after is not None

    @property
    def was_completed(self) -> bool:
        # edge-triggered: only the false -> true transition counts
        if self.before is None or self.after is None:
            return False
        return not self.before.completed and self.after.completed

    @property
    def was_deleted(self) -> bool:
        return self.before is not None and self.after is None


def classify(before: RecordSnapshot | None, after: RecordSnapshot | None) -> MutationView:
    """Diff two snapshots of the same record. Never fails; either side may be absent."""
    return MutationView(before=before, after=after)
