"""
Mapping from a classified mutation to at most one domain event.

Each mutation kind owns exactly one branch, so the rules are mutually exclusive
and evaluation order does not matter. A new event type has to be attached to a
single kind's branch to keep "one event per mutation" true.
"""
from typing_extensions import assert_never

from app.events.differ import classify
from app.events.schemas import EVENT_SOURCE, DomainEvent, EventType, MutationKind, MutationRecord


def derive(mutation: MutationRecord, source: str = EVENT_SOURCE) -> DomainEvent | None:
    view = classify(mutation.before, mutation.after)

    match mutation.kind:
        case MutationKind.INSERT:
            if view.was_created:
                return DomainEvent(type=EventType.CREATED, payload=view.after, source=source)
        case MutationKind.MODIFY:
            if view.was_completed:
                return DomainEvent(type=EventType.COMPLETED, payload=view.after, source=source)
        case MutationKind.REMOVE:
            if view.was_deleted:
                return DomainEvent(type=EventType.DELETED, payload=view.before, source=source)
        case _:
            assert_never(mutation.kind)
    return None
