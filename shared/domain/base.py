"""
Base Domain Classes

- Entity: identity-based equality (unit schedules are keyed by unit id)
- ValueObject: frozen, compared by value (rental windows, price quotes)
- Aggregate: an Entity that buffers domain events until commit
- DomainEvent: a committed fact handed to the message bus
"""

from abc import ABC
from dataclasses import dataclass, field
from datetime import datetime
from typing import List
from uuid import UUID, uuid4

from django.utils import timezone


@dataclass(kw_only=True)
class Entity(ABC):
    id: UUID = field(default_factory=uuid4)

    def __eq__(self, other):
        if not isinstance(other, self.__class__):
            return False
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)


@dataclass(frozen=True)
class ValueObject(ABC):
    """Immutable; two instances with equal fields are interchangeable."""


@dataclass(eq=False, kw_only=True)
class Aggregate(Entity):
    """
    Consistency boundary for one locked set of rows.

    Events raised while the boundary is checked are held here and moved
    into the unit of work with ``uow.collect_events(aggregate)``.
    """
    _events: List['DomainEvent'] = field(default_factory=list, repr=False, init=False)

    def add_event(self, event: 'DomainEvent'):
        self._events.append(event)

    def clear_events(self):
        self._events.clear()

    @property
    def events(self) -> List['DomainEvent']:
        return self._events.copy()


@dataclass(kw_only=True)
class DomainEvent:
    """
    Something that happened to a booking, unit or deposit.

    Only published after the transaction that produced it commits;
    subscribers (customer notifications) cannot affect that transaction.
    """
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=timezone.now)
    aggregate_id: UUID | None = None

    @property
    def name(self) -> str:
        return self.__class__.__name__
