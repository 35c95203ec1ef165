"""
Unit of Work

One database transaction per command. Domain events raised inside it
are buffered and handed to the message bus only once the outermost
transaction has committed, so a rolled-back allocation or transition
never notifies anyone.
"""

from abc import ABC, abstractmethod
from typing import List
import logging

from django.db import transaction

from shared.domain.base import DomainEvent

logger = logging.getLogger(__name__)


class AbstractUnitOfWork(ABC):

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass

    @abstractmethod
    def add_event(self, event: DomainEvent):
        pass

    def collect_events(self, aggregate):
        """Move the aggregate's pending events into this unit of work."""
        pending = aggregate.events
        if not pending:
            return
        for event in pending:
            self.add_event(event)
        aggregate.clear_events()
        logger.debug(f"Collected {len(pending)} events from {aggregate.__class__.__name__} {aggregate.id}")


class DjangoUnitOfWork(AbstractUnitOfWork):
    """
    Unit of work over ``transaction.atomic()``.

    Nesting is allowed: an inner unit becomes a savepoint and its events
    are published with the outer commit.

    Usage:
        with DjangoUnitOfWork() as uow:
            booking = get_booking_for_update(booking_id)
            ...
            uow.add_event(BookingActivated(...))
    """

    def __init__(self):
        self._events: List[DomainEvent] = []
        self._atomic = None

    def __enter__(self):
        self._atomic = transaction.atomic()
        self._atomic.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            super().__exit__(exc_type, exc_val, exc_tb)
        finally:
            if self._atomic:
                self._atomic.__exit__(exc_type, exc_val, exc_tb)

    def commit(self):
        events, self._events = self._events, []
        if events:
            logger.debug(f"Deferring {len(events)} events until commit")
            transaction.on_commit(lambda: self._publish_events(events))

    def rollback(self):
        if self._events:
            logger.warning(f"Transaction rolled back, dropping {len(self._events)} events")
        self._events = []

    def add_event(self, event: DomainEvent):
        self._events.append(event)

    def _publish_events(self, events: List[DomainEvent]):
        from shared.application.message_bus import message_bus

        logger.info(f"Publishing {len(events)} domain events after commit")
        try:
            message_bus.publish_events(events)
        except Exception as e:
            # Already committed: nothing to undo, only report.
            logger.error(f"Error publishing events: {e}", exc_info=True)
