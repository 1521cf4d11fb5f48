from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable

from sqlmodel import Session

from billing_cycles.domain.models import DomainEvent, EventEnvelope
from billing_cycles.infra.db import engine

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]


class EventBus:
    """Append-only domain event recorder with in-process subscribers.

    ``record`` only stages the row on the caller's session, so an event is
    stored if and only if the surrounding unit of work commits. Subscribers are
    called through ``notify`` once the caller knows the commit went through.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def record(self, event: EventEnvelope, session: Session) -> DomainEvent:
        row = DomainEvent(
            id=event.event_id,
            tenant_id=event.tenant_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            event_type=event.event_type,
            payload=event.payload,
            triggered_by=event.triggered_by,
            correlation_id=event.correlation_id,
            created_at=event.ts,
        )
        session.add(row)
        return row

    def notify(self, events: Iterable[EventEnvelope]) -> None:
        for event in events:
            handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    # Subscribers sit outside the unit of work that produced the event.
                    logger.exception(
                        "event subscriber failed for %s %s",
                        event.event_type,
                        event.entity_id,
                    )

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(engine)
        try:
            self.record(event, session)
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()
        self.notify([event])


event_bus = EventBus()
