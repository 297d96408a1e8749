from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from sqlmodel import Session

from orgcore.domain.models import EventEnvelope, EventRecord
from orgcore.infra.context import get_caller_id
from orgcore.infra.db import engine

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]

EVENT_USER_REGISTERED = "hierarchy.user_registered"
EVENT_USER_MOVED = "hierarchy.user_moved"
EVENT_ASSIGNMENT_CREATED = "assignment.created"


class EventBus:
    """In-process notification hand-off.

    Events are stored in the ``events`` outbox and then handed to subscribers.
    Delivery is fire-and-forget: a failing subscriber is logged and skipped so
    the mutation that produced the event is never affected.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(engine)
        try:
            record = EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                ts=event.ts,
                actor_id=event.actor_id,
                correlation_id=event.correlation_id,
                payload=event.payload,
            )
            session.add(record)
            if should_commit:
                session.commit()
        finally:
            if should_commit:
                session.close()

        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event handler failed for %s (%s)", event.event_type, event.event_id)

    def publish_dict(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            actor_id=actor_id if actor_id is not None else get_caller_id(),
            payload=payload,
        )
        self.publish(event)
        return event

    def notify(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
    ) -> EventEnvelope | None:
        """Publish after a committed mutation; outbox failures are logged, not raised."""
        try:
            return self.publish_dict(event_type, payload, actor_id=actor_id)
        except Exception:
            logger.exception("notification outbox write failed for %s", event_type)
            return None


event_bus = EventBus()
