from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

import structlog
from sqlmodel import Session

from app.domain.models import EventEnvelope, EventRecord
from app.infra.db import engine

EventHandler = Callable[[EventEnvelope], None]

TENANT_CREATED = "tenant.created"
TENANT_SUSPENDED = "tenant.suspended"
TENANT_ACTIVATED = "tenant.activated"
TENANT_DEACTIVATED = "tenant.deactivated"
TENANT_ARCHIVED = "tenant.archived"
TENANT_PROVISIONED = "tenant.provisioned"
TENANT_DEPROVISIONED = "tenant.deprovisioned"
SUBSCRIPTION_CREATED = "billing.subscription.created"
SUBSCRIPTION_PLAN_CHANGED = "billing.subscription.plan_changed"
SUBSCRIPTION_CANCELLED = "billing.subscription.cancelled"

logger = structlog.get_logger(__name__)


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._subscribers and handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def publish(self, event: EventEnvelope, session: Session | None = None) -> None:
        should_commit = session is None
        if session is None:
            session = Session(engine)
        try:
            record = EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
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

        logger.debug("event.published", event_type=event.event_type, tenant_id=event.tenant_id)
        handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
        for handler in handlers:
            handler(event)

    def publish_dict(
        self,
        event_type: str,
        tenant_id: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
    ) -> EventEnvelope:
        event = EventEnvelope(
            event_type=event_type,
            tenant_id=tenant_id,
            actor_id=actor_id,
            payload=payload,
        )
        self.publish(event)
        return event


event_bus = EventBus()
