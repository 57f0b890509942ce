from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from crm_backend.context import get_correlation_id

logger = logging.getLogger("crm_backend.events")

EventHandler = Callable[[dict[str, Any]], None]

published_events: list[dict[str, Any]] = []
_subscribers: dict[str, list[EventHandler]] = defaultdict(list)


def subscribe(event_type: str, handler: EventHandler) -> None:
    if handler not in _subscribers[event_type]:
        _subscribers[event_type].append(handler)


def unsubscribe(event_type: str, handler: EventHandler) -> None:
    handlers = _subscribers.get(event_type, [])
    if handler in handlers:
        handlers.remove(handler)


def build_envelope(
    event_type: str,
    *,
    organization_id: uuid.UUID,
    actor_user_id: uuid.UUID,
    payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "organization_id": str(organization_id),
        "actor_user_id": str(actor_user_id),
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    """Record a domain event and hand it to in-process subscribers.

    Subscriber failures are logged and never propagate to the caller; the
    write that produced the event has already been committed.
    """
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        return

    for handler in list(_subscribers.get(event_type, [])):
        try:
            handler(envelope)
        except Exception as exc:
            logger.exception("event_handler_failed", extra={"event_name": event_type, "error": str(exc)[:500]})
