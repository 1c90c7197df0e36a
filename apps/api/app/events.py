from __future__ import annotations

from typing import Any

from app.context import get_build_id, get_correlation_id
from app.core.events import event_bus

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> int:
    """Fill in request context, keep a copy for inspection and fan out to bus subscribers."""
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("build_id") is None:
        envelope["build_id"] = get_build_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        return 0
    return event_bus.publish(event_type, envelope)

