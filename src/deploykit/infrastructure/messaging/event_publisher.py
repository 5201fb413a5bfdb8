"""Event publisher implementations."""

from __future__ import annotations

from typing import Any

import structlog

from deploykit.domain.ports.services import EventPublisher


logger = structlog.get_logger(__name__)


class InMemoryEventPublisher(EventPublisher):
    """Keeps run lifecycle events in memory and logs each one."""

    def __init__(self) -> None:
        self._events: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self._events.append((event_type, payload))
        logger.debug("event_published", event_type=event_type, stage=payload.get("stage"))

    @property
    def published_events(self) -> list[tuple[str, dict[str, Any]]]:
        return list(self._events)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for kind, payload in self._events if kind == event_type]
