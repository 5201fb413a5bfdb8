"""Unit tests for event publisher."""

from __future__ import annotations

import pytest

from deploykit.domain.events import StageFinished
from deploykit.infrastructure.messaging.event_publisher import InMemoryEventPublisher


class TestInMemoryEventPublisher:
    @pytest.mark.asyncio
    async def test_publish(self) -> None:
        publisher = InMemoryEventPublisher()
        await publisher.publish("stage.started", {"stage": "secrets"})
        assert len(publisher.published_events) == 1
        assert publisher.published_events[0] == ("stage.started", {"stage": "secrets"})

    @pytest.mark.asyncio
    async def test_domain_event_payload(self) -> None:
        publisher = InMemoryEventPublisher()
        event = StageFinished(run_id="run-1", stage="datastore", status="failed")
        await publisher.publish(event.event_type, event.to_payload())

        [payload] = publisher.of_type("stage.finished")
        assert payload["stage"] == "datastore"
        assert payload["status"] == "failed"
        assert payload["run_id"] == "run-1"

    @pytest.mark.asyncio
    async def test_of_type(self) -> None:
        publisher = InMemoryEventPublisher()
        await publisher.publish("stage.started", {"stage": "secrets"})
        await publisher.publish("stage.finished", {"stage": "secrets"})
        await publisher.publish("stage.started", {"stage": "identity"})
        assert [e["stage"] for e in publisher.of_type("stage.started")] == ["secrets", "identity"]
