"""Base domain model classes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def generate_id() -> str:
    """Generate a unique identifier."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class ValueObject(BaseModel):
    """Base class for value objects (immutable, unknown fields rejected)."""

    model_config = {"frozen": True, "extra": "forbid"}


class DomainEvent(BaseModel):
    """Base class for run lifecycle events."""

    event_id: str = Field(default_factory=generate_id)
    event_type: str = ""
    occurred_at: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe payload handed to the event publisher."""
        return self.model_dump(mode="json")
