"""Run lifecycle domain events."""

from __future__ import annotations

from deploykit.domain.models.base import DomainEvent


class RunStarted(DomainEvent):
    """Emitted when the orchestrator begins a deploy run."""

    run_id: str
    dry_run: bool = False
    event_type: str = "run.started"


class StageStarted(DomainEvent):
    """Emitted immediately before a stage runs its idempotency check."""

    run_id: str
    stage: str
    event_type: str = "stage.started"


class StageFinished(DomainEvent):
    """Emitted when a stage reaches a terminal status, including skips."""

    run_id: str
    stage: str
    status: str
    change_count: int = 0
    error_message: str = ""
    event_type: str = "stage.finished"


class RunFinished(DomainEvent):
    """Emitted once the run result has been assembled."""

    run_id: str
    outcome: str
    event_type: str = "run.finished"
