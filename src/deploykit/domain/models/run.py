"""Stage ordering and run result models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field

from deploykit.domain.models.base import utc_now, ValueObject


class StageName(str, Enum):
    """Pipeline stages in execution order."""

    CONFIG = "config"
    TEMPLATES = "templates"
    SECRETS = "secrets"
    IDENTITY = "identity"
    DATASTORE = "datastore"
    SERVICES = "services"


STAGE_ORDER: tuple[StageName, ...] = tuple(StageName)

STAGE_PREDECESSORS: dict[StageName, tuple[StageName, ...]] = {
    StageName.CONFIG: (),
    StageName.TEMPLATES: (StageName.CONFIG,),
    StageName.SECRETS: (StageName.TEMPLATES,),
    StageName.IDENTITY: (StageName.SECRETS,),
    StageName.DATASTORE: (StageName.IDENTITY,),
    StageName.SERVICES: (StageName.DATASTORE,),
}

SKIPPABLE_STAGES: frozenset[StageName] = frozenset({
    StageName.SECRETS,
    StageName.IDENTITY,
    StageName.DATASTORE,
    StageName.SERVICES,
})


class StageStatus(str, Enum):
    """Per-stage status recorded in the run result."""

    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALREADY_SATISFIED = "already_satisfied"
    CANCELLED = "cancelled"
    NOT_STARTED = "not_started"

    @property
    def satisfies_dependents(self) -> bool:
        return self in {
            StageStatus.SUCCEEDED,
            StageStatus.ALREADY_SATISFIED,
            StageStatus.SKIPPED,
        }


class RunOutcome(str, Enum):
    """Overall outcome of a run, mapped onto the process exit code."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CONFIGURATION_ERROR = "configuration_error"
    CANCELLED = "cancelled"

    @property
    def exit_code(self) -> int:
        return RUN_EXIT_CODES[self]


RUN_EXIT_CODES: dict[RunOutcome, int] = {
    RunOutcome.SUCCEEDED: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.CONFIGURATION_ERROR: 2,
    RunOutcome.CANCELLED: 130,
}


class PlannedChange(ValueObject):
    """One mutation a stage needs (or would need, in dry-run) to perform."""

    action: str  # "create", "update", "apply", "annotate", "attach", "delete"
    resource: str
    detail: str = ""

    def __str__(self) -> str:
        text = f"{self.action} {self.resource}"
        return f"{text} ({self.detail})" if self.detail else text


class ServiceStatus(ValueObject):
    """Rollout outcome for one stateless service."""

    name: str
    status: StageStatus
    ready_replicas: int | None = None
    desired_replicas: int | None = None
    detail: str = ""


class StageResult(ValueObject):
    """What happened to one stage."""

    stage: StageName
    status: StageStatus
    changes: list[PlannedChange] = Field(default_factory=list)
    services: list[ServiceStatus] = Field(default_factory=list)
    error: str = ""
    duration_seconds: float = 0.0


class RunResult(ValueObject):
    """Immutable record of one orchestrator (or teardown) invocation."""

    outcome: RunOutcome
    stages: list[StageResult]
    dry_run: bool = False
    error: str = ""
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime = Field(default_factory=utc_now)

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    def stage(self, name: StageName) -> StageResult | None:
        for result in self.stages:
            if result.stage == name:
                return result
        return None

    def status_of(self, name: StageName) -> StageStatus | None:
        result = self.stage(name)
        return result.status if result else None

    @property
    def planned_changes(self) -> list[PlannedChange]:
        return [change for result in self.stages for change in result.changes]
