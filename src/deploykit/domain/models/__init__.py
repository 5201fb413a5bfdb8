"""Domain models package."""

from deploykit.domain.models.base import (
    DomainEvent,
    generate_id,
    utc_now,
    ValueObject,
)
from deploykit.domain.models.config import DeploymentConfig, FIELD_ALIASES
from deploykit.domain.models.plan import (
    DatastoreSpec,
    DeploymentPlan,
    DerivePolicy,
    GeneratePolicy,
    HealthCheck,
    LiteralPolicy,
    MIN_GENERATED_LENGTH,
    RoleBinding,
    RoleRecord,
    SecretSpec,
    ServiceSpec,
)
from deploykit.domain.models.resources import Readiness, ResourceRef, ServiceIdentity
from deploykit.domain.models.run import (
    PlannedChange,
    RUN_EXIT_CODES,
    RunOutcome,
    RunResult,
    ServiceStatus,
    SKIPPABLE_STAGES,
    STAGE_ORDER,
    STAGE_PREDECESSORS,
    StageName,
    StageResult,
    StageStatus,
)


__all__ = [
    "DatastoreSpec",
    "DeploymentConfig",
    "DeploymentPlan",
    "DerivePolicy",
    "DomainEvent",
    "FIELD_ALIASES",
    "GeneratePolicy",
    "HealthCheck",
    "LiteralPolicy",
    "MIN_GENERATED_LENGTH",
    "PlannedChange",
    "RUN_EXIT_CODES",
    "Readiness",
    "ResourceRef",
    "RoleBinding",
    "RoleRecord",
    "RunOutcome",
    "RunResult",
    "SKIPPABLE_STAGES",
    "STAGE_ORDER",
    "STAGE_PREDECESSORS",
    "SecretSpec",
    "ServiceIdentity",
    "ServiceSpec",
    "ServiceStatus",
    "StageName",
    "StageResult",
    "StageStatus",
    "ValueObject",
    "generate_id",
    "utc_now",
]
