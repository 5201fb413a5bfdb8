"""Stage contract and the read-only context handed to every stage."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, ClassVar

import structlog
from pydantic import Field, field_validator

from deploykit.domain.errors import ProviderError, ProvisioningError, RunCancelled
from deploykit.domain.models.base import ValueObject
from deploykit.domain.models.config import DeploymentConfig
from deploykit.domain.models.plan import DeploymentPlan, MIN_GENERATED_LENGTH
from deploykit.domain.models.resources import ResourceRef
from deploykit.domain.models.run import PlannedChange, ServiceStatus, SKIPPABLE_STAGES, StageName
from deploykit.domain.ports.providers import ClusterApi, Providers
from deploykit.domain.services.template_processor import ManifestBundle


logger = structlog.get_logger(__name__)


class RunOptions(ValueObject):
    """Caller-selected switches for one run."""

    skip: frozenset[StageName] = frozenset()
    dry_run: bool = False
    force_regenerate: bool = False
    use_external_secrets: bool = False
    secret_values: dict[str, str] = Field(default_factory=dict)

    @field_validator("skip")
    @classmethod
    def _only_provisioning_stages(cls, value: frozenset[StageName]) -> frozenset[StageName]:
        unskippable = value - SKIPPABLE_STAGES
        if unskippable:
            names = ", ".join(sorted(stage.value for stage in unskippable))
            raise ValueError(f"stages cannot be skipped: {names}")
        return value


class Timeouts(ValueObject):
    """Polling intervals and deadlines, in seconds."""

    datastore_interval: float = 5.0
    datastore_timeout: float = 300.0
    service_interval: float = 5.0
    service_timeout: float = 300.0
    secret_sync_timeout: float = 60.0
    min_secret_length: int = MIN_GENERATED_LENGTH


class RunContext:
    """Everything a stage may read. Stages never mutate it."""

    def __init__(
        self,
        config: DeploymentConfig,
        plan: DeploymentPlan,
        bundle: ManifestBundle,
        providers: Providers,
        options: RunOptions,
        timeouts: Timeouts,
        cancel_event: asyncio.Event,
    ) -> None:
        self.config = config
        self.plan = plan
        self.bundle = bundle
        self.providers = providers
        self.options = options
        self.timeouts = timeouts
        self.cancel_event = cancel_event

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCancelled("Run cancelled")


class Action:
    """A planned change together with the call that performs it."""

    def __init__(
        self, change: PlannedChange, execute: Callable[[], Awaitable[object]]
    ) -> None:
        self.change = change
        self._execute = execute

    async def execute(self) -> None:
        await self._execute()

    def __repr__(self) -> str:
        return f"Action({self.change})"


class Stage(ABC):
    """One ordered unit of the provisioning pipeline.

    Implements the Template Method pattern: the orchestrator calls
    :meth:`check` (the idempotency check, which doubles as the dry-run diff),
    :meth:`apply` and then :meth:`wait_ready`.
    """

    name: ClassVar[StageName]

    @abstractmethod
    async def check(self, ctx: RunContext) -> list[Action]:
        """Return the actions needed to reach the desired state. Empty means satisfied."""

    async def apply(self, ctx: RunContext, actions: list[Action]) -> None:
        """Execute planned actions in order, stopping promptly on cancellation."""
        for action in actions:
            ctx.raise_if_cancelled()
            await action.execute()

    async def wait_ready(self, ctx: RunContext) -> list[ServiceStatus]:  # noqa: ARG002
        """Block until the stage's resources report healthy."""
        return []


async def plan_manifest_actions(
    ctx: RunContext,
    manifests: list[dict[str, Any]],
    *,
    stage: StageName,
    error_type: type[ProvisioningError],
) -> list[Action]:
    """One apply action per manifest whose live object differs from it."""
    cluster = ctx.providers.cluster
    actions: list[Action] = []
    for manifest in manifests:
        ref = ResourceRef.from_manifest(manifest)
        try:
            up_to_date = await cluster.matches(manifest)
        except ProviderError as e:
            raise error_type(
                f"Cannot read cluster state: {e}", stage=stage.value, resource=str(ref)
            ) from e
        if up_to_date:
            continue
        actions.append(Action(
            PlannedChange(action="apply", resource=str(ref)),
            _applier(cluster, manifest, ref, stage, error_type),
        ))
    return actions


def _applier(
    cluster: ClusterApi,
    manifest: dict[str, Any],
    ref: ResourceRef,
    stage: StageName,
    error_type: type[ProvisioningError],
) -> Callable[[], Awaitable[None]]:
    async def _apply() -> None:
        try:
            await cluster.apply(manifest)
        except ProviderError as e:
            raise error_type(
                f"Cluster rejected manifest: {e}", stage=stage.value, resource=str(ref)
            ) from e
        logger.info("manifest_applied", stage=stage.value, resource=str(ref))

    return _apply
