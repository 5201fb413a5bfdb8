"""Reverse-order deprovisioning."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog

from deploykit.domain.errors import (
    ConfigurationError,
    ProviderError,
    RunCancelled,
    TeardownError,
    TemplateError,
)
from deploykit.domain.models.base import generate_id, utc_now
from deploykit.domain.models.config import DeploymentConfig
from deploykit.domain.models.plan import DeploymentPlan
from deploykit.domain.models.resources import ResourceRef
from deploykit.domain.models.run import (
    PlannedChange,
    RunOutcome,
    RunResult,
    StageName,
    StageResult,
    StageStatus,
)
from deploykit.domain.ports.providers import Providers
from deploykit.domain.services.config_resolver import check_cluster_reachable, ConfigResolver
from deploykit.domain.services.template_processor import ManifestBundle, TemplateProcessor


logger = structlog.get_logger(__name__)

TEARDOWN_ORDER: tuple[StageName, ...] = (
    StageName.SERVICES,
    StageName.DATASTORE,
    StageName.IDENTITY,
    StageName.SECRETS,
)

Deletion = tuple[str, Callable[[], Awaitable[bool]]]


class TeardownController:
    """Removes what a deploy created: services, datastore, identities, secrets.

    Deletion of something already absent counts as success, so teardown can
    be repeated after a partial failure. Any other provider failure stops the
    teardown with :class:`TeardownError`, leaving the remaining stages intact.
    """

    def __init__(
        self,
        providers: Providers,
        plan: DeploymentPlan,
        template_processor: TemplateProcessor,
        *,
        config_resolver: ConfigResolver | None = None,
    ) -> None:
        self._providers = providers
        self._plan = plan
        self._template_processor = template_processor
        self._config_resolver = config_resolver

    async def run(
        self, raw_config: Mapping[str, str], cancel_event: asyncio.Event | None = None
    ) -> RunResult:
        cancel_event = cancel_event or asyncio.Event()
        run_id = generate_id()
        started_at = utc_now()
        logger.info("teardown_started", run_id=run_id)

        results: list[StageResult] = []
        outcome = RunOutcome.SUCCEEDED
        error = ""

        resolver = self._config_resolver or ConfigResolver(self._providers.identity)
        try:
            config = await resolver.resolve(raw_config)
            await check_cluster_reachable(self._providers.cluster)
            bundle = self._template_processor.render(config)
        except ConfigurationError as e:
            outcome, error = RunOutcome.CONFIGURATION_ERROR, str(e)
            results.append(StageResult(stage=StageName.CONFIG, status=StageStatus.FAILED, error=error))
        except TemplateError as e:
            outcome, error = RunOutcome.FAILED, str(e)
            results.append(StageResult(stage=StageName.TEMPLATES, status=StageStatus.FAILED, error=error))
        else:
            for stage in TEARDOWN_ORDER:
                if outcome != RunOutcome.SUCCEEDED:
                    results.append(StageResult(stage=stage, status=StageStatus.NOT_STARTED))
                    continue
                started = time.monotonic()
                removed: list[PlannedChange] = []
                try:
                    for resource, delete in self._deletions(stage, config, bundle):
                        if cancel_event.is_set():
                            raise RunCancelled("Teardown cancelled")
                        removed.append(await self._delete(stage, resource, delete))
                except RunCancelled as e:
                    outcome, error = RunOutcome.CANCELLED, str(e)
                    status = StageStatus.CANCELLED
                except (TeardownError, TemplateError) as e:
                    logger.error("teardown_failed", run_id=run_id, stage=stage.value, error=str(e))
                    outcome, error = RunOutcome.FAILED, f"{stage.value}: {e}"
                    status = StageStatus.FAILED
                else:
                    deleted = any(change.action == "delete" for change in removed)
                    status = StageStatus.SUCCEEDED if deleted else StageStatus.ALREADY_SATISFIED
                results.append(StageResult(
                    stage=stage,
                    status=status,
                    changes=removed,
                    error=error if status == StageStatus.FAILED else "",
                    duration_seconds=round(time.monotonic() - started, 3),
                ))
                logger.info("teardown_stage_finished", stage=stage.value, status=status.value)

        result = RunResult(
            outcome=outcome,
            stages=results,
            error=error,
            started_at=started_at,
            finished_at=utc_now(),
        )
        logger.info("teardown_finished", run_id=run_id, outcome=outcome.value)
        return result

    async def _delete(
        self, stage: StageName, resource: str, delete: Callable[[], Awaitable[bool]]
    ) -> PlannedChange:
        try:
            existed = await delete()
        except ProviderError as e:
            raise TeardownError(
                f"Could not delete: {e}", stage=stage.value, resource=resource
            ) from e
        if existed:
            logger.info("resource_deleted", stage=stage.value, resource=resource)
            return PlannedChange(action="delete", resource=resource)
        logger.info("resource_already_absent", stage=stage.value, resource=resource)
        return PlannedChange(action="absent", resource=resource, detail="already absent")

    def _deletions(
        self, stage: StageName, config: DeploymentConfig, bundle: ManifestBundle
    ) -> list[Deletion]:
        """Deletion calls for one stage, dependents before their dependencies."""
        plan = self._plan
        namespace = config.namespace
        if stage == StageName.SERVICES:
            manifests: list[dict[str, Any]] = []
            for service in reversed(plan.services):
                manifests.extend(reversed(bundle.load_manifests(service.manifests, namespace)))
            manifests.extend(reversed(bundle.load_manifests(plan.shared_manifests, namespace)))
            return [self._manifest_deletion(m) for m in manifests]

        if stage == StageName.DATASTORE:
            deletions: list[Deletion] = []
            if plan.datastore is not None:
                deletions.extend(
                    self._manifest_deletion(m)
                    for m in reversed(bundle.load_manifests(plan.datastore.manifests, namespace))
                )
            deletions.extend(
                self._manifest_deletion(m)
                for m in reversed(bundle.load_manifests(plan.external_secrets_manifests, namespace))
            )
            for cluster_name in sorted(plan.cluster_secrets, reverse=True):
                ref = ResourceRef(kind="Secret", name=cluster_name, namespace=namespace)
                deletions.append((str(ref), self._cluster_delete(ref)))
            return deletions

        if stage == StageName.IDENTITY:
            roles = self._providers.roles
            return [
                (f"role/{binding.role_name}", _bind(roles.delete_role, binding.role_name))
                for binding in reversed(plan.roles)
            ]

        secrets = self._providers.secrets
        return [
            (f"secret/{spec.name}", _bind(secrets.delete, spec.name))
            for spec in reversed(plan.secrets)
        ]

    def _manifest_deletion(self, manifest: dict[str, Any]) -> Deletion:
        ref = ResourceRef.from_manifest(manifest)
        return str(ref), self._cluster_delete(ref)

    def _cluster_delete(self, ref: ResourceRef) -> Callable[[], Awaitable[bool]]:
        return _bind(self._providers.cluster.delete, ref)


def _bind(call: Callable[[Any], Awaitable[bool]], argument: Any) -> Callable[[], Awaitable[bool]]:
    async def _call() -> bool:
        return await call(argument)

    return _call
