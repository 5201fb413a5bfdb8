"""Services stage: roll out stateless services and verify them concurrently."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from deploykit.domain.errors import (
    ApplyError,
    ProviderError,
    ReadinessTimeoutError,
    RolloutTimeoutError,
    RunCancelled,
)
from deploykit.domain.models.plan import RoleBinding, ServiceSpec
from deploykit.domain.models.resources import Readiness, ResourceRef
from deploykit.domain.models.run import ServiceStatus, StageName, StageStatus
from deploykit.domain.services.identity_binder import verify_bindings
from deploykit.domain.services.readiness import ReadinessPoller
from deploykit.domain.services.stage import Action, plan_manifest_actions, RunContext, Stage


logger = structlog.get_logger(__name__)


def desired_replicas(
    service: ServiceSpec, manifests: list[dict[str, Any]], ref: ResourceRef
) -> int | None:
    """Replica count from the plan, else from the workload's own manifest."""
    if service.replicas is not None:
        return service.replicas
    for manifest in manifests:
        if ResourceRef.from_manifest(manifest) == ref:
            replicas = (manifest.get("spec") or {}).get("replicas")
            if isinstance(replicas, int):
                return replicas
    return None


class RolloutController(Stage):
    """Applies every service, then waits for all of them in parallel.

    One service failing does not stop the others from being verified. The
    stage fails with :class:`RolloutTimeoutError` naming every unready
    service; services that did become ready are left running.
    """

    name = StageName.SERVICES

    def __init__(self, services: list[ServiceSpec], bindings: list[RoleBinding] | None = None) -> None:
        self._services = services
        self._bindings = bindings or []

    def _manifests(self, ctx: RunContext, service: ServiceSpec) -> list[dict[str, Any]]:
        return ctx.bundle.load_manifests(service.manifests, ctx.config.namespace)

    async def check(self, ctx: RunContext) -> list[Action]:
        if self._bindings and StageName.IDENTITY not in ctx.options.skip:
            await verify_bindings(ctx.providers.roles, self._bindings, stage=self.name)

        actions: list[Action] = []
        if ctx.plan.shared_manifests:
            shared = ctx.bundle.load_manifests(ctx.plan.shared_manifests, ctx.config.namespace)
            actions.extend(await plan_manifest_actions(
                ctx, shared, stage=self.name, error_type=ApplyError,
            ))
        for service in self._services:
            actions.extend(await plan_manifest_actions(
                ctx, self._manifests(ctx, service), stage=self.name, error_type=ApplyError,
            ))
        return actions

    async def wait_ready(self, ctx: RunContext) -> list[ServiceStatus]:
        statuses = list(await asyncio.gather(
            *(self._await_service(ctx, service) for service in self._services)
        ))
        if any(status.status == StageStatus.CANCELLED for status in statuses):
            raise RunCancelled("Cancelled while waiting for services")

        unready = [status.name for status in statuses if status.status != StageStatus.SUCCEEDED]
        if unready:
            raise RolloutTimeoutError(
                unready,
                services=statuses,
                last_state="; ".join(
                    f"{status.name}: {status.detail}" for status in statuses if status.name in unready
                ),
            )
        return statuses

    async def _await_service(self, ctx: RunContext, service: ServiceSpec) -> ServiceStatus:
        """Poll one service. Never raises; the outcome is in the returned status."""
        namespace = ctx.config.namespace
        ref = service.workload_ref(namespace)
        if ref.namespace is None:
            ref = ref.model_copy(update={"namespace": namespace})
        desired = desired_replicas(service, self._manifests(ctx, service), ref)

        poller = ReadinessPoller(
            str(ref),
            interval=ctx.timeouts.service_interval,
            timeout=(
                service.timeout_seconds
                if service.timeout_seconds is not None
                else ctx.timeouts.service_timeout
            ),
            cancel_event=ctx.cancel_event,
            stage=self.name.value,
        )
        try:
            observed = await poller.wait(lambda: self._probe(ctx, service, ref, desired))
        except ReadinessTimeoutError as e:
            last = poller.last_observation
            logger.warning("service_not_ready", service=service.name, last_state=e.last_state)
            return ServiceStatus(
                name=service.name,
                status=StageStatus.FAILED,
                ready_replicas=last.ready_replicas if last else None,
                desired_replicas=last.desired_replicas if last else desired,
                detail=e.last_state or "not ready",
            )
        except RunCancelled:
            return ServiceStatus(name=service.name, status=StageStatus.CANCELLED, detail="cancelled")

        logger.info("service_ready", service=service.name, attempts=poller.attempts)
        return ServiceStatus(
            name=service.name,
            status=StageStatus.SUCCEEDED,
            ready_replicas=observed.ready_replicas,
            desired_replicas=observed.desired_replicas,
            detail=observed.detail,
        )

    async def _probe(
        self, ctx: RunContext, service: ServiceSpec, ref: ResourceRef, desired: int | None
    ) -> Readiness:
        cluster = ctx.providers.cluster
        observed = await cluster.get_readiness(ref)
        want = desired
        if want is None:
            want = observed.desired_replicas if observed.desired_replicas is not None else 1
        if observed.ready and observed.ready_replicas is None:
            have = want
        else:
            have = observed.ready_replicas or 0
        if have != want or not observed.ready:
            return Readiness(
                ready=False,
                detail=observed.detail or f"{have}/{want} replicas ready",
                ready_replicas=have,
                desired_replicas=want,
            )

        check = service.health_check
        if check is not None:
            target = ResourceRef(kind="Service", name=service.name, namespace=ref.namespace)
            try:
                status = await cluster.probe_http(target, check.path, check.port)
            except ProviderError as e:
                status = None
                detail = f"health check error: {e}"
            else:
                detail = f"health check {check.path} returned {status}"
            if status != check.expected_status:
                return Readiness(
                    ready=False, detail=detail, ready_replicas=have, desired_replicas=want
                )

        return Readiness(
            ready=True,
            detail=f"{have}/{want} replicas ready",
            ready_replicas=have,
            desired_replicas=want,
        )
