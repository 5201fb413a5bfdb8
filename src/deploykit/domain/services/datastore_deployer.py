"""Datastore stage: in-cluster secrets, datastore manifests, readiness wait."""

from __future__ import annotations

import base64
from typing import Any

import structlog

from deploykit.domain.errors import ApplyError, DependencyError, ProviderError
from deploykit.domain.models.plan import DatastoreSpec
from deploykit.domain.models.resources import Readiness, ResourceRef
from deploykit.domain.models.run import ServiceStatus, StageName
from deploykit.domain.services.readiness import ReadinessPoller
from deploykit.domain.services.stage import Action, plan_manifest_actions, RunContext, Stage


logger = structlog.get_logger(__name__)


def cluster_secret_manifest(name: str, namespace: str, values: dict[str, str]) -> dict[str, Any]:
    """Kubernetes-style Secret manifest with base64 encoded data, keys sorted."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": {"name": name, "namespace": namespace},
        "data": {
            key: base64.b64encode(values[key].encode("utf-8")).decode("ascii")
            for key in sorted(values)
        },
    }


class StatefulStoreDeployer(Stage):
    """Applies the datastore and blocks until it answers its readiness predicate.

    State machine per wait: applying -> waiting_ready -> ready | timed_out.
    A timeout is surfaced, never retried: indefinite retry would mask a
    crash-looping datastore.
    """

    name = StageName.DATASTORE

    def __init__(self, spec: DatastoreSpec | None) -> None:
        self._spec = spec

    async def check(self, ctx: RunContext) -> list[Action]:
        actions = await self._plan_cluster_secrets(ctx)
        if self._spec is not None:
            manifests = ctx.bundle.load_manifests(self._spec.manifests, ctx.config.namespace)
            actions.extend(await plan_manifest_actions(
                ctx, manifests, stage=self.name, error_type=ApplyError,
            ))
        return actions

    async def _plan_cluster_secrets(self, ctx: RunContext) -> list[Action]:
        plan = ctx.plan
        if ctx.options.use_external_secrets:
            if not plan.external_secrets_manifests:
                return []
            manifests = ctx.bundle.load_manifests(
                plan.external_secrets_manifests, ctx.config.namespace
            )
            return await plan_manifest_actions(
                ctx, manifests, stage=self.name, error_type=DependencyError,
            )

        manifests = []
        for cluster_name, store_name in sorted(plan.cluster_secrets.items()):
            values = await self._read_store_secret(ctx, store_name)
            manifests.append(cluster_secret_manifest(cluster_name, ctx.config.namespace, values))
        return await plan_manifest_actions(
            ctx, manifests, stage=self.name, error_type=DependencyError,
        )

    async def _read_store_secret(self, ctx: RunContext, store_name: str) -> dict[str, str]:
        store = ctx.providers.secrets
        try:
            if await store.exists(store_name):
                return await store.get(store_name)
        except ProviderError as e:
            raise DependencyError(
                f"Cannot read secret from store: {e}",
                stage=self.name.value,
                resource=store_name,
            ) from e
        raise DependencyError(
            "Secret not found in the secret store; provision secrets first",
            stage=self.name.value,
            resource=store_name,
        )

    async def wait_ready(self, ctx: RunContext) -> list[ServiceStatus]:
        if ctx.options.use_external_secrets and ctx.plan.cluster_secrets:
            await self._wait_for_synced_secrets(ctx)
        if self._spec is None:
            return []

        spec = self._spec
        ref = spec.readiness
        if ref.namespace is None:
            ref = ref.model_copy(update={"namespace": ctx.config.namespace})
        poller = ReadinessPoller(
            str(ref),
            interval=spec.poll_interval_seconds or ctx.timeouts.datastore_interval,
            timeout=(
                spec.timeout_seconds
                if spec.timeout_seconds is not None
                else ctx.timeouts.datastore_timeout
            ),
            cancel_event=ctx.cancel_event,
            stage=self.name.value,
        )
        await poller.wait(lambda: self._probe(ctx, ref, spec.ping_command))
        return []

    async def _probe(self, ctx: RunContext, ref: ResourceRef, ping: list[str]) -> Readiness:
        cluster = ctx.providers.cluster
        readiness = await cluster.get_readiness(ref)
        if not readiness.ready or not ping:
            return readiness
        ok, output = await cluster.exec_command(ref, ping)
        if not ok:
            return Readiness(ready=False, detail=f"ping failed: {output.strip()[:200]}")
        return readiness

    async def _wait_for_synced_secrets(self, ctx: RunContext) -> None:
        cluster = ctx.providers.cluster
        for cluster_name in sorted(ctx.plan.cluster_secrets):
            ref = ResourceRef(kind="Secret", name=cluster_name, namespace=ctx.config.namespace)
            poller = ReadinessPoller(
                str(ref),
                interval=ctx.timeouts.datastore_interval,
                timeout=ctx.timeouts.secret_sync_timeout,
                cancel_event=ctx.cancel_event,
                stage=self.name.value,
            )
            await poller.wait(lambda ref=ref: cluster.get_readiness(ref))
            logger.info("external_secret_synced", secret=str(ref))
