"""Unit tests for the datastore stage."""

from __future__ import annotations

import base64
import time
from collections.abc import Callable

import pytest

from deploykit.domain.errors import ApplyError, DependencyError, ReadinessTimeoutError
from deploykit.domain.models.plan import DeploymentPlan
from deploykit.domain.models.resources import Readiness, ResourceRef
from deploykit.domain.ports.providers import Providers
from deploykit.domain.services.datastore_deployer import (
    cluster_secret_manifest,
    StatefulStoreDeployer,
)
from deploykit.domain.services.stage import RunContext
from deploykit.infrastructure.providers.in_memory import InMemoryClusterApi, InMemorySecretStore


MONGODB = ResourceRef(kind="StatefulSet", name="mongodb", namespace="prod")

ContextFactory = Callable[..., RunContext]


@pytest.fixture
def seeded(providers: Providers) -> Providers:
    store = providers.secrets
    assert isinstance(store, InMemorySecretStore)
    store.seed("eventsphere/mongodb", {"username": "admin", "password": "p" * 32, "uri": "mongodb://x"})
    store.seed("eventsphere/jwt", {"jwt_secret": "j" * 48})
    return providers


def cluster_of(providers: Providers) -> InMemoryClusterApi:
    cluster = providers.cluster
    assert isinstance(cluster, InMemoryClusterApi)
    return cluster


class TestClusterSecretManifest:
    def test_base64_data_sorted(self) -> None:
        manifest = cluster_secret_manifest("app", "prod", {"b": "2", "a": "1"})
        assert manifest["kind"] == "Secret"
        assert manifest["metadata"] == {"name": "app", "namespace": "prod"}
        assert list(manifest["data"]) == ["a", "b"]
        assert base64.b64decode(manifest["data"]["a"]) == b"1"


class TestStatefulStoreDeployer:
    @pytest.mark.asyncio
    async def test_applies_secrets_then_manifests_and_waits(
        self, seeded: Providers, plan: DeploymentPlan, make_context: ContextFactory
    ) -> None:
        stage = StatefulStoreDeployer(plan.datastore)
        ctx = make_context()
        actions = await stage.check(ctx)
        assert [a.change.resource for a in actions] == [
            "Secret/prod/auth-service-secret",
            "Secret/prod/mongodb-secret",
            "Service/prod/mongodb",
            "StatefulSet/prod/mongodb",
        ]
        await stage.apply(ctx, actions)
        await stage.wait_ready(ctx)

        secret = cluster_of(seeded).get_object(
            ResourceRef(kind="Secret", name="mongodb-secret", namespace="prod")
        )
        assert secret is not None
        assert base64.b64decode(secret["data"]["username"]) == b"admin"
        assert await stage.check(ctx) == []

    @pytest.mark.asyncio
    async def test_missing_store_secret_fails(
        self, providers: Providers, plan: DeploymentPlan, make_context: ContextFactory
    ) -> None:
        with pytest.raises(DependencyError, match="secret store") as exc_info:
            await StatefulStoreDeployer(plan.datastore).check(make_context())
        assert exc_info.value.resource in {"eventsphere/mongodb", "eventsphere/jwt"}

    @pytest.mark.asyncio
    async def test_never_ready_times_out_within_bounds(
        self, seeded: Providers, plan: DeploymentPlan, make_context: ContextFactory
    ) -> None:
        cluster_of(seeded).script_readiness(
            MONGODB, [Readiness(ready=False, detail="CrashLoopBackOff")]
        )
        stage = StatefulStoreDeployer(plan.datastore)
        ctx = make_context()
        await stage.apply(ctx, await stage.check(ctx))

        started = time.monotonic()
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await stage.wait_ready(ctx)
        elapsed = time.monotonic() - started

        timeout = ctx.timeouts.datastore_timeout
        assert timeout <= elapsed < timeout + ctx.timeouts.datastore_interval + 0.1
        assert exc_info.value.last_state == "CrashLoopBackOff"
        assert exc_info.value.resource == str(MONGODB)

    @pytest.mark.asyncio
    async def test_failed_ping_is_not_ready(
        self, seeded: Providers, plan: DeploymentPlan, make_context: ContextFactory
    ) -> None:
        cluster_of(seeded).set_exec_result(MONGODB, False, "MongoNetworkError: connection refused")
        stage = StatefulStoreDeployer(plan.datastore)
        ctx = make_context()
        await stage.apply(ctx, await stage.check(ctx))
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await stage.wait_ready(ctx)
        assert "ping failed" in (exc_info.value.last_state or "")

    @pytest.mark.asyncio
    async def test_rejected_manifest(
        self, seeded: Providers, plan: DeploymentPlan, make_context: ContextFactory
    ) -> None:
        cluster_of(seeded).rejected_kinds.add("StatefulSet")
        stage = StatefulStoreDeployer(plan.datastore)
        ctx = make_context()
        with pytest.raises(ApplyError) as exc_info:
            await stage.apply(ctx, await stage.check(ctx))
        assert exc_info.value.resource == str(MONGODB)

    @pytest.mark.asyncio
    async def test_external_secrets_mode(
        self, providers: Providers, plan: DeploymentPlan, make_context: ContextFactory
    ) -> None:
        stage = StatefulStoreDeployer(None)
        ctx = make_context(use_external_secrets=True)
        actions = await stage.check(ctx)
        assert [a.change.resource for a in actions] == ["ExternalSecret/prod/mongodb-secret"]
        await stage.apply(ctx, actions)

        # Stand in for the operator syncing both secrets.
        cluster = cluster_of(providers)
        for name in ("mongodb-secret", "auth-service-secret"):
            await cluster.apply(cluster_secret_manifest(name, "prod", {"k": "v"}))
        await stage.wait_ready(ctx)

    @pytest.mark.asyncio
    async def test_external_secrets_never_synced(
        self, providers: Providers, plan: DeploymentPlan, make_context: ContextFactory
    ) -> None:
        stage = StatefulStoreDeployer(None)
        ctx = make_context(use_external_secrets=True)
        await stage.apply(ctx, await stage.check(ctx))
        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await stage.wait_ready(ctx)
        assert exc_info.value.resource == "Secret/prod/auth-service-secret"
