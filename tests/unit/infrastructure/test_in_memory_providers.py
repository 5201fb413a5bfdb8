"""Unit tests for the simulated providers."""

from __future__ import annotations

import pytest

from deploykit.domain.errors import ProviderError
from deploykit.domain.models.resources import Readiness, ResourceRef, ServiceIdentity
from deploykit.infrastructure.providers.in_memory import (
    CallJournal,
    InMemoryClusterApi,
    InMemoryIdentityProvider,
    InMemoryRoleStore,
    InMemorySecretStore,
    simulated_providers,
)


DEPLOYMENT = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {"name": "api", "namespace": "prod"},
    "spec": {"replicas": 3},
}
API = ResourceRef(kind="Deployment", name="api", namespace="prod")


class TestCallJournal:
    def test_mutations_filter_reads(self) -> None:
        journal = CallJournal()
        journal.record("secrets.exists", "secret/a")
        journal.record("secrets.create", "secret/a")
        assert journal.calls == [("secrets.exists", "secret/a"), ("secrets.create", "secret/a")]
        assert journal.mutations == [("secrets.create", "secret/a")]
        journal.clear()
        assert journal.calls == []


class TestInMemoryIdentityProvider:
    @pytest.mark.asyncio
    async def test_transient_failures(self) -> None:
        provider = InMemoryIdentityProvider("111122223333", failures=1)
        with pytest.raises(ProviderError):
            await provider.who_am_i()
        assert await provider.who_am_i() == "111122223333"
        assert provider.calls == 2


class TestInMemorySecretStore:
    @pytest.mark.asyncio
    async def test_lifecycle(self) -> None:
        store = InMemorySecretStore()
        assert await store.exists("app") is False
        await store.create("app", {"user": "admin"})
        with pytest.raises(ProviderError, match="already exists"):
            await store.create("app", {"user": "other"})
        await store.update("app", {"user": "root"})
        assert await store.get("app") == {"user": "root"}
        assert await store.delete("app") is True
        assert await store.delete("app") is False

    @pytest.mark.asyncio
    async def test_unreachable(self) -> None:
        store = InMemorySecretStore()
        store.unreachable = True
        with pytest.raises(ProviderError, match="unreachable"):
            await store.exists("app")


class TestInMemoryRoleStore:
    @pytest.mark.asyncio
    async def test_upsert_keeps_attached_policies(self) -> None:
        roles = InMemoryRoleStore("111122223333")
        role_id = await roles.upsert_role("app", {"Version": "1"})
        assert role_id == "arn:aws:iam::111122223333:role/app"
        await roles.attach_policy("app", "arn:policy/a")
        await roles.attach_policy("app", "arn:policy/a")
        await roles.upsert_role("app", {"Version": "2"})

        record = await roles.get_role("app")
        assert record is not None
        assert record.policy_arns == ["arn:policy/a"]
        assert record.trust_policy == {"Version": "2"}

    @pytest.mark.asyncio
    async def test_denied_role(self) -> None:
        roles = InMemoryRoleStore()
        roles.denied.add("app")
        with pytest.raises(ProviderError) as exc_info:
            await roles.upsert_role("app", {})
        assert exc_info.value.permission_denied is True

    @pytest.mark.asyncio
    async def test_annotations(self) -> None:
        roles = InMemoryRoleStore()
        identity = ServiceIdentity(namespace="kube-system", name="fluent-bit")
        assert await roles.get_identity_annotation(identity) is None
        await roles.annotate_identity(identity, "arn:role")
        assert await roles.get_identity_annotation(identity) == "arn:role"


class TestInMemoryClusterApi:
    @pytest.mark.asyncio
    async def test_apply_and_default_readiness(self) -> None:
        cluster = InMemoryClusterApi()
        assert (await cluster.get_readiness(API)).detail == "not found"
        assert await cluster.matches(DEPLOYMENT) is False

        await cluster.apply(DEPLOYMENT)

        assert await cluster.matches(DEPLOYMENT) is True
        readiness = await cluster.get_readiness(API)
        assert readiness.ready is True
        assert readiness.ready_replicas == 3

    @pytest.mark.asyncio
    async def test_scripted_readiness_repeats_last(self) -> None:
        cluster = InMemoryClusterApi()
        cluster.script_readiness(API, [Readiness(ready=False), Readiness(ready=True)])
        assert (await cluster.get_readiness(API)).ready is False
        assert (await cluster.get_readiness(API)).ready is True
        assert (await cluster.get_readiness(API)).ready is True

    @pytest.mark.asyncio
    async def test_rejected_kind(self) -> None:
        cluster = InMemoryClusterApi()
        cluster.rejected_kinds.add("Deployment")
        with pytest.raises(ProviderError, match="denied"):
            await cluster.apply(DEPLOYMENT)
        assert cluster.objects == []

    @pytest.mark.asyncio
    async def test_unreachable_cluster(self) -> None:
        journal = CallJournal()
        cluster = InMemoryClusterApi(journal)
        await cluster.check_reachable()
        cluster.reachable = False
        with pytest.raises(ProviderError, match="Unable to connect"):
            await cluster.check_reachable()
        assert journal.mutations == []

    @pytest.mark.asyncio
    async def test_http_and_exec(self) -> None:
        cluster = InMemoryClusterApi()
        service = ResourceRef(kind="Service", name="api", namespace="prod")
        assert await cluster.probe_http(service, "/health", 80) == 200
        cluster.set_http_status("api", 503)
        assert await cluster.probe_http(service, "/health", 80) == 503
        assert await cluster.exec_command(API, ["true"]) == (True, "PONG")


class TestSimulatedProviders:
    @pytest.mark.asyncio
    async def test_shared_journal(self) -> None:
        providers, journal = simulated_providers()
        await providers.secrets.create("app", {"k": "v"})
        await providers.cluster.apply(DEPLOYMENT)
        assert journal.mutations == [
            ("secrets.create", "secret/app"),
            ("cluster.apply", "Deployment/prod/api"),
        ]
