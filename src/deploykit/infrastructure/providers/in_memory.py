"""Simulated providers for development and testing.

Keeps secrets, roles and cluster objects in memory and records every call in
a shared journal, so tests can assert on ordering and on which calls mutated
state.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from typing import Any

import structlog

from deploykit.domain.errors import ProviderError
from deploykit.domain.models.plan import RoleRecord
from deploykit.domain.models.resources import Readiness, ResourceRef, ServiceIdentity
from deploykit.domain.ports.providers import (
    ClusterApi,
    IdentityProvider,
    Providers,
    RoleStore,
    SecretStore,
)


logger = structlog.get_logger(__name__)

DEFAULT_ACCOUNT_ID = "123456789012"

MUTATING_OPERATIONS = frozenset({
    "secrets.create",
    "secrets.update",
    "secrets.delete",
    "roles.upsert_role",
    "roles.attach_policy",
    "roles.annotate_identity",
    "roles.delete_role",
    "cluster.apply",
    "cluster.delete",
})

_WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "ReplicaSet"})


class CallJournal:
    """Ordered record of provider calls shared by one set of simulated providers."""

    def __init__(self) -> None:
        self._calls: list[tuple[str, str]] = []

    def record(self, operation: str, resource: str) -> None:
        self._calls.append((operation, resource))

    @property
    def calls(self) -> list[tuple[str, str]]:
        return list(self._calls)

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [call for call in self._calls if call[0] in MUTATING_OPERATIONS]

    def clear(self) -> None:
        self._calls.clear()


class InMemoryIdentityProvider(IdentityProvider):
    """Returns a fixed account id, optionally failing the first few calls."""

    def __init__(
        self,
        account_id: str = DEFAULT_ACCOUNT_ID,
        *,
        failures: int = 0,
        journal: CallJournal | None = None,
    ) -> None:
        self._account_id = account_id
        self._failures = failures
        self._journal = journal or CallJournal()
        self.calls = 0

    async def who_am_i(self) -> str:
        self.calls += 1
        self._journal.record("identity.who_am_i", "caller")
        if self._failures > 0:
            self._failures -= 1
            raise ProviderError("identity service unavailable")
        return self._account_id


class InMemorySecretStore(SecretStore):
    """Dictionary-backed secret store."""

    def __init__(self, journal: CallJournal | None = None) -> None:
        self._secrets: dict[str, dict[str, str]] = {}
        self._journal = journal or CallJournal()
        self.unreachable = False

    def _call(self, operation: str, name: str) -> None:
        self._journal.record(f"secrets.{operation}", f"secret/{name}")
        if self.unreachable:
            raise ProviderError("secret store unreachable")

    def seed(self, name: str, keys: dict[str, str]) -> None:
        self._secrets[name] = dict(keys)

    def snapshot(self) -> dict[str, dict[str, str]]:
        return copy.deepcopy(self._secrets)

    async def exists(self, name: str) -> bool:
        self._call("exists", name)
        return name in self._secrets

    async def get(self, name: str) -> dict[str, str]:
        self._call("get", name)
        if name not in self._secrets:
            raise ProviderError(f"secret {name} not found")
        return dict(self._secrets[name])

    async def create(self, name: str, keys: dict[str, str]) -> None:
        self._call("create", name)
        if name in self._secrets:
            raise ProviderError(f"secret {name} already exists")
        self._secrets[name] = dict(keys)

    async def update(self, name: str, keys: dict[str, str]) -> None:
        self._call("update", name)
        if name not in self._secrets:
            raise ProviderError(f"secret {name} not found")
        self._secrets[name] = dict(keys)

    async def delete(self, name: str) -> bool:
        self._call("delete", name)
        return self._secrets.pop(name, None) is not None


class InMemoryRoleStore(RoleStore):
    """Roles and service-identity annotations held in memory."""

    def __init__(
        self, account_id: str = DEFAULT_ACCOUNT_ID, journal: CallJournal | None = None
    ) -> None:
        self._account_id = account_id
        self._roles: dict[str, RoleRecord] = {}
        self._annotations: dict[ServiceIdentity, str] = {}
        self._journal = journal or CallJournal()
        self.denied: set[str] = set()

    def _call(self, operation: str, resource: str) -> None:
        self._journal.record(f"roles.{operation}", resource)

    def _check_permission(self, name: str) -> None:
        if name in self.denied:
            raise ProviderError(f"access denied for role {name}", permission_denied=True)

    async def get_role(self, name: str) -> RoleRecord | None:
        self._call("get_role", f"role/{name}")
        return self._roles.get(name)

    async def upsert_role(self, name: str, trust_policy: dict[str, Any]) -> str:
        self._call("upsert_role", f"role/{name}")
        self._check_permission(name)
        existing = self._roles.get(name)
        role_id = f"arn:aws:iam::{self._account_id}:role/{name}"
        self._roles[name] = RoleRecord(
            role_id=role_id,
            trust_policy=copy.deepcopy(trust_policy),
            policy_arns=existing.policy_arns if existing else [],
        )
        return role_id

    async def attach_policy(self, name: str, policy_arn: str) -> None:
        self._call("attach_policy", f"role/{name}")
        self._check_permission(name)
        record = self._roles.get(name)
        if record is None:
            raise ProviderError(f"role {name} not found")
        if policy_arn not in record.policy_arns:
            self._roles[name] = record.model_copy(
                update={"policy_arns": [*record.policy_arns, policy_arn]}
            )

    async def get_identity_annotation(self, identity: ServiceIdentity) -> str | None:
        self._call("get_identity_annotation", f"serviceaccount/{identity}")
        return self._annotations.get(identity)

    async def annotate_identity(self, identity: ServiceIdentity, role_id: str) -> None:
        self._call("annotate_identity", f"serviceaccount/{identity}")
        self._annotations[identity] = role_id

    async def delete_role(self, name: str) -> bool:
        self._call("delete_role", f"role/{name}")
        self._check_permission(name)
        return self._roles.pop(name, None) is not None

    @property
    def roles(self) -> dict[str, RoleRecord]:
        return dict(self._roles)


class InMemoryClusterApi(ClusterApi):
    """A cluster whose objects become ready as soon as they are applied.

    Readiness, exec results and HTTP statuses can be scripted per object to
    simulate slow, crash-looping or unhealthy workloads.
    """

    def __init__(self, journal: CallJournal | None = None) -> None:
        self._objects: dict[ResourceRef, dict[str, Any]] = {}
        self._readiness: dict[ResourceRef, list[Readiness]] = {}
        self._http_status: dict[str, int] = {}
        self._exec_results: dict[ResourceRef, tuple[bool, str]] = {}
        self._journal = journal or CallJournal()
        self.rejected_kinds: set[str] = set()
        self.reachable = True

    def _call(self, operation: str, ref: ResourceRef) -> None:
        self._journal.record(f"cluster.{operation}", str(ref))

    def script_readiness(self, ref: ResourceRef, observations: Iterable[Readiness]) -> None:
        """Return these observations in order; the last one repeats forever."""
        self._readiness[ref] = list(observations)

    def set_http_status(self, service_name: str, status: int) -> None:
        self._http_status[service_name] = status

    def set_exec_result(self, ref: ResourceRef, ok: bool, output: str = "") -> None:
        self._exec_results[ref] = (ok, output)

    def get_object(self, ref: ResourceRef) -> dict[str, Any] | None:
        return self._objects.get(ref)

    @property
    def objects(self) -> list[ResourceRef]:
        return list(self._objects)

    async def check_reachable(self) -> None:
        self._journal.record("cluster.check_reachable", "cluster")
        if not self.reachable:
            raise ProviderError("Unable to connect to the server: connection refused")

    async def apply(self, manifest: dict[str, Any]) -> None:
        ref = ResourceRef.from_manifest(manifest)
        self._call("apply", ref)
        if ref.kind in self.rejected_kinds:
            raise ProviderError(f"admission webhook denied {ref}")
        self._objects[ref] = copy.deepcopy(manifest)

    async def matches(self, manifest: dict[str, Any]) -> bool:
        ref = ResourceRef.from_manifest(manifest)
        self._call("matches", ref)
        return self._objects.get(ref) == manifest

    async def get_readiness(self, ref: ResourceRef) -> Readiness:
        self._call("get_readiness", ref)
        scripted = self._readiness.get(ref)
        if scripted:
            return scripted.pop(0) if len(scripted) > 1 else scripted[0]

        manifest = self._objects.get(ref)
        if manifest is None:
            return Readiness(ready=False, detail="not found")
        if ref.kind in _WORKLOAD_KINDS:
            replicas = (manifest.get("spec") or {}).get("replicas", 1)
            return Readiness(
                ready=True,
                detail=f"{replicas}/{replicas} replicas ready",
                ready_replicas=replicas,
                desired_replicas=replicas,
            )
        return Readiness(ready=True, detail="exists")

    async def exec_command(
        self, ref: ResourceRef, command: list[str]  # noqa: ARG002
    ) -> tuple[bool, str]:
        self._call("exec_command", ref)
        if ref in self._exec_results:
            return self._exec_results[ref]
        return True, "PONG"

    async def probe_http(self, ref: ResourceRef, path: str, port: int) -> int:  # noqa: ARG002
        self._call("probe_http", ref)
        return self._http_status.get(ref.name, 200)

    async def delete(self, ref: ResourceRef) -> bool:
        self._call("delete", ref)
        return self._objects.pop(ref, None) is not None


def simulated_providers(account_id: str = DEFAULT_ACCOUNT_ID) -> tuple[Providers, CallJournal]:
    """A fresh set of simulated providers sharing one call journal."""
    journal = CallJournal()
    providers = Providers(
        identity=InMemoryIdentityProvider(account_id, journal=journal),
        secrets=InMemorySecretStore(journal),
        roles=InMemoryRoleStore(account_id, journal),
        cluster=InMemoryClusterApi(journal),
    )
    logger.debug("simulated_providers_created", account_id=account_id)
    return providers, journal
