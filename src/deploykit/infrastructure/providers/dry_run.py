"""Diff-only provider wrappers used by ``--dry-run``.

Reads pass through to the real providers. Mutations are never forwarded:
they are logged and kept in an in-memory overlay, so later stages of the
same run observe the state the earlier stages would have produced.
"""

from __future__ import annotations

import copy
from typing import Any

import structlog

from deploykit.domain.errors import ProviderError
from deploykit.domain.models.plan import RoleRecord
from deploykit.domain.models.resources import Readiness, ResourceRef, ServiceIdentity
from deploykit.domain.ports.providers import ClusterApi, Providers, RoleStore, SecretStore


logger = structlog.get_logger(__name__)

DRY_RUN_READY = "assumed ready (dry run)"


def pending_role_id(name: str) -> str:
    """Placeholder id for a role that a dry run would create."""
    return f"<pending:{name}>"


class DryRunSecretStore(SecretStore):
    """Secret store that records writes instead of performing them."""

    def __init__(self, inner: SecretStore) -> None:
        self._inner = inner
        self._overlay: dict[str, dict[str, str] | None] = {}

    async def exists(self, name: str) -> bool:
        if name in self._overlay:
            return self._overlay[name] is not None
        return await self._inner.exists(name)

    async def get(self, name: str) -> dict[str, str]:
        if name in self._overlay:
            values = self._overlay[name]
            if values is None:
                raise ProviderError(f"secret {name} not found")
            return dict(values)
        return await self._inner.get(name)

    async def create(self, name: str, keys: dict[str, str]) -> None:
        logger.info("dry_run_secret_create", secret=name, keys=sorted(keys))
        self._overlay[name] = dict(keys)

    async def update(self, name: str, keys: dict[str, str]) -> None:
        logger.info("dry_run_secret_update", secret=name, keys=sorted(keys))
        self._overlay[name] = dict(keys)

    async def delete(self, name: str) -> bool:
        existed = await self.exists(name)
        logger.info("dry_run_secret_delete", secret=name, existed=existed)
        self._overlay[name] = None
        return existed


class DryRunRoleStore(RoleStore):
    """Role store that simulates upserts, attachments and annotations."""

    def __init__(self, inner: RoleStore) -> None:
        self._inner = inner
        self._roles: dict[str, RoleRecord | None] = {}
        self._annotations: dict[ServiceIdentity, str] = {}

    async def get_role(self, name: str) -> RoleRecord | None:
        if name in self._roles:
            return self._roles[name]
        return await self._inner.get_role(name)

    async def upsert_role(self, name: str, trust_policy: dict[str, Any]) -> str:
        existing = await self.get_role(name)
        role_id = existing.role_id if existing else pending_role_id(name)
        self._roles[name] = RoleRecord(
            role_id=role_id,
            trust_policy=copy.deepcopy(trust_policy),
            policy_arns=existing.policy_arns if existing else [],
        )
        logger.info("dry_run_role_upsert", role=name, role_id=role_id)
        return role_id

    async def attach_policy(self, name: str, policy_arn: str) -> None:
        record = await self.get_role(name)
        if record is not None and policy_arn not in record.policy_arns:
            self._roles[name] = record.model_copy(
                update={"policy_arns": [*record.policy_arns, policy_arn]}
            )
        logger.info("dry_run_policy_attach", role=name, policy_arn=policy_arn)

    async def get_identity_annotation(self, identity: ServiceIdentity) -> str | None:
        if identity in self._annotations:
            return self._annotations[identity]
        return await self._inner.get_identity_annotation(identity)

    async def annotate_identity(self, identity: ServiceIdentity, role_id: str) -> None:
        logger.info("dry_run_identity_annotate", identity=str(identity), role_id=role_id)
        self._annotations[identity] = role_id

    async def delete_role(self, name: str) -> bool:
        existed = await self.get_role(name) is not None
        logger.info("dry_run_role_delete", role=name, existed=existed)
        self._roles[name] = None
        return existed


class DryRunClusterApi(ClusterApi):
    """Cluster API that diffs against live state and assumes workloads become ready."""

    def __init__(self, inner: ClusterApi, *, assumed_http_status: int = 200) -> None:
        self._inner = inner
        self._assumed_http_status = assumed_http_status
        self._overlay: dict[ResourceRef, dict[str, Any] | None] = {}

    async def check_reachable(self) -> None:
        await self._inner.check_reachable()

    async def apply(self, manifest: dict[str, Any]) -> None:
        ref = ResourceRef.from_manifest(manifest)
        logger.info("dry_run_manifest_apply", resource=str(ref))
        self._overlay[ref] = copy.deepcopy(manifest)

    async def matches(self, manifest: dict[str, Any]) -> bool:
        ref = ResourceRef.from_manifest(manifest)
        if ref in self._overlay:
            return self._overlay[ref] == manifest
        return await self._inner.matches(manifest)

    async def get_readiness(self, ref: ResourceRef) -> Readiness:  # noqa: ARG002
        return Readiness(ready=True, detail=DRY_RUN_READY)

    async def exec_command(
        self, ref: ResourceRef, command: list[str]
    ) -> tuple[bool, str]:
        logger.debug("dry_run_exec_skipped", resource=str(ref), command=command[:1])
        return True, DRY_RUN_READY

    async def probe_http(self, ref: ResourceRef, path: str, port: int) -> int:  # noqa: ARG002
        return self._assumed_http_status

    async def delete(self, ref: ResourceRef) -> bool:
        logger.info("dry_run_manifest_delete", resource=str(ref))
        self._overlay[ref] = None
        return True


def wrap_for_dry_run(providers: Providers) -> Providers:
    """Providers for a dry run. The identity provider is read-only and kept as is."""
    return Providers(
        identity=providers.identity,
        secrets=DryRunSecretStore(providers.secrets),
        roles=DryRunRoleStore(providers.roles),
        cluster=DryRunClusterApi(providers.cluster),
    )
