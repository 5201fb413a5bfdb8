"""Provider port interfaces (hexagonal architecture).

Every stage talks to the outside world exclusively through these ports.
Reads exist next to each mutating call so that idempotency checks and dry-run
diffs are computed from live state on every run.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from deploykit.domain.models.plan import RoleRecord
from deploykit.domain.models.resources import Readiness, ResourceRef, ServiceIdentity


class IdentityProvider(ABC):
    """Port answering "who am I" for the current cloud credentials."""

    @abstractmethod
    async def who_am_i(self) -> str:
        """Return the account identifier of the caller."""


class SecretStore(ABC):
    """Port for the external secret store."""

    @abstractmethod
    async def exists(self, name: str) -> bool:
        """Check whether a secret exists."""

    @abstractmethod
    async def get(self, name: str) -> dict[str, str]:
        """Return the key/value pairs of an existing secret."""

    @abstractmethod
    async def create(self, name: str, keys: dict[str, str]) -> None:
        """Create a new secret."""

    @abstractmethod
    async def update(self, name: str, keys: dict[str, str]) -> None:
        """Replace the value of an existing secret."""

    @abstractmethod
    async def delete(self, name: str) -> bool:
        """Delete a secret. Returns False when it was already absent."""


class RoleStore(ABC):
    """Port for cloud roles and their binding to in-cluster identities."""

    @abstractmethod
    async def get_role(self, name: str) -> RoleRecord | None:
        """Return the stored role, or None if it does not exist."""

    @abstractmethod
    async def upsert_role(self, name: str, trust_policy: dict[str, Any]) -> str:
        """Create the role or replace its trust policy. Returns the role id."""

    @abstractmethod
    async def attach_policy(self, name: str, policy_arn: str) -> None:
        """Attach a managed policy to a role."""

    @abstractmethod
    async def get_identity_annotation(self, identity: ServiceIdentity) -> str | None:
        """Return the role id annotated on an in-cluster identity, if any."""

    @abstractmethod
    async def annotate_identity(self, identity: ServiceIdentity, role_id: str) -> None:
        """Ensure the in-cluster identity exists and carries the role id."""

    @abstractmethod
    async def delete_role(self, name: str) -> bool:
        """Delete a role. Returns False when it was already absent."""


class ClusterApi(ABC):
    """Port for the container orchestration cluster."""

    @abstractmethod
    async def check_reachable(self) -> None:
        """Raise ProviderError when the cluster API cannot be reached. Never mutates."""

    @abstractmethod
    async def apply(self, manifest: dict[str, Any]) -> None:
        """Create or update an object from its manifest."""

    @abstractmethod
    async def matches(self, manifest: dict[str, Any]) -> bool:
        """Check whether the live object already equals the manifest."""

    @abstractmethod
    async def get_readiness(self, ref: ResourceRef) -> Readiness:
        """Observe the readiness of an object."""

    @abstractmethod
    async def exec_command(self, ref: ResourceRef, command: list[str]) -> tuple[bool, str]:
        """Run a command inside a workload. Returns (succeeded, output)."""

    @abstractmethod
    async def probe_http(self, ref: ResourceRef, path: str, port: int) -> int:
        """Issue an HTTP GET against a service and return the status code."""

    @abstractmethod
    async def delete(self, ref: ResourceRef) -> bool:
        """Delete an object. Returns False when it was already absent."""


class Providers:
    """The set of provider implementations a run is wired with."""

    def __init__(
        self,
        identity: IdentityProvider,
        secrets: SecretStore,
        roles: RoleStore,
        cluster: ClusterApi,
    ) -> None:
        self.identity = identity
        self.secrets = secrets
        self.roles = roles
        self.cluster = cluster
