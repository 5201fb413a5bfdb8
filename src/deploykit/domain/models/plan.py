"""Deployment plan: the fixed inventory of what a run provisions."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import Field, field_validator, model_validator

from deploykit.domain.models.base import ValueObject
from deploykit.domain.models.resources import ResourceRef, ServiceIdentity


MIN_GENERATED_LENGTH = 32


class LiteralPolicy(ValueObject):
    """Use a fixed value."""

    kind: Literal["literal"] = "literal"
    value: str


class GeneratePolicy(ValueObject):
    """Generate a cryptographically random value of ``length`` characters."""

    kind: Literal["generate"] = "generate"
    length: int = Field(default=MIN_GENERATED_LENGTH, ge=MIN_GENERATED_LENGTH)


class DerivePolicy(ValueObject):
    """Render a value from the other keys of the same secret."""

    kind: Literal["derive"] = "derive"
    template: str


GenerationPolicy = Annotated[
    LiteralPolicy | GeneratePolicy | DerivePolicy, Field(discriminator="kind")
]


def _expand_policy(policy: Any) -> Any:
    """Accept ``value``, ``{literal: v}``, ``{generate: n}`` and ``{derive: t}``."""
    if isinstance(policy, str):
        return {"kind": "literal", "value": policy}
    if isinstance(policy, dict) and "kind" not in policy and len(policy) == 1:
        ((kind, argument),) = policy.items()
        if kind == "literal":
            return {"kind": kind, "value": str(argument)}
        if kind == "generate":
            return {"kind": kind, "length": argument}
        if kind == "derive":
            return {"kind": kind, "template": argument}
    return policy


class SecretSpec(ValueObject):
    """A secret that must exist in the external store with exactly these keys."""

    name: str
    keys: dict[str, GenerationPolicy]

    @field_validator("keys", mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _expand_policy(policy) for key, policy in value.items()}
        return value

    @property
    def key_names(self) -> frozenset[str]:
        return frozenset(self.keys)


class RoleBinding(ValueObject):
    """A cloud role, its trust policy and the in-cluster identity that assumes it."""

    role_name: str
    trust_policy_ref: str
    service_identity: ServiceIdentity
    policy_arns: list[str] = Field(default_factory=list)


class RoleRecord(ValueObject):
    """A role as currently stored by the identity provider."""

    role_id: str
    trust_policy: dict[str, Any]
    policy_arns: list[str] = Field(default_factory=list)


class DatastoreSpec(ValueObject):
    """The stateful datastore and how to tell it is serving."""

    manifests: list[str]
    readiness: ResourceRef
    ping_command: list[str] = Field(default_factory=list)
    timeout_seconds: float | None = None
    poll_interval_seconds: float | None = None


class HealthCheck(ValueObject):
    """HTTP health contract of a stateless service."""

    path: str = "/health"
    port: int = 80
    expected_status: int = 200


class ServiceSpec(ValueObject):
    """A stateless service rolled out by the services stage."""

    name: str
    manifests: list[str]
    workload: ResourceRef | None = None
    replicas: int | None = Field(default=None, ge=0)
    health_check: HealthCheck | None = None
    timeout_seconds: float | None = None

    def workload_ref(self, namespace: str) -> ResourceRef:
        if self.workload is not None:
            return self.workload
        return ResourceRef(kind="Deployment", name=self.name, namespace=namespace)


class DeploymentPlan(ValueObject):
    """Everything a deploy run provisions, in stage order."""

    secrets: list[SecretSpec] = Field(default_factory=list)
    roles: list[RoleBinding] = Field(default_factory=list)
    datastore: DatastoreSpec | None = None
    cluster_secrets: dict[str, str] = Field(default_factory=dict)
    external_secrets_manifests: list[str] = Field(default_factory=list)
    shared_manifests: list[str] = Field(default_factory=list)
    services: list[ServiceSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> DeploymentPlan:
        secret_names = {spec.name for spec in self.secrets}
        if len(secret_names) != len(self.secrets):
            raise ValueError("secret names must be unique")
        service_names = [service.name for service in self.services]
        if len(set(service_names)) != len(service_names):
            raise ValueError("service names must be unique")
        for cluster_name, store_name in self.cluster_secrets.items():
            if secret_names and store_name not in secret_names:
                raise ValueError(
                    f"cluster secret {cluster_name} refers to undeclared secret {store_name}"
                )
        return self
