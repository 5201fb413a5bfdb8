"""Cluster resource references and readiness observations."""

from __future__ import annotations

from typing import Any

from deploykit.domain.models.base import ValueObject


class ResourceRef(ValueObject):
    """Identifies one object in the cluster."""

    kind: str
    name: str
    namespace: str | None = None

    @classmethod
    def from_manifest(
        cls, manifest: dict[str, Any], default_namespace: str | None = None
    ) -> ResourceRef:
        metadata = manifest.get("metadata") or {}
        return cls(
            kind=str(manifest.get("kind", "")),
            name=str(metadata.get("name", "")),
            namespace=metadata.get("namespace", default_namespace),
        )

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class ServiceIdentity(ValueObject):
    """An in-cluster identity (service account) a cloud role is attached to."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class Readiness(ValueObject):
    """A single readiness observation returned by the cluster API."""

    ready: bool
    detail: str = ""
    ready_replicas: int | None = None
    desired_replicas: int | None = None
