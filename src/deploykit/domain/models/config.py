"""Resolved deployment configuration."""

from __future__ import annotations

from pydantic import Field

from deploykit.domain.models.base import ValueObject


# Canonical field -> accepted raw keys, first match wins.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "account_id": ("ACCOUNT_ID", "AWS_ACCOUNT_ID"),
    "region": ("REGION", "AWS_REGION"),
    "cluster_name": ("CLUSTER_NAME",),
    "registry": ("REGISTRY", "ECR_REGISTRY"),
    "certificate_ref": ("CERTIFICATE_REF", "ACM_CERTIFICATE_ARN"),
    "namespace": ("NAMESPACE",),
}


class DeploymentConfig(ValueObject):
    """Validated, immutable configuration shared read-only by every stage."""

    account_id: str = Field(min_length=1)
    region: str = Field(min_length=1)
    cluster_name: str = Field(min_length=1)
    registry: str = Field(min_length=1)
    certificate_ref: str | None = None
    namespace: str = "prod"
    overrides: dict[str, str] = Field(default_factory=dict)

    def template_variables(self) -> dict[str, str]:
        """Variables available to templates: overrides, canonical names and aliases."""
        variables = dict(self.overrides)
        for field, aliases in FIELD_ALIASES.items():
            value = getattr(self, field)
            if value is None:
                continue
            variables[field.upper()] = value
            for alias in aliases:
                variables[alias] = value
        return variables
