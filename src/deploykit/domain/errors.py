"""Provisioning error taxonomy.

Every error raised by a stage carries enough context (stage, resource and the
last observed state) to drive manual remediation. Errors raised before any
mutating call are ``ConfigurationError`` and ``TemplateError``; everything
else is post-mutation and fatal to the current run.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class ProvisioningError(Exception):
    """Base class for all stage failures."""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        resource: str | None = None,
        last_state: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.resource = resource
        self.last_state = last_state

    def __str__(self) -> str:
        parts = [self.message]
        if self.resource:
            parts.append(f"resource={self.resource}")
        if self.last_state:
            parts.append(f"last_state={self.last_state}")
        return " ".join(parts)


class ConfigurationError(ProvisioningError):
    """Bad or missing input, detected before any mutation."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message, stage="config", resource=field)
        self.field = field


class TemplateError(ProvisioningError):
    """A template references an unknown variable or renders to invalid YAML."""

    def __init__(
        self, message: str, *, template: str, variable: str | None = None
    ) -> None:
        super().__init__(message, stage="templates", resource=template)
        self.template = template
        self.variable = variable


class SecretProvisionError(ProvisioningError):
    """The secret store was unreachable or rejected a secret."""


class IdentityBindingError(ProvisioningError):
    """A role could not be created, updated or attached to its identity."""


class ApplyError(ProvisioningError):
    """The cluster rejected a manifest or could not be read."""


class ReadinessTimeoutError(ProvisioningError):
    """A resource did not report ready before its timeout elapsed."""


class RolloutTimeoutError(ProvisioningError):
    """One or more services did not become ready in time."""

    def __init__(
        self,
        unready: Iterable[str],
        *,
        services: list[Any] | None = None,
        last_state: str | None = None,
    ) -> None:
        self.unready = sorted(unready)
        self.services = list(services or [])
        super().__init__(
            f"Services not ready: {', '.join(self.unready)}",
            stage="services",
            resource=",".join(self.unready),
            last_state=last_state,
        )


class DependencyError(ProvisioningError):
    """A stage was reached while one of its predecessors was not satisfied."""


class TeardownError(ProvisioningError):
    """A resource could not be removed for a reason other than being absent."""


class ProviderError(Exception):
    """Raised by provider adapters when an external call fails."""

    def __init__(self, message: str, *, permission_denied: bool = False) -> None:
        super().__init__(message)
        self.permission_denied = permission_denied


class RunCancelled(Exception):  # noqa: N818
    """The run-scoped cancellation signal fired. Not an error."""
