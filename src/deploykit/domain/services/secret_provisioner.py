"""Secrets stage: make sure every declared secret exists in the external store."""

from __future__ import annotations

import secrets
import string
from collections.abc import Awaitable, Callable, Mapping

import structlog

from deploykit.domain.errors import ProviderError, SecretProvisionError, TemplateError
from deploykit.domain.models.plan import DerivePolicy, GeneratePolicy, LiteralPolicy, SecretSpec
from deploykit.domain.models.run import PlannedChange, ServiceStatus, StageName
from deploykit.domain.ports.providers import SecretStore
from deploykit.domain.services.stage import Action, RunContext, Stage
from deploykit.domain.services.template_processor import substitute


logger = structlog.get_logger(__name__)

_ALPHABET = string.ascii_letters + string.digits


def generate_secret_value(length: int) -> str:
    """Return ``length`` characters drawn from a cryptographically strong source."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def supplied_value(supplied: Mapping[str, str], secret_name: str, key: str) -> str | None:
    """Look up a caller-supplied value, qualified ``name:key`` before bare ``key``."""
    qualified = supplied.get(f"{secret_name}:{key}")
    if qualified is not None:
        return qualified
    return supplied.get(key)


def build_secret_values(
    spec: SecretSpec,
    *,
    supplied: Mapping[str, str],
    variables: Mapping[str, str],
    min_length: int,
) -> dict[str, str]:
    """Produce the full key set for a secret according to its generation policies."""
    values: dict[str, str] = {}
    derived: list[tuple[str, DerivePolicy]] = []

    for key, policy in spec.keys.items():
        given = supplied_value(supplied, spec.name, key)
        if given is not None:
            values[key] = given
        elif isinstance(policy, LiteralPolicy):
            values[key] = policy.value
        elif isinstance(policy, GeneratePolicy):
            if policy.length < min_length:
                raise SecretProvisionError(
                    f"Generated length {policy.length} is below the minimum of {min_length}",
                    stage=StageName.SECRETS.value,
                    resource=f"{spec.name}:{key}",
                )
            values[key] = generate_secret_value(policy.length)
        else:
            derived.append((key, policy))

    for key, policy in derived:
        try:
            values[key] = substitute(
                policy.template,
                {**variables, **values},
                template=f"{spec.name}:{key}",
            )
        except TemplateError as e:
            raise SecretProvisionError(
                f"Cannot derive {key}: {e.message}",
                stage=StageName.SECRETS.value,
                resource=spec.name,
            ) from e

    return {key: values[key] for key in spec.keys}


class SecretProvisioner(Stage):
    """Creates missing secrets; existing ones are left alone unless forced.

    A secret that exists with a different key set is an incompatible schema
    and is escalated rather than overwritten.
    """

    name = StageName.SECRETS

    def __init__(self, specs: list[SecretSpec]) -> None:
        self._specs = specs

    async def check(self, ctx: RunContext) -> list[Action]:
        store = ctx.providers.secrets
        force = ctx.options.force_regenerate
        variables = ctx.config.template_variables()
        actions: list[Action] = []

        for spec in self._specs:
            resource = f"secret/{spec.name}"
            try:
                exists = await store.exists(spec.name)
                current = await store.get(spec.name) if exists else None
            except ProviderError as e:
                raise SecretProvisionError(
                    f"Secret store unreachable: {e}",
                    stage=self.name.value,
                    resource=spec.name,
                ) from e

            if current is not None and set(current) != spec.key_names and not force:
                raise SecretProvisionError(
                    "Existing secret has an incompatible key set "
                    f"(expected {sorted(spec.key_names)}, found {sorted(current)})",
                    stage=self.name.value,
                    resource=spec.name,
                    last_state=",".join(sorted(current)),
                )

            if current is not None and not force:
                logger.info("secret_already_present", secret=spec.name)
                continue

            values = build_secret_values(
                spec,
                supplied=ctx.options.secret_values,
                variables=variables,
                min_length=ctx.timeouts.min_secret_length,
            )
            if current is None:
                change = PlannedChange(
                    action="create", resource=resource, detail=f"keys={','.join(spec.keys)}"
                )
                actions.append(Action(change, self._writer(store, spec.name, values, create=True)))
            else:
                change = PlannedChange(action="update", resource=resource, detail="force regenerate")
                actions.append(Action(change, self._writer(store, spec.name, values, create=False)))

        return actions

    def _writer(
        self, store: SecretStore, name: str, values: dict[str, str], *, create: bool
    ) -> Callable[[], Awaitable[None]]:
        async def _write() -> None:
            try:
                if create:
                    await store.create(name, values)
                else:
                    await store.update(name, values)
            except ProviderError as e:
                raise SecretProvisionError(
                    f"Secret store rejected {name}: {e}",
                    stage=self.name.value,
                    resource=name,
                ) from e
            logger.info("secret_written", secret=name, created=create, keys=sorted(values))

        return _write

    async def wait_ready(self, ctx: RunContext) -> list[ServiceStatus]:
        """Confirm each secret exists with exactly the expected key set."""
        store = ctx.providers.secrets
        for spec in self._specs:
            try:
                keys = set(await store.get(spec.name))
            except ProviderError as e:
                raise SecretProvisionError(
                    f"Secret missing after provisioning: {e}",
                    stage=self.name.value,
                    resource=spec.name,
                ) from e
            if keys != spec.key_names:
                raise SecretProvisionError(
                    "Secret key set does not match after provisioning",
                    stage=self.name.value,
                    resource=spec.name,
                    last_state=",".join(sorted(keys)),
                )
        return []
