"""Resolves raw key/value input into a validated DeploymentConfig."""

from __future__ import annotations

from collections.abc import Callable, Mapping

import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    RetryError,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from deploykit.domain.errors import ConfigurationError, ProviderError
from deploykit.domain.models.config import DeploymentConfig, FIELD_ALIASES
from deploykit.domain.ports.providers import ClusterApi, IdentityProvider


logger = structlog.get_logger(__name__)

DEFAULTS: dict[str, str] = {
    "region": "us-east-1",
    "cluster_name": "eventsphere-cluster",
    "namespace": "prod",
}

DerivationRule = Callable[[Mapping[str, str | None]], str | None]


def _derive_registry(values: Mapping[str, str | None]) -> str | None:
    account, region = values.get("account_id"), values.get("region")
    if account and region:
        return f"{account}.dkr.ecr.{region}.amazonaws.com"
    return None


DERIVATION_RULES: dict[str, DerivationRule] = {
    "registry": _derive_registry,
}

# Override keys filled from the account id when not given explicitly.
DERIVED_ROLE_OVERRIDES: dict[str, str] = {
    "FLUENT_BIT_ROLE_ARN": "fluent-bit-role",
    "EXTERNAL_SECRETS_ROLE_ARN": "external-secrets-role",
}

# Resolution order: account_id needs nothing, registry needs account_id and region.
RESOLUTION_ORDER: tuple[str, ...] = (
    "region",
    "cluster_name",
    "namespace",
    "account_id",
    "registry",
    "certificate_ref",
)
REQUIRED_FIELDS = frozenset({"account_id", "region", "cluster_name", "registry", "namespace"})
KNOWN_KEYS = frozenset(alias for aliases in FIELD_ALIASES.values() for alias in aliases)


class ConfigResolver:
    """Builds a DeploymentConfig: explicit value, then derivation, then identity lookup.

    The identity provider is queried at most once per resolver instance; the
    result is cached for the rest of the run.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider | None = None,
        *,
        defaults: Mapping[str, str] | None = None,
        retry_attempts: int = 3,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._identity_provider = identity_provider
        self._defaults = dict(DEFAULTS if defaults is None else defaults)
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=4)
        self._account_id: str | None = None

    async def resolve(self, raw: Mapping[str, str]) -> DeploymentConfig:
        """Validate raw input. Raises ConfigurationError naming the first missing field."""
        values: dict[str, str | None] = {}
        for field in RESOLUTION_ORDER:
            values[field] = await self._resolve_field(field, raw, values)
            if values[field] is None and field in REQUIRED_FIELDS:
                raise ConfigurationError(
                    f"Required setting {field} is not set and cannot be derived "
                    f"(set one of: {', '.join(FIELD_ALIASES[field])})",
                    field=field,
                )

        overrides = {
            key: value for key, value in raw.items()
            if key not in KNOWN_KEYS and value != ""
        }
        for key, role_name in DERIVED_ROLE_OVERRIDES.items():
            overrides.setdefault(key, f"arn:aws:iam::{values['account_id']}:role/{role_name}")

        try:
            config = DeploymentConfig(**values, overrides=overrides)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        logger.info(
            "configuration_resolved",
            account_id=config.account_id,
            region=config.region,
            cluster_name=config.cluster_name,
            registry=config.registry,
            certificate_ref=config.certificate_ref or "<not set>",
        )
        return config

    async def _resolve_field(
        self,
        field: str,
        raw: Mapping[str, str],
        resolved: Mapping[str, str | None],
    ) -> str | None:
        for alias in FIELD_ALIASES[field]:
            value = raw.get(alias)
            if value:
                return value

        rule = DERIVATION_RULES.get(field)
        if rule is not None:
            derived = rule(resolved)
            if derived:
                return derived

        if field in self._defaults:
            return self._defaults[field]

        if field == "account_id":
            return await self._who_am_i()
        return None

    async def _who_am_i(self) -> str:
        if self._account_id is not None:
            return self._account_id
        if self._identity_provider is None:
            raise ConfigurationError(
                "account_id is not set and no identity provider is configured",
                field="account_id",
            )

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception_type(ProviderError),
                reraise=False,
            ):
                with attempt:
                    account_id = await self._identity_provider.who_am_i()
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ConfigurationError(
                f"account_id could not be detected: {cause}", field="account_id"
            ) from cause

        if not account_id:
            raise ConfigurationError("Identity provider returned no account id", field="account_id")
        logger.info("account_id_detected", account_id=account_id)
        self._account_id = account_id
        return account_id


async def check_cluster_reachable(cluster: ClusterApi) -> None:
    """Fail before any mutation when the cluster API does not answer."""
    try:
        await cluster.check_reachable()
    except ProviderError as e:
        raise ConfigurationError(f"Cluster is not reachable: {e}", field="cluster") from e
    logger.debug("cluster_reachable")
