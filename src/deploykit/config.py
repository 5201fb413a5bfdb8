"""Tool configuration using pydantic-settings, and raw deployment input loading."""

from __future__ import annotations

import os
from collections.abc import Mapping
from enum import Enum
from functools import lru_cache
from pathlib import Path

from dotenv import dotenv_values
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

from deploykit.domain.errors import ConfigurationError
from deploykit.domain.models.plan import MIN_GENERATED_LENGTH
from deploykit.domain.services.config_resolver import KNOWN_KEYS
from deploykit.domain.services.stage import Timeouts


class ProviderBackend(str, Enum):
    AWS = "aws"
    SIMULATED = "simulated"


class LogFormat(str, Enum):
    JSON = "json"
    CONSOLE = "console"


class ObservabilitySettings(BaseSettings):
    """Logging configuration."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: LogFormat = Field(default=LogFormat.CONSOLE, alias="LOG_FORMAT")

    model_config = {"extra": "ignore", "populate_by_name": True}


class PollingSettings(BaseSettings):
    """Readiness polling intervals and deadlines, in seconds."""

    datastore_interval: float = Field(default=5.0, gt=0, alias="DATASTORE_POLL_INTERVAL")
    datastore_timeout: float = Field(default=300.0, ge=0, alias="DATASTORE_TIMEOUT")
    service_interval: float = Field(default=5.0, gt=0, alias="SERVICE_POLL_INTERVAL")
    service_timeout: float = Field(default=300.0, ge=0, alias="SERVICE_TIMEOUT")
    secret_sync_timeout: float = Field(default=60.0, ge=0, alias="SECRET_SYNC_TIMEOUT")

    model_config = {"extra": "ignore", "populate_by_name": True}


class PathSettings(BaseSettings):
    """Default locations of the deployment inputs."""

    config_file: Path = Field(default=Path("infrastructure/config/config.env"), alias="CONFIG_FILE")
    plan_file: Path = Field(default=Path("deploy.yaml"), alias="PLAN_FILE")
    templates_dir: Path = Field(default=Path("k8s"), alias="TEMPLATES_DIR")
    output_dir: Path = Field(default=Path("k8s/generated"), alias="OUTPUT_DIR")

    model_config = {"extra": "ignore", "populate_by_name": True}


class ProviderSettings(BaseSettings):
    """Which provider implementations to wire, and how to reach them."""

    backend: ProviderBackend = Field(default=ProviderBackend.AWS, alias="PROVIDER_BACKEND")
    aws_cli: str = Field(default="aws", alias="AWS_CLI")
    kubectl: str = Field(default="kubectl", alias="KUBECTL")
    kubeconfig: str | None = Field(default=None, alias="KUBECONFIG")
    identity_annotation: str = Field(
        default="eks.amazonaws.com/role-arn", alias="IDENTITY_ANNOTATION"
    )
    command_timeout: float = Field(default=120.0, gt=0, alias="COMMAND_TIMEOUT")

    model_config = {"extra": "ignore", "populate_by_name": True}


class Settings(BaseSettings):
    """Main tool settings."""

    min_secret_length: int = Field(
        default=MIN_GENERATED_LENGTH, ge=MIN_GENERATED_LENGTH, alias="MIN_SECRET_LENGTH"
    )

    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    providers: ProviderSettings = Field(default_factory=ProviderSettings)

    model_config = {"env_prefix": "", "extra": "ignore", "populate_by_name": True}

    def timeouts(self) -> Timeouts:
        return Timeouts(
            datastore_interval=self.polling.datastore_interval,
            datastore_timeout=self.polling.datastore_timeout,
            service_interval=self.polling.service_interval,
            service_timeout=self.polling.service_timeout,
            secret_sync_timeout=self.polling.secret_sync_timeout,
            min_secret_length=self.min_secret_length,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached tool settings. Invalid environment values are a ConfigurationError."""
    try:
        return Settings()
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or None
        raise ConfigurationError(f"Invalid setting {field}: {error['msg']}", field=field) from e


def load_raw_config(
    config_file: Path | None, environ: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Merge the dotenv config file with the environment.

    Environment values win, but only for keys the resolver understands or
    keys the file already declares; unrelated variables are ignored.
    """
    environ = os.environ if environ is None else environ
    raw: dict[str, str] = {}
    if config_file is not None:
        path = Path(config_file)
        if path.exists():
            if not path.is_file():
                raise ConfigurationError(f"Config file {path} is not a file", field="config_file")
            raw = {key: value or "" for key, value in dotenv_values(path).items()}

    for key, value in environ.items():
        if key in KNOWN_KEYS or key in raw:
            raw[key] = value
    return raw
