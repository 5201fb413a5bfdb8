"""Loads the deployment plan YAML file."""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from deploykit.domain.errors import ConfigurationError
from deploykit.domain.models.plan import DeploymentPlan


logger = structlog.get_logger(__name__)


def parse_plan(text: str, *, source: str = "<plan>") -> DeploymentPlan:
    """Parse plan YAML. Any problem is a ConfigurationError naming the source."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Plan {source} is not valid YAML: {e}", field="plan") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Plan {source} must be a mapping", field="plan")
    try:
        plan = DeploymentPlan.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Plan {source} is invalid: {e}", field="plan") from e

    logger.info(
        "plan_loaded",
        source=source,
        secrets=len(plan.secrets),
        roles=len(plan.roles),
        datastore=plan.datastore is not None,
        services=len(plan.services),
    )
    return plan


def load_plan(path: Path) -> DeploymentPlan:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read plan file {path}: {e}", field="plan") from e
    return parse_plan(text, source=str(path))
