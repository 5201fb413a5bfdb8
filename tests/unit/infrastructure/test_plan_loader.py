"""Unit tests for plan loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from deploykit.domain.errors import ConfigurationError
from deploykit.infrastructure.plan_loader import load_plan, parse_plan


class TestParsePlan:
    def test_empty_document_is_an_empty_plan(self) -> None:
        plan = parse_plan("")
        assert plan.secrets == []
        assert plan.datastore is None

    def test_invalid_yaml(self) -> None:
        with pytest.raises(ConfigurationError, match="not valid YAML") as exc_info:
            parse_plan("secrets: [unclosed", source="plan.yaml")
        assert exc_info.value.field == "plan"

    def test_top_level_must_be_mapping(self) -> None:
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            parse_plan("- just\n- a list\n")

    def test_validation_error(self) -> None:
        with pytest.raises(ConfigurationError, match="is invalid"):
            parse_plan("secrets:\n  - name: weak\n    keys:\n      password: {generate: 8}\n")

    def test_unknown_cluster_secret_reference(self) -> None:
        text = (
            "secrets:\n  - name: app\n    keys: {user: admin}\n"
            "cluster_secrets:\n  app-secret: missing\n"
        )
        with pytest.raises(ConfigurationError, match="undeclared secret"):
            parse_plan(text)


class TestLoadPlan:
    def test_reads_file(self, tmp_path: Path) -> None:
        path = tmp_path / "plan.yaml"
        path.write_text("services:\n  - name: api\n    manifests: [services/api.yaml]\n")
        plan = load_plan(path)
        assert [service.name for service in plan.services] == ["api"]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Cannot read plan file"):
            load_plan(tmp_path / "absent.yaml")
