"""Unit tests for the command-line interface."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import click
import pytest
from click.testing import CliRunner, Result

from deploykit.config import get_settings
from deploykit.domain.ports.providers import Providers
from deploykit.domain.services.config_resolver import KNOWN_KEYS
from deploykit.infrastructure.providers.in_memory import CallJournal
from deploykit.main import cli, parse_secret_values


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in KNOWN_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("LOG_FORMAT", "json")
    monkeypatch.setenv("PROVIDER_BACKEND", "simulated")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.env"
    path.write_text(
        "AWS_ACCOUNT_ID=123456789012\nAWS_REGION=us-east-1\nCLUSTER_NAME=test-cluster\n"
    )
    return path


@pytest.fixture
def paths(config_file: Path, plan_file: Path, templates_dir: Path) -> list[str]:
    return [
        "--config-file", str(config_file),
        "--plan-file", str(plan_file),
        "--templates-dir", str(templates_dir),
    ]


def invoke(args: list[str], providers: Providers, **kwargs: object) -> Result:
    return CliRunner().invoke(cli, args, obj={"providers": providers}, **kwargs)  # type: ignore[arg-type]


class TestParseSecretValues:
    def test_plain_and_scoped_pairs(self) -> None:
        assert parse_secret_values(("password=abc", "eventsphere/jwt:jwt_secret=x=y")) == {
            "password": "abc",
            "eventsphere/jwt:jwt_secret": "x=y",
        }

    def test_rejects_missing_separator(self) -> None:
        with pytest.raises(click.BadParameter):
            parse_secret_values(("password",))


class TestDeployCommand:
    def test_deploy_succeeds(
        self, paths: list[str], output_dir: Path, providers: Providers
    ) -> None:
        result = invoke(["deploy", *paths, "--output-dir", str(output_dir)], providers)
        assert result.exit_code == 0, result.output
        assert "Outcome: succeeded" in result.output
        assert (output_dir / "base" / "configmap.yaml").exists()

    def test_dry_run_changes_nothing(
        self, paths: list[str], output_dir: Path, providers: Providers, journal: CallJournal
    ) -> None:
        result = invoke(["deploy", "--dry-run", *paths, "--output-dir", str(output_dir)], providers)
        assert result.exit_code == 0, result.output
        assert "Dry run:" in result.output
        assert "secret/eventsphere/mongodb" in result.output
        assert journal.mutations == []
        assert not output_dir.exists()

    def test_skip_flags(self, paths: list[str], output_dir: Path, providers: Providers) -> None:
        result = invoke(
            ["deploy", "--skip-datastore", "--skip-services", *paths, "--output-dir", str(output_dir)],
            providers,
        )
        assert result.exit_code == 0, result.output
        assert "skipped" in result.output

    def test_missing_plan_is_configuration_error(
        self, config_file: Path, templates_dir: Path, tmp_path: Path, providers: Providers
    ) -> None:
        result = invoke(
            [
                "deploy",
                "--config-file", str(config_file),
                "--plan-file", str(tmp_path / "absent.yaml"),
                "--templates-dir", str(templates_dir),
            ],
            providers,
        )
        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_bad_secret_value(self, paths: list[str], providers: Providers) -> None:
        result = invoke(["deploy", "--secret-value", "novalue", *paths], providers)
        assert result.exit_code == 2

    def test_invalid_setting_is_configuration_error(
        self, paths: list[str], providers: Providers, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_FORMAT", "xml")
        result = invoke(["deploy", *paths], providers)
        assert result.exit_code == 2
        assert "LOG_FORMAT" in result.output


class TestTeardownCommand:
    def test_declined_confirmation(self, paths: list[str], providers: Providers, journal: CallJournal) -> None:
        result = invoke(["teardown", *paths], providers, input="n\n")
        assert result.exit_code == 1
        assert "Teardown cancelled" in result.output
        assert journal.mutations == []

    def test_teardown_after_deploy(
        self, paths: list[str], output_dir: Path, providers: Providers
    ) -> None:
        assert invoke(["deploy", *paths, "--output-dir", str(output_dir)], providers).exit_code == 0
        result = invoke(["teardown", "--yes", *paths], providers)
        assert result.exit_code == 0, result.output
        assert "Outcome: succeeded" in result.output


class TestRenderCommand:
    def test_render_writes_manifests(
        self,
        config_file: Path,
        templates_dir: Path,
        output_dir: Path,
        providers: Providers,
        journal: CallJournal,
    ) -> None:
        result = invoke(
            [
                "render",
                "--config-file", str(config_file),
                "--templates-dir", str(templates_dir),
                "--output-dir", str(output_dir),
            ],
            providers,
        )
        assert result.exit_code == 0, result.output
        assert "us-east-1" in (output_dir / "base" / "configmap.yaml").read_text()
        assert journal.mutations == []

    def test_render_template_error(
        self, config_file: Path, templates_dir: Path, output_dir: Path, providers: Providers
    ) -> None:
        (templates_dir / "broken.yaml.template").write_text("name: ${NOT_DEFINED}\n")
        result = invoke(
            [
                "render",
                "--config-file", str(config_file),
                "--templates-dir", str(templates_dir),
                "--output-dir", str(output_dir),
            ],
            providers,
        )
        assert result.exit_code == 1
        assert "Template error" in result.output
