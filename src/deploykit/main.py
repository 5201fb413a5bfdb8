"""Command-line entrypoint."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from deploykit.config import get_settings, load_raw_config, ProviderBackend, Settings
from deploykit.domain.errors import ConfigurationError, ProvisioningError
from deploykit.domain.models.run import RunOutcome, RunResult, StageName, StageStatus
from deploykit.domain.ports.providers import Providers
from deploykit.domain.services.config_resolver import ConfigResolver
from deploykit.domain.services.orchestrator import Orchestrator
from deploykit.domain.services.stage import RunOptions
from deploykit.domain.services.teardown import TeardownController
from deploykit.domain.services.template_processor import TemplateProcessor
from deploykit.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from deploykit.infrastructure.observability.logging import setup_logging
from deploykit.infrastructure.plan_loader import load_plan
from deploykit.infrastructure.providers.aws_cli import (
    AwsCli,
    AwsCliIdentityProvider,
    AwsIamRoleStore,
    AwsSecretsManagerStore,
)
from deploykit.infrastructure.providers.command import CommandRunner
from deploykit.infrastructure.providers.dry_run import wrap_for_dry_run
from deploykit.infrastructure.providers.in_memory import simulated_providers
from deploykit.infrastructure.providers.kubectl import KubectlClusterApi


logger = structlog.get_logger(__name__)

T = TypeVar("T")

STATUS_STYLES: dict[StageStatus, str] = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.ALREADY_SATISFIED: "cyan",
    StageStatus.SKIPPED: "yellow",
    StageStatus.FAILED: "bold red",
    StageStatus.CANCELLED: "magenta",
    StageStatus.NOT_STARTED: "dim",
}


def build_providers(settings: Settings, raw: Mapping[str, str]) -> Providers:
    """Wire the provider implementations selected by PROVIDER_BACKEND."""
    provider_settings = settings.providers
    if provider_settings.backend == ProviderBackend.SIMULATED:
        providers, _ = simulated_providers()
        return providers

    runner = CommandRunner(timeout=provider_settings.command_timeout)
    region = raw.get("AWS_REGION") or raw.get("REGION") or None
    aws = AwsCli(runner, executable=provider_settings.aws_cli, region=region)
    return Providers(
        identity=AwsCliIdentityProvider(aws),
        secrets=AwsSecretsManagerStore(aws),
        roles=AwsIamRoleStore(
            aws,
            runner,
            kubectl=provider_settings.kubectl,
            kubeconfig=provider_settings.kubeconfig,
            annotation=provider_settings.identity_annotation,
        ),
        cluster=KubectlClusterApi(
            runner, kubectl=provider_settings.kubectl, kubeconfig=provider_settings.kubeconfig
        ),
    )


def parse_secret_values(values: tuple[str, ...]) -> dict[str, str]:
    """``KEY=VALUE`` or ``secret-name:KEY=VALUE`` pairs."""
    parsed: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--secret-value")
        parsed[key] = value
    return parsed


async def run_cancellable(run: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run with SIGINT/SIGTERM wired to the run-scoped cancellation event."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    try:
        return await run(cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def render_result(result: RunResult, console: Console, *, title: str) -> None:
    """Print the per-stage status table, then per-service and planned changes."""
    table = Table(title=title, box=box.SIMPLE, show_header=True)
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Changes", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", overflow="fold")
    for stage in result.stages:
        style = STATUS_STYLES.get(stage.status, "")
        table.add_row(
            stage.stage.value,
            f"[{style}]{stage.status.value}[/]" if style else stage.status.value,
            str(len(stage.changes)),
            f"{stage.duration_seconds:.1f}s",
            escape(stage.error),
        )
    console.print(table)

    services = [service for stage in result.stages for service in stage.services]
    if services:
        service_table = Table(title="Services", box=box.SIMPLE)
        service_table.add_column("Service")
        service_table.add_column("Status")
        service_table.add_column("Replicas", justify="right")
        service_table.add_column("Detail", overflow="fold")
        for service in services:
            replicas = (
                f"{service.ready_replicas}/{service.desired_replicas}"
                if service.desired_replicas is not None
                else "-"
            )
            service_table.add_row(
                service.name, service.status.value, replicas, escape(service.detail)
            )
        console.print(service_table)

    if result.dry_run:
        changes = result.planned_changes
        console.print(f"[bold]Dry run:[/] {len(changes)} change(s) would be made")
        for change in changes:
            console.print(f"  {escape(str(change))}")

    style = "green" if result.outcome == RunOutcome.SUCCEEDED else "red"
    console.print(f"[{style}]Outcome: {result.outcome.value}[/] (exit {result.exit_code})")


def _providers_for(ctx: click.Context, settings: Settings, raw: Mapping[str, str]) -> Providers:
    injected = (ctx.obj or {}).get("providers")
    return injected if injected is not None else build_providers(settings, raw)


def _load_inputs(settings: Settings, config_file: Path | None) -> dict[str, str]:
    return load_raw_config(config_file or settings.paths.config_file)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Idempotent, dependency-ordered deployment of a containerized stack."""
    ctx.ensure_object(dict)
    try:
        settings = get_settings()
    except ConfigurationError as e:
        Console().print(f"[red]Configuration error:[/] {escape(str(e))}")
        ctx.exit(RunOutcome.CONFIGURATION_ERROR.exit_code)
    setup_logging(settings.observability.log_level, settings.observability.log_format.value)


def _path_options(command: Callable[..., Any]) -> Callable[..., Any]:
    for option in reversed([
        click.option("--config-file", type=click.Path(path_type=Path), help="dotenv config file"),
        click.option("--plan-file", type=click.Path(path_type=Path), help="deployment plan YAML"),
        click.option("--templates-dir", type=click.Path(path_type=Path), help="template root"),
    ]):
        command = option(command)
    return command


@cli.command()
@click.option("--skip-secrets", is_flag=True, help="Do not touch the secret store.")
@click.option("--skip-iam", is_flag=True, help="Do not create or bind roles.")
@click.option("--skip-datastore", is_flag=True, help="Do not deploy the datastore.")
@click.option("--skip-services", is_flag=True, help="Do not roll out services.")
@click.option("--use-external-secrets", is_flag=True, help="Sync cluster secrets via the operator.")
@click.option("--dry-run", is_flag=True, help="Report what would change without changing it.")
@click.option("--force-regenerate", is_flag=True, help="Regenerate existing secrets.")
@click.option("--secret-value", "secret_values", multiple=True, metavar="KEY=VALUE")
@_path_options
@click.option("--output-dir", type=click.Path(path_type=Path), help="generated manifest root")
@click.pass_context
def deploy(
    ctx: click.Context,
    skip_secrets: bool,
    skip_iam: bool,
    skip_datastore: bool,
    skip_services: bool,
    use_external_secrets: bool,
    dry_run: bool,
    force_regenerate: bool,
    secret_values: tuple[str, ...],
    config_file: Path | None,
    plan_file: Path | None,
    templates_dir: Path | None,
    output_dir: Path | None,
) -> None:
    """Provision secrets, identities, the datastore and services, in order."""
    settings = get_settings()
    console = Console()
    skip = {
        StageName.SECRETS: skip_secrets,
        StageName.IDENTITY: skip_iam,
        StageName.DATASTORE: skip_datastore,
        StageName.SERVICES: skip_services,
    }
    options = RunOptions(
        skip=frozenset(stage for stage, skipped in skip.items() if skipped),
        dry_run=dry_run,
        force_regenerate=force_regenerate,
        use_external_secrets=use_external_secrets,
        secret_values=parse_secret_values(secret_values),
    )

    try:
        raw = _load_inputs(settings, config_file)
        plan = load_plan(plan_file or settings.paths.plan_file)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/] {escape(str(e))}")
        ctx.exit(RunOutcome.CONFIGURATION_ERROR.exit_code)

    orchestrator = Orchestrator(
        _providers_for(ctx, settings, raw),
        plan,
        TemplateProcessor(
            templates_dir or settings.paths.templates_dir,
            output_dir or settings.paths.output_dir,
        ),
        event_publisher=InMemoryEventPublisher(),
        timeouts=settings.timeouts(),
        dry_run_factory=wrap_for_dry_run,
    )
    result = asyncio.run(run_cancellable(lambda event: orchestrator.run(raw, options, event)))
    render_result(result, console, title="Dry run" if dry_run else "Deploy")
    ctx.exit(result.exit_code)


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@_path_options
@click.pass_context
def teardown(
    ctx: click.Context,
    yes: bool,
    config_file: Path | None,
    plan_file: Path | None,
    templates_dir: Path | None,
) -> None:
    """Delete services, datastore, roles and secrets, in reverse order."""
    settings = get_settings()
    console = Console()
    if not yes and not click.confirm(
        "This deletes services, the datastore, roles and secrets. Continue?", default=False
    ):
        console.print("[red]Teardown cancelled[/]")
        ctx.exit(1)

    try:
        raw = _load_inputs(settings, config_file)
        plan = load_plan(plan_file or settings.paths.plan_file)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/] {escape(str(e))}")
        ctx.exit(RunOutcome.CONFIGURATION_ERROR.exit_code)

    controller = TeardownController(
        _providers_for(ctx, settings, raw),
        plan,
        TemplateProcessor(templates_dir or settings.paths.templates_dir, settings.paths.output_dir),
    )
    result = asyncio.run(run_cancellable(lambda event: controller.run(raw, event)))
    render_result(result, console, title="Teardown")
    ctx.exit(result.exit_code)


@cli.command()
@click.option("--config-file", type=click.Path(path_type=Path), help="dotenv config file")
@click.option("--templates-dir", type=click.Path(path_type=Path), help="template root")
@click.option("--output-dir", type=click.Path(path_type=Path), help="generated manifest root")
@click.pass_context
def render(
    ctx: click.Context,
    config_file: Path | None,
    templates_dir: Path | None,
    output_dir: Path | None,
) -> None:
    """Resolve configuration and write the generated manifests only."""
    settings = get_settings()
    console = Console()
    processor = TemplateProcessor(
        templates_dir or settings.paths.templates_dir,
        output_dir or settings.paths.output_dir,
    )

    async def _render() -> list[Path]:
        raw = _load_inputs(settings, config_file)
        providers = _providers_for(ctx, settings, raw)
        config = await ConfigResolver(providers.identity).resolve(raw)
        return processor.write(processor.render(config))

    try:
        written = asyncio.run(_render())
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/] {escape(str(e))}")
        ctx.exit(RunOutcome.CONFIGURATION_ERROR.exit_code)
    except ProvisioningError as e:
        console.print(f"[red]Template error:[/] {escape(str(e))}")
        ctx.exit(RunOutcome.FAILED.exit_code)

    console.print(f"Rendered into {processor.output_dir} ({len(written)} file(s) changed)")


def main() -> None:
    """Run the CLI."""
    cli(prog_name="deploykit")


if __name__ == "__main__":
    main()
