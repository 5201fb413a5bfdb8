"""Sequences the provisioning pipeline and assembles the run result."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping

import structlog

from deploykit.domain.errors import (
    ConfigurationError,
    DependencyError,
    ProviderError,
    ProvisioningError,
    RolloutTimeoutError,
    RunCancelled,
    TemplateError,
)
from deploykit.domain.events import RunFinished, RunStarted, StageFinished, StageStarted
from deploykit.domain.models.base import DomainEvent, generate_id, utc_now
from deploykit.domain.models.config import DeploymentConfig
from deploykit.domain.models.plan import DeploymentPlan
from deploykit.domain.models.run import (
    RunOutcome,
    RunResult,
    STAGE_ORDER,
    STAGE_PREDECESSORS,
    StageName,
    StageResult,
    StageStatus,
)
from deploykit.domain.ports.providers import Providers
from deploykit.domain.ports.services import EventPublisher
from deploykit.domain.services.config_resolver import check_cluster_reachable, ConfigResolver
from deploykit.domain.services.datastore_deployer import StatefulStoreDeployer
from deploykit.domain.services.identity_binder import IdentityBinder
from deploykit.domain.services.rollout_controller import RolloutController
from deploykit.domain.services.secret_provisioner import SecretProvisioner
from deploykit.domain.services.stage import Action, RunContext, RunOptions, Stage, Timeouts
from deploykit.domain.services.template_processor import ManifestBundle, TemplateProcessor


logger = structlog.get_logger(__name__)

DryRunFactory = Callable[[Providers], Providers]


def build_stages(plan: DeploymentPlan) -> list[Stage]:
    """The provider-facing stages in execution order."""
    return [
        SecretProvisioner(plan.secrets),
        IdentityBinder(plan.roles),
        StatefulStoreDeployer(plan.datastore),
        RolloutController(plan.services, plan.roles),
    ]


def referenced_manifests(plan: DeploymentPlan) -> list[str]:
    """Every bundle path the plan will load manifests from."""
    paths: list[str] = []
    if plan.datastore is not None:
        paths.extend(plan.datastore.manifests)
    paths.extend(plan.external_secrets_manifests)
    paths.extend(plan.shared_manifests)
    for service in plan.services:
        paths.extend(service.manifests)
    return paths


class _RunRecorder:
    """Collects stage results for one run. Only the orchestrator writes to it."""

    def __init__(self) -> None:
        self.results: dict[StageName, StageResult] = {}
        self.outcome = RunOutcome.SUCCEEDED
        self.error = ""

    def record(self, result: StageResult) -> None:
        self.results[result.stage] = result

    def fail(self, outcome: RunOutcome, error: str) -> None:
        if self.outcome == RunOutcome.SUCCEEDED:
            self.outcome = outcome
            self.error = error

    def ordered(self) -> list[StageResult]:
        return [
            self.results.get(name, StageResult(stage=name, status=StageStatus.NOT_STARTED))
            for name in STAGE_ORDER
        ]


class Orchestrator:
    """Runs config, templates, secrets, identity, datastore and services in order.

    The first failing stage short-circuits the run; explicitly skipped stages
    are recorded as ``skipped`` and count as satisfied for their dependents.
    In dry-run mode the same stage logic runs against diff-only providers, so
    the reported changes are exactly what a real run would perform.
    """

    def __init__(
        self,
        providers: Providers,
        plan: DeploymentPlan,
        template_processor: TemplateProcessor,
        *,
        event_publisher: EventPublisher | None = None,
        timeouts: Timeouts | None = None,
        dry_run_factory: DryRunFactory | None = None,
        config_resolver: ConfigResolver | None = None,
    ) -> None:
        self._providers = providers
        self._plan = plan
        self._template_processor = template_processor
        self._event_publisher = event_publisher
        self._timeouts = timeouts or Timeouts()
        self._dry_run_factory = dry_run_factory
        self._config_resolver = config_resolver
        self._stages = build_stages(plan)

    async def _publish(self, event: DomainEvent) -> None:
        if self._event_publisher is not None:
            await self._event_publisher.publish(event.event_type, event.to_payload())

    async def _finish_stage(self, run_id: str, recorder: _RunRecorder, result: StageResult) -> None:
        recorder.record(result)
        logger.info(
            "stage_finished",
            run_id=run_id,
            stage=result.stage.value,
            status=result.status.value,
            changes=len(result.changes),
            duration=result.duration_seconds,
        )
        await self._publish(StageFinished(
            run_id=run_id,
            stage=result.stage.value,
            status=result.status.value,
            change_count=len(result.changes),
            error_message=result.error,
        ))

    async def run(
        self,
        raw_config: Mapping[str, str],
        options: RunOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunResult:
        """Execute one deploy run. Never raises for stage failures; see the result."""
        options = options or RunOptions()
        cancel_event = cancel_event or asyncio.Event()
        run_id = generate_id()
        started_at = utc_now()
        recorder = _RunRecorder()

        logger.info(
            "run_started",
            run_id=run_id,
            dry_run=options.dry_run,
            skip=sorted(stage.value for stage in options.skip),
        )
        await self._publish(RunStarted(run_id=run_id, dry_run=options.dry_run))

        providers = self._providers
        if options.dry_run:
            if self._dry_run_factory is None:
                raise ValueError("dry run requested but no dry-run provider factory is configured")
            providers = self._dry_run_factory(self._providers)

        prepared = await self._prepare(run_id, recorder, raw_config, options, providers, cancel_event)
        if prepared is not None:
            config, bundle = prepared
            ctx = RunContext(
                config=config,
                plan=self._plan,
                bundle=bundle,
                providers=providers,
                options=options,
                timeouts=self._timeouts,
                cancel_event=cancel_event,
            )
            for stage in self._stages:
                if not await self._run_stage(run_id, recorder, stage, ctx):
                    break

        result = RunResult(
            outcome=recorder.outcome,
            stages=recorder.ordered(),
            dry_run=options.dry_run,
            error=recorder.error,
            started_at=started_at,
            finished_at=utc_now(),
        )
        logger.info(
            "run_finished",
            run_id=run_id,
            outcome=result.outcome.value,
            exit_code=result.exit_code,
            changes=len(result.planned_changes),
        )
        await self._publish(RunFinished(run_id=run_id, outcome=result.outcome.value))
        return result

    async def _prepare(
        self,
        run_id: str,
        recorder: _RunRecorder,
        raw_config: Mapping[str, str],
        options: RunOptions,
        providers: Providers,
        cancel_event: asyncio.Event,
    ) -> tuple[DeploymentConfig, ManifestBundle] | None:
        """Config and template stages. Nothing here calls a mutating provider."""
        if cancel_event.is_set():
            recorder.fail(RunOutcome.CANCELLED, "Run cancelled")
            return None

        await self._publish(StageStarted(run_id=run_id, stage=StageName.CONFIG.value))
        started = time.monotonic()
        resolver = self._config_resolver or ConfigResolver(providers.identity)
        try:
            config = await resolver.resolve(raw_config)
            await check_cluster_reachable(providers.cluster)
        except ConfigurationError as e:
            logger.error("configuration_failed", run_id=run_id, field=e.field, error=e.message)
            recorder.fail(RunOutcome.CONFIGURATION_ERROR, str(e))
            await self._finish_stage(run_id, recorder, StageResult(
                stage=StageName.CONFIG,
                status=StageStatus.FAILED,
                error=str(e),
                duration_seconds=_since(started),
            ))
            return None
        await self._finish_stage(run_id, recorder, StageResult(
            stage=StageName.CONFIG, status=StageStatus.SUCCEEDED, duration_seconds=_since(started),
        ))

        if cancel_event.is_set():
            recorder.fail(RunOutcome.CANCELLED, "Run cancelled")
            return None

        await self._publish(StageStarted(run_id=run_id, stage=StageName.TEMPLATES.value))
        started = time.monotonic()
        try:
            bundle = self._template_processor.render(config)
            self._preflight(config, bundle)
            changes = self._template_processor.pending_writes(bundle)
            if not options.dry_run:
                self._template_processor.write(bundle)
        except (TemplateError, ConfigurationError) as e:
            logger.error("templates_failed", run_id=run_id, error=str(e))
            outcome = (
                RunOutcome.CONFIGURATION_ERROR
                if isinstance(e, ConfigurationError)
                else RunOutcome.FAILED
            )
            recorder.fail(outcome, str(e))
            await self._finish_stage(run_id, recorder, StageResult(
                stage=StageName.TEMPLATES,
                status=StageStatus.FAILED,
                error=str(e),
                duration_seconds=_since(started),
            ))
            return None

        await self._finish_stage(run_id, recorder, StageResult(
            stage=StageName.TEMPLATES,
            status=StageStatus.SUCCEEDED if changes else StageStatus.ALREADY_SATISFIED,
            changes=changes,
            duration_seconds=_since(started),
        ))
        return config, bundle

    def _preflight(self, config: DeploymentConfig, bundle: ManifestBundle) -> None:
        """Parse every manifest the plan needs before anything mutates."""
        bundle.load_manifests(referenced_manifests(self._plan), config.namespace)

    async def _run_stage(
        self, run_id: str, recorder: _RunRecorder, stage: Stage, ctx: RunContext
    ) -> bool:
        """Run one stage. Returns False when the run must stop."""
        name = stage.name
        if name in ctx.options.skip:
            await self._finish_stage(run_id, recorder, StageResult(
                stage=name, status=StageStatus.SKIPPED,
            ))
            return True

        if ctx.cancel_event.is_set():
            recorder.fail(RunOutcome.CANCELLED, "Run cancelled")
            return False

        await self._publish(StageStarted(run_id=run_id, stage=name.value))
        logger.info("stage_started", run_id=run_id, stage=name.value, dry_run=ctx.options.dry_run)
        started = time.monotonic()
        actions: list[Action] = []
        try:
            self._check_predecessors(name, recorder)
            actions = await stage.check(ctx)
            await stage.apply(ctx, actions)
            services = await stage.wait_ready(ctx)
        except RunCancelled as e:
            logger.warning("stage_cancelled", run_id=run_id, stage=name.value)
            recorder.fail(RunOutcome.CANCELLED, str(e))
            await self._finish_stage(run_id, recorder, StageResult(
                stage=name,
                status=StageStatus.CANCELLED,
                changes=[action.change for action in actions],
                duration_seconds=_since(started),
            ))
            return False
        except (ProvisioningError, ProviderError) as e:
            logger.error(
                "stage_failed",
                run_id=run_id,
                stage=name.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            recorder.fail(RunOutcome.FAILED, f"{name.value}: {e}")
            await self._finish_stage(run_id, recorder, StageResult(
                stage=name,
                status=StageStatus.FAILED,
                changes=[action.change for action in actions],
                services=e.services if isinstance(e, RolloutTimeoutError) else [],
                error=str(e),
                duration_seconds=_since(started),
            ))
            return False

        await self._finish_stage(run_id, recorder, StageResult(
            stage=name,
            status=StageStatus.SUCCEEDED if actions else StageStatus.ALREADY_SATISFIED,
            changes=[action.change for action in actions],
            services=services,
            duration_seconds=_since(started),
        ))
        return True

    def _check_predecessors(self, name: StageName, recorder: _RunRecorder) -> None:
        for predecessor in STAGE_PREDECESSORS[name]:
            result = recorder.results.get(predecessor)
            if result is None or not result.status.satisfies_dependents:
                raise DependencyError(
                    f"Stage {name.value} requires {predecessor.value} to be satisfied",
                    stage=name.value,
                    resource=predecessor.value,
                    last_state=result.status.value if result else StageStatus.NOT_STARTED.value,
                )


def _since(started: float) -> float:
    return round(time.monotonic() - started, 3)
