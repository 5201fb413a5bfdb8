"""Identity stage: cloud roles bound to in-cluster service identities."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from deploykit.domain.errors import IdentityBindingError, ProviderError, TemplateError
from deploykit.domain.models.plan import RoleBinding, RoleRecord
from deploykit.domain.models.run import PlannedChange, ServiceStatus, StageName
from deploykit.domain.ports.providers import RoleStore
from deploykit.domain.services.stage import Action, RunContext, Stage


logger = structlog.get_logger(__name__)


def canonical_policy(document: dict[str, Any]) -> str:
    """Stable text form used to compare trust policies by content."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"))


def load_trust_policy(ctx: RunContext, binding: RoleBinding) -> dict[str, Any]:
    """Parse a binding's rendered trust policy document."""
    try:
        document = json.loads(ctx.bundle.text(binding.trust_policy_ref))
    except (TemplateError, json.JSONDecodeError) as e:
        raise IdentityBindingError(
            f"Malformed trust policy {binding.trust_policy_ref}: {e}",
            stage=StageName.IDENTITY.value,
            resource=binding.role_name,
        ) from e
    if not isinstance(document, dict) or "Statement" not in document:
        raise IdentityBindingError(
            f"Trust policy {binding.trust_policy_ref} has no Statement",
            stage=StageName.IDENTITY.value,
            resource=binding.role_name,
        )
    return document


class _BindingState:
    """Role id carried from the upsert action to the annotate action."""

    def __init__(self, role_id: str | None) -> None:
        self.role_id = role_id


class IdentityBinder(Stage):
    """Idempotent upsert of roles, policy attachments and identity annotations.

    Any failure here is fatal for the run: there is no safe partial state to
    resume from.
    """

    name = StageName.IDENTITY

    def __init__(self, bindings: list[RoleBinding]) -> None:
        self._bindings = bindings

    def _error(
        self, message: str, binding: RoleBinding, exc: ProviderError
    ) -> IdentityBindingError:
        reason = "permission denied" if exc.permission_denied else str(exc)
        return IdentityBindingError(
            f"{message}: {reason}",
            stage=self.name.value,
            resource=binding.role_name,
        )

    async def check(self, ctx: RunContext) -> list[Action]:
        roles = ctx.providers.roles
        actions: list[Action] = []

        for binding in self._bindings:
            desired = load_trust_policy(ctx, binding)
            try:
                record = await roles.get_role(binding.role_name)
                annotation = await roles.get_identity_annotation(binding.service_identity)
            except ProviderError as e:
                raise self._error("Cannot read role state", binding, e) from e

            state = _BindingState(record.role_id if record else None)
            actions.extend(self._plan_binding(roles, binding, desired, record, annotation, state))

        return actions

    def _plan_binding(
        self,
        roles: RoleStore,
        binding: RoleBinding,
        desired: dict[str, Any],
        record: RoleRecord | None,
        annotation: str | None,
        state: _BindingState,
    ) -> list[Action]:
        resource = f"role/{binding.role_name}"
        actions: list[Action] = []

        if record is None:
            change = PlannedChange(action="create", resource=resource)
            actions.append(Action(change, self._upserter(roles, binding, desired, state)))
        elif canonical_policy(record.trust_policy) != canonical_policy(desired):
            change = PlannedChange(action="update", resource=resource, detail="trust policy")
            actions.append(Action(change, self._upserter(roles, binding, desired, state)))

        attached = set(record.policy_arns) if record else set()
        for policy_arn in binding.policy_arns:
            if policy_arn not in attached:
                change = PlannedChange(action="attach", resource=resource, detail=policy_arn)
                actions.append(Action(change, self._attacher(roles, binding, policy_arn)))

        if record is None or annotation != record.role_id:
            change = PlannedChange(
                action="annotate",
                resource=f"identity/{binding.service_identity}",
                detail=binding.role_name,
            )
            actions.append(Action(change, self._annotator(roles, binding, state)))

        return actions

    def _upserter(
        self,
        roles: RoleStore,
        binding: RoleBinding,
        desired: dict[str, Any],
        state: _BindingState,
    ) -> Callable[[], Awaitable[None]]:
        async def _upsert() -> None:
            try:
                state.role_id = await roles.upsert_role(binding.role_name, desired)
            except ProviderError as e:
                raise self._error("Cannot upsert role", binding, e) from e
            logger.info("role_upserted", role=binding.role_name, role_id=state.role_id)

        return _upsert

    def _attacher(
        self, roles: RoleStore, binding: RoleBinding, policy_arn: str
    ) -> Callable[[], Awaitable[None]]:
        async def _attach() -> None:
            try:
                await roles.attach_policy(binding.role_name, policy_arn)
            except ProviderError as e:
                raise self._error(f"Cannot attach {policy_arn}", binding, e) from e
            logger.info("role_policy_attached", role=binding.role_name, policy_arn=policy_arn)

        return _attach

    def _annotator(
        self, roles: RoleStore, binding: RoleBinding, state: _BindingState
    ) -> Callable[[], Awaitable[None]]:
        async def _annotate() -> None:
            if state.role_id is None:
                raise IdentityBindingError(
                    "Role id unknown when annotating identity",
                    stage=self.name.value,
                    resource=binding.role_name,
                )
            try:
                await roles.annotate_identity(binding.service_identity, state.role_id)
            except ProviderError as e:
                raise self._error("Cannot annotate identity", binding, e) from e
            logger.info(
                "identity_annotated",
                identity=str(binding.service_identity),
                role_id=state.role_id,
            )

        return _annotate

    async def wait_ready(self, ctx: RunContext) -> list[ServiceStatus]:
        """Confirm each role exists and is annotated on its identity."""
        await verify_bindings(ctx.providers.roles, self._bindings, stage=self.name)
        return []


async def verify_bindings(
    roles: RoleStore, bindings: list[RoleBinding], *, stage: StageName
) -> None:
    """Read-only check that every binding is in place."""
    for binding in bindings:
        try:
            record = await roles.get_role(binding.role_name)
            annotation = await roles.get_identity_annotation(binding.service_identity)
        except ProviderError as e:
            raise IdentityBindingError(
                f"Cannot verify role binding: {e}",
                stage=stage.value,
                resource=binding.role_name,
            ) from e
        if record is None:
            raise IdentityBindingError(
                "Role does not exist", stage=stage.value, resource=binding.role_name
            )
        if annotation != record.role_id:
            raise IdentityBindingError(
                f"Identity {binding.service_identity} is not bound to the role",
                stage=stage.value,
                resource=binding.role_name,
                last_state=annotation or "unannotated",
            )
