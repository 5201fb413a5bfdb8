"""AWS-backed providers built on the ``aws`` CLI.

Secrets go to Secrets Manager, roles to IAM. The in-cluster half of a role
binding (the service account annotation) is written with ``kubectl``.
Secret values are passed on stdin, never on the command line.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from deploykit.domain.errors import ProviderError
from deploykit.domain.models.plan import RoleRecord
from deploykit.domain.models.resources import ServiceIdentity
from deploykit.domain.ports.providers import IdentityProvider, RoleStore, SecretStore
from deploykit.infrastructure.providers.command import CommandResult, CommandRunner


logger = structlog.get_logger(__name__)

DEFAULT_IDENTITY_ANNOTATION = "eks.amazonaws.com/role-arn"


def _load_json(result: CommandResult, what: str) -> Any:
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ProviderError(f"Unparseable aws output for {what}") from e


class AwsCli:
    """Thin wrapper adding region and output flags to every ``aws`` call."""

    def __init__(self, runner: CommandRunner, *, executable: str = "aws", region: str | None = None) -> None:
        self._runner = runner
        self._executable = executable
        self._region = region

    async def __call__(self, *args: str, stdin: str | None = None) -> CommandResult:
        argv = [self._executable, *args, "--output", "json"]
        if self._region:
            argv.extend(["--region", self._region])
        return await self._runner.run(argv, stdin=stdin)


class AwsCliIdentityProvider(IdentityProvider):
    """Account id from ``sts get-caller-identity``."""

    def __init__(self, aws: AwsCli) -> None:
        self._aws = aws

    async def who_am_i(self) -> str:
        result = (await self._aws("sts", "get-caller-identity")).raise_for_status()
        return str(_load_json(result, "caller identity")["Account"])


class AwsSecretsManagerStore(SecretStore):
    """Secrets Manager secrets holding a JSON object of string keys."""

    def __init__(self, aws: AwsCli) -> None:
        self._aws = aws

    async def exists(self, name: str) -> bool:
        result = await self._aws("secretsmanager", "describe-secret", "--secret-id", name)
        if "ResourceNotFoundException" in result.stderr:
            return False
        result.raise_for_status()
        return True

    async def get(self, name: str) -> dict[str, str]:
        result = await self._aws("secretsmanager", "get-secret-value", "--secret-id", name)
        result.raise_for_status()
        payload = _load_json(result, name)
        try:
            values = json.loads(payload["SecretString"])
        except (KeyError, TypeError, json.JSONDecodeError) as e:
            raise ProviderError(f"Secret {name} does not hold a JSON object") from e
        if not isinstance(values, dict):
            raise ProviderError(f"Secret {name} does not hold a JSON object")
        return {str(key): str(value) for key, value in values.items()}

    async def create(self, name: str, keys: dict[str, str]) -> None:
        request = {"Name": name, "SecretString": json.dumps(keys, sort_keys=True)}
        result = await self._aws(
            "secretsmanager", "create-secret", "--cli-input-json", "file:///dev/stdin",
            stdin=json.dumps(request),
        )
        result.raise_for_status()

    async def update(self, name: str, keys: dict[str, str]) -> None:
        request = {"SecretId": name, "SecretString": json.dumps(keys, sort_keys=True)}
        result = await self._aws(
            "secretsmanager", "put-secret-value", "--cli-input-json", "file:///dev/stdin",
            stdin=json.dumps(request),
        )
        result.raise_for_status()

    async def delete(self, name: str) -> bool:
        result = await self._aws(
            "secretsmanager", "delete-secret", "--secret-id", name,
            "--force-delete-without-recovery",
        )
        if "ResourceNotFoundException" in result.stderr:
            return False
        result.raise_for_status()
        return True


class AwsIamRoleStore(RoleStore):
    """IAM roles, plus service account annotations through kubectl."""

    def __init__(
        self,
        aws: AwsCli,
        runner: CommandRunner,
        *,
        kubectl: str = "kubectl",
        kubeconfig: str | None = None,
        annotation: str = DEFAULT_IDENTITY_ANNOTATION,
    ) -> None:
        self._aws = aws
        self._runner = runner
        self._kubectl = [kubectl] + (["--kubeconfig", kubeconfig] if kubeconfig else [])
        self._annotation = annotation

    async def _attached_policies(self, name: str) -> list[str]:
        result = await self._aws("iam", "list-attached-role-policies", "--role-name", name)
        result.raise_for_status()
        return [
            policy["PolicyArn"]
            for policy in _load_json(result, name).get("AttachedPolicies", [])
        ]

    async def get_role(self, name: str) -> RoleRecord | None:
        result = await self._aws("iam", "get-role", "--role-name", name)
        if "NoSuchEntity" in result.stderr:
            return None
        result.raise_for_status()
        role = _load_json(result, name)["Role"]
        document = role.get("AssumeRolePolicyDocument") or {}
        if isinstance(document, str):
            document = json.loads(document)
        return RoleRecord(
            role_id=role["Arn"],
            trust_policy=document,
            policy_arns=await self._attached_policies(name),
        )

    async def upsert_role(self, name: str, trust_policy: dict[str, Any]) -> str:
        document = json.dumps(trust_policy, sort_keys=True)
        existing = await self.get_role(name)
        if existing is None:
            result = await self._aws(
                "iam", "create-role", "--role-name", name,
                "--assume-role-policy-document", document,
            )
            result.raise_for_status()
            role_id = str(_load_json(result, name)["Role"]["Arn"])
            logger.info("iam_role_created", role=name)
            return role_id

        result = await self._aws(
            "iam", "update-assume-role-policy", "--role-name", name, "--policy-document", document,
        )
        result.raise_for_status()
        logger.info("iam_trust_policy_updated", role=name)
        return existing.role_id

    async def attach_policy(self, name: str, policy_arn: str) -> None:
        result = await self._aws(
            "iam", "attach-role-policy", "--role-name", name, "--policy-arn", policy_arn,
        )
        result.raise_for_status()

    async def get_identity_annotation(self, identity: ServiceIdentity) -> str | None:
        result = await self._runner.run([
            *self._kubectl, "get", "serviceaccount", identity.name,
            "-n", identity.namespace, "-o", "json",
        ])
        if "NotFound" in result.stderr:
            return None
        result.raise_for_status()
        metadata = _load_json(result, str(identity)).get("metadata") or {}
        return (metadata.get("annotations") or {}).get(self._annotation)

    async def annotate_identity(self, identity: ServiceIdentity, role_id: str) -> None:
        exists = await self._runner.run([
            *self._kubectl, "get", "serviceaccount", identity.name, "-n", identity.namespace,
        ])
        if not exists.ok:
            if "NotFound" not in exists.stderr:
                exists.raise_for_status()
            created = await self._runner.run([
                *self._kubectl, "create", "serviceaccount", identity.name,
                "-n", identity.namespace,
            ])
            created.raise_for_status()
        result = await self._runner.run([
            *self._kubectl, "annotate", "serviceaccount", identity.name,
            "-n", identity.namespace, f"{self._annotation}={role_id}", "--overwrite",
        ])
        result.raise_for_status()

    async def delete_role(self, name: str) -> bool:
        if await self.get_role(name) is None:
            return False
        for policy_arn in await self._attached_policies(name):
            detached = await self._aws(
                "iam", "detach-role-policy", "--role-name", name, "--policy-arn", policy_arn,
            )
            detached.raise_for_status()

        inline = await self._aws("iam", "list-role-policies", "--role-name", name)
        inline.raise_for_status()
        for policy_name in _load_json(inline, name).get("PolicyNames", []):
            removed = await self._aws(
                "iam", "delete-role-policy", "--role-name", name, "--policy-name", policy_name,
            )
            removed.raise_for_status()

        result = await self._aws("iam", "delete-role", "--role-name", name)
        if "NoSuchEntity" in result.stderr:
            return False
        result.raise_for_status()
        return True
