"""Cluster API backed by the ``kubectl`` CLI."""

from __future__ import annotations

import json
import re
from typing import Any

import structlog
import yaml

from deploykit.domain.errors import ProviderError
from deploykit.domain.models.resources import Readiness, ResourceRef
from deploykit.domain.ports.providers import ClusterApi
from deploykit.infrastructure.providers.command import CommandResult, CommandRunner


logger = structlog.get_logger(__name__)

# Reason phrases kubectl prints for API proxy errors, mapped to HTTP status codes.
PROXY_REASON_STATUS: dict[str, int] = {
    "BadRequest": 400,
    "Unauthorized": 401,
    "Forbidden": 403,
    "NotFound": 404,
    "MethodNotAllowed": 405,
    "Conflict": 409,
    "TooManyRequests": 429,
    "InternalError": 500,
    "BadGateway": 502,
    "ServiceUnavailable": 503,
    "Timeout": 504,
}

_REASON = re.compile(r"Error from server \((\w+)\)")

_WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "ReplicaSet", "DaemonSet"})


def is_not_found(result: CommandResult) -> bool:
    return "NotFound" in result.stderr or "not found" in result.stderr


def workload_readiness(kind: str, obj: dict[str, Any]) -> Readiness:
    """Readiness of a workload object as returned by ``kubectl get -o json``."""
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    if kind == "DaemonSet":
        desired = int(status.get("desiredNumberScheduled", 0))
        ready = int(status.get("numberReady", 0))
    else:
        desired = int(spec.get("replicas", 1))
        ready = int(status.get("readyReplicas", 0))
    generation = (obj.get("metadata") or {}).get("generation", 0)
    observed = status.get("observedGeneration", 0)
    up_to_date = observed >= generation
    return Readiness(
        ready=up_to_date and ready >= desired,
        detail=f"{ready}/{desired} replicas ready" + ("" if up_to_date else ", rollout pending"),
        ready_replicas=ready,
        desired_replicas=desired,
    )


def pod_readiness(obj: dict[str, Any]) -> Readiness:
    status = obj.get("status") or {}
    for condition in status.get("conditions") or []:
        if condition.get("type") == "Ready":
            ready = condition.get("status") == "True"
            return Readiness(ready=ready, detail=status.get("phase", ""))
    return Readiness(ready=False, detail=status.get("phase", "Pending"))


class KubectlClusterApi(ClusterApi):
    """Talks to the cluster through ``kubectl``; manifests are piped on stdin."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        kubectl: str = "kubectl",
        kubeconfig: str | None = None,
    ) -> None:
        self._runner = runner
        self._base = [kubectl] + (["--kubeconfig", kubeconfig] if kubeconfig else [])

    async def _kubectl(self, *args: str, stdin: str | None = None) -> CommandResult:
        return await self._runner.run([*self._base, *args], stdin=stdin)

    @staticmethod
    def _scope(ref: ResourceRef) -> list[str]:
        return ["-n", ref.namespace] if ref.namespace else []

    async def check_reachable(self) -> None:
        result = await self._kubectl("cluster-info")
        result.raise_for_status()

    async def apply(self, manifest: dict[str, Any]) -> None:
        result = await self._kubectl("apply", "-f", "-", stdin=yaml.safe_dump(manifest))
        result.raise_for_status()
        logger.debug("kubectl_applied", output=result.stdout.strip())

    async def matches(self, manifest: dict[str, Any]) -> bool:
        # kubectl diff: 0 = no differences, 1 = differences, >1 = error.
        result = await self._kubectl("diff", "-f", "-", stdin=yaml.safe_dump(manifest))
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        result.raise_for_status()
        return False

    async def get_readiness(self, ref: ResourceRef) -> Readiness:
        result = await self._kubectl("get", ref.kind, ref.name, *self._scope(ref), "-o", "json")
        if not result.ok:
            if is_not_found(result):
                return Readiness(ready=False, detail="not found")
            result.raise_for_status()
        try:
            obj = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ProviderError(f"Unparseable kubectl output for {ref}") from e
        if ref.kind in _WORKLOAD_KINDS:
            return workload_readiness(ref.kind, obj)
        if ref.kind == "Pod":
            return pod_readiness(obj)
        return Readiness(ready=True, detail="exists")

    async def exec_command(self, ref: ResourceRef, command: list[str]) -> tuple[bool, str]:
        target = f"{ref.kind.lower()}/{ref.name}"
        result = await self._kubectl("exec", *self._scope(ref), target, "--", *command)
        return result.ok, result.stdout if result.ok else result.stderr

    async def probe_http(self, ref: ResourceRef, path: str, port: int) -> int:
        namespace = ref.namespace or "default"
        url = f"/api/v1/namespaces/{namespace}/services/{ref.name}:{port}/proxy{path}"
        result = await self._kubectl("get", "--raw", url)
        if result.ok:
            return 200
        match = _REASON.search(result.stderr)
        if match and match.group(1) in PROXY_REASON_STATUS:
            return PROXY_REASON_STATUS[match.group(1)]
        raise ProviderError(f"Health probe for {ref} failed: {result.stderr.strip()[:200]}")

    async def delete(self, ref: ResourceRef) -> bool:
        result = await self._kubectl(
            "delete", ref.kind, ref.name, *self._scope(ref), "--ignore-not-found", "-o", "name"
        )
        result.raise_for_status()
        return bool(result.stdout.strip())
