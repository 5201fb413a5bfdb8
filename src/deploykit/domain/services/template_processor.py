"""Manifest template rendering.

Templates are any files ending in ``.template``; ``${NAME}`` references are
replaced with configuration variables. Substitution is purely name based: no
expressions, no defaults, and a bare ``$NAME`` is left alone so shell snippets
inside config maps survive. Rendering is pure; writing the generated tree is
a separate, idempotent step.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from pathlib import Path, PurePosixPath
from typing import Any

import structlog
import yaml

from deploykit.domain.errors import TemplateError
from deploykit.domain.models.base import ValueObject
from deploykit.domain.models.config import DeploymentConfig
from deploykit.domain.models.run import PlannedChange


logger = structlog.get_logger(__name__)

TEMPLATE_SUFFIX = ".template"
_VARIABLE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def substitute(text: str, variables: Mapping[str, str], *, template: str) -> str:
    """Replace every ``${NAME}`` in ``text``; unknown names raise TemplateError."""
    missing = sorted({
        match.group(1) for match in _VARIABLE.finditer(text)
        if match.group(1) not in variables
    })
    if missing:
        raise TemplateError(
            f"Unresolved variable ${{{missing[0]}}} in {template}"
            + (f" (also: {', '.join(missing[1:])})" if len(missing) > 1 else ""),
            template=template,
            variable=missing[0],
        )
    return _VARIABLE.sub(lambda match: variables[match.group(1)], text)


class RenderedDocument(ValueObject):
    """One file of the generated tree. Non-template files keep their original bytes."""

    path: str
    source: str
    data: bytes
    templated: bool = False

    @property
    def content(self) -> str:
        try:
            return self.data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TemplateError(f"{self.path} is not UTF-8 text", template=self.source) from e


class ManifestBundle:
    """The rendered document tree, addressed by posix path relative to its root."""

    def __init__(self, documents: Iterable[RenderedDocument] = ()) -> None:
        self._documents = {doc.path: doc for doc in documents}

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, path: object) -> bool:
        return path in self._documents

    @property
    def documents(self) -> list[RenderedDocument]:
        return [self._documents[path] for path in sorted(self._documents)]

    def text(self, path: str) -> str:
        doc = self._documents.get(path)
        if doc is None:
            raise TemplateError(f"No rendered document at {path}", template=path)
        return doc.content

    def select(self, paths: Iterable[str]) -> list[RenderedDocument]:
        """Resolve file paths and directory prefixes, preserving the given order."""
        selected: list[RenderedDocument] = []
        seen: set[str] = set()
        for raw in paths:
            path = raw.rstrip("/")
            if path in self._documents:
                matches = [path]
            else:
                prefix = f"{path}/"
                matches = sorted(p for p in self._documents if p.startswith(prefix))
            if not matches:
                raise TemplateError(f"Manifest path {raw} matched nothing", template=raw)
            for match in matches:
                if match not in seen:
                    seen.add(match)
                    selected.append(self._documents[match])
        return selected

    def load_manifests(
        self, paths: Iterable[str], default_namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """Parse the selected documents as (multi-document) YAML objects."""
        manifests: list[dict[str, Any]] = []
        for doc in self.select(paths):
            try:
                parsed = [m for m in yaml.safe_load_all(doc.content) if m is not None]
            except yaml.YAMLError as e:
                raise TemplateError(f"Invalid YAML in {doc.path}: {e}", template=doc.path) from e
            for manifest in parsed:
                if not isinstance(manifest, dict) or "kind" not in manifest:
                    raise TemplateError(
                        f"{doc.path} contains a document that is not a manifest",
                        template=doc.path,
                    )
                metadata = manifest.setdefault("metadata", {})
                if default_namespace and _is_namespaced(manifest):
                    metadata.setdefault("namespace", default_namespace)
                manifests.append(manifest)
        return manifests


# Cluster-scoped kinds never receive the default namespace.
_CLUSTER_SCOPED_KINDS = frozenset({
    "Namespace",
    "StorageClass",
    "ClusterRole",
    "ClusterRoleBinding",
    "IngressClass",
    "PersistentVolume",
    "CustomResourceDefinition",
    "ClusterSecretStore",
})


def _is_namespaced(manifest: dict[str, Any]) -> bool:
    return manifest.get("kind") not in _CLUSTER_SCOPED_KINDS


class TemplateProcessor:
    """Renders a template directory into a generated-artifact tree."""

    def __init__(self, templates_dir: Path, output_dir: Path) -> None:
        self._templates_dir = Path(templates_dir)
        self._output_dir = Path(output_dir)

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def _source_files(self) -> list[Path]:
        if not self._templates_dir.is_dir():
            raise TemplateError(
                f"Template directory {self._templates_dir} does not exist",
                template=str(self._templates_dir),
            )
        output = self._output_dir.resolve()
        files = []
        for path in sorted(self._templates_dir.rglob("*")):
            if not path.is_file():
                continue
            relative = path.relative_to(self._templates_dir)
            if any(part.startswith(".") for part in relative.parts):
                continue
            if path.resolve().is_relative_to(output):
                continue
            files.append(path)
        return files

    def render(self, config: DeploymentConfig) -> ManifestBundle:
        """Render every template and carry every other file over verbatim."""
        variables = config.template_variables()
        documents: dict[str, RenderedDocument] = {}
        for path in self._source_files():
            relative = PurePosixPath(path.relative_to(self._templates_dir).as_posix())
            source = str(relative)
            raw = path.read_bytes()
            if relative.name.endswith(TEMPLATE_SUFFIX):
                target = str(relative.with_name(relative.name[: -len(TEMPLATE_SUFFIX)]))
                try:
                    text = raw.decode("utf-8")
                except UnicodeDecodeError as e:
                    raise TemplateError(
                        f"Template {source} is not UTF-8 text", template=source
                    ) from e
                doc = RenderedDocument(
                    path=target,
                    source=source,
                    data=substitute(text, variables, template=source).encode("utf-8"),
                    templated=True,
                )
            else:
                doc = RenderedDocument(path=source, source=source, data=raw)

            existing = documents.get(doc.path)
            if existing is not None:
                raise TemplateError(
                    f"{existing.source} and {doc.source} both render to {doc.path}",
                    template=doc.source,
                )
            documents[doc.path] = doc

        logger.info(
            "templates_rendered",
            templates_dir=str(self._templates_dir),
            documents=len(documents),
            templated=sum(1 for doc in documents.values() if doc.templated),
        )
        return ManifestBundle(documents.values())

    def pending_writes(self, bundle: ManifestBundle) -> list[PlannedChange]:
        """Files whose on-disk content differs from the rendered bundle."""
        changes = []
        for doc in bundle.documents:
            target = self._output_dir / doc.path
            if not target.is_file():
                changes.append(PlannedChange(action="create", resource=f"file/{doc.path}"))
            elif target.read_bytes() != doc.data:
                changes.append(PlannedChange(action="update", resource=f"file/{doc.path}"))
        return changes

    def write(self, bundle: ManifestBundle) -> list[Path]:
        """Write changed documents to the output directory. Returns the paths written."""
        written = []
        for doc in bundle.documents:
            target = self._output_dir / doc.path
            if target.is_file() and target.read_bytes() == doc.data:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(doc.data)
            written.append(target)
        logger.info("generated_tree_written", output_dir=str(self._output_dir), written=len(written))
        return written
