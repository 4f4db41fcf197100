"""Read-only access to the environment/task/robot/example catalogs.

The catalogs themselves are maintained outside this package. ``CommandCatalog``
queries them through an external command that prints a YAML mapping for one
entry; ``StaticCatalog`` serves an inline mapping (plan files, tests).
"""

from __future__ import annotations

import logging
from pathlib import Path
import shlex
import subprocess
from typing import Any, Iterable, Mapping, Protocol

import yaml

from roboharness._constants import DEFAULT_CATALOG_COMMAND
from roboharness.orchestrate.config import EnvironmentSpec, parse_environment_id

logger = logging.getLogger(__name__)

ENVIRONMENTS = "environments"
TASKS = "tasks"
ROBOTS = "robots"
EXAMPLES = "examples"


class CatalogError(RuntimeError):
    """Raised when a catalog entry cannot be resolved."""


class Catalog(Protocol):
    def get(self, kind: str, name: str, *, variant: str | None = None) -> Mapping[str, Any]: ...


class StaticCatalog:
    """Catalog backed by a nested mapping ``{kind: {name: entry}}``.

    Environment entries are keyed by variant: ``{"environments": {"office": {"1": {...}}}}``.
    """

    def __init__(self, entries: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._entries = dict(entries or {})

    def get(self, kind: str, name: str, *, variant: str | None = None) -> Mapping[str, Any]:
        section = self._entries.get(kind) or {}
        entry = section.get(name)
        if variant is not None:
            variants = {str(key): value for key, value in entry.items()} if isinstance(entry, Mapping) else {}
            entry = variants.get(str(variant))
        if not isinstance(entry, Mapping):
            label = f"{name}:{variant}" if variant is not None else name
            raise CatalogError(f"No {kind} entry named {label!r}.")
        return entry


class CommandCatalog:
    """Catalog resolved by running an external lookup command per entry."""

    def __init__(self, template: str = DEFAULT_CATALOG_COMMAND, *, timeout_s: float = 60.0) -> None:
        self._template = template
        self._timeout_s = timeout_s
        self._cache: dict[tuple[str, str, str | None], Mapping[str, Any]] = {}

    def get(self, kind: str, name: str, *, variant: str | None = None) -> Mapping[str, Any]:
        key = (kind, name, variant)
        if key in self._cache:
            return self._cache[key]
        command = shlex.split(self._template.format(kind=kind, name=name))
        if variant is not None:
            command.extend(["--variant", str(variant)])
        logger.debug("Catalog lookup: %s", shlex.join(command))
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._timeout_s,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise CatalogError(f"Catalog command failed for {kind} {name!r}: {exc}") from exc
        if completed.returncode != 0:
            detail = completed.stderr.strip() or completed.stdout.strip()
            raise CatalogError(f"Catalog has no {kind} entry {name!r} (exit {completed.returncode}): {detail}")
        try:
            payload = yaml.safe_load(completed.stdout)
        except yaml.YAMLError as exc:
            raise CatalogError(f"Catalog returned malformed YAML for {kind} {name!r}") from exc
        if not isinstance(payload, Mapping):
            raise CatalogError(f"Catalog entry for {kind} {name!r} is not a mapping.")
        self._cache[key] = payload
        return payload


def read_catalog_file(path: Path) -> dict[str, Any]:
    """Load an inline catalog mapping written by ``write_catalog_file`` (or by hand)."""
    resolved = path.expanduser().resolve()
    try:
        payload = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CatalogError(f"Cannot read catalog file {resolved}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise CatalogError(f"Catalog file {resolved} is not valid YAML") from exc
    if not isinstance(payload, Mapping):
        raise CatalogError(f"Catalog file {resolved} must contain a mapping.")
    return dict(payload)


def write_catalog_file(entries: Mapping[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(dict(entries), sort_keys=False), encoding="utf-8")
    return path


def build_catalog(*, inline: Mapping[str, Any] | None, command: str) -> Catalog:
    if inline:
        return StaticCatalog(inline)
    return CommandCatalog(command)


def resolve_environment(catalog: Catalog, identifier: str) -> EnvironmentSpec:
    name, variants = parse_environment_id(identifier)
    entries = [catalog.get(ENVIRONMENTS, name, variant=variant) for variant in variants]
    first = entries[0]
    map_path = first.get("map_path")
    return EnvironmentSpec(
        name=name,
        variants=variants,
        start_pose=_coerce_pose(first.get("start_pose")),
        map_path=Path(str(map_path)) if map_path else None,
    )


def resolve_environments(catalog: Catalog, identifiers: Iterable[str], *, task: str | None) -> list[EnvironmentSpec]:
    """Resolve every identifier, checking variant counts against the task's ``scene_count``."""
    scene_count = 1
    if task:
        scene_count = int(task_metadata(catalog, task).get("scene_count", 1))
    environments: list[EnvironmentSpec] = []
    for identifier in identifiers:
        spec = resolve_environment(catalog, identifier)
        if len(spec.variants) != scene_count:
            raise CatalogError(
                f"Environment {identifier!r} has {len(spec.variants)} variant(s) but task {task!r} "
                f"requires {scene_count}."
            )
        environments.append(spec)
    return environments


def task_metadata(catalog: Catalog, task: str) -> Mapping[str, Any]:
    return catalog.get(TASKS, task)


def task_actions(catalog: Catalog, task: str | None) -> list[str]:
    if not task:
        return []
    actions = task_metadata(catalog, task).get("actions") or []
    return [str(action) for action in actions]


def validate_robot(catalog: Catalog, robot: str | None) -> None:
    if robot:
        catalog.get(ROBOTS, robot)


def _coerce_pose(value: object) -> tuple[float, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = [part for part in value.replace(",", " ").split() if part]
    if not isinstance(value, (list, tuple)):
        raise CatalogError(f"start_pose must be a list of numbers, got {value!r}")
    try:
        return tuple(float(part) for part in value)
    except (TypeError, ValueError) as exc:
        raise CatalogError(f"start_pose must be a list of numbers, got {value!r}") from exc


__all__ = [
    "Catalog",
    "CatalogError",
    "CommandCatalog",
    "ENVIRONMENTS",
    "EXAMPLES",
    "ROBOTS",
    "StaticCatalog",
    "TASKS",
    "build_catalog",
    "read_catalog_file",
    "resolve_environment",
    "resolve_environments",
    "task_actions",
    "task_metadata",
    "validate_robot",
    "write_catalog_file",
]
