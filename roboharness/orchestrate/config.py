"""Batch plan loading and environment identifier parsing."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from omegaconf import OmegaConf
from pydantic import BaseModel, Field, ValidationError

from roboharness._constants import (
    DEFAULT_CATALOG_COMMAND,
    DEFAULT_EVALUATOR_COMMAND,
    DEFAULT_RUNNER_COMMAND,
    DEFAULT_SUPERVISOR_URL,
)


class ConfigFormatError(ValueError):
    """Raised when a configuration file cannot be interpreted as a mapping."""


class EnvironmentFormatError(ValueError):
    """Raised when an environment identifier is not of the form name:variant[:variant...]."""


class BatchPlan(BaseModel):
    """Schema for a batch plan file. Every field can be overridden from the CLI."""

    robot: str | None = None
    task: str | None = None
    environments: list[str] = Field(default_factory=list)
    environments_file: Path | None = None
    prefix: str = "batch"
    zip: bool = False
    evaluate: bool = False
    native: str | None = None
    containerised: Path | None = None
    example: str | None = None
    example_containerised: bool = False
    args: str | None = None
    env_file: Path | None = None
    runner_command: str = DEFAULT_RUNNER_COMMAND
    evaluator_command: str = DEFAULT_EVALUATOR_COMMAND
    catalog_command: str = DEFAULT_CATALOG_COMMAND
    catalog: dict[str, Any] | None = None
    supervisor_url: str = DEFAULT_SUPERVISOR_URL
    grace_period_s: float = Field(3.0, ge=0)
    max_collision_retries: int | None = Field(None, ge=0)


@dataclass(frozen=True)
class EnvironmentSpec:
    """A resolved environment: scene name, ordered variants and catalog-derived metadata."""

    name: str
    variants: tuple[str, ...]
    start_pose: tuple[float, ...] | None = None
    map_path: Path | None = None

    @property
    def identifier(self) -> str:
        return ":".join((self.name, *self.variants))


def parse_environment_id(value: str) -> tuple[str, tuple[str, ...]]:
    """Split ``office:1:3`` into ``("office", ("1", "3"))``."""
    parts = [part.strip() for part in value.strip().split(":")]
    name, variants = parts[0], tuple(parts[1:])
    if not name or not variants or not all(variant.isdigit() for variant in variants):
        raise EnvironmentFormatError(
            f"Invalid environment identifier {value!r} (expected name:variant[:variant...], e.g. office:1)"
        )
    return name, variants


def parse_environment_list(expr: str | None) -> list[str]:
    if not expr:
        return []
    return [item.strip() for item in expr.split(",") if item.strip()]


def load_environment_file(path: Path) -> list[str]:
    """Read one environment identifier per line, skipping blanks and ``#`` comments."""
    resolved = path.expanduser().resolve()
    if not resolved.exists():
        raise FileNotFoundError(f"Environment list not found: {resolved}")
    identifiers: list[str] = []
    for line in resolved.read_text(encoding="utf-8").splitlines():
        entry = line.split("#", maxsplit=1)[0].strip()
        if entry:
            identifiers.append(entry)
    return identifiers


def collect_environment_ids(
    *,
    explicit: Iterable[str] = (),
    environments_file: Path | None = None,
) -> list[str]:
    identifiers = list(explicit)
    if environments_file is not None:
        identifiers.extend(load_environment_file(environments_file))
    for identifier in identifiers:
        parse_environment_id(identifier)
    return identifiers


def load_plan(path: Path) -> BatchPlan:
    resolved = path.expanduser().resolve()
    payload = _load_mapping(resolved)
    try:
        plan = BatchPlan(**payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid batch plan: {resolved}\n{exc}") from exc
    base_dir = resolved.parent
    plan.environments_file = _resolve_relative(plan.environments_file, base_dir)
    plan.containerised = _resolve_relative(plan.containerised, base_dir)
    plan.env_file = _resolve_relative(plan.env_file, base_dir)
    return plan


def override_plan(plan: BatchPlan, updates: Mapping[str, Any]) -> BatchPlan:
    """Return a copy of ``plan`` with ``updates`` applied, validated like a plan file."""
    try:
        return BatchPlan.model_validate({**plan.model_dump(), **updates})
    except ValidationError as exc:
        raise ValueError(f"Invalid batch options:\n{exc}") from exc


def _resolve_relative(value: Path | None, base_dir: Path) -> Path | None:
    if value is None:
        return None
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate.resolve()


def _load_mapping(path: Path) -> Mapping[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    if path.suffix not in {".yaml", ".yml", ".json"}:
        raise ValueError(f"Unsupported config format: {path} (expected .yaml/.yml/.json)")
    try:
        data = OmegaConf.to_container(OmegaConf.load(path), resolve=True)
    except Exception as exc:  # pragma: no cover - OmegaConf error types vary
        raise ConfigFormatError(f"Failed to load config: {path}") from exc
    if not isinstance(data, Mapping):
        raise ConfigFormatError(f"Config must be a mapping at top level: {path}")
    return data


__all__ = [
    "BatchPlan",
    "ConfigFormatError",
    "EnvironmentFormatError",
    "EnvironmentSpec",
    "collect_environment_ids",
    "load_environment_file",
    "load_plan",
    "override_plan",
    "parse_environment_id",
    "parse_environment_list",
]
