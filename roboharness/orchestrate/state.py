"""Batch state tracking and result artifact persistence."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence
import json
import os
import shutil
import uuid

from roboharness.orchestrate.config import EnvironmentSpec

EMPTY_RESULT: Mapping[str, Any] = {}


class IterationState:
    pending = "pending"
    running = "running"
    success = "success"
    retry = "retry"
    fatal = "fatal"


def write_json_atomic(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp-{uuid.uuid4().hex}")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
    os.replace(tmp_path, path)


def copy_atomic(source: Path, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = dest.with_name(f"{dest.name}.tmp-{uuid.uuid4().hex}")
    shutil.copyfile(source, tmp_path)
    os.replace(tmp_path, dest)


def clear_result(path: Path) -> None:
    path.unlink(missing_ok=True)


def result_path_for(prefix: str, index: int) -> Path:
    return Path(f"{prefix}_{index}.json")


@dataclass
class EnvironmentRecord:
    environment: str
    state: str = IterationState.pending
    attempts: int = 0
    collisions: int = 0
    result_path: Path | None = None
    note: str | None = None


@dataclass
class BatchState:
    """Progress through the environment list. Only the batch loop mutates it."""

    prefix: str
    environments: Sequence[EnvironmentSpec]
    index: int = 0
    results: list[Path] = field(default_factory=list)
    records: list[EnvironmentRecord] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.records:
            self.records = [EnvironmentRecord(environment=env.identifier) for env in self.environments]

    @property
    def done(self) -> bool:
        return self.index >= len(self.environments)

    @property
    def current(self) -> EnvironmentSpec:
        return self.environments[self.index]

    @property
    def current_record(self) -> EnvironmentRecord:
        return self.records[self.index]

    def begin_attempt(self) -> EnvironmentRecord:
        record = self.current_record
        record.attempts += 1
        record.state = IterationState.running
        return record

    def mark_retry(self, note: str) -> None:
        record = self.current_record
        record.collisions += 1
        record.state = IterationState.retry
        record.note = note

    def mark_fatal(self, note: str) -> None:
        record = self.current_record
        record.state = IterationState.fatal
        record.note = note

    def record_success(self, source: Path) -> Path:
        """Copy the live artifact to its indexed location and advance."""
        dest = result_path_for(self.prefix, self.index)
        copy_atomic(source, dest)
        record = self.current_record
        record.state = IterationState.success
        record.result_path = dest
        self.results.append(dest)
        self.index += 1
        return dest


__all__ = [
    "BatchState",
    "EMPTY_RESULT",
    "EnvironmentRecord",
    "IterationState",
    "clear_result",
    "copy_atomic",
    "result_path_for",
    "write_json_atomic",
]
