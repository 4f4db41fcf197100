"""Post-processing of a finished batch: archive and evaluate results."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Sequence
import zipfile

from roboharness._constants import DEFAULT_EVALUATOR_COMMAND
from roboharness.orchestrate.processes import render_command, start_process, wait_process

logger = logging.getLogger(__name__)


class AggregationError(RuntimeError):
    """Raised when archiving or evaluation of batch results fails."""


@dataclass(frozen=True)
class AggregateResult:
    archive_path: Path | None = None
    scores_path: Path | None = None
    error: str | None = None


def archive_path_for(prefix: str) -> Path:
    return Path(f"{prefix}.zip")


def scores_path_for(prefix: str) -> Path:
    return Path(f"{prefix}_scores.json")


def archive_results(result_paths: Sequence[Path], prefix: str) -> Path:
    archive = archive_path_for(prefix)
    archive.parent.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as handle:
            for path in result_paths:
                handle.write(path, arcname=Path(path).name)
    except OSError as exc:
        raise AggregationError(f"Failed to archive results into {archive}: {exc}") from exc
    return archive


async def evaluate_results(
    inputs: Sequence[Path],
    *,
    task: str,
    environments: Sequence[str],
    scores_path: Path,
    command_template: str = DEFAULT_EVALUATOR_COMMAND,
) -> Path:
    context = {
        "task": task,
        "environments": ",".join(environments),
        "scores_path": str(scores_path),
    }
    try:
        command = render_command(command_template, context)
    except (KeyError, IndexError, ValueError) as exc:
        raise AggregationError(f"Invalid evaluator command {command_template!r}: {exc!r}") from exc
    command += [str(path) for path in inputs]
    logger.info("Evaluating %d result input(s) for task %s", len(inputs), task)
    try:
        proc = await start_process("evaluator", command)
    except OSError as exc:
        raise AggregationError(f"Failed to start evaluator: {exc}") from exc
    result = await wait_process(proc)
    if result.exit_code != 0:
        raise AggregationError(f"Evaluator exited with code {result.exit_code}.")
    if not scores_path.exists():
        raise AggregationError(f"Evaluator finished but wrote no scores to {scores_path}.")
    return scores_path


async def aggregate(
    result_paths: Sequence[Path],
    *,
    prefix: str,
    task: str | None,
    environments: Sequence[str],
    archive: bool,
    evaluate: bool,
    evaluator_command: str = DEFAULT_EVALUATOR_COMMAND,
) -> AggregateResult:
    """Archive and/or evaluate. Failures are reported on the result, never raised."""
    archive_path: Path | None = None
    scores_path: Path | None = None
    try:
        if archive:
            archive_path = archive_results(result_paths, prefix)
            logger.info("Archived %d result(s) to %s", len(result_paths), archive_path)
        if evaluate:
            if not task:
                raise AggregationError("Evaluation requires a task.")
            inputs = [archive_path] if archive_path is not None else list(result_paths)
            scores_path = await evaluate_results(
                inputs,
                task=task,
                environments=environments,
                scores_path=scores_path_for(prefix),
                command_template=evaluator_command,
            )
            logger.info("Scores written to %s", scores_path)
    except AggregationError as exc:
        logger.error("%s Recorded results are kept.", exc)
        return AggregateResult(archive_path=archive_path, scores_path=scores_path, error=str(exc))
    return AggregateResult(archive_path=archive_path, scores_path=scores_path)


__all__ = [
    "AggregateResult",
    "AggregationError",
    "aggregate",
    "archive_path_for",
    "archive_results",
    "evaluate_results",
    "scores_path_for",
]
