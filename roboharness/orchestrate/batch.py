"""Batch loop: one Runner/Submitter pair per environment, strictly in order."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
import sys
from typing import Iterable, Mapping, Sequence

from roboharness._constants import DEFAULT_EVALUATOR_COMMAND, DEFAULT_RUNNER_COMMAND, SUBMIT_COMMAND
from roboharness.orchestrate.aggregate import AggregateResult, aggregate
from roboharness.orchestrate.config import EnvironmentSpec
from roboharness.orchestrate.console import BatchConsole
from roboharness.orchestrate.docker_submission import ContainerManager
from roboharness.orchestrate.pair import DEFAULT_GRACE_PERIOD_S, PairCoordinator
from roboharness.orchestrate.policy import (
    CollisionCheck,
    CollisionRetryLimitError,
    RunCrashError,
    SubmissionFailureError,
    Verdict,
    classify,
)
from roboharness.orchestrate.processes import register_signal_handlers, remove_signal_handlers, render_command
from roboharness.orchestrate.state import (
    BatchState,
    EMPTY_RESULT,
    EnvironmentRecord,
    clear_result,
    write_json_atomic,
)
from roboharness.orchestrate.submission import SubmitOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchOptions:
    prefix: str
    submitter_command: Sequence[str]
    result_path: Path
    task: str | None = None
    robot: str | None = None
    runner_command: str = DEFAULT_RUNNER_COMMAND
    grace_period_s: float = DEFAULT_GRACE_PERIOD_S
    term_timeout_s: float = 5.0
    max_collision_retries: int | None = None
    archive: bool = False
    evaluate: bool = False
    evaluator_command: str = DEFAULT_EVALUATOR_COMMAND
    containerised: bool = False


@dataclass
class BatchResult:
    exit_code: int
    results: list[Path] = field(default_factory=list)
    records: list[EnvironmentRecord] = field(default_factory=list)
    aggregate: AggregateResult | None = None
    error: str | None = None


def catalog_path_for(prefix: str) -> Path:
    return Path(f"{prefix}_catalog.yaml")


def build_submitter_command(
    options: SubmitOptions,
    *,
    env_file: Path | None = None,
    catalog_file: Path | None = None,
    catalog_command: str | None = None,
    python: str = sys.executable,
) -> list[str]:
    """Command line of the Submitter child.

    Example modes are resolved again inside the child, so it is pointed at the
    same catalog: an inline catalog dumped to ``catalog_file``, or the lookup
    command.
    """
    command = [python, "-m", "roboharness", SUBMIT_COMMAND, *options.mode_flags()]
    if options.example is not None:
        if catalog_file is not None:
            command.extend(["--catalog-file", str(catalog_file)])
        elif catalog_command is not None:
            command.extend(["--catalog-command", catalog_command])
    if env_file is not None:
        command.extend(["--env-file", str(env_file)])
    if options.args:
        command.extend(["--", *options.args])
    return command


def runner_context(environment: EnvironmentSpec, *, index: int, robot: str | None, task: str | None) -> dict[str, str]:
    return {
        "environment": environment.identifier,
        "name": environment.name,
        "variants": ",".join(environment.variants),
        "index": str(index),
        "robot": robot or "",
        "task": task or "",
        "start_pose": " ".join(str(value) for value in environment.start_pose or ()),
        "map_path": str(environment.map_path or ""),
    }


class BatchRunner:
    """Owns the batch session: the active pair, signal handling and teardown."""

    def __init__(
        self,
        environments: Iterable[EnvironmentSpec],
        options: BatchOptions,
        *,
        actions: Iterable[str] = (),
        collision_check: CollisionCheck | None = None,
        container_manager: ContainerManager | None = None,
        console: BatchConsole | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._environments = list(environments)
        self._options = options
        self._actions = list(actions)
        self._collision_check = collision_check
        self._container_manager = container_manager
        self._console = console or BatchConsole()
        self._coordinator = PairCoordinator(
            result_path=options.result_path,
            grace_period_s=options.grace_period_s,
            term_timeout_s=options.term_timeout_s,
            env=env,
        )
        self._main_task: asyncio.Task | None = None
        self._shutdown_requested = False
        self.state = BatchState(prefix=options.prefix, environments=self._environments)

    def run(self) -> BatchResult:
        return asyncio.run(self._run_async())

    async def _run_async(self) -> BatchResult:
        loop = asyncio.get_running_loop()
        self._main_task = asyncio.current_task()
        register_signal_handlers(loop, self._handle_shutdown)
        try:
            return await self.execute()
        finally:
            remove_signal_handlers(loop)

    async def execute(self) -> BatchResult:
        state = self.state
        self._main_task = self._main_task or asyncio.current_task()
        self._console.log(
            f"BATCH started prefix={self._options.prefix} environments={len(self._environments)} "
            f"task={self._options.task or '-'} robot={self._options.robot or '-'}"
        )
        try:
            while not state.done:
                await self._run_iteration(state)
        except (RunCrashError, SubmissionFailureError, CollisionRetryLimitError) as exc:
            self._console.log(f"BATCH aborted reason={exc}")
            self._console.summary(state.records)
            return BatchResult(exit_code=1, results=list(state.results), records=state.records, error=str(exc))
        except asyncio.CancelledError:
            if not self._shutdown_requested:
                raise
            self._console.log(f"BATCH aborted reason=interrupted completed={len(state.results)}")
            return BatchResult(exit_code=1, results=list(state.results), records=state.records, error="interrupted")
        finally:
            await self._teardown()

        self._console.log(f"BATCH complete results={len(state.results)}")
        aggregate_result = await aggregate(
            state.results,
            prefix=self._options.prefix,
            task=self._options.task,
            environments=[env.identifier for env in self._environments],
            archive=self._options.archive,
            evaluate=self._options.evaluate,
            evaluator_command=self._options.evaluator_command,
        )
        self._console.summary(state.records)
        return BatchResult(
            exit_code=0,
            results=list(state.results),
            records=state.records,
            aggregate=aggregate_result,
        )

    async def _run_iteration(self, state: BatchState) -> None:
        environment = state.current
        record = state.begin_attempt()
        result_path = self._options.result_path
        clear_result(result_path)
        runner_command = render_command(
            self._options.runner_command,
            runner_context(environment, index=state.index, robot=self._options.robot, task=self._options.task),
        )
        self._console.log(
            f"ENV start index={state.index} env={environment.identifier} attempt={record.attempts}"
        )
        try:
            outcome = await self._coordinator.run_pair(
                environment, runner_command, self._options.submitter_command
            )
            verdict = await classify(outcome, actions=self._actions, collision_check=self._collision_check)
        finally:
            await self._coordinator.stop()

        if verdict is Verdict.run_crash:
            state.mark_fatal("runner crashed")
            self._console.log(
                f"ENV crash index={state.index} env={environment.identifier} runner_exit={outcome.runner_exit_code}"
            )
            self._console.dump(f"runner output ({environment.identifier})", outcome.runner_output)
            raise RunCrashError(environment.identifier, outcome.runner_output)
        if verdict is Verdict.collision_retry:
            state.mark_retry("collision")
            cap = self._options.max_collision_retries
            logger.warning(
                "Collision detected in %s; discarding attempt %d and rerunning.",
                environment.identifier,
                record.attempts,
            )
            self._console.log(
                f"ENV collision index={state.index} env={environment.identifier} collisions={record.collisions}"
            )
            if cap is not None and record.collisions > cap:
                state.mark_fatal("collision retry limit")
                raise CollisionRetryLimitError(
                    f"Environment {environment.identifier} collided {record.collisions} time(s); limit is {cap}."
                )
            return
        if verdict is Verdict.submission_failure:
            state.mark_fatal(f"submission exit {outcome.submitter_exit_code}")
            self._console.log(
                f"ENV failed index={state.index} env={environment.identifier} "
                f"submission_exit={outcome.submitter_exit_code}"
            )
            raise SubmissionFailureError(environment.identifier, outcome.submitter_exit_code)

        if not result_path.exists():
            logger.warning("Submission for %s wrote no result; recording {}.", environment.identifier)
            write_json_atomic(result_path, EMPTY_RESULT)
        index = state.index
        dest = state.record_success(result_path)
        self._console.log(f"ENV ok index={index} env={environment.identifier} result={dest}")

    async def _teardown(self) -> None:
        try:
            await self._coordinator.stop()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to stop active runner/submitter: %s", exc)
        if self._options.containerised:
            manager = self._container_manager or ContainerManager()
            try:
                manager.cancel()
                removed = await manager.cleanup_async()
                if removed:
                    logger.debug("Removed containers: %s", ", ".join(removed))
            except Exception as exc:  # noqa: BLE001
                logger.warning("Container cleanup failed: %s", exc)

    def _handle_shutdown(self) -> None:
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        active = self._coordinator.active
        env_text = active.environment.identifier if active else "-"
        self._console.log(f"SHUTDOWN requested active_env={env_text} completed={len(self.state.results)}")
        if self._main_task is not None:
            self._main_task.cancel()


__all__ = [
    "BatchOptions",
    "BatchResult",
    "BatchRunner",
    "build_submitter_command",
    "catalog_path_for",
    "runner_context",
]
