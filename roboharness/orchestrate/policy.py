"""Classify how a Runner/Submitter iteration ended.

Checks run in a fixed order: a Runner that exits before the Submitter is
always a crash, even if a collision was also reported; only then is the
collision status consulted, and only then the Submitter's exit code.
"""

from __future__ import annotations

import enum
from typing import Awaitable, Callable, Iterable

from roboharness._constants import MOVE_NEXT_ACTION
from roboharness.orchestrate.pair import PairOutcome

CollisionCheck = Callable[[], Awaitable[bool]]


class Verdict(str, enum.Enum):
    success = "success"
    collision_retry = "collision_retry"
    run_crash = "run_crash"
    submission_failure = "submission_failure"


class RunCrashError(RuntimeError):
    """The Runner exited while the Submitter was still running."""

    def __init__(self, environment: str, output: str = "") -> None:
        super().__init__(f"Runner crashed during environment {environment}.")
        self.environment = environment
        self.output = output


class SubmissionFailureError(RuntimeError):
    """The Submitter exited with a nonzero code (or never exited)."""

    def __init__(self, environment: str, exit_code: int | None) -> None:
        code = "still running" if exit_code is None else f"exit code {exit_code}"
        super().__init__(f"Submission failed for environment {environment} ({code}).")
        self.environment = environment
        self.exit_code = exit_code


class CollisionRetryLimitError(RuntimeError):
    """An environment collided more times than the configured retry cap."""


def collision_applies(actions: Iterable[str]) -> bool:
    return MOVE_NEXT_ACTION in set(actions)


async def classify(
    outcome: PairOutcome,
    *,
    actions: Iterable[str],
    collision_check: CollisionCheck | None,
) -> Verdict:
    if outcome.runner_exited_first or (not outcome.runner_alive and outcome.submitter_alive):
        return Verdict.run_crash
    if collision_check is not None and collision_applies(actions) and await collision_check():
        return Verdict.collision_retry
    if outcome.submitter_exit_code != 0:
        return Verdict.submission_failure
    return Verdict.success


__all__ = [
    "CollisionCheck",
    "CollisionRetryLimitError",
    "RunCrashError",
    "SubmissionFailureError",
    "Verdict",
    "classify",
    "collision_applies",
]
