from pathlib import Path

import pytest

from roboharness.orchestrate.config import EnvironmentSpec
from roboharness.orchestrate.pair import PairOutcome
from roboharness.orchestrate.policy import (
    RunCrashError,
    SubmissionFailureError,
    Verdict,
    classify,
    collision_applies,
)

ENV = EnvironmentSpec(name="office", variants=("1",))
MOVE = ["move_next", "grasp"]


def _outcome(*, runner=None, submitter=0, runner_first=False) -> PairOutcome:
    return PairOutcome(
        environment=ENV,
        runner_exit_code=runner,
        submitter_exit_code=submitter,
        runner_exited_first=runner_first,
        result_path=Path("/tmp/roboharness_result"),
    )


class CollisionStub:
    def __init__(self, value: bool) -> None:
        self.value = value
        self.calls = 0

    async def __call__(self) -> bool:
        self.calls += 1
        return self.value


def test_collision_applies_only_to_move_next():
    assert collision_applies(MOVE)
    assert not collision_applies(["grasp"])
    assert not collision_applies([])


@pytest.mark.asyncio
async def test_runner_exiting_first_is_a_crash_even_with_collision():
    check = CollisionStub(True)
    verdict = await classify(_outcome(runner=1, submitter=None, runner_first=True), actions=MOVE, collision_check=check)
    assert verdict is Verdict.run_crash
    assert check.calls == 0


@pytest.mark.asyncio
async def test_dead_runner_with_live_submitter_is_a_crash():
    verdict = await classify(_outcome(runner=0, submitter=None), actions=MOVE, collision_check=None)
    assert verdict is Verdict.run_crash


@pytest.mark.asyncio
async def test_collision_takes_precedence_over_submission_failure():
    check = CollisionStub(True)
    verdict = await classify(_outcome(submitter=2), actions=MOVE, collision_check=check)
    assert verdict is Verdict.collision_retry
    assert check.calls == 1


@pytest.mark.asyncio
async def test_collision_ignored_without_move_next():
    check = CollisionStub(True)
    verdict = await classify(_outcome(submitter=0), actions=["grasp"], collision_check=check)
    assert verdict is Verdict.success
    assert check.calls == 0


@pytest.mark.asyncio
async def test_nonzero_submitter_is_a_failure():
    verdict = await classify(_outcome(submitter=2), actions=MOVE, collision_check=CollisionStub(False))
    assert verdict is Verdict.submission_failure


@pytest.mark.asyncio
async def test_clean_exit_is_success():
    verdict = await classify(_outcome(submitter=0), actions=MOVE, collision_check=CollisionStub(False))
    assert verdict is Verdict.success


@pytest.mark.asyncio
async def test_simultaneous_exit_is_not_a_crash():
    verdict = await classify(_outcome(runner=0, submitter=0), actions=[], collision_check=None)
    assert verdict is Verdict.success


def test_error_messages_name_the_environment():
    assert "office:1" in str(RunCrashError("office:1", "trace"))
    failure = SubmissionFailureError("office:1", 2)
    assert failure.exit_code == 2
    assert "exit code 2" in str(failure)
    assert "still running" in str(SubmissionFailureError("office:1", None))
