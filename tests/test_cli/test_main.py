from __future__ import annotations

import shlex
import sys
import tarfile
from pathlib import Path

import pytest
import yaml

from roboharness.cli import main as cli_main
from roboharness.orchestrate.batch import BatchResult

PLAN = """
robot: arm
task: pick
prefix: smoke
environments: ["office:1", "house:2"]
native: "python solve.py"
catalog:
  robots:
    arm: {dof: 6}
  tasks:
    pick: {actions: [move_next], scene_count: 1}
    swap: {actions: [grasp], scene_count: 2}
  environments:
    office:
      "1": {start_pose: [0, 0, 0]}
    house:
      "2": {map_path: maps/house.yaml}
"""


def _write_plan(tmp_path: Path, extra: str = "") -> Path:
    path = tmp_path / "plan.yaml"
    path.write_text(PLAN + extra, encoding="utf-8")
    return path


class FakeBatchRunner:
    instances: list["FakeBatchRunner"] = []

    def __init__(self, environments, options, **kwargs) -> None:
        self.environments = list(environments)
        self.options = options
        self.kwargs = kwargs
        FakeBatchRunner.instances.append(self)

    def run(self) -> BatchResult:
        return BatchResult(exit_code=0)


def test_main_prints_help(capsys):
    assert cli_main.main([]) == 0
    assert "usage: roboharness" in capsys.readouterr().out
    assert cli_main.main(["--help"]) == 0


def test_main_rejects_unknown_command(capsys):
    assert cli_main.main(["launch"]) == 1
    assert "Unknown command 'launch'" in capsys.readouterr().err


def test_submit_rejects_conflicting_modes(tmp_path: Path):
    assert cli_main.main(["submit", "--native", "python solve.py", "--submission", str(tmp_path)]) == 1


def test_submit_rejects_missing_mode():
    assert cli_main.main(["submit"]) == 1


def test_submit_native_propagates_exit_code(tmp_path: Path):
    command = f"{shlex.quote(sys.executable)} -c 'import sys; sys.exit(int(sys.argv[1]))'"
    assert cli_main.main(["submit", "--native", command, "--", "3"]) == 3


def test_submit_bundles_directory(tmp_path: Path):
    solution = tmp_path / "solution"
    solution.mkdir()
    (solution / "solve.py").write_text("print('hi')\n", encoding="utf-8")
    output = solution / "bundle.tgz"
    assert cli_main.main(["submit", "--submission", str(solution), str(output)]) == 0
    with tarfile.open(output) as tar:
        names = tar.getnames()
    assert any(name.endswith("solve.py") for name in names)
    assert not any(name.endswith("bundle.tgz") for name in names)


def test_submit_missing_env_file(tmp_path: Path):
    assert cli_main.main(["submit", "--native", "true", "--env-file", str(tmp_path / "missing.env")]) == 1


def test_batch_dry_run_prints_plan(tmp_path: Path, capsys):
    assert cli_main.main(["batch", "--plan", str(_write_plan(tmp_path)), "--dry-run"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "0\toffice:1\troboharness-run --robot arm --env office:1 --task pick"
    assert out[1] == "1\thouse:2\troboharness-run --robot arm --env house:2 --task pick"
    assert out[2].startswith("submitter\t")
    assert "submit --native 'python solve.py'" in out[2]


def test_batch_cli_flags_override_plan(tmp_path: Path, capsys):
    argv = ["batch", "--plan", str(_write_plan(tmp_path)), "--envs", "house:2", "--dry-run"]
    assert cli_main.main(argv) == 0
    out = capsys.readouterr().out.splitlines()
    assert len(out) == 2
    assert out[0].startswith("0\thouse:2\t")


def test_batch_requires_environments(tmp_path: Path):
    plan = tmp_path / "plan.yaml"
    plan.write_text("robot: arm\nnative: python solve.py\n", encoding="utf-8")
    assert cli_main.main(["batch", "--plan", str(plan), "--dry-run"]) == 1


def test_batch_rejects_variant_count_mismatch(tmp_path: Path):
    argv = ["batch", "--plan", str(_write_plan(tmp_path)), "--task", "swap", "--dry-run"]
    assert cli_main.main(argv) == 1


def test_batch_rejects_unknown_robot(tmp_path: Path):
    argv = ["batch", "--plan", str(_write_plan(tmp_path)), "--robot", "drone", "--dry-run"]
    assert cli_main.main(argv) == 1


def test_batch_rejects_conflicting_modes_before_spawning(tmp_path: Path, monkeypatch):
    FakeBatchRunner.instances = []
    monkeypatch.setattr("roboharness.cli.main.BatchRunner", FakeBatchRunner)
    argv = [
        "batch",
        "--plan",
        str(_write_plan(tmp_path)),
        "--native",
        "python a.py",
        "--containerised",
        str(tmp_path),
    ]
    assert cli_main.main(argv) == 1
    assert FakeBatchRunner.instances == []


def test_batch_builds_runner_from_plan(tmp_path: Path, monkeypatch):
    FakeBatchRunner.instances = []
    monkeypatch.setattr("roboharness.cli.main.BatchRunner", FakeBatchRunner)
    monkeypatch.setenv("ROBOHARNESS_RESULT_LOCATION", str(tmp_path / "result.json"))
    argv = ["batch", "--plan", str(_write_plan(tmp_path)), "--zip", "--args=--laps 2"]
    assert cli_main.main(argv) == 0
    (runner,) = FakeBatchRunner.instances
    assert [env.identifier for env in runner.environments] == ["office:1", "house:2"]
    assert runner.environments[0].start_pose == (0.0, 0.0, 0.0)
    assert runner.kwargs["actions"] == ["move_next"]
    options = runner.options
    assert options.prefix == "smoke"
    assert options.archive is True
    assert options.evaluate is False
    assert options.containerised is False
    assert options.result_path == tmp_path / "result.json"
    assert options.submitter_command[-3:] == ["--", "--laps", "2"]


@pytest.mark.parametrize("flag, value", [("--max-collision-retries", "-1"), ("--grace-period-s", "-5")])
def test_batch_rejects_invalid_overrides(tmp_path: Path, flag: str, value: str):
    argv = ["batch", "--plan", str(_write_plan(tmp_path)), flag, value, "--dry-run"]
    assert cli_main.main(argv) == 1


def test_batch_overrides_are_validated_and_applied(tmp_path: Path, monkeypatch):
    FakeBatchRunner.instances = []
    monkeypatch.setattr("roboharness.cli.main.BatchRunner", FakeBatchRunner)
    argv = ["batch", "--plan", str(_write_plan(tmp_path)), "--grace-period-s", "0.5", "--max-collision-retries", "2"]
    assert cli_main.main(argv) == 0
    (runner,) = FakeBatchRunner.instances
    assert runner.options.grace_period_s == 0.5
    assert runner.options.max_collision_retries == 2


def test_batch_example_submitter_uses_inline_catalog(tmp_path: Path, monkeypatch):
    FakeBatchRunner.instances = []
    monkeypatch.setattr("roboharness.cli.main.BatchRunner", FakeBatchRunner)
    example_dir = tmp_path / "demo"
    example_dir.mkdir()
    script = "import pathlib, sys; pathlib.Path('ran.txt').write_text(' '.join(sys.argv[1:]))"
    plan = {
        "robot": "arm",
        "task": "pick",
        "prefix": str(tmp_path / "out" / "smoke"),
        "environments": ["office:1"],
        "example": "demo",
        "args": "--laps 2",
        "catalog": {
            "robots": {"arm": {"dof": 6}},
            "tasks": {"pick": {"actions": ["move_next"], "scene_count": 1}},
            "environments": {"office": {"1": {"start_pose": [0, 0, 0]}}},
            "examples": {
                "demo": {"directory": str(example_dir), "native_command": shlex.join([sys.executable, "-c", script])},
            },
        },
    }
    plan_path = tmp_path / "plan.yaml"
    plan_path.write_text(yaml.safe_dump(plan), encoding="utf-8")

    assert cli_main.main(["batch", "--plan", str(plan_path)]) == 0
    (runner,) = FakeBatchRunner.instances
    command = runner.options.submitter_command
    catalog_file = (tmp_path / "out" / "smoke_catalog.yaml").resolve()
    assert command[command.index("--catalog-file") + 1] == str(catalog_file)
    assert catalog_file.exists()

    # the spawned Submitter is `python -m roboharness <argv>`
    assert command[1:3] == ["-m", "roboharness"]
    assert cli_main.main(command[3:]) == 0
    assert (example_dir / "ran.txt").read_text() == "--laps 2"


def test_submit_example_reads_catalog_file(tmp_path: Path):
    native = shlex.join([sys.executable, "-c", "raise SystemExit(7)"])
    catalog = tmp_path / "catalog.yaml"
    catalog.write_text(
        yaml.safe_dump({"examples": {"demo": {"directory": str(tmp_path), "native_command": native}}}),
        encoding="utf-8",
    )
    assert cli_main.main(["submit", "--example", "demo", "--catalog-file", str(catalog)]) == 7
    assert cli_main.main(["submit", "--example", "demo", "--catalog-file", str(tmp_path / "missing.yaml")]) == 1


def test_cleanup_prints_removed_containers(monkeypatch, capsys):
    class FakeManager:
        def cleanup(self, prefix=None):
            return ["roboharness_submission"] if prefix is None else []

    monkeypatch.setattr("roboharness.cli.main.ContainerManager", FakeManager)
    assert cli_main.main(["cleanup"]) == 0
    assert capsys.readouterr().out.strip() == "roboharness_submission"


@pytest.mark.parametrize("command", ["submit", "batch", "cleanup"])
def test_subcommand_help_exits_cleanly(command, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli_main.main([command, "--help"])
    assert excinfo.value.code == 0
    assert f"roboharness {command}" in capsys.readouterr().out
