"""Command-line entry point: ``submit``, ``batch`` and ``cleanup``."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
import shlex
import sys
from typing import Any, Sequence

from dotenv import dotenv_values

from roboharness._constants import (
    BATCH_COMMAND,
    CLEANUP_COMMAND,
    COMMAND,
    DEFAULT_CATALOG_COMMAND,
    SUBMIT_COMMAND,
    result_location,
)
from roboharness.orchestrate.batch import (
    BatchOptions,
    BatchRunner,
    build_submitter_command,
    catalog_path_for,
    runner_context,
)
from roboharness.orchestrate.catalog import (
    CatalogError,
    build_catalog,
    read_catalog_file,
    resolve_environments,
    task_actions,
    validate_robot,
    write_catalog_file,
)
from roboharness.orchestrate.config import (
    BatchPlan,
    collect_environment_ids,
    load_plan,
    override_plan,
    parse_environment_list,
)
from roboharness.orchestrate.console import BatchConsole
from roboharness.orchestrate.docker_submission import ContainerBuildError, ContainerManager, ContainerRunError
from roboharness.orchestrate.processes import render_command
from roboharness.orchestrate.submission import ArgumentError, SubmitOptions, resolve_submission
from roboharness.orchestrate.submit import run_submission
from roboharness.orchestrate.supervisor import SupervisorCollisionCheck
from roboharness.utils.logs import ensure_root_logging

logger = logging.getLogger(__name__)
HELP_FLAGS = {"-h", "--help"}


def _add_mode_arguments(parser: argparse.ArgumentParser, *, allow_bundle: bool) -> None:
    group = parser.add_argument_group("submission mode (exactly one)")
    group.add_argument("-n", "--native", metavar="COMMAND", help="Run COMMAND natively in the current directory.")
    group.add_argument(
        "-c",
        "--containerised",
        metavar="PATH",
        type=Path,
        help="Build and run a Docker image from PATH (a directory with a Dockerfile, or a Dockerfile).",
    )
    if allow_bundle:
        group.add_argument(
            "-s",
            "--submission",
            metavar="DIR",
            type=Path,
            help="Bundle DIR into an archive; the optional positional argument is the output path.",
        )
    group.add_argument("-e", "--example", metavar="NAME", help="Run the catalog example NAME.")
    group.add_argument(
        "--example-containerised",
        action="store_true",
        help="Run the containerised variant of --example instead of its native command.",
    )
    parser.add_argument(
        "--catalog-command",
        default=None,
        help="Command used to look up catalog entries (default: roboharness-catalog get {kind} {name}).",
    )
    parser.add_argument(
        "--catalog-file",
        type=Path,
        default=None,
        help="YAML file holding an inline catalog; takes precedence over --catalog-command.",
    )
    parser.add_argument("--env-file", type=Path, help="Dotenv file with variables for the submission container.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")


def build_submit_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=f"{COMMAND} {SUBMIT_COMMAND}",
        description="Run a solution against the currently running environment, or bundle it for submission.",
    )
    _add_mode_arguments(parser, allow_bundle=True)
    parser.add_argument("args", nargs="*", help="Arguments passed through to the submission.")
    return parser


def build_batch_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=f"{COMMAND} {BATCH_COMMAND}",
        description="Run a submission against a list of environments, one runner/submitter pair at a time.",
    )
    parser.add_argument("--plan", type=Path, help="Batch plan YAML/JSON file (CLI flags take precedence).")
    parser.add_argument("-r", "--robot", help="Robot to run with.")
    parser.add_argument("-t", "--task", help="Task to run.")
    parser.add_argument("-E", "--envs", help="Comma-separated environment identifiers (e.g. office:1,house:1:2).")
    parser.add_argument("--envs-file", type=Path, help="File with one environment identifier per line.")
    parser.add_argument("-p", "--prefix", help="Prefix for result files (default: batch).")
    parser.add_argument("-z", "--zip", action="store_true", default=None, help="Archive results into <prefix>.zip.")
    parser.add_argument(
        "--evaluate",
        action="store_true",
        default=None,
        help="Run the evaluator over the results, writing <prefix>_scores.json.",
    )
    parser.add_argument("-a", "--args", dest="submission_args", help="Arguments passed through to the submission.")
    parser.add_argument("--runner-command", help="Runner command template.")
    parser.add_argument("--evaluator-command", help="Evaluator command template.")
    parser.add_argument("--supervisor-url", help="Base URL of the runner's supervisor (collision status).")
    parser.add_argument("--grace-period-s", type=float, help="Seconds to wait after either process exits.")
    parser.add_argument("--max-collision-retries", type=int, help="Abort after this many collisions per environment.")
    parser.add_argument("--dry-run", action="store_true", help="Print resolved environments and commands, then exit.")
    _add_mode_arguments(parser, allow_bundle=False)
    return parser


def build_cleanup_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=f"{COMMAND} {CLEANUP_COMMAND}",
        description="Stop and remove leftover submission containers.",
    )
    parser.add_argument("--prefix", default=None, help="Container name prefix to remove.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args_list = list(argv) if argv is not None else sys.argv[1:]
    if not args_list or args_list[0] in HELP_FLAGS:
        _print_general_help()
        return 0
    command, rest = args_list[0], args_list[1:]
    if command == SUBMIT_COMMAND:
        return _run_submit_mode(rest)
    if command == BATCH_COMMAND:
        return _run_batch_mode(rest)
    if command == CLEANUP_COMMAND:
        return _run_cleanup_mode(rest)
    print(f"Unknown command {command!r}.", file=sys.stderr)
    _print_general_help()
    return 1


def _print_general_help() -> None:
    print(
        f"usage: {COMMAND} {{{SUBMIT_COMMAND},{BATCH_COMMAND},{CLEANUP_COMMAND}}} [options]\n\n"
        f"  {SUBMIT_COMMAND:<8} run or bundle a single submission\n"
        f"  {BATCH_COMMAND:<8} run a submission across a list of environments\n"
        f"  {CLEANUP_COMMAND:<8} remove leftover submission containers"
    )


def _submit_options(args: argparse.Namespace, passthrough: Sequence[str]) -> SubmitOptions:
    return SubmitOptions(
        native=args.native,
        containerised=args.containerised,
        submission=getattr(args, "submission", None),
        example=args.example,
        example_containerised=args.example_containerised,
        args=tuple(passthrough),
    )


def _run_submit_mode(argv: Sequence[str]) -> int:
    parser = build_submit_parser()
    args = parser.parse_args(argv)
    ensure_root_logging("DEBUG" if args.verbose else "INFO")
    passthrough = list(args.args)
    if passthrough and passthrough[0] == "--":
        passthrough = passthrough[1:]
    try:
        catalog = None
        if args.example:
            inline = read_catalog_file(args.catalog_file) if args.catalog_file else None
            catalog = build_catalog(inline=inline, command=args.catalog_command or DEFAULT_CATALOG_COMMAND)
        descriptor = resolve_submission(_submit_options(args, passthrough), catalog=catalog)
        env = _load_env_file(args.env_file)
        return run_submission(descriptor, env=env)
    except (ArgumentError, CatalogError) as exc:
        logger.error("%s", exc)
        return 1
    except ContainerBuildError as exc:
        logger.error("%s (build exit code %d)", exc, exc.exit_code)
        return 1
    except (ContainerRunError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.warning("Submission interrupted.")
        return 1


def _run_batch_mode(argv: Sequence[str]) -> int:
    parser = build_batch_parser()
    args = parser.parse_args(argv)
    ensure_root_logging("DEBUG" if args.verbose else "INFO")
    try:
        plan = load_plan(args.plan) if args.plan else BatchPlan()
        plan = _apply_batch_overrides(plan, args)
        identifiers = collect_environment_ids(
            explicit=plan.environments,
            environments_file=plan.environments_file,
        )
        if not identifiers:
            raise ArgumentError("No environments given (use --envs, --envs-file or a plan).")
        submit_options = SubmitOptions(
            native=plan.native,
            containerised=plan.containerised,
            example=plan.example,
            example_containerised=plan.example_containerised,
            args=tuple(shlex.split(plan.args or "")),
        )
        catalog = build_catalog(inline=plan.catalog, command=plan.catalog_command)
        descriptor = resolve_submission(submit_options, catalog=catalog)
        validate_robot(catalog, plan.robot)
        environments = resolve_environments(catalog, identifiers, task=plan.task)
        actions = task_actions(catalog, plan.task)
        catalog_file = None
        if plan.catalog and submit_options.example is not None:
            # the Submitter child resolves the example again from this copy
            catalog_file = catalog_path_for(plan.prefix).resolve()
            if not args.dry_run:
                write_catalog_file(plan.catalog, catalog_file)
    except (CatalogError, ValueError, OSError) as exc:
        logger.error("%s", exc)
        return 1

    options = BatchOptions(
        prefix=plan.prefix,
        submitter_command=build_submitter_command(
            submit_options,
            env_file=plan.env_file,
            catalog_file=catalog_file,
            catalog_command=plan.catalog_command,
        ),
        result_path=result_location(),
        task=plan.task,
        robot=plan.robot,
        runner_command=plan.runner_command,
        grace_period_s=plan.grace_period_s,
        max_collision_retries=plan.max_collision_retries,
        archive=plan.zip,
        evaluate=plan.evaluate,
        evaluator_command=plan.evaluator_command,
        containerised=descriptor.containerised,
    )
    if args.dry_run:
        for index, environment in enumerate(environments):
            context = runner_context(environment, index=index, robot=plan.robot, task=plan.task)
            print(f"{index}\t{environment.identifier}\t{shlex.join(render_command(plan.runner_command, context))}")
        print(f"submitter\t{shlex.join(options.submitter_command)}")
        return 0

    runner = BatchRunner(
        environments,
        options,
        actions=actions,
        collision_check=SupervisorCollisionCheck(plan.supervisor_url),
        console=BatchConsole(),
    )
    try:
        result = runner.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.warning("Batch run interrupted by user.")
        return 1
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error: %s", exc)
        return 1
    if result.error:
        logger.error("Batch stopped: %s", result.error)
    return result.exit_code


def _run_cleanup_mode(argv: Sequence[str]) -> int:
    parser = build_cleanup_parser()
    args = parser.parse_args(argv)
    ensure_root_logging("DEBUG" if args.verbose else "INFO")
    try:
        removed = ContainerManager().cleanup(args.prefix)
    except ContainerRunError as exc:
        logger.error("%s", exc)
        return 1
    if removed:
        print("\n".join(removed))
    return 0


def _apply_batch_overrides(plan: BatchPlan, args: argparse.Namespace) -> BatchPlan:
    updates: dict[str, Any] = {}
    simple = {
        "robot": args.robot,
        "task": args.task,
        "prefix": args.prefix,
        "zip": args.zip,
        "evaluate": args.evaluate,
        "args": args.submission_args,
        "runner_command": args.runner_command,
        "evaluator_command": args.evaluator_command,
        "catalog_command": args.catalog_command,
        "supervisor_url": args.supervisor_url,
        "grace_period_s": args.grace_period_s,
        "max_collision_retries": args.max_collision_retries,
    }
    updates.update({key: value for key, value in simple.items() if value is not None})
    if args.envs is not None:
        updates["environments"] = parse_environment_list(args.envs)
    if args.envs_file is not None:
        updates["environments_file"] = args.envs_file.expanduser().resolve()
    if args.env_file is not None:
        updates["env_file"] = args.env_file.expanduser().resolve()
    if args.catalog_file is not None:
        updates["catalog"] = read_catalog_file(args.catalog_file)
    mode_flags = {
        "native": args.native,
        "containerised": args.containerised.expanduser().resolve() if args.containerised else None,
        "example": args.example,
    }
    if any(value is not None for value in mode_flags.values()) or args.example_containerised:
        # CLI mode selection replaces the plan's selection wholesale
        updates.update(mode_flags)
        updates["example_containerised"] = bool(args.example_containerised)
    return override_plan(plan, updates)


def _load_env_file(path: Path | None) -> dict[str, str]:
    if path is None:
        return {}
    env_path = path.expanduser().resolve()
    if not env_path.exists():
        raise FileNotFoundError(f"env_file not found: {env_path}")
    values = dotenv_values(env_path)
    return {key: value for key, value in values.items() if value is not None}


__all__ = ["build_batch_parser", "build_cleanup_parser", "build_submit_parser", "main"]
