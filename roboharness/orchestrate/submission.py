"""Resolve mutually exclusive submission flags into a concrete descriptor."""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
from pathlib import Path
import shlex
from typing import Sequence

from roboharness._constants import DEFAULT_BUNDLE_PATH
from roboharness.orchestrate.catalog import EXAMPLES, Catalog, CatalogError


class ArgumentError(ValueError):
    """Raised when the submission mode selection is invalid or ambiguous."""


class SubmissionMode(str, enum.Enum):
    native = "native"
    containerised = "containerised"
    bundle = "bundle"
    native_example = "native_example"
    container_example = "container_example"


CONTAINER_MODES = {SubmissionMode.containerised, SubmissionMode.container_example}


@dataclass(frozen=True)
class SubmitOptions:
    """Raw, user-supplied submission selection."""

    native: str | None = None
    containerised: Path | None = None
    submission: Path | None = None
    example: str | None = None
    example_containerised: bool = False
    args: Sequence[str] = field(default_factory=tuple)

    def mode_flags(self) -> list[str]:
        """Render the selection back into ``submit`` command flags."""
        flags: list[str] = []
        if self.native is not None:
            flags.extend(["--native", self.native])
        if self.containerised is not None:
            flags.extend(["--containerised", str(self.containerised)])
        if self.submission is not None:
            flags.extend(["--submission", str(self.submission)])
        if self.example is not None:
            flags.extend(["--example", self.example])
        if self.example_containerised:
            flags.append("--example-containerised")
        return flags


@dataclass(frozen=True)
class SubmissionDescriptor:
    mode: SubmissionMode
    command: str | None
    working_dir: Path
    image_spec: Path | None = None
    output_path: Path | None = None
    args: str = ""

    @property
    def containerised(self) -> bool:
        return self.mode in CONTAINER_MODES

    def argv(self) -> list[str]:
        """Native command line with pass-through arguments appended."""
        if self.command is None:
            raise ArgumentError(f"Submission mode {self.mode.value} has no native command.")
        return shlex.split(self.command) + shlex.split(self.args)


def resolve_submission(
    options: SubmitOptions,
    *,
    catalog: Catalog | None = None,
    cwd: Path | None = None,
) -> SubmissionDescriptor:
    base_dir = (cwd or Path.cwd()).resolve()
    selected = [
        flag
        for flag, value in (
            ("--native", options.native),
            ("--containerised", options.containerised),
            ("--submission", options.submission),
            ("--example", options.example),
        )
        if value is not None
    ]
    if len(selected) != 1:
        given = ", ".join(selected) if selected else "none"
        raise ArgumentError(
            "Exactly one of --native, --containerised, --submission or --example must be given "
            f"(got: {given})."
        )
    if options.example_containerised and options.example is None:
        raise ArgumentError("--example-containerised is only valid together with --example.")

    args = list(options.args)
    if options.native is not None:
        if not options.native.strip():
            raise ArgumentError("--native requires a non-empty command.")
        return SubmissionDescriptor(
            mode=SubmissionMode.native,
            command=options.native,
            working_dir=base_dir,
            args=shlex.join(args),
        )
    if options.containerised is not None:
        dockerfile, context = _locate_dockerfile(_absolute(options.containerised, base_dir))
        return SubmissionDescriptor(
            mode=SubmissionMode.containerised,
            command=None,
            working_dir=context,
            image_spec=dockerfile,
            args=shlex.join(args),
        )
    if options.submission is not None:
        directory = _absolute(options.submission, base_dir)
        if not directory.is_dir():
            raise ArgumentError(f"Submission directory does not exist: {directory}")
        if len(args) > 1:
            raise ArgumentError(f"Bundle mode accepts at most one output path, got {len(args)} arguments.")
        output = Path(args[0]) if args else DEFAULT_BUNDLE_PATH
        return SubmissionDescriptor(
            mode=SubmissionMode.bundle,
            command=None,
            working_dir=directory,
            output_path=_absolute(output, base_dir),
        )
    return _resolve_example(options, catalog=catalog, args=args)


def _resolve_example(options: SubmitOptions, *, catalog: Catalog | None, args: list[str]) -> SubmissionDescriptor:
    if catalog is None:
        raise ArgumentError("--example requires a catalog to resolve the example.")
    try:
        entry = catalog.get(EXAMPLES, str(options.example))
    except CatalogError as exc:
        raise ArgumentError(str(exc)) from exc
    directory_value = entry.get("directory")
    if not directory_value:
        raise ArgumentError(f"Example {options.example!r} does not declare a directory.")
    directory = Path(str(directory_value)).expanduser().resolve()
    if options.example_containerised:
        container_dir = entry.get("container_directory")
        if not container_dir:
            raise ArgumentError(f"Example {options.example!r} has no containerised variant.")
        dockerfile, context = _locate_dockerfile(_absolute(Path(str(container_dir)), directory))
        return SubmissionDescriptor(
            mode=SubmissionMode.container_example,
            command=None,
            working_dir=context,
            image_spec=dockerfile,
            args=shlex.join(args),
        )
    command = entry.get("native_command")
    if not command:
        raise ArgumentError(f"Example {options.example!r} has no native command.")
    return SubmissionDescriptor(
        mode=SubmissionMode.native_example,
        command=str(command),
        working_dir=directory,
        args=shlex.join(args),
    )


def _locate_dockerfile(path: Path) -> tuple[Path, Path]:
    if path.is_dir():
        dockerfile = path / "Dockerfile"
        if not dockerfile.is_file():
            raise ArgumentError(f"No Dockerfile found in {path}")
        return dockerfile, path
    if path.is_file():
        return path, path.parent
    raise ArgumentError(f"Containerised submission path does not exist: {path}")


def _absolute(path: Path, base_dir: Path) -> Path:
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate.resolve()


__all__ = [
    "ArgumentError",
    "CONTAINER_MODES",
    "SubmissionDescriptor",
    "SubmissionMode",
    "SubmitOptions",
    "resolve_submission",
]
