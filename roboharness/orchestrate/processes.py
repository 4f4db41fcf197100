"""Spawning and terminating child process groups."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Sequence
import asyncio
import os
import shlex
import signal
import subprocess
import time


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    duration_s: float
    terminated: bool = False


@dataclass
class ManagedProcess:
    name: str
    command: list[str]
    process: asyncio.subprocess.Process
    start_time: float
    terminated: bool = False

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


def register_signal_handlers(loop: asyncio.AbstractEventLoop, handler: Callable[[], None]) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handler)
        except NotImplementedError:
            continue


def remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            continue


def render_command(template: str, context: Mapping[str, str]) -> list[str]:
    rendered = template.format(**context)
    return shlex.split(rendered)


async def start_process(
    name: str,
    command: Sequence[str] | str,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    stdin: int | None = None,
    stdout: int | None = None,
    stderr: int | None = None,
) -> ManagedProcess:
    """Start ``command`` in its own process group so it can be signalled as a unit."""
    if isinstance(command, str):
        command = shlex.split(command)
    kwargs: dict[str, object] = {}
    if os.name == "posix":
        kwargs["start_new_session"] = True
    elif os.name == "nt":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    process = await asyncio.create_subprocess_exec(
        *list(command),
        cwd=str(cwd) if cwd else None,
        env=dict(env) if env else None,
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        **kwargs,
    )
    return ManagedProcess(name=name, command=list(command), process=process, start_time=time.monotonic())


async def wait_process(proc: ManagedProcess) -> ProcessResult:
    await proc.process.wait()
    duration = time.monotonic() - proc.start_time
    exit_code = proc.process.returncode if proc.process.returncode is not None else 0
    return ProcessResult(exit_code=exit_code, duration_s=duration, terminated=proc.terminated)


async def terminate_process(proc: ManagedProcess, *, term_timeout_s: float = 5.0) -> None:
    """SIGTERM the process group, escalating to SIGKILL after ``term_timeout_s``."""
    if proc.process.returncode is not None:
        return
    proc.terminated = True
    if not _signal_group(proc, hard=False):
        return
    try:
        await asyncio.wait_for(proc.process.wait(), timeout=term_timeout_s)
        return
    except asyncio.TimeoutError:
        pass
    if not _signal_group(proc, hard=True):
        return
    await proc.process.wait()


def _signal_group(proc: ManagedProcess, *, hard: bool) -> bool:
    """Signal the whole group; returns False when the process is already gone."""
    try:
        if os.name == "posix":
            os.killpg(proc.process.pid, signal.SIGKILL if hard else signal.SIGTERM)
        elif hard:
            proc.process.kill()
        else:
            proc.process.terminate()
    except ProcessLookupError:
        return False
    return True


__all__ = [
    "ManagedProcess",
    "ProcessResult",
    "register_signal_handlers",
    "remove_signal_handlers",
    "render_command",
    "start_process",
    "terminate_process",
    "wait_process",
]
