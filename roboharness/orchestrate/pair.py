"""Run one Runner/Submitter pair for a single environment.

The Runner's stdout (stderr merged) is relayed into the Submitter's stdin. The
relay never blocks on the Submitter: once its stdin is closed or its write
buffer passes ``RELAY_HIGH_WATER`` further chunks are dropped, so the Runner can
always make progress on its own stdout.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Mapping, Sequence

from roboharness.orchestrate.config import EnvironmentSpec
from roboharness.orchestrate.processes import ManagedProcess, start_process, terminate_process

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_S = 3.0
RELAY_CHUNK_SIZE = 4096
RELAY_HIGH_WATER = 1 << 20
OUTPUT_TAIL_BYTES = 64 * 1024


class OutputBuffer:
    """Bounded tail of a byte stream, kept for crash diagnostics."""

    def __init__(self, max_bytes: int = OUTPUT_TAIL_BYTES) -> None:
        self._max_bytes = max_bytes
        self._chunks: collections.deque[bytes] = collections.deque()
        self._size = 0

    def append(self, chunk: bytes) -> None:
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self._max_bytes and len(self._chunks) > 1:
            self._size -= len(self._chunks.popleft())

    def text(self) -> str:
        data = b"".join(self._chunks)
        if len(data) > self._max_bytes:
            data = data[-self._max_bytes :]
        return data.decode("utf-8", errors="replace")


@dataclass
class RunSession:
    environment: EnvironmentSpec
    runner: ManagedProcess
    submitter: ManagedProcess
    relay: asyncio.Task[int]
    output: OutputBuffer


@dataclass(frozen=True)
class PairOutcome:
    environment: EnvironmentSpec
    runner_exit_code: int | None
    submitter_exit_code: int | None
    runner_exited_first: bool
    result_path: Path
    runner_output: str = ""

    @property
    def runner_alive(self) -> bool:
        return self.runner_exit_code is None

    @property
    def submitter_alive(self) -> bool:
        return self.submitter_exit_code is None


async def relay_stream(
    source: asyncio.StreamReader,
    sink: asyncio.StreamWriter | None,
    buffer: OutputBuffer,
    *,
    chunk_size: int = RELAY_CHUNK_SIZE,
    high_water: int = RELAY_HIGH_WATER,
) -> int:
    """Copy ``source`` into ``sink`` until EOF, then close ``sink``. Returns bytes read."""
    forwarding = sink is not None
    total = 0
    try:
        while True:
            chunk = await source.read(chunk_size)
            if not chunk:
                break
            total += len(chunk)
            buffer.append(chunk)
            if not forwarding:
                continue
            if sink.is_closing():
                forwarding = False
                continue
            try:
                sink.write(chunk)
            except (BrokenPipeError, ConnectionResetError):
                forwarding = False
                continue
            if sink.transport.get_write_buffer_size() > high_water:
                logger.warning("Submitter is not reading its stdin; dropping further runner output.")
                forwarding = False
    finally:
        if sink is not None:
            with contextlib.suppress(BrokenPipeError, ConnectionResetError, RuntimeError):
                sink.close()
    return total


class PairCoordinator:
    """Owns the active RunSession; ``stop`` is safe to call from any exit path."""

    def __init__(
        self,
        *,
        result_path: Path,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
        term_timeout_s: float = 5.0,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._result_path = result_path
        self._grace_period_s = grace_period_s
        self._term_timeout_s = term_timeout_s
        self._cwd = cwd
        self._env = env
        self.active: RunSession | None = None
        self._stopping: asyncio.Future | None = None

    async def start(
        self,
        environment: EnvironmentSpec,
        runner_command: Sequence[str],
        submitter_command: Sequence[str],
    ) -> RunSession:
        if self.active is not None:
            raise RuntimeError("A runner/submitter pair is already active.")
        runner = await start_process(
            "runner",
            runner_command,
            cwd=self._cwd,
            env=self._env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            submitter = await start_process(
                "submitter",
                submitter_command,
                cwd=self._cwd,
                env=self._env,
                stdin=asyncio.subprocess.PIPE,
            )
        except Exception:
            await terminate_process(runner, term_timeout_s=self._term_timeout_s)
            raise
        output = OutputBuffer()
        relay = asyncio.create_task(relay_stream(runner.process.stdout, submitter.process.stdin, output))
        self.active = RunSession(
            environment=environment,
            runner=runner,
            submitter=submitter,
            relay=relay,
            output=output,
        )
        logger.debug(
            "Started pair for %s (runner pid=%s, submitter pid=%s)",
            environment.identifier,
            runner.process.pid,
            submitter.process.pid,
        )
        return self.active

    async def wait(self, session: RunSession) -> PairOutcome:
        """Block until either side exits, then let trailing output flush for the grace period."""
        runner_exit = asyncio.ensure_future(session.runner.process.wait())
        submitter_exit = asyncio.ensure_future(session.submitter.process.wait())
        try:
            done, _ = await asyncio.wait({runner_exit, submitter_exit}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (runner_exit, submitter_exit):
                if not waiter.done():
                    waiter.cancel()
            await asyncio.gather(runner_exit, submitter_exit, return_exceptions=True)
        runner_exited_first = runner_exit in done and submitter_exit not in done
        if self._grace_period_s > 0:
            await asyncio.sleep(self._grace_period_s)
        return PairOutcome(
            environment=session.environment,
            runner_exit_code=session.runner.returncode,
            submitter_exit_code=session.submitter.returncode,
            runner_exited_first=runner_exited_first,
            result_path=self._result_path,
            runner_output=session.output.text(),
        )

    async def run_pair(
        self,
        environment: EnvironmentSpec,
        runner_command: Sequence[str],
        submitter_command: Sequence[str],
    ) -> PairOutcome:
        session = await self.start(environment, runner_command, submitter_command)
        return await self.wait(session)

    async def stop(self) -> None:
        """Terminate the active pair.

        The termination runs shielded and ``active`` is only cleared once it has
        finished, so a caller cancelled mid-stop can call ``stop`` again to wait
        for the same termination.
        """
        if self._stopping is None:
            session = self.active
            if session is None:
                return
            self._stopping = asyncio.ensure_future(self._terminate(session))
        stopping = self._stopping
        try:
            await asyncio.shield(stopping)
        finally:
            if stopping.done() and self._stopping is stopping:
                self._stopping = None
                self.active = None

    async def _terminate(self, session: RunSession) -> None:
        for proc in (session.submitter, session.runner):
            try:
                await terminate_process(proc, term_timeout_s=self._term_timeout_s)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to terminate %s: %s", proc.name, exc)
        try:
            await asyncio.wait_for(session.relay, timeout=self._term_timeout_s)
        except asyncio.TimeoutError:
            session.relay.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await session.relay
        except (OSError, ValueError) as exc:
            logger.debug("Relay for %s ended with %r", session.environment.identifier, exc)


__all__ = [
    "DEFAULT_GRACE_PERIOD_S",
    "OutputBuffer",
    "PairCoordinator",
    "PairOutcome",
    "RunSession",
    "relay_stream",
]
