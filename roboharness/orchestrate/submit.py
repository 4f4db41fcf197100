"""Execute a resolved submission: natively, as an archive, or in a container."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import shlex
import tarfile
from typing import Mapping

from roboharness._constants import DEFAULT_RESULT_LOCATION, result_location
from roboharness.orchestrate.docker_submission import ContainerManager
from roboharness.orchestrate.processes import (
    register_signal_handlers,
    remove_signal_handlers,
    start_process,
    terminate_process,
    wait_process,
)
from roboharness.orchestrate.submission import SubmissionDescriptor, SubmissionMode

logger = logging.getLogger(__name__)


async def run_native(descriptor: SubmissionDescriptor) -> int:
    command = descriptor.argv()
    logger.info("Running submission natively: %s (cwd=%s)", shlex.join(command), descriptor.working_dir)
    proc = await start_process("submission", command, cwd=descriptor.working_dir)
    try:
        result = await wait_process(proc)
    finally:
        await terminate_process(proc)
    return result.exit_code


def bundle_submission(descriptor: SubmissionDescriptor) -> Path:
    """Write ``working_dir`` into a gzipped tarball at ``output_path``."""
    if descriptor.output_path is None:
        raise ValueError("Bundle submissions need an output path.")
    directory = descriptor.working_dir
    output = descriptor.output_path.resolve()
    output.parent.mkdir(parents=True, exist_ok=True)

    def _skip_output(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        if (directory / info.name).resolve() == output:
            return None
        return info

    with tarfile.open(output, "w:gz") as tar:
        tar.add(str(directory), arcname=".", filter=_skip_output)
    logger.info("Bundled %s into %s", directory, output)
    return output


async def run_containerised(
    descriptor: SubmissionDescriptor,
    *,
    manager: ContainerManager,
    result_path: Path,
    env: Mapping[str, str] | None = None,
    poll_interval_s: float = 1.0,
) -> int:
    """Build, run and extract. Containers are cleaned up on every exit path."""
    if descriptor.image_spec is None:
        raise ValueError("Containerised submissions need an image spec.")
    try:
        tag = await asyncio.to_thread(manager.build, descriptor.image_spec, descriptor.working_dir)
        exit_code = await asyncio.to_thread(
            manager.run,
            tag,
            shlex.split(descriptor.args),
            env=env,
            poll_interval_s=poll_interval_s,
        )
        await asyncio.to_thread(manager.extract, DEFAULT_RESULT_LOCATION, result_path)
        return exit_code
    finally:
        manager.cancel()
        removed = await manager.cleanup_async()
        if removed:
            logger.debug("Removed containers: %s", ", ".join(removed))


async def execute_submission(
    descriptor: SubmissionDescriptor,
    *,
    manager: ContainerManager | None = None,
    result_path: Path | None = None,
    env: Mapping[str, str] | None = None,
    poll_interval_s: float = 1.0,
) -> int:
    if descriptor.mode is SubmissionMode.bundle:
        bundle_submission(descriptor)
        return 0
    if descriptor.containerised:
        return await run_containerised(
            descriptor,
            manager=manager or ContainerManager(),
            result_path=result_path or result_location(),
            env=env,
            poll_interval_s=poll_interval_s,
        )
    return await run_native(descriptor)


def run_submission(descriptor: SubmissionDescriptor, **kwargs) -> int:
    """Synchronous entry point; SIGINT/SIGTERM cancel the submission and still clean up."""

    async def _main() -> int:
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        if task is not None:
            register_signal_handlers(loop, task.cancel)
        try:
            return await execute_submission(descriptor, **kwargs)
        finally:
            remove_signal_handlers(loop)

    return asyncio.run(_main())


__all__ = [
    "bundle_submission",
    "execute_submission",
    "run_containerised",
    "run_native",
    "run_submission",
]
