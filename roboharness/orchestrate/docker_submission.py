"""Docker-backed build/run/extract/cleanup for containerised submissions."""

from __future__ import annotations

from dataclasses import dataclass
import asyncio
import hashlib
import io
import json
import logging
import os
from pathlib import Path
import sys
import tarfile
import threading
import time
from typing import IO, Any, Mapping, Sequence

from roboharness._constants import NETWORK_NAME, SUBMISSION_CONTAINER_NAME, SUBMISSION_IMAGE_REPO
from roboharness.orchestrate.state import EMPTY_RESULT, write_json_atomic

logger = logging.getLogger(__name__)

ORCHESTRATOR_LABEL_KEY = "roboharness.managed"
X11_SOCKET_DIR = "/tmp/.X11-unix"


class ContainerBuildError(RuntimeError):
    """Raised when the submission image fails to build."""

    def __init__(self, message: str, *, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ContainerRunError(RuntimeError):
    """Raised when the submission container cannot be launched."""


@dataclass(frozen=True)
class NetworkWaitResult:
    ready: bool
    elapsed_s: float
    attempts: int


def image_tag_for(directory: Path) -> str:
    """Deterministic tag for a build context, so rebuilds from one directory share a tag."""
    digest = hashlib.sha256(str(directory.resolve()).encode("utf-8")).hexdigest()[:12]
    return f"{SUBMISSION_IMAGE_REPO}:{digest}"


def docker_client(timeout: int = 600):
    try:
        import docker
    except Exception as exc:  # pragma: no cover - dependency import varies
        raise ContainerRunError("docker package is required for containerised submissions.") from exc
    return docker.from_env(timeout=timeout)


class ContainerLogStreamer:
    """Copy a container's log stream to a text handle from a background thread."""

    def __init__(self, container, sink: IO[str] | None = None) -> None:
        self._container = container
        self._sink = sink if sink is not None else sys.stdout
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._stream = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="submission-log-streamer", daemon=True)
        self._thread.start()

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop_event.set()
        self._close_stream()
        if self._thread:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self) -> None:
        try:
            self._stream = self._container.logs(stream=True, follow=True)
            for chunk in self._stream:
                if self._stop_event.is_set():
                    break
                self._sink.write(chunk.decode("utf-8", errors="replace"))
                self._sink.flush()
        finally:
            self._close_stream()

    def _close_stream(self) -> None:
        stream = self._stream
        if stream is None:
            return
        close = getattr(stream, "close", None)
        if callable(close):
            try:
                close()
            except Exception:
                pass


class ContainerManager:
    """Lifecycle of the single submission container on this host."""

    def __init__(
        self,
        client=None,
        *,
        container_name: str = SUBMISSION_CONTAINER_NAME,
        network: str = NETWORK_NAME,
        log_sink: IO[str] | None = None,
    ) -> None:
        self._client = client
        self.container_name = container_name
        self.network = network
        self._log_sink = log_sink
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Unblock a pending network wait; used on teardown."""
        self._cancelled.set()

    @property
    def client(self):
        if self._client is None:
            self._client = docker_client()
        return self._client

    def build(self, dockerfile: Path, directory: Path) -> str:
        tag = image_tag_for(directory)
        context = directory.resolve()
        try:
            relative_dockerfile = str(dockerfile.resolve().relative_to(context))
        except ValueError:
            relative_dockerfile = str(dockerfile.resolve())
        logger.info("Building submission image %s from %s", tag, context)
        try:
            stream = self.client.api.build(
                path=str(context),
                dockerfile=relative_dockerfile,
                tag=tag,
                rm=True,
                decode=True,
            )
            for chunk in stream:
                if "stream" in chunk:
                    text = str(chunk["stream"]).rstrip()
                    if text:
                        logger.debug("build: %s", text)
                error = chunk.get("errorDetail") or ({"message": chunk["error"]} if "error" in chunk else None)
                if error:
                    code = error.get("code")
                    raise ContainerBuildError(
                        f"Image build failed: {error.get('message', 'unknown error')}",
                        exit_code=int(code) if code else 1,
                    )
        except ContainerBuildError:
            raise
        except Exception as exc:
            raise ContainerBuildError(f"Image build failed: {exc}") from exc
        return tag

    def network_exists(self) -> bool:
        return any(getattr(net, "name", None) == self.network for net in self.client.networks.list(names=[self.network]))

    def wait_for_network(self, *, poll_interval_s: float = 1.0, timeout_s: float | None = None) -> NetworkWaitResult:
        """Block until the shared network exists. The Runner creates it, not this process."""
        start = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            if self.network_exists():
                return NetworkWaitResult(ready=True, elapsed_s=time.monotonic() - start, attempts=attempts)
            if attempts == 1:
                logger.info("Waiting for network %s to become available...", self.network)
            if timeout_s is not None and time.monotonic() - start > timeout_s:
                return NetworkWaitResult(ready=False, elapsed_s=time.monotonic() - start, attempts=attempts)
            if self._cancelled.wait(poll_interval_s):
                return NetworkWaitResult(ready=False, elapsed_s=time.monotonic() - start, attempts=attempts)

    def run(
        self,
        image_tag: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        poll_interval_s: float = 1.0,
        network_timeout_s: float | None = None,
    ) -> int:
        readiness = self.wait_for_network(poll_interval_s=poll_interval_s, timeout_s=network_timeout_s)
        if not readiness.ready and self._cancelled.is_set():
            raise ContainerRunError("Submission cancelled while waiting for the network.")
        if not readiness.ready:
            raise ContainerRunError(
                f"Network {self.network!r} did not appear within {readiness.elapsed_s:.0f}s; is the runner up?"
            )
        container = self.start(image_tag, args, env=env)
        streamer = ContainerLogStreamer(container, self._log_sink)
        streamer.start()
        try:
            status = container.wait()
        finally:
            streamer.stop()
        exit_code = int(status.get("StatusCode", 1)) if isinstance(status, Mapping) else 1
        logger.info("Submission container exited with code %d", exit_code)
        return exit_code

    def start(self, image_tag: str, args: Sequence[str] = (), *, env: Mapping[str, str] | None = None):
        try:
            from docker.types import DeviceRequest
        except Exception as exc:  # pragma: no cover - dependency import varies
            raise ContainerRunError("docker.types.DeviceRequest is required for GPU requests.") from exc
        self._remove_stale()
        environment = dict(env or {})
        display = os.environ.get("DISPLAY")
        if display:
            environment.setdefault("DISPLAY", display)
        try:
            command = self._command_for(image_tag, args)
            return self.client.containers.run(
                image_tag,
                command=command,
                name=self.container_name,
                network=self.network,
                environment=environment,
                volumes={X11_SOCKET_DIR: {"bind": X11_SOCKET_DIR, "mode": "rw"}},
                device_requests=[DeviceRequest(count=-1, capabilities=[["gpu"]])],
                labels={ORCHESTRATOR_LABEL_KEY: "true"},
                detach=True,
            )
        except Exception as exc:
            raise ContainerRunError(f"Failed to start submission container: {exc}") from exc

    def _command_for(self, image_tag: str, args: Sequence[str]) -> list[str] | None:
        if not args:
            return None
        image = self.client.images.get(image_tag)
        config = (getattr(image, "attrs", None) or {}).get("Config") or {}
        base = list(config.get("Cmd") or [])
        return base + list(args)

    def _remove_stale(self) -> None:
        try:
            existing = self.client.containers.get(self.container_name)
        except Exception:
            return
        if getattr(existing, "status", None) == "running":
            raise ContainerRunError(
                f"Container name {self.container_name!r} is already running; "
                "only one submission may run per host."
            )
        try:
            existing.remove(v=True, force=True)
        except Exception as exc:
            logger.warning("Could not remove stale container %s: %s", self.container_name, exc)

    def extract(self, result_path: Path, dest_path: Path, *, container_name: str | None = None) -> Mapping[str, Any]:
        """Copy the result file out of the container; any failure yields ``{}``."""
        name = container_name or self.container_name
        try:
            container = self.client.containers.get(name)
            stream, _stat = container.get_archive(str(result_path))
            raw = _read_single_file(b"".join(stream))
            payload = json.loads(raw.decode("utf-8"))
            if not isinstance(payload, Mapping):
                raise ValueError("result is not a JSON object")
        except Exception as exc:
            logger.warning("No usable result in container %s (%s); substituting {}.", name, exc)
            write_json_atomic(dest_path, EMPTY_RESULT)
            return dict(EMPTY_RESULT)
        write_json_atomic(dest_path, payload)
        return dict(payload)

    def cleanup(self, prefix: str | None = None) -> list[str]:
        """Stop and remove every container whose name matches ``prefix``."""
        name_filter = prefix or self.container_name
        try:
            containers = self.client.containers.list(all=True, filters={"name": name_filter})
        except Exception as exc:
            logger.warning("Container cleanup skipped: %s", exc)
            return []
        removed: list[str] = []
        for container in containers:
            if not str(getattr(container, "name", "")).startswith(name_filter):
                continue
            try:
                if container.status == "running":
                    container.stop(timeout=10)
                container.remove(v=True, force=True)
                removed.append(container.name)
            except Exception as exc:
                logger.warning("Failed to remove container %s: %s", container.name, exc)
                continue
        return removed

    async def cleanup_async(self, prefix: str | None = None) -> list[str]:
        return await asyncio.to_thread(self.cleanup, prefix)


def _read_single_file(archive: bytes) -> bytes:
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        for member in tar.getmembers():
            if member.isfile():
                handle = tar.extractfile(member)
                if handle is not None:
                    return handle.read()
    raise FileNotFoundError("archive contains no regular file")


__all__ = [
    "ContainerBuildError",
    "ContainerLogStreamer",
    "ContainerManager",
    "ContainerRunError",
    "NetworkWaitResult",
    "ORCHESTRATOR_LABEL_KEY",
    "docker_client",
    "image_tag_for",
]
