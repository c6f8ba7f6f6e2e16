"""Creates isolated worker processes and drives their single request.

A handle owns at most one subprocess. ``run()`` spawns it, waits for
/healthz, posts the job, and always tears the process down afterwards.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence
from urllib import request as urlrequest
from urllib.error import HTTPError, URLError

from pydantic import ValidationError

from ..config import (
    DEFAULT_EXECUTOR,
    get_worker_idle_timeout,
    get_worker_request_timeout,
    get_worker_startup_timeout,
)
from .command import WorkerCommand
from .errors import WorkerExecutionError, WorkerLaunchError
from .models import JobResult, JobSpec, decode_result, encode_spec
from .protocol import DEFAULT_BASE_NAME, ClasspathSet, HealthResponse, WorkerState
from .utils import find_free_port, namespace_roots

logger = logging.getLogger(__name__)


class WorkerHandle(Protocol):
    """One request/response cycle with an isolated worker."""

    command: Any

    def run(self, spec: JobSpec) -> JobResult: ...

    def terminate(self) -> None: ...


class WorkerProcessFactory(Protocol):
    def create_worker(
        self,
        classpath: Optional[ClasspathSet],
        shared_namespaces: Sequence[str],
        executor: str = DEFAULT_EXECUTOR,
    ) -> WorkerHandle: ...


class SubprocessWorkerHandle:
    """Coordinator's view of a single-request worker subprocess."""

    def __init__(
        self,
        command: WorkerCommand,
        startup_timeout: float = 60.0,
        request_timeout: Optional[float] = None,
        shutdown_grace: float = 2.0,
    ):
        self.command = command
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.shutdown_grace = shutdown_grace

        self.port: Optional[int] = None
        self.proc: Optional[subprocess.Popen] = None
        self.state = WorkerState.CREATED
        self.spawned_at: Optional[float] = None
        self._output_thread: Optional[threading.Thread] = None

    @property
    def name(self) -> str:
        return self.command.base_name or DEFAULT_BASE_NAME

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def is_alive(self) -> bool:
        """Check if worker process is still running."""
        return self.proc is not None and self.proc.poll() is None

    def run(self, spec: JobSpec) -> JobResult:
        """
        Spawn the worker, submit ``spec`` and wait for the result.

        Raises:
            WorkerLaunchError: If the process cannot start or never becomes ready
            WorkerExecutionError: If the request/response cycle breaks
        """
        if self.state != WorkerState.CREATED:
            raise WorkerLaunchError(f"{self.name} handle was already used ({self.state.value})")

        try:
            self._spawn()
            self._wait_ready()
            return self._send_request(spec)
        finally:
            self.terminate()

    def _spawn(self) -> None:
        self.port = find_free_port()
        cmd = self.command.build_argv() + ["--port", str(self.port)]

        logger.info(f"Spawning {self.name} on port {self.port}: {' '.join(cmd)}")
        try:
            self.proc = subprocess.Popen(cmd, **self.command.popen_kwargs())
        except (OSError, ValueError) as e:
            self.state = WorkerState.TERMINATED
            raise WorkerLaunchError(f"Failed to start {self.name}: {e}") from e

        self.state = WorkerState.STARTING
        self.spawned_at = time.time()
        if self.proc.stdout is not None:
            self._output_thread = threading.Thread(
                target=self._relay_output, name=f"{self.name} output", daemon=True
            )
            self._output_thread.start()

    def _relay_output(self) -> None:
        """Forward the worker's (merged) output to our log, line by line."""
        for line in self.proc.stdout:
            logger.info(f"[{self.name}] {line.rstrip()}")

    def _wait_ready(self) -> None:
        """
        Wait for the worker to answer /healthz with ready=true.

        Raises:
            WorkerLaunchError: If the worker exits before ready or times out
        """
        url = f"{self.base_url}/healthz"
        deadline = time.time() + self.startup_timeout

        while time.time() < deadline:
            if not self.is_alive():
                raise WorkerLaunchError(
                    f"{self.name} exited before becoming ready "
                    f"(exit code: {self.proc.returncode})"
                )

            try:
                with urlrequest.urlopen(url, timeout=1) as resp:
                    if resp.status == 200:
                        health = HealthResponse(**json.loads(resp.read().decode()))
                        if health.ready:
                            self.state = WorkerState.READY
                            logger.info(f"{self.name} ready on port {self.port}")
                            return
            except (URLError, ConnectionError, TimeoutError):
                pass

            time.sleep(0.2)

        raise WorkerLaunchError(f"{self.name} failed to become ready in {self.startup_timeout}s")

    def _send_request(self, spec: JobSpec) -> JobResult:
        url = f"{self.base_url}/run"
        data = encode_spec(spec).encode()
        req = urlrequest.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        self.state = WorkerState.BUSY
        try:
            with urlrequest.urlopen(req, timeout=self.request_timeout) as resp:
                body = resp.read()
        except HTTPError as e:
            try:
                error_msg = json.loads(e.read().decode()).get("detail", str(e))
            except (ValueError, AttributeError):
                error_msg = f"Worker returned HTTP {e.code}: {e.reason}"
            raise WorkerExecutionError(f"{self.name} error: {error_msg}") from e
        except TimeoutError as e:
            logger.error(f"{self.name} timed out, terminating")
            raise WorkerExecutionError(
                f"{self.name} did not answer within {self.request_timeout}s"
            ) from e
        except (URLError, ConnectionError) as e:
            exit_code = self.proc.poll() if self.proc is not None else None
            raise WorkerExecutionError(
                f"{self.name} terminated during the request (exit code: {exit_code}): {e}"
            ) from e

        try:
            return decode_result(body)
        except ValidationError as e:
            raise WorkerExecutionError(f"{self.name} sent an invalid result: {e}") from e

    def terminate(self) -> None:
        """
        Stop the worker gracefully, then forcefully if needed.

        Safe to call at any time, including from another thread to cancel
        a running request.
        """
        proc = self.proc
        if proc is not None and proc.poll() is None:
            # Graceful shutdown via HTTP
            try:
                req = urlrequest.Request(f"{self.base_url}/shutdown", method="POST")
                with urlrequest.urlopen(req, timeout=1):
                    pass
            except (URLError, ConnectionError, TimeoutError):
                pass

            try:
                proc.wait(timeout=self.shutdown_grace)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    logger.warning(f"{self.name} ignored SIGTERM, killing")
                    proc.kill()
                    proc.wait(timeout=2)

        if self._output_thread is not None:
            self._output_thread.join(timeout=2.0)
            self._output_thread = None
        if proc is not None and proc.stdout is not None:
            proc.stdout.close()

        self.state = WorkerState.TERMINATED


class SubprocessWorkerFactory:
    """
    Builds single-request worker handles backed by ``python -m grammargen.worker.base``.

    Args:
        startup_timeout: Max seconds to wait for worker startup
        request_timeout: Max seconds for the request (None: from config, 0: no limit)
        idle_timeout: Seconds a worker waits for its request before exiting
    """

    def __init__(
        self,
        startup_timeout: Optional[float] = None,
        request_timeout: Optional[float] = None,
        idle_timeout: Optional[int] = None,
    ):
        if startup_timeout is None:
            startup_timeout = get_worker_startup_timeout()
        if request_timeout is None:
            request_timeout = get_worker_request_timeout()
        elif request_timeout <= 0:
            request_timeout = None
        if idle_timeout is None:
            idle_timeout = get_worker_idle_timeout()

        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.idle_timeout = idle_timeout

    def create_worker(
        self,
        classpath: Optional[ClasspathSet],
        shared_namespaces: Sequence[str],
        executor: str = DEFAULT_EXECUTOR,
    ) -> SubprocessWorkerHandle:
        """
        Create a handle for one isolated worker.

        Shared namespaces are resolved to their host import roots and put
        ahead of the classpath, so request/response types load from the
        same source on both sides.

        Raises:
            WorkerLaunchError: If the classpath or a shared namespace is unusable
        """
        if classpath is not None:
            classpath.validate()

        try:
            shared_roots = namespace_roots(shared_namespaces)
        except ModuleNotFoundError as e:
            raise WorkerLaunchError(str(e)) from e

        entries: List[Path] = [e.resolve() for e in classpath.entries] if classpath else []

        command = WorkerCommand((classpath or ClasspathSet()).interpreter)
        command.python_path = shared_roots + [e for e in entries if e not in shared_roots]
        command.isolated_interpreter = classpath is not None and classpath.python is not None
        command.args = ["--executor", executor, "--idle-timeout", str(self.idle_timeout)]

        return SubprocessWorkerHandle(
            command,
            startup_timeout=self.startup_timeout,
            request_timeout=self.request_timeout,
        )
