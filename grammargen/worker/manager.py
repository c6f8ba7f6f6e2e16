"""Runs code generation jobs in isolated worker processes.

Each call configures and spawns exactly one worker, sends it one JobSpec and
returns its JobResult unchanged. Nothing is pooled or shared between calls.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from types import MappingProxyType
from typing import Optional, Sequence, Tuple

from ..config import DEFAULT_EXECUTOR
from .errors import WorkerError, WorkerExecutionError, WorkerLaunchError
from .factory import SubprocessWorkerFactory, WorkerHandle, WorkerProcessFactory
from .models import JobResult, JobSpec
from .protocol import DEFAULT_BASE_NAME, DO_NOT_EXIT_PROPERTY, ClasspathSet, WorkerConfiguration
from .shim import CompatibilityShim

logger = logging.getLogger(__name__)

# Packages whose types must resolve identically in host and worker
SHARED_NAMESPACES: Tuple[str, ...] = ("grammargen",)


class WorkerManager:
    """
    Orchestrates one isolated generator run per call.

    Args:
        executor: Import path ("module:attr") of the executor the worker runs
        shared_namespaces: Extra packages to share with the worker
        base_name: Worker display name
        shim: Compatibility shim used to merge the worker's error stream
    """

    def __init__(
        self,
        executor: str = DEFAULT_EXECUTOR,
        shared_namespaces: Sequence[str] = (),
        base_name: str = DEFAULT_BASE_NAME,
        shim: Optional[CompatibilityShim] = None,
    ):
        self.executor = executor
        self.shared_namespaces = tuple(dict.fromkeys((*SHARED_NAMESPACES, *shared_namespaces)))
        self.base_name = base_name
        self.shim = shim or CompatibilityShim()

    def build_configuration(
        self,
        spec: JobSpec,
        classpath: Optional[ClasspathSet] = None,
        working_dir: Optional[os.PathLike] = None,
    ) -> WorkerConfiguration:
        """Derive the process configuration; ``working_dir`` defaults to ``spec.working_dir``."""
        return WorkerConfiguration(
            working_dir=Path(working_dir) if working_dir is not None else spec.working_dir,
            max_heap_size=spec.max_heap_size,
            classpath=classpath,
            system_properties=MappingProxyType({DO_NOT_EXIT_PROPERTY: "true"}),
            merge_error_stream=True,
            base_name=self.base_name,
        )

    def run(
        self,
        working_dir: Optional[os.PathLike],
        factory: WorkerProcessFactory,
        classpath: Optional[ClasspathSet],
        spec: JobSpec,
    ) -> JobResult:
        """
        Run ``spec`` in a fresh isolated worker and block until it answers.

        Returns:
            The worker's JobResult, unchanged. A generator that reported
            problems yields a FAILURE result, not an exception.

        Raises:
            WorkerLaunchError: If the worker process cannot be created
            WorkerExecutionError: If the worker dies or breaks the request cycle
            UnsupportedHostVersionError: If the error stream cannot be merged
        """
        config = self.build_configuration(spec, classpath, working_dir)
        handle = self._create_worker(factory, config)
        self._configure(handle, config)

        logger.info(
            f"Running {config.base_name} in {config.working_dir}: "
            f"{len(spec.input_files)} inputs -> {spec.output_dir}"
        )
        start = time.time()
        try:
            result = handle.run(spec)
        except WorkerError:
            raise
        except Exception as e:
            raise WorkerExecutionError(f"{config.base_name} failed: {e}") from e

        logger.info(
            f"{config.base_name} finished in {time.time() - start:.2f}s: "
            f"{result.status.value}, {len(result.outputs)} outputs, "
            f"{len(result.diagnostics)} diagnostics"
        )
        return result

    def _create_worker(
        self, factory: WorkerProcessFactory, config: WorkerConfiguration
    ) -> WorkerHandle:
        try:
            return factory.create_worker(config.classpath, self.shared_namespaces, self.executor)
        except WorkerError:
            raise
        except Exception as e:
            raise WorkerLaunchError(f"Could not create {config.base_name}: {e}") from e

    def _configure(self, handle: WorkerHandle, config: WorkerConfiguration) -> None:
        command = handle.command
        command.working_dir = config.working_dir
        command.max_heap_size = config.max_heap_size
        command.base_name = config.base_name
        for name, value in config.system_properties.items():
            command.system_property(name, value)

        if config.merge_error_stream:
            self.shim.apply(command)


# Global manager instance
_manager: Optional[WorkerManager] = None


def get_worker_manager() -> WorkerManager:
    """Get or create the global WorkerManager."""
    global _manager
    if _manager is None:
        _manager = WorkerManager()
    return _manager


def run_generation(
    spec: JobSpec,
    classpath: Optional[ClasspathSet] = None,
    working_dir: Optional[os.PathLike] = None,
    factory: Optional[WorkerProcessFactory] = None,
) -> JobResult:
    """
    Convenience function to run a job via the global manager.

    Args:
        spec: The job to run
        classpath: Isolated import path for the worker (None: host interpreter only)
        working_dir: Worker working directory (None: spec.working_dir)
        factory: Worker factory (None: a SubprocessWorkerFactory)

    Returns:
        JobResult from the worker
    """
    return get_worker_manager().run(
        working_dir,
        factory or SubprocessWorkerFactory(),
        classpath,
        spec,
    )
