"""Isolated worker subprocesses for grammar code generation.

A generator runs in its own process with its own import path, memory limit
and environment, so its dependencies never load into the build process.

Key components:
- manager: WorkerManager, one isolated run per call
- factory: SubprocessWorkerFactory and the single-request worker handle
- shim: CompatibilityShim for error stream merging across host versions
- base: the program running inside the worker process
- executor: GeneratorExecutor and the default ANTLR tool executor
- models: JobSpec/JobResult and their JSON codec
"""

from .errors import (
    UnsupportedHostVersionError,
    WorkerError,
    WorkerExecutionError,
    WorkerLaunchError,
)
from .factory import SubprocessWorkerFactory, WorkerHandle, WorkerProcessFactory
from .manager import WorkerManager, get_worker_manager, run_generation
from .models import (
    Diagnostic,
    JobResult,
    JobSpec,
    JobStatus,
    Severity,
    SourceLocation,
    parse_heap_size,
)
from .protocol import ClasspathSet, WorkerConfiguration, WorkerState
from .shim import CompatibilityShim

__all__ = [
    "WorkerManager",
    "get_worker_manager",
    "run_generation",
    "SubprocessWorkerFactory",
    "WorkerProcessFactory",
    "WorkerHandle",
    "CompatibilityShim",
    "ClasspathSet",
    "WorkerConfiguration",
    "WorkerState",
    "JobSpec",
    "JobResult",
    "JobStatus",
    "Diagnostic",
    "Severity",
    "SourceLocation",
    "parse_heap_size",
    "WorkerError",
    "WorkerLaunchError",
    "WorkerExecutionError",
    "UnsupportedHostVersionError",
]
