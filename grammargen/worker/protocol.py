"""Shared worker protocol types.

The worker exposes a small HTTP interface on the loopback address:
- GET  /healthz  -> Readiness check
- POST /run      -> Execute one JobSpec, respond with a JobResult
- POST /shutdown -> Graceful shutdown
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from .errors import WorkerLaunchError

# Injected into every worker; tells the executor not to let the generator
# terminate the worker process.
DO_NOT_EXIT_PROPERTY = "GRAMMARGEN_DO_NOT_EXIT"

DEFAULT_BASE_NAME = "grammargen worker"


class WorkerState(str, Enum):
    """Worker lifecycle states."""

    CREATED = "created"  # Handle built, no process yet
    STARTING = "starting"  # Process spawned, waiting for /healthz
    READY = "ready"  # Accepting the request
    BUSY = "busy"  # Request in flight
    TERMINATED = "terminated"  # Shutdown complete


@dataclass(frozen=True)
class ClasspathSet:
    """The isolated import path of a worker.

    ``entries`` become the worker's PYTHONPATH (after the shared namespaces);
    ``python`` selects the interpreter whose site-packages form the rest of the
    worker's dependency set. ``None`` means the host interpreter.
    """

    entries: Tuple[Path, ...] = ()
    python: Optional[Path] = None

    @classmethod
    def of(cls, *entries: os.PathLike, python: Optional[os.PathLike] = None) -> "ClasspathSet":
        return cls(
            entries=tuple(Path(e) for e in entries),
            python=Path(python) if python is not None else None,
        )

    @classmethod
    def from_venv(cls, venv_dir: os.PathLike, entries: Iterable[os.PathLike] = ()) -> "ClasspathSet":
        """Use a virtual environment's interpreter (and so its site-packages)."""
        venv = Path(venv_dir)
        if sys.platform == "win32":
            python = venv / "Scripts" / "python.exe"
        else:
            python = venv / "bin" / "python"
        return cls(entries=tuple(Path(e) for e in entries), python=python)

    @property
    def interpreter(self) -> str:
        return str(self.python) if self.python is not None else sys.executable

    def validate(self) -> None:
        """
        Check every entry is readable and the interpreter is executable.

        Raises:
            WorkerLaunchError: On the first unusable entry
        """
        for entry in self.entries:
            if not entry.exists():
                raise WorkerLaunchError(f"Classpath entry does not exist: {entry}")
            if not os.access(entry, os.R_OK):
                raise WorkerLaunchError(f"Classpath entry is not readable: {entry}")
        if self.python is not None:
            if not self.python.exists():
                raise WorkerLaunchError(f"Worker interpreter not found: {self.python}")
            if not os.access(self.python, os.X_OK):
                raise WorkerLaunchError(f"Worker interpreter is not executable: {self.python}")


@dataclass(frozen=True)
class WorkerConfiguration:
    """Process configuration for a single worker invocation."""

    working_dir: Path
    max_heap_size: Optional[str] = None
    classpath: Optional[ClasspathSet] = None
    system_properties: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({DO_NOT_EXIT_PROPERTY: "true"})
    )
    merge_error_stream: bool = True
    base_name: str = DEFAULT_BASE_NAME


@dataclass(frozen=True)
class HealthResponse:
    """Response from /healthz endpoint."""

    status: str  # "ok" or "starting"
    ready: bool
    executor: str  # Import path of the executor being served
