"""Builder for the worker's command line, environment and stream layout."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

WORKER_MODULE = "grammargen.worker.base"


class WorkerCommand:
    """
    Mutable description of how to launch one worker process.

    Configured by the manager, adjusted by the compatibility shim, then turned
    into ``subprocess.Popen`` arguments by the worker handle.
    """

    def __init__(self, interpreter: str, module: str = WORKER_MODULE):
        self.interpreter = interpreter
        self.module = module
        self.args: List[str] = []
        self.working_dir: Optional[Path] = None
        self.max_heap_size: Optional[str] = None
        self.base_name: Optional[str] = None
        self.python_path: List[Path] = []
        self.system_properties: Dict[str, str] = {}
        self.isolated_interpreter = False
        self._merge_error_stream = False

    def system_property(self, name: str, value: str) -> "WorkerCommand":
        self.system_properties[name] = str(value)
        return self

    def redirect_error_stream(self) -> "WorkerCommand":
        """Merge the process' error stream into its output stream."""
        self._merge_error_stream = True
        return self

    @property
    def error_stream_merged(self) -> bool:
        return self._merge_error_stream

    def build_argv(self) -> List[str]:
        cmd = [self.interpreter, "-m", self.module, *self.args]
        if self.max_heap_size:
            cmd.extend(["--max-heap-size", self.max_heap_size])
        if self.base_name:
            cmd.extend(["--base-name", self.base_name])
        return cmd

    def build_env(self, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Build the worker environment.

        The host PYTHONPATH is never inherited: the worker sees only the
        shared namespace roots and its own classpath entries.
        """
        env = dict(os.environ if base is None else base)
        env.setdefault("PYTHONUNBUFFERED", "1")
        env.pop("PYTHONPATH", None)
        if self.python_path:
            env["PYTHONPATH"] = os.pathsep.join(str(p) for p in self.python_path)

        # Let a foreign interpreter resolve its own site-packages
        if self.isolated_interpreter:
            env.pop("VIRTUAL_ENV", None)
            env.pop("CONDA_PREFIX", None)

        env.update(self.system_properties)
        return env

    def popen_kwargs(self) -> Dict[str, Any]:
        return {
            "cwd": str(self.working_dir) if self.working_dir else None,
            "env": self.build_env(),
            "stdout": subprocess.PIPE,
            "stderr": subprocess.STDOUT if self._merge_error_stream else None,
            "text": True,
            "bufsize": 1,
        }

    def describe(self) -> str:
        return " ".join(self.build_argv())

    def __repr__(self) -> str:
        return f"WorkerCommand({self.describe()!r}, cwd={self.working_dir})"

