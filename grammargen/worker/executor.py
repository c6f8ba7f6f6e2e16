"""Executors run inside the worker process and invoke the code generator.

The worker resolves its executor from an import path ("module:attr") on its
own isolated PYTHONPATH, so the generator's dependencies never load into the
host process.
"""

from __future__ import annotations

import importlib
import logging
import os
import re
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..config import get_antlr_command
from .models import Diagnostic, JobResult, JobSpec, Severity, SourceLocation
from .protocol import DO_NOT_EXIT_PROPERTY

logger = logging.getLogger(__name__)

ExecutorCallable = Callable[[JobSpec], JobResult]

JAVA_TOOL_OPTIONS = "JAVA_TOOL_OPTIONS"

# error(50): Foo.g4:3:4: syntax error: ...
_DIAGNOSTIC_RE = re.compile(
    r"^(?P<severity>error|warning)\((?P<code>\d+)\):\s*"
    r"(?:(?P<file>[^:]+?):(?P<line>\d+):(?P<column>\d+):\s*)?"
    r"(?P<message>.*)$",
    re.IGNORECASE,
)


def exit_is_suppressed() -> bool:
    """True when the worker was told not to let the generator exit it."""
    return os.environ.get(DO_NOT_EXIT_PROPERTY, "").lower() == "true"


class GeneratorExecutor(ABC):
    """
    Base class for generator executors.

    Subclasses implement execute(). Calling the executor converts generator
    crashes into FAILURE results so the caller still gets diagnostics.

    Executors that hand the job's heap size to a child process of their own
    set ``manages_heap``; the worker then leaves its address space uncapped.
    """

    manages_heap = False

    def __call__(self, spec: JobSpec) -> JobResult:
        started = time.time()
        try:
            result = self.execute(spec)
        except SystemExit as e:
            if not exit_is_suppressed():
                raise
            result = self._result_for_exit(e.code)
        except Exception as e:
            logger.error(f"Generator failed: {e}", exc_info=True)
            result = JobResult.failure(
                [Diagnostic(severity=Severity.ERROR, message=f"{type(e).__name__}: {e}")]
            )

        logger.info(
            f"Generator finished in {time.time() - started:.2f}s: {result.status.value}, "
            f"{len(result.outputs)} outputs, {len(result.diagnostics)} diagnostics"
        )
        return result

    @staticmethod
    def _result_for_exit(code: Union[int, str, None]) -> JobResult:
        if code in (None, 0):
            return JobResult.success()
        logger.warning(f"Generator requested exit with status {code!r}")
        return JobResult.failure(
            [Diagnostic(severity=Severity.ERROR, message=f"Generator exited with status {code}")]
        )

    @abstractmethod
    def execute(self, spec: JobSpec) -> JobResult:
        """
        Run the generator for one job.

        Args:
            spec: The job to run

        Returns:
            Result with status, generated files and diagnostics
        """
        pass


def load_executor(path: str) -> ExecutorCallable:
    """
    Resolve an executor from "package.module:attr".

    A class is instantiated without arguments; any other callable is used as is.

    Raises:
        ValueError: If the path is malformed or does not name a callable
        ImportError: If the module cannot be imported
        AttributeError: If the module lacks the attribute
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Executor must be 'module:attr', got {path!r}")

    target = importlib.import_module(module_name)
    for part in attr.split("."):
        target = getattr(target, part)

    if isinstance(target, type):
        target = target()
    if not callable(target):
        raise ValueError(f"Executor {path!r} is not callable")
    return target


def parse_diagnostics(lines: Iterable[str]) -> List[Diagnostic]:
    """Turn ANTLR tool output into diagnostics; unrecognised lines become INFO."""
    diagnostics: List[Diagnostic] = []
    for raw in lines:
        line = raw.rstrip()
        if not line.strip():
            continue
        match = _DIAGNOSTIC_RE.match(line)
        if not match:
            diagnostics.append(Diagnostic(severity=Severity.INFO, message=line))
            continue

        source: Optional[SourceLocation] = None
        if match.group("file"):
            source = SourceLocation(
                file=match.group("file").strip(),
                line=int(match.group("line")),
                column=int(match.group("column")),
            )
        diagnostics.append(
            Diagnostic(
                severity=Severity(match.group("severity").lower()),
                message=match.group("message").strip(),
                source=source,
                code=int(match.group("code")),
            )
        )
    return diagnostics


class AntlrToolExecutor(GeneratorExecutor):
    """
    Runs the ANTLR tool command line for a job.

    The job's heap size becomes the tool JVM's ``-Xmx`` through
    ``JAVA_TOOL_OPTIONS``.
    """

    manages_heap = True

    def __init__(self, command: Optional[str] = None):
        self.command = command or get_antlr_command()

    def build_env(self, spec: JobSpec, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = dict(os.environ if base is None else base)
        if spec.max_heap_size:
            heap_flag = "-Xmx" + "".join(spec.max_heap_size.split())
            existing = env.get(JAVA_TOOL_OPTIONS, "").strip()
            env[JAVA_TOOL_OPTIONS] = f"{existing} {heap_flag}" if existing else heap_flag
        return env

    def build_command(self, spec: JobSpec) -> List[str]:
        cmd = shlex.split(self.command)
        cmd.extend(["-o", str(spec.output_dir)])

        for name, value in sorted(spec.options.items()):
            name = name.lstrip("-")
            if isinstance(value, bool):
                cmd.append(f"-{name}" if value else f"-no-{name}")
            elif name.startswith("D"):
                cmd.append(f"-{name}={value}")
            else:
                cmd.extend([f"-{name}", str(value)])

        cmd.extend(str(p) for p in sorted(spec.input_files))
        return cmd

    def execute(self, spec: JobSpec) -> JobResult:
        if not spec.input_files:
            return JobResult.success(
                diagnostics=[Diagnostic(severity=Severity.INFO, message="No grammar files to process")]
            )

        cmd = self.build_command(spec)
        spec.output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Running: {' '.join(cmd)} in {spec.working_dir}")

        try:
            proc = subprocess.run(
                cmd,
                cwd=spec.working_dir,
                env=self.build_env(spec),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError:
            return JobResult.failure(
                [Diagnostic(severity=Severity.ERROR, message=f"ANTLR tool not found: {cmd[0]}")]
            )

        lines = proc.stdout.splitlines()
        for line in lines:
            logger.debug(f"[antlr] {line}")
        diagnostics = parse_diagnostics(lines)

        outputs = self._collect_outputs(spec.output_dir)
        failed = proc.returncode != 0 or any(d.severity == Severity.ERROR for d in diagnostics)
        if failed:
            if proc.returncode != 0 and not any(d.severity == Severity.ERROR for d in diagnostics):
                diagnostics.append(
                    Diagnostic(
                        severity=Severity.ERROR,
                        message=f"ANTLR tool exited with code {proc.returncode}",
                    )
                )
            return JobResult.failure(diagnostics, outputs=outputs)
        return JobResult.success(outputs, diagnostics)

    @staticmethod
    def _collect_outputs(output_dir: Path) -> List[Path]:
        if not output_dir.exists():
            return []
        return sorted(p for p in output_dir.rglob("*") if p.is_file())
