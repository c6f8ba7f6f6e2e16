"""Executors loaded by worker processes in tests.

Kept importable by path so a real worker subprocess can resolve them from
its isolated PYTHONPATH.
"""

import os
import sys
import time

from grammargen.worker.executor import GeneratorExecutor
from grammargen.worker.models import Diagnostic, JobResult, Severity


class WritingExecutor(GeneratorExecutor):
    """Writes one output file per input and always succeeds."""

    def execute(self, spec):
        spec.output_dir.mkdir(parents=True, exist_ok=True)
        outputs = []
        for grammar in sorted(spec.input_files):
            target = spec.output_dir / f"{grammar.stem}Parser.py"
            target.write_text(f"# generated from {grammar.name}\n")
            outputs.append(target)
        print(f"stderr marker for {len(outputs)} files", file=sys.stderr)
        return JobResult.success(
            outputs,
            [Diagnostic(severity=Severity.INFO, message=f"cwd={os.getcwd()}")],
        )


class FailingExecutor(GeneratorExecutor):
    """Reports a grammar error."""

    def execute(self, spec):
        return JobResult.failure(
            [Diagnostic(severity=Severity.ERROR, message="mismatched input", code=50)]
        )


class ExitingExecutor(GeneratorExecutor):
    """Calls sys.exit like a command line tool would."""

    def execute(self, spec):
        sys.exit(3)


def crashing_executor(spec):
    raise RuntimeError("executor blew up")


class DyingExecutor(GeneratorExecutor):
    """Kills the worker process mid-request."""

    def execute(self, spec):
        os._exit(9)


class SleepingExecutor(GeneratorExecutor):
    """Never answers within a short request timeout."""

    def execute(self, spec):
        time.sleep(30)
        return JobResult.success()


class HeapReportingExecutor(GeneratorExecutor):
    """Reports the worker's address space limit."""

    def execute(self, spec):
        import resource

        soft, _ = resource.getrlimit(resource.RLIMIT_AS)
        return JobResult.success(
            diagnostics=[Diagnostic(severity=Severity.INFO, message=f"rlimit_as={soft}")]
        )
