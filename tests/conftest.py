"""Pytest configuration and fixtures"""

import sys

import pytest

from grammargen.worker.command import WorkerCommand
from grammargen.worker.models import JobResult, JobSpec
from grammargen.worker.shim import clear_capability_cache


class StubHandle:
    """Worker handle that runs a generator function in-process."""

    def __init__(self, generator):
        self.command = WorkerCommand(sys.executable)
        self.generator = generator
        self.received = []
        self.terminated = False

    def run(self, spec):
        self.received.append(spec)
        return self.generator(spec)

    def terminate(self):
        self.terminated = True


class StubFactory:
    """Records create_worker calls and hands out StubHandles."""

    def __init__(self, generator=None, error=None):
        self.generator = generator or (lambda spec: JobResult.success([spec.output_dir / "Out.py"]))
        self.error = error
        self.calls = []
        self.handles = []

    def create_worker(self, classpath, shared_namespaces, executor):
        self.calls.append((classpath, tuple(shared_namespaces), executor))
        if self.error is not None:
            raise self.error
        handle = StubHandle(self.generator)
        self.handles.append(handle)
        return handle


@pytest.fixture(autouse=True)
def fresh_capability_cache():
    clear_capability_cache()
    yield
    clear_capability_cache()


@pytest.fixture
def grammar_file(tmp_path):
    grammar = tmp_path / "Expr.g4"
    grammar.write_text("grammar Expr;\nexpr: INT;\nINT: [0-9]+;\n")
    return grammar


@pytest.fixture
def job_spec(tmp_path, grammar_file):
    return JobSpec(
        working_dir=tmp_path,
        max_heap_size="256m",
        input_files=frozenset({grammar_file}),
        output_dir=tmp_path / "generated",
        options={},
    )


@pytest.fixture
def stub_factory():
    return StubFactory()
