"""End-to-end runs through a real worker subprocess"""

import sys
import time
from pathlib import Path

import pytest

from grammargen.worker.errors import WorkerExecutionError, WorkerLaunchError
from grammargen.worker.factory import SubprocessWorkerFactory
from grammargen.worker.manager import WorkerManager
from grammargen.worker.models import JobStatus
from grammargen.worker.protocol import ClasspathSet

pytest.importorskip("uvicorn")

TESTS_DIR = Path(__file__).resolve().parent


@pytest.fixture
def factory():
    return SubprocessWorkerFactory(startup_timeout=60, idle_timeout=60)


@pytest.fixture
def classpath():
    return ClasspathSet.of(TESTS_DIR)


@pytest.fixture
def spec(job_spec):
    return job_spec.model_copy(update={"max_heap_size": "2g"})


def test_generates_in_isolated_worker(factory, classpath, spec, tmp_path):
    manager = WorkerManager(executor="stub_executors:WritingExecutor")

    result = manager.run(tmp_path, factory, classpath, spec)

    assert result.status == JobStatus.SUCCESS
    assert [p.name for p in result.outputs] == ["ExprParser.py"]
    assert result.outputs[0].exists()
    cwd = result.diagnostics[0].message.split("=", 1)[1]
    assert Path(cwd).resolve() == tmp_path.resolve()


def test_reported_failure_is_returned(factory, classpath, spec, tmp_path):
    manager = WorkerManager(executor="stub_executors:FailingExecutor")

    result = manager.run(tmp_path, factory, classpath, spec)

    assert result.status == JobStatus.FAILURE
    assert result.errors[0].message == "mismatched input"


def test_generator_exit_is_contained(factory, classpath, spec, tmp_path):
    manager = WorkerManager(executor="stub_executors:ExitingExecutor")

    result = manager.run(tmp_path, factory, classpath, spec)

    assert result.status == JobStatus.FAILURE


def test_executor_crash_is_execution_error(factory, classpath, spec, tmp_path):
    manager = WorkerManager(executor="stub_executors:crashing_executor")

    with pytest.raises(WorkerExecutionError, match="executor blew up"):
        manager.run(tmp_path, factory, classpath, spec)


def test_executor_outside_classpath_fails_to_launch(factory, spec, tmp_path):
    manager = WorkerManager(executor="stub_executors:WritingExecutor")

    with pytest.raises(WorkerLaunchError, match="exited before becoming ready"):
        manager.run(tmp_path, factory, None, spec)


def test_worker_death_mid_request_is_execution_error(factory, classpath, spec, tmp_path):
    manager = WorkerManager(executor="stub_executors:DyingExecutor")

    with pytest.raises(WorkerExecutionError, match="terminated during the request"):
        manager.run(tmp_path, factory, classpath, spec)


def test_request_timeout_is_execution_error(classpath, spec, tmp_path):
    factory = SubprocessWorkerFactory(startup_timeout=60, request_timeout=1, idle_timeout=60)
    manager = WorkerManager(executor="stub_executors:SleepingExecutor")

    started = time.time()
    with pytest.raises(WorkerExecutionError):
        manager.run(tmp_path, factory, classpath, spec)

    assert time.time() - started < 30


@pytest.mark.skipif(sys.platform == "win32", reason="RLIMIT_AS is POSIX only")
def test_heap_size_limits_worker_address_space(factory, classpath, spec, tmp_path):
    manager = WorkerManager(executor="stub_executors:HeapReportingExecutor")

    result = manager.run(tmp_path, factory, classpath, spec)

    assert result.diagnostics[0].message == f"rlimit_as={2 * 1024**3}"
