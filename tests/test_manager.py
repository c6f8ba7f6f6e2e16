"""Tests for the worker manager"""

from pathlib import Path

import pytest

from conftest import StubFactory
from grammargen.worker.errors import (
    UnsupportedHostVersionError,
    WorkerExecutionError,
    WorkerLaunchError,
)
from grammargen.worker.manager import SHARED_NAMESPACES, WorkerManager, run_generation
from grammargen.worker.models import Diagnostic, JobResult, JobStatus, Severity
from grammargen.worker.protocol import DO_NOT_EXIT_PROPERTY, ClasspathSet


def test_run_returns_successful_result(stub_factory, job_spec, tmp_path):
    result = WorkerManager().run(tmp_path, stub_factory, None, job_spec)

    assert result.status == JobStatus.SUCCESS
    assert result.outputs
    assert stub_factory.handles[0].received == [job_spec]


def test_run_configures_worker_command(stub_factory, job_spec, tmp_path):
    work = tmp_path / "work"

    WorkerManager(base_name="calc worker").run(work, stub_factory, None, job_spec)

    command = stub_factory.handles[0].command
    assert command.working_dir == work
    assert command.max_heap_size == "256m"
    assert command.base_name == "calc worker"
    assert command.system_properties[DO_NOT_EXIT_PROPERTY] == "true"
    assert command.error_stream_merged


def test_run_declares_shared_namespaces_and_executor(stub_factory, job_spec, tmp_path):
    classpath = ClasspathSet.of(tmp_path)
    manager = WorkerManager(executor="tools.gen:Executor", shared_namespaces=["antlr4", "grammargen"])

    manager.run(tmp_path, stub_factory, classpath, job_spec)

    passed_classpath, namespaces, executor = stub_factory.calls[0]
    assert passed_classpath is classpath
    assert namespaces == (*SHARED_NAMESPACES, "antlr4")
    assert executor == "tools.gen:Executor"


def test_generator_failure_is_a_result_not_an_error(job_spec, tmp_path):
    failure = JobResult.failure([Diagnostic(severity=Severity.ERROR, message="bad rule")])
    factory = StubFactory(generator=lambda spec: failure)

    result = WorkerManager().run(tmp_path, factory, None, job_spec)

    assert result is failure


@pytest.mark.parametrize("error", [MemoryError("no memory"), OSError(24, "Too many open files")])
def test_resource_exhaustion_is_a_launch_error(job_spec, tmp_path, error):
    factory = StubFactory(error=error)

    with pytest.raises(WorkerLaunchError) as exc_info:
        WorkerManager().run(tmp_path, factory, None, job_spec)

    assert exc_info.value.__cause__ is error


def test_launch_error_from_factory_propagates_unchanged(job_spec, tmp_path):
    error = WorkerLaunchError("classpath entry missing")

    with pytest.raises(WorkerLaunchError) as exc_info:
        WorkerManager().run(tmp_path, StubFactory(error=error), None, job_spec)

    assert exc_info.value is error


def test_unexpected_handle_failure_is_an_execution_error(job_spec, tmp_path):
    def _broken(spec):
        raise ConnectionResetError("worker vanished")

    with pytest.raises(WorkerExecutionError, match="worker vanished"):
        WorkerManager().run(tmp_path, StubFactory(generator=_broken), None, job_spec)


def test_unsupported_host_propagates(job_spec, tmp_path):
    class LegacyCommand:
        def __init__(self):
            self.system_properties = {}

        def system_property(self, name, value):
            self.system_properties[name] = value

    factory = StubFactory()
    original = factory.create_worker

    def _create(*args):
        handle = original(*args)
        handle.command = LegacyCommand()
        return handle

    factory.create_worker = _create

    with pytest.raises(UnsupportedHostVersionError):
        WorkerManager().run(tmp_path, factory, None, job_spec)
    assert factory.handles[0].received == []


def test_repeated_runs_agree(stub_factory, job_spec, tmp_path):
    manager = WorkerManager()

    first = manager.run(tmp_path, stub_factory, None, job_spec)
    second = manager.run(tmp_path, stub_factory, None, job_spec.model_copy())

    assert first.status == second.status
    assert set(first.diagnostics) == set(second.diagnostics)
    assert len(stub_factory.handles) == 2


def test_build_configuration(job_spec):
    config = WorkerManager().build_configuration(job_spec)

    assert config.working_dir == job_spec.working_dir
    assert config.max_heap_size == "256m"
    assert config.merge_error_stream is True
    assert dict(config.system_properties) == {DO_NOT_EXIT_PROPERTY: "true"}
    with pytest.raises(TypeError):
        config.system_properties["OTHER"] = "1"


def test_build_configuration_working_dir_override(job_spec):
    config = WorkerManager().build_configuration(job_spec, working_dir="/tmp/elsewhere")

    assert config.working_dir == Path("/tmp/elsewhere")


def test_run_generation_defaults_to_spec_working_dir(stub_factory, job_spec):
    result = run_generation(job_spec, factory=stub_factory)

    assert result.succeeded
    assert stub_factory.handles[0].command.working_dir == job_spec.working_dir
