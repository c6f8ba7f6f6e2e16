"""Errors raised by the isolated generator worker subsystem."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import JobResult


class WorkerError(RuntimeError):
    """Base class for worker failures."""


class WorkerLaunchError(WorkerError):
    """The isolated worker process could not be created or never became ready."""


class WorkerExecutionError(WorkerError):
    """The worker ran but the request/response cycle did not complete.

    Also raised by ``JobResult.raise_for_status()``, in which case ``result``
    holds the failed result and its diagnostics.
    """

    def __init__(self, message: str, result: Optional["JobResult"] = None):
        super().__init__(message)
        self.result = result


class UnsupportedHostVersionError(WorkerError):
    """No mechanism exists to merge the worker's error stream into its output."""
