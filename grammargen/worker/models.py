"""Job request/response records exchanged with the generator worker.

Both records cross the process boundary as JSON, so every field is a plain
value (paths, strings, numbers); nothing holds a live handle.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .errors import WorkerExecutionError

OptionValue = Union[bool, int, str]

_HEAP_SIZE_RE = re.compile(r"^\s*(\d+)\s*([kmgt]?)\s*$", re.IGNORECASE)
_HEAP_MULTIPLIERS = {
    "": 1,
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
}


def parse_heap_size(text: str) -> int:
    """
    Convert a sizing string to a byte count.

    Accepts a plain integer or an integer followed by k, m, g or t
    (binary multiples, case-insensitive).

    Examples:
        >>> parse_heap_size("512m")
        536870912
        >>> parse_heap_size("2G")
        2147483648

    Raises:
        ValueError: If the text is not a valid size or is zero
    """
    match = _HEAP_SIZE_RE.match(text or "")
    if not match:
        raise ValueError(f"Invalid heap size: {text!r}")
    value = int(match.group(1)) * _HEAP_MULTIPLIERS[match.group(2).lower()]
    if value <= 0:
        raise ValueError(f"Heap size must be positive: {text!r}")
    return value


class JobSpec(BaseModel):
    """A single generation request."""

    model_config = ConfigDict(frozen=True)

    working_dir: Path = Field(..., description="Directory the generator runs in")
    max_heap_size: Optional[str] = Field(None, description="Memory limit, e.g. '512m'")
    input_files: frozenset[Path] = Field(default_factory=frozenset, description="Grammar files")
    output_dir: Path = Field(..., description="Directory generated sources are written to")
    options: Mapping[str, OptionValue] = Field(
        default_factory=lambda: MappingProxyType({}), description="Generator options"
    )

    @field_validator("max_heap_size")
    @classmethod
    def _check_heap_size(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_heap_size(value)
        return value

    @field_validator("options", mode="after")
    @classmethod
    def _freeze_options(cls, value: Mapping[str, OptionValue]) -> Mapping[str, OptionValue]:
        return MappingProxyType(dict(value))

    @field_serializer("options")
    def _dump_options(self, value: Mapping[str, OptionValue]) -> dict[str, Any]:
        return dict(value)

    def __hash__(self) -> int:
        return hash(
            (
                self.working_dir,
                self.max_heap_size,
                self.input_files,
                self.output_dir,
                frozenset(self.options.items()),
            )
        )

    @property
    def max_heap_bytes(self) -> Optional[int]:
        return parse_heap_size(self.max_heap_size) if self.max_heap_size else None


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class SourceLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: str
    line: Optional[int] = None
    column: Optional[int] = None

    def __str__(self) -> str:
        parts = [self.file]
        if self.line is not None:
            parts.append(str(self.line))
            if self.column is not None:
                parts.append(str(self.column))
        return ":".join(parts)


class Diagnostic(BaseModel):
    """A message reported by the generator."""

    model_config = ConfigDict(frozen=True)

    severity: Severity
    message: str
    source: Optional[SourceLocation] = None
    code: Optional[int] = None

    def __str__(self) -> str:
        prefix = self.severity.value if self.code is None else f"{self.severity.value}({self.code})"
        if self.source is not None:
            return f"{prefix}: {self.source}: {self.message}"
        return f"{prefix}: {self.message}"


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class JobResult(BaseModel):
    """Outcome of a generation request.

    A generator that ran and reported problems produces a FAILURE result,
    not an exception.
    """

    model_config = ConfigDict(frozen=True)

    status: JobStatus
    outputs: Tuple[Path, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()

    @classmethod
    def success(
        cls, outputs: Iterable[Path] = (), diagnostics: Iterable[Diagnostic] = ()
    ) -> "JobResult":
        return cls(status=JobStatus.SUCCESS, outputs=tuple(outputs), diagnostics=tuple(diagnostics))

    @classmethod
    def failure(
        cls, diagnostics: Iterable[Diagnostic] = (), outputs: Iterable[Path] = ()
    ) -> "JobResult":
        return cls(status=JobStatus.FAILURE, outputs=tuple(outputs), diagnostics=tuple(diagnostics))

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCESS

    @property
    def errors(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.severity == Severity.ERROR)

    def raise_for_status(self) -> "JobResult":
        """Raise WorkerExecutionError if the generator reported failure."""
        if not self.succeeded:
            summary = "; ".join(str(d) for d in self.errors[:3]) or "no diagnostics"
            raise WorkerExecutionError(f"Generator reported failure: {summary}", result=self)
        return self


def encode_spec(spec: JobSpec) -> str:
    return spec.model_dump_json()


def decode_spec(data: Union[str, bytes]) -> JobSpec:
    return JobSpec.model_validate_json(data)


def encode_result(result: JobResult) -> str:
    return result.model_dump_json()


def decode_result(data: Union[str, bytes]) -> JobResult:
    return JobResult.model_validate_json(data)
