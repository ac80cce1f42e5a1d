"""
batch_engine.domain.types -- Value types for job and step executions.

ZERO I/O.

Execution records (JobInstance, JobExecution, StepExecution) are frozen
dataclasses: every state transition produces a new snapshot via
``dataclasses.replace`` and is handed to the repository, so no partially
updated record is ever observable.  JobParameters is an immutable ordered
mapping.  ExecutionContext is the one mutable type: it is owned by the
running step's reader/processor/writer and snapshotted into the
StepExecution at every commit.

Invariants enforced:
    - Parameter values are restricted to str, int, float, Decimal, bool,
      date and datetime.
    - ``JobParameters.identity_key()`` depends only on identifying parameters
      and is independent of insertion order.
    - ExecutionContext values are JSON-serializable at assignment time.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterator, Mapping, MutableMapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from batch_kernel.exceptions import JobParametersValidationError


# =============================================================================
# Status enums
# =============================================================================


class BatchStatus(str, Enum):
    """Lifecycle status shared by job and step executions."""

    STARTING = "starting"  # Created, not yet running
    STARTED = "started"  # Running
    STOPPING = "stopping"  # Stop requested, in-flight chunk finishing
    STOPPED = "stopped"  # Stopped between chunks, restartable
    COMPLETED = "completed"  # Finished successfully
    FAILED = "failed"  # Finished with an unrecoverable error, restartable
    ABANDONED = "abandoned"  # Stale execution released by an operator

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def is_running(self) -> bool:
        return self not in _TERMINAL

    @property
    def is_restartable(self) -> bool:
        """True for terminal statuses a relaunch may resume from."""
        return self in _TERMINAL and self is not BatchStatus.COMPLETED


_TERMINAL = frozenset({
    BatchStatus.STOPPED,
    BatchStatus.COMPLETED,
    BatchStatus.FAILED,
    BatchStatus.ABANDONED,
})


class ExitCode(str, Enum):
    """Exit code recorded alongside the final status."""

    UNKNOWN = "UNKNOWN"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    NOOP = "NOOP"  # Nothing to do: every step was already complete
    STOPPED = "STOPPED"
    FAILED = "FAILED"


# =============================================================================
# Job parameters
# =============================================================================


_TYPE_TAGS: tuple[tuple[type, str], ...] = (
    # bool before int: bool is an int subclass
    (bool, "boolean"),
    (int, "long"),
    (float, "double"),
    (Decimal, "decimal"),
    # datetime before date: datetime is a date subclass
    (datetime, "datetime"),
    (date, "date"),
    (str, "string"),
)


def _type_tag(value: Any) -> str:
    for py_type, tag in _TYPE_TAGS:
        if isinstance(value, py_type):
            return tag
    raise JobParametersValidationError(
        f"unsupported parameter type {type(value).__name__}; expected one of "
        "str, int, float, Decimal, bool, date, datetime"
    )


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _decode_value(tag: str, raw: str) -> Any:
    if tag == "boolean":
        return raw == "true"
    if tag == "long":
        return int(raw)
    if tag == "double":
        return float(raw)
    if tag == "decimal":
        return Decimal(raw)
    if tag == "datetime":
        return datetime.fromisoformat(raw)
    if tag == "date":
        return date.fromisoformat(raw)
    if tag == "string":
        return raw
    raise JobParametersValidationError(f"unknown parameter type tag '{tag}'")


@dataclass(frozen=True)
class JobParameter:
    """One typed job parameter.

    Non-identifying parameters are passed to the job but do not contribute
    to the JobInstance identity.
    """

    value: Any
    identifying: bool = True

    def __post_init__(self) -> None:
        _type_tag(self.value)

    @property
    def type_tag(self) -> str:
        return _type_tag(self.value)


class JobParameters(Mapping[str, Any]):
    """Immutable ordered mapping of parameter name to typed value.

    Indexing returns the raw value; ``parameters`` exposes the underlying
    ``JobParameter`` objects.

    Raises:
        JobParametersValidationError: If a name is not a non-empty string or
            a value has an unsupported type.
    """

    __slots__ = ("_params",)

    def __init__(
        self,
        values: Mapping[str, Any] | None = None,
        non_identifying: tuple[str, ...] | frozenset[str] = (),
    ) -> None:
        if isinstance(values, JobParameters):
            values = values._params
        params: dict[str, JobParameter] = {}
        for name, value in (values or {}).items():
            if not isinstance(name, str) or not name:
                raise JobParametersValidationError(
                    f"parameter names must be non-empty strings, got {name!r}"
                )
            if isinstance(value, JobParameter):
                params[name] = value
            else:
                params[name] = JobParameter(
                    value=value, identifying=name not in non_identifying,
                )
        self._params = params

    def __getitem__(self, name: str) -> Any:
        return self._params[name].value

    def __iter__(self) -> Iterator[str]:
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JobParameters):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash(self.identity_key())

    def __repr__(self) -> str:
        return f"JobParameters({dict(self.items())!r})"

    @property
    def parameters(self) -> dict[str, JobParameter]:
        return dict(self._params)

    def identifying(self) -> dict[str, Any]:
        """Return the identifying parameters as a plain dict."""
        return {
            name: param.value
            for name, param in self._params.items()
            if param.identifying
        }

    def with_parameter(
        self, name: str, value: Any, identifying: bool = True,
    ) -> JobParameters:
        """Return a copy with one parameter added or replaced."""
        params = dict(self._params)
        params[name] = JobParameter(value=value, identifying=identifying)
        return JobParameters(params)

    def identity_key(self) -> str:
        """SHA-256 over the canonical encoding of identifying parameters.

        Type tags are part of the encoding so that ``1``, ``"1"`` and
        ``True`` produce different keys.  Keys are sorted, so insertion order
        does not affect identity.
        """
        canonical = {
            name: [param.type_tag, _encode_value(param.value)]
            for name, param in self._params.items()
            if param.identifying
        }
        encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Serialize to a JSON-safe dict (storage format)."""
        return {
            name: {
                "type": param.type_tag,
                "value": _encode_value(param.value),
                "identifying": param.identifying,
            }
            for name, param in self._params.items()
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, Any]] | None) -> JobParameters:
        """Inverse of ``to_dict()``."""
        params: dict[str, JobParameter] = {}
        for name, entry in (data or {}).items():
            params[name] = JobParameter(
                value=_decode_value(entry["type"], entry["value"]),
                identifying=bool(entry.get("identifying", True)),
            )
        return cls(params)


# =============================================================================
# Execution context
# =============================================================================


class ExecutionContext(MutableMapping[str, Any]):
    """Checkpoint state owned by a step's reader/processor/writer.

    The engine never interprets the contents; it snapshots them at every
    commit and seeds the next attempt of the step with the last snapshot.
    """

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = {}
        self._dirty = False
        for key, value in (values or {}).items():
            self._values[key] = _json_copy(key, value)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if not isinstance(key, str):
            raise TypeError(f"ExecutionContext keys must be strings, got {key!r}")
        self._values[key] = _json_copy(key, value)
        self._dirty = True

    def __delitem__(self, key: str) -> None:
        del self._values[key]
        self._dirty = True

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ExecutionContext({self._values!r})"

    @property
    def dirty(self) -> bool:
        """True if the context changed since the last ``clear_dirty()``."""
        return self._dirty

    def clear_dirty(self) -> None:
        self._dirty = False

    def get_int(self, key: str, default: int = 0) -> int:
        return int(self._values.get(key, default))

    def get_str(self, key: str, default: str = "") -> str:
        return str(self._values.get(key, default))

    def snapshot(self) -> dict[str, Any]:
        """Return a deep, JSON-safe copy of the contents."""
        return json.loads(json.dumps(self._values))

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any] | None) -> ExecutionContext:
        """Rebuild a clean (not dirty) context from a stored snapshot."""
        return cls(snapshot)


def _json_copy(key: str, value: Any) -> Any:
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as exc:
        raise TypeError(
            f"ExecutionContext value for '{key}' is not JSON-serializable: {exc}"
        ) from None


# =============================================================================
# Execution records
# =============================================================================


@dataclass(frozen=True)
class JobInstance:
    """Logical identity of one job + identifying parameters combination."""

    instance_id: UUID
    job_name: str
    job_key: str  # JobParameters.identity_key()
    parameters: JobParameters = field(default_factory=JobParameters)
    created_at: datetime | None = None


@dataclass(frozen=True)
class JobExecution:
    """One attempt to run a JobInstance.

    ``run_number`` counts attempts per instance, starting at 1.
    """

    execution_id: UUID
    job_instance_id: UUID
    job_name: str
    parameters: JobParameters = field(default_factory=JobParameters)
    status: BatchStatus = BatchStatus.STARTING
    run_number: int = 1
    exit_code: ExitCode = ExitCode.UNKNOWN
    exit_description: str | None = None
    created_at: datetime | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_updated: datetime | None = None
    execution_context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.status.is_running


@dataclass(frozen=True)
class StepExecution:
    """One attempt to run a step within a JobExecution.

    ``attempt`` counts executions of this step name for the job instance,
    starting at 1; it is what ``start_limit`` is checked against.
    """

    step_execution_id: UUID
    job_execution_id: UUID
    job_instance_id: UUID
    step_name: str
    status: BatchStatus = BatchStatus.STARTING
    attempt: int = 1
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    read_skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    exit_code: ExitCode = ExitCode.UNKNOWN
    exit_description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_updated: datetime | None = None
    execution_context: dict[str, Any] = field(default_factory=dict)

    @property
    def skip_count(self) -> int:
        return self.read_skip_count + self.process_skip_count + self.write_skip_count
