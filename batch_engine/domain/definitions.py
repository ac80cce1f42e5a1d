"""
batch_engine.domain.definitions -- Job and step definitions, retry and skip
policies, and parameter validation.

ZERO I/O.  Definitions are immutable once built; any mechanism (explicit
code, the YAML settings in ``batch_engine.config``, a registry) may build
them.

Invariants enforced:
    - A step is either chunk-oriented (reader + writer, optional processor)
      or a tasklet, never both.
    - Step names are unique within a job.
    - ``RetryPolicy.retry_limit`` counts re-attempts after the first failure.
    - Skip classification uses the closest configured ancestor class of the
      raised exception.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from batch_kernel.exceptions import JobParametersValidationError

from batch_engine.domain.types import JobParameters


# =============================================================================
# Retry / skip policies
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Re-attempt a single failing item on transient errors.

    ``retry_limit`` is the number of re-attempts after the first failure, so
    an item gets at most ``1 + retry_limit`` attempts.  Exceeding the budget
    hands the failure to the skip policy.
    """

    retry_limit: int = 0
    retryable: tuple[type[BaseException], ...] = ()
    backoff_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.retry_limit < 0:
            raise ValueError(f"retry_limit must be >= 0, got {self.retry_limit}")
        if self.backoff_seconds < 0:
            raise ValueError(
                f"backoff_seconds must be >= 0, got {self.backoff_seconds}"
            )
        object.__setattr__(self, "retryable", tuple(self.retryable))

    def is_retryable(self, exc: BaseException) -> bool:
        return bool(self.retryable) and isinstance(exc, self.retryable)

    def can_retry(self, exc: BaseException, attempts: int) -> bool:
        """True if a failure after ``attempts`` re-attempts may be retried."""
        return attempts < self.retry_limit and self.is_retryable(exc)


@dataclass(frozen=True)
class SkipPolicy:
    """Drop failing items of configured exception types, up to a limit each.

    ``skippable`` maps exception class -> maximum number of skips for that
    class within one step execution.
    """

    skippable: Mapping[type[BaseException], int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for klass, limit in self.skippable.items():
            if limit < 0:
                raise ValueError(
                    f"skip limit for {klass.__name__} must be >= 0, got {limit}"
                )
        object.__setattr__(self, "skippable", dict(self.skippable))

    @classmethod
    def limit(cls, skip_limit: int, *types: type[BaseException]) -> SkipPolicy:
        """Same limit for every listed exception type."""
        return cls(skippable={klass: skip_limit for klass in types})

    def classify(self, exc: BaseException) -> type[BaseException] | None:
        """Return the configured class governing ``exc``, or None."""
        for klass in type(exc).__mro__:
            if klass in self.skippable:
                return klass
        return None

    def should_skip(
        self,
        exc: BaseException,
        skip_counts: Mapping[type[BaseException], int],
    ) -> bool:
        """True if ``exc`` is skippable and its class has budget left."""
        klass = self.classify(exc)
        if klass is None:
            return False
        return skip_counts.get(klass, 0) < self.skippable[klass]


NO_RETRY = RetryPolicy()
NO_SKIP = SkipPolicy()


# =============================================================================
# Parameter validation
# =============================================================================


@runtime_checkable
class JobParametersValidator(Protocol):
    """Validates job parameters at launch time."""

    def validate(self, parameters: JobParameters) -> None:
        """Raise JobParametersValidationError if ``parameters`` are invalid."""
        ...


@dataclass(frozen=True)
class DefaultJobParametersValidator:
    """Checks required keys and, if ``optional_keys`` is given, rejects
    keys that are neither required nor optional."""

    required_keys: tuple[str, ...] = ()
    optional_keys: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        overlap = set(self.required_keys) & set(self.optional_keys)
        if overlap:
            raise ValueError(
                f"keys cannot be both required and optional: {sorted(overlap)}"
            )

    def validate(self, parameters: JobParameters) -> None:
        missing = [key for key in self.required_keys if key not in parameters]
        if missing:
            raise JobParametersValidationError(
                f"missing required parameters: {missing}"
            )
        if self.optional_keys:
            allowed = set(self.required_keys) | set(self.optional_keys)
            unexpected = sorted(key for key in parameters if key not in allowed)
            if unexpected:
                raise JobParametersValidationError(
                    f"unexpected parameters: {unexpected}"
                )


# =============================================================================
# Step / job definitions
# =============================================================================


@dataclass(frozen=True, eq=False)
class StepDefinition:
    """Immutable description of one step.

    Chunk-oriented steps supply ``reader`` and ``writer`` (``processor`` is
    optional); non-chunked steps supply a ``tasklet``.  The components are
    duck-typed (see ``batch_engine.items.base``).

    ``allow_start_if_complete`` re-runs the step even when its last execution
    for the instance COMPLETED.  ``optional`` lets the job continue when the
    step fails.  ``start_limit`` caps how many times the step may be started
    for one job instance.
    """

    name: str
    reader: Any = None
    processor: Any = None
    writer: Any = None
    tasklet: Any = None
    chunk_size: int = 10
    retry_policy: RetryPolicy = NO_RETRY
    skip_policy: SkipPolicy = NO_SKIP
    optional: bool = False
    allow_start_if_complete: bool = False
    start_limit: int | None = None
    listeners: tuple[Any, ...] = ()
    transaction_manager: Any = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Step name must be non-empty")
        if self.chunk_size < 1:
            raise ValueError(
                f"Step '{self.name}': chunk_size must be >= 1, got {self.chunk_size}"
            )
        if self.start_limit is not None and self.start_limit < 1:
            raise ValueError(
                f"Step '{self.name}': start_limit must be >= 1, got {self.start_limit}"
            )
        chunked = self.reader is not None or self.writer is not None
        if self.tasklet is not None and (chunked or self.processor is not None):
            raise ValueError(
                f"Step '{self.name}': a tasklet step cannot also have "
                "a reader, processor or writer"
            )
        if self.tasklet is None and (self.reader is None or self.writer is None):
            raise ValueError(
                f"Step '{self.name}': requires a reader and a writer, or a tasklet"
            )
        object.__setattr__(self, "listeners", tuple(self.listeners))

    @property
    def is_tasklet(self) -> bool:
        return self.tasklet is not None


@dataclass(frozen=True, eq=False)
class JobDefinition:
    """Immutable description of a job: a name and ordered steps."""

    name: str
    steps: tuple[StepDefinition, ...]
    restartable: bool = True
    validator: Any = None
    listeners: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Job name must be non-empty")
        steps = tuple(self.steps)
        if not steps:
            raise ValueError(f"Job '{self.name}' must have at least one step")
        names = [step.name for step in steps]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(
                f"Job '{self.name}' has duplicate step names: {duplicates}"
            )
        object.__setattr__(self, "steps", steps)
        object.__setattr__(self, "listeners", tuple(self.listeners))

    @property
    def step_names(self) -> tuple[str, ...]:
        return tuple(step.name for step in self.steps)

    def get_step(self, name: str) -> StepDefinition:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(f"Job '{self.name}' has no step named '{name}'")

    def validate_parameters(self, parameters: JobParameters) -> None:
        """Run the configured validator, tagging errors with the job name."""
        if self.validator is None:
            return
        validate = getattr(self.validator, "validate", self.validator)
        try:
            validate(parameters)
        except JobParametersValidationError as exc:
            if exc.job_name is None:
                raise JobParametersValidationError(exc.reason, self.name) from exc
            raise
