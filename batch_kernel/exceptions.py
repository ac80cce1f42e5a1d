"""
Typed Exception Hierarchy for the batch engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A batch engine decides what to do with a failure by its TYPE: skip the item,
retry it, fail the step, or refuse a launch.  Parsing messages for that
decision is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        launcher.launch(job, params)
    except AlreadyRunningError as e:
        log.warning("still running", extra={"execution": e.running_execution_id})

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BatchKernelError (base)
    |
    +-- LaunchError
    |   +-- JobParametersValidationError
    |   +-- DuplicateInstanceError
    |   |   +-- JobInstanceCompleteError
    |   |   +-- JobRestartNotAllowedError
    |   +-- AlreadyRunningError
    |   +-- JobNotRegisteredError
    |
    +-- ItemError
    |   +-- ItemReadError
    |   +-- ItemProcessError
    |   +-- ItemWriteError
    |
    +-- StepError
    |   +-- StepFailedError
    |   +-- StartLimitExceededError
    |
    +-- RepositoryError
    |   +-- JobExecutionNotFoundError
    |
    +-- OperatorError
    |   +-- JobExecutionNotRunningError
    |
    +-- BatchConfigError

===============================================================================
PROPAGATION
===============================================================================

   - ItemError            -> resolved by skip/retry inside the step
   - StepFailedError      -> surfaces to the job executor (optional steps continue)
   - RepositoryError      -> always fatal for the running execution
   - LaunchError          -> raised to the launcher's caller
"""

from __future__ import annotations

from typing import Any


class BatchKernelError(Exception):
    """
    Base exception for all batch engine errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BATCH_KERNEL_ERROR"


# Launch-related exceptions


class LaunchError(BatchKernelError):
    """Base exception for errors raised while launching a job."""

    code: str = "LAUNCH_ERROR"


class JobParametersValidationError(LaunchError):
    """Job parameters are malformed or fail the job's validator."""

    code: str = "JOB_PARAMETERS_INVALID"

    def __init__(self, reason: str, job_name: str | None = None):
        self.job_name = job_name
        self.reason = reason
        if job_name is None:
            super().__init__(f"Invalid job parameters: {reason}")
        else:
            super().__init__(f"Invalid parameters for job '{job_name}': {reason}")


class DuplicateInstanceError(LaunchError):
    """A job instance with the same name and identifying parameters exists."""

    code: str = "DUPLICATE_JOB_INSTANCE"

    def __init__(self, job_name: str, job_key: str, message: str | None = None):
        self.job_name = job_name
        self.job_key = job_key
        super().__init__(
            message
            or f"Job instance already exists: {job_name} (key={job_key[:12]})"
        )


class JobInstanceCompleteError(DuplicateInstanceError):
    """The job instance already has a COMPLETED execution."""

    code: str = "JOB_INSTANCE_COMPLETE"

    def __init__(self, job_name: str, job_key: str):
        super().__init__(
            job_name,
            job_key,
            f"Job instance already complete: {job_name} (key={job_key[:12]}); "
            "launch with different identifying parameters",
        )


class JobRestartNotAllowedError(DuplicateInstanceError):
    """The job is not restartable and the instance has been run before."""

    code: str = "JOB_RESTART_NOT_ALLOWED"

    def __init__(self, job_name: str, job_key: str):
        super().__init__(
            job_name,
            job_key,
            f"Job '{job_name}' is not restartable and instance "
            f"(key={job_key[:12]}) already has executions",
        )


class AlreadyRunningError(LaunchError):
    """A non-terminal execution already exists for the job instance."""

    code: str = "JOB_ALREADY_RUNNING"

    def __init__(self, job_name: str, running_execution_id: str):
        self.job_name = job_name
        self.running_execution_id = running_execution_id
        super().__init__(
            f"Job '{job_name}' is already running "
            f"(execution {running_execution_id})"
        )


class JobNotRegisteredError(LaunchError):
    """No job definition is registered under the given name."""

    code: str = "JOB_NOT_REGISTERED"

    def __init__(self, job_name: str, available: tuple[str, ...] = ()):
        self.job_name = job_name
        self.available = available
        super().__init__(
            f"No job registered with name '{job_name}'. "
            f"Available: {list(available)}"
        )


# Item-level exceptions


class ItemError(BatchKernelError):
    """Base exception for per-item failures.

    Wraps the original exception (also chained as ``__cause__``).
    """

    code: str = "ITEM_ERROR"
    phase: str = "item"

    def __init__(self, item: Any, cause: BaseException):
        self.item = item
        self.cause = cause
        super().__init__(
            f"{self.phase} failed: {type(cause).__name__}: {cause}"
        )


class ItemReadError(ItemError):
    """Reading the next item failed."""

    code: str = "ITEM_READ_FAILED"
    phase: str = "read"


class ItemProcessError(ItemError):
    """Processing an item failed."""

    code: str = "ITEM_PROCESS_FAILED"
    phase: str = "process"


class ItemWriteError(ItemError):
    """Writing an item (or a chunk) failed."""

    code: str = "ITEM_WRITE_FAILED"
    phase: str = "write"


# Step-level exceptions


class StepError(BatchKernelError):
    """Base exception for step-level failures."""

    code: str = "STEP_ERROR"


class StepFailedError(StepError):
    """A step ended FAILED; carries the persisted step execution."""

    code: str = "STEP_FAILED"

    def __init__(self, step_name: str, step_execution: Any, reason: str):
        self.step_name = step_name
        self.step_execution = step_execution
        self.reason = reason
        super().__init__(f"Step '{step_name}' failed: {reason}")


class StartLimitExceededError(StepError):
    """The step has been started as often as its start limit allows."""

    code: str = "STEP_START_LIMIT_EXCEEDED"

    def __init__(self, step_name: str, start_limit: int):
        self.step_name = step_name
        self.start_limit = start_limit
        super().__init__(
            f"Step '{step_name}' exceeded its start limit of {start_limit}"
        )


# Repository exceptions


class RepositoryError(BatchKernelError):
    """Persistence of execution metadata failed.  Always fatal."""

    code: str = "REPOSITORY_ERROR"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Repository {operation} failed: {reason}")


class JobExecutionNotFoundError(RepositoryError):
    """No job execution with the given ID exists."""

    code: str = "JOB_EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__("lookup", f"job execution not found: {execution_id}")


# Operator exceptions


class OperatorError(BatchKernelError):
    """Base exception for job operator requests."""

    code: str = "OPERATOR_ERROR"


class JobExecutionNotRunningError(OperatorError):
    """A stop was requested for an execution that is already terminal."""

    code: str = "JOB_EXECUTION_NOT_RUNNING"

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(
            f"Job execution {execution_id} is not running (status={status})"
        )


# Configuration exceptions


class BatchConfigError(BatchKernelError):
    """A batch settings file could not be parsed."""

    code: str = "BATCH_CONFIG_ERROR"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid batch configuration in {source}: {reason}")
