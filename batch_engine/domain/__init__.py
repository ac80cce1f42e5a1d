"""
batch_engine.domain -- Pure types, definitions and restart decisions.

ZERO I/O.  Execution records are frozen dataclasses.
"""

from batch_engine.domain.definitions import (
    NO_RETRY,
    NO_SKIP,
    DefaultJobParametersValidator,
    JobDefinition,
    JobParametersValidator,
    RetryPolicy,
    SkipPolicy,
    StepDefinition,
)
from batch_engine.domain.restart import StepAction, resolve_step_action
from batch_engine.domain.types import (
    BatchStatus,
    ExecutionContext,
    ExitCode,
    JobExecution,
    JobInstance,
    JobParameter,
    JobParameters,
    StepExecution,
)

__all__ = [
    "NO_RETRY",
    "NO_SKIP",
    "BatchStatus",
    "DefaultJobParametersValidator",
    "ExecutionContext",
    "ExitCode",
    "JobDefinition",
    "JobExecution",
    "JobInstance",
    "JobParameter",
    "JobParameters",
    "JobParametersValidator",
    "RetryPolicy",
    "SkipPolicy",
    "StepAction",
    "StepDefinition",
    "StepExecution",
    "resolve_step_action",
]
