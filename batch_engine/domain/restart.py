"""
Pure restart decisions.

Contract:
    ``resolve_step_action(step, last_execution, start_count)`` is PURE -- no
    I/O, no side effects.  The job executor reads the last StepExecution of
    the job instance from the repository and asks this module whether the
    step should run fresh, resume from its checkpoint, or be skipped.

Architecture: batch_engine/domain.  ZERO I/O.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from batch_kernel.exceptions import StartLimitExceededError

from batch_engine.domain.definitions import StepDefinition
from batch_engine.domain.types import BatchStatus, StepExecution


class StepAction(str, Enum):
    """What the job executor does with a step."""

    RUN = "run"  # Fresh execution, empty context
    RESUME = "resume"  # New execution seeded from the prior context
    SKIP = "skip"  # Already complete, no new execution


def resolve_step_action(
    step: StepDefinition,
    last_execution: StepExecution | None,
    start_count: int = 0,
) -> StepAction:
    """Decide whether ``step`` runs, resumes or is skipped.

    Args:
        step: The step definition.
        last_execution: Most recent StepExecution of this step for the job
            instance, or None if it never ran.
        start_count: Number of StepExecutions already recorded for this step
            and job instance.

    Raises:
        StartLimitExceededError: If the step would start more often than
            ``step.start_limit`` allows.
    """
    if last_execution is None:
        action = StepAction.RUN
    elif last_execution.status == BatchStatus.COMPLETED:
        if not step.allow_start_if_complete:
            return StepAction.SKIP
        action = StepAction.RUN
    else:
        action = StepAction.RESUME

    if step.start_limit is not None and start_count >= step.start_limit:
        raise StartLimitExceededError(step.name, step.start_limit)

    return action


def resume_context(
    action: StepAction, last_execution: StepExecution | None,
) -> dict[str, Any]:
    """Execution context the next StepExecution starts from."""
    if action is StepAction.RESUME and last_execution is not None:
        return dict(last_execution.execution_context)
    return {}
