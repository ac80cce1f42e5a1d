"""
JobOperator -- name-based control surface over launcher and repository.

Contract:
    - ``start(job_name, parameters)`` launches a registered job.
    - ``restart(execution_id)`` relaunches the instance of a FAILED, STOPPED
      or ABANDONED execution with the same parameters.
    - ``stop(execution_id)`` persists a stop request (STOPPING).  The running
      step observes it at its next chunk boundary.
    - ``abandon(execution_id)`` releases a stale non-terminal execution left
      behind by a crashed process, so its instance can be relaunched.
    - ``get_summary()`` / ``get_running_executions()`` /
      ``get_step_executions()`` / ``get_job_names()`` for queries.

Architecture: batch_engine/services.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any
from uuid import UUID

from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import JobExecutionNotRunningError
from batch_kernel.logging_config import get_logger

from batch_engine.domain.types import (
    BatchStatus,
    ExitCode,
    JobExecution,
    JobParameters,
    StepExecution,
)
from batch_engine.jobs.registry import JobRegistry
from batch_engine.repository.base import JobRepository
from batch_engine.services.launcher import JobLauncher

logger = get_logger("batch.operator")


class JobOperator:
    """Operator actions addressed by job name or execution id.

    Non-goals:
        - Does NOT verify that an abandoned execution's process is really
          gone -- the operator asserts it.
    """

    def __init__(
        self,
        repository: JobRepository,
        registry: JobRegistry,
        launcher: JobLauncher,
        clock: Clock | None = None,
    ):
        self._repository = repository
        self._registry = registry
        self._launcher = launcher
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def start(
        self,
        job_name: str,
        parameters: JobParameters | dict[str, Any] | None = None,
    ) -> JobExecution:
        """Launch the registered job ``job_name``.

        Raises:
            JobNotRegisteredError: Unknown job name.
            LaunchError: Any launch-time refusal from the launcher.
        """
        job = self._registry.get(job_name)
        if not isinstance(parameters, JobParameters):
            parameters = JobParameters(parameters or {})
        return self._launcher.launch(job, parameters)

    def restart(self, execution_id: UUID) -> JobExecution:
        """Relaunch the job instance of ``execution_id``.

        Raises:
            JobExecutionNotFoundError: Unknown execution.
            AlreadyRunningError / JobInstanceCompleteError /
            JobRestartNotAllowedError: As for ``JobLauncher.launch``.
        """
        previous = self._repository.get_job_execution(execution_id)
        job = self._registry.get(previous.job_name)
        logger.info(
            "job_restart_requested",
            extra={
                "job_name": previous.job_name,
                "previous_execution_id": str(execution_id),
                "previous_status": previous.status.value,
            },
        )
        return self._launcher.launch(job, previous.parameters)

    def stop(self, execution_id: UUID) -> JobExecution:
        """Request a graceful stop.

        Raises:
            JobExecutionNotRunningError: The execution is already terminal.
        """
        execution = self._repository.request_stop(execution_id)
        logger.info(
            "job_stop_requested",
            extra={
                "job_name": execution.job_name,
                "job_execution_id": str(execution_id),
            },
        )
        return execution

    def abandon(self, execution_id: UUID) -> JobExecution:
        """Mark a stale non-terminal execution ABANDONED.

        Its step executions keep their last committed checkpoint, so the next
        launch of the instance resumes from there.

        Raises:
            JobExecutionNotRunningError: The execution is already terminal.
        """
        execution = self._repository.get_job_execution(execution_id)
        if execution.status.is_terminal:
            raise JobExecutionNotRunningError(
                str(execution_id), execution.status.value,
            )
        abandoned = self._repository.update_job_execution(
            replace(
                execution,
                status=BatchStatus.ABANDONED,
                exit_code=ExitCode.FAILED,
                exit_description="Abandoned by operator",
                end_time=self._clock.now(),
            )
        )
        logger.warning(
            "job_execution_abandoned",
            extra={
                "job_name": execution.job_name,
                "job_execution_id": str(execution_id),
                "previous_status": execution.status.value,
            },
        )
        return abandoned

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_summary(self, execution_id: UUID) -> dict[str, Any]:
        """Plain-dict view of a job execution and its steps."""
        execution = self._repository.get_job_execution(execution_id)
        steps = self._repository.get_step_executions(execution)
        return {
            "job_execution_id": str(execution.execution_id),
            "job_name": execution.job_name,
            "run_number": execution.run_number,
            "status": execution.status.value,
            "exit_code": execution.exit_code.value,
            "exit_description": execution.exit_description,
            "parameters": execution.parameters.to_dict(),
            "start_time": _iso(execution.start_time),
            "end_time": _iso(execution.end_time),
            "steps": [_step_summary(step) for step in steps],
        }

    def get_running_executions(self, job_name: str) -> tuple[JobExecution, ...]:
        return self._repository.find_running_job_executions(job_name)

    def get_step_executions(self, execution_id: UUID) -> tuple[StepExecution, ...]:
        execution = self._repository.get_job_execution(execution_id)
        return self._repository.get_step_executions(execution)

    def get_job_names(self) -> tuple[str, ...]:
        """Registered job names."""
        return self._registry.list_jobs()


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _step_summary(step: StepExecution) -> dict[str, Any]:
    return {
        "step_name": step.step_name,
        "attempt": step.attempt,
        "status": step.status.value,
        "exit_code": step.exit_code.value,
        "exit_description": step.exit_description,
        "read_count": step.read_count,
        "write_count": step.write_count,
        "filter_count": step.filter_count,
        "skip_count": step.skip_count,
        "commit_count": step.commit_count,
        "rollback_count": step.rollback_count,
    }
