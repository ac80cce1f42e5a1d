"""
JobExecutor -- runs the steps of one job execution in order.

Contract:
    ``execute(job, job_execution)`` moves the execution to STARTED, walks the
    job's steps and records the final status.  It NEVER raises: every failure
    ends as a FAILED JobExecution whose exit description names the cause.

    Per step, the last StepExecution of the job instance decides the action
    (see ``batch_engine.domain.restart``):
        SKIP   -- completed earlier, no new StepExecution
        RUN    -- fresh StepExecution with an empty context
        RESUME -- fresh StepExecution seeded with the prior context

    A FAILED step fails the job unless the step is optional.  A STOPPED step
    (or a stop request observed between steps) ends the job STOPPED.

Architecture: batch_engine/services.  Orchestrates StepExecutor.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import StepFailedError
from batch_kernel.logging_config import LogContext, get_logger

from batch_engine.domain.definitions import JobDefinition
from batch_engine.domain.restart import StepAction, resolve_step_action, resume_context
from batch_engine.domain.types import (
    BatchStatus,
    ExecutionContext,
    ExitCode,
    JobExecution,
)
from batch_engine.repository.base import JobRepository
from batch_engine.services.step_executor import StepExecutor, describe_failure

logger = get_logger("batch.job")


class JobExecutor:
    """Sequences the steps of a job execution."""

    def __init__(
        self,
        repository: JobRepository,
        step_executor: StepExecutor | None = None,
        clock: Clock | None = None,
    ):
        self._repository = repository
        self._clock = clock or SystemClock()
        self._step_executor = step_executor or StepExecutor(repository, self._clock)

    def execute(self, job: JobDefinition, job_execution: JobExecution) -> JobExecution:
        """Run ``job_execution`` to a terminal status and return it."""
        with LogContext.bind(
            job_name=job.name,
            job_execution_id=str(job_execution.execution_id),
        ):
            try:
                return self._execute(job, job_execution)
            except Exception as exc:
                logger.exception(
                    "job_execution_error",
                    extra={"error_type": type(exc).__name__},
                )
                return self._finish(
                    job,
                    job_execution,
                    BatchStatus.FAILED,
                    ExitCode.FAILED,
                    describe_failure(exc),
                )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _execute(self, job: JobDefinition, job_execution: JobExecution) -> JobExecution:
        job_execution = self._repository.update_job_execution(
            replace(
                job_execution,
                status=BatchStatus.STARTED,
                exit_code=ExitCode.EXECUTING,
                start_time=self._clock.now(),
            )
        )
        logger.info(
            "job_started",
            extra={
                "run_number": job_execution.run_number,
                "parameters": job_execution.parameters.to_dict(),
            },
        )

        for listener in job.listeners:
            hook = getattr(listener, "before_job", None)
            if hook is not None:
                hook(job_execution)

        instance = self._repository.get_job_instance(job_execution.job_instance_id)
        job_context = ExecutionContext.from_snapshot(job_execution.execution_context)
        steps_run = 0

        for step in job.steps:
            if self._stop_requested(job_execution):
                logger.info("job_stop_observed", extra={"next_step": step.name})
                return self._finish(
                    job, job_execution, BatchStatus.STOPPED, ExitCode.STOPPED,
                    "Stop requested", job_context,
                )

            last = self._repository.find_last_step_execution(instance, step.name)
            starts = self._repository.count_step_executions(instance, step.name)
            action = resolve_step_action(step, last, starts)

            if action is StepAction.SKIP:
                logger.info("step_skipped_complete", extra={"step_name": step.name})
                continue

            steps_run += 1
            previous = last if action is StepAction.RESUME else None
            if previous is not None:
                logger.info(
                    "step_resuming",
                    extra={
                        "step_name": step.name,
                        "prior_status": previous.status.value,
                        "checkpoint_keys": sorted(resume_context(action, previous)),
                    },
                )

            try:
                step_execution = self._step_executor.execute(
                    step, job_execution, previous, job_context,
                )
            except StepFailedError as exc:
                if step.optional:
                    logger.warning(
                        "optional_step_failed",
                        extra={"step_name": step.name, "reason": exc.reason},
                    )
                    continue
                return self._finish(
                    job, job_execution, BatchStatus.FAILED, ExitCode.FAILED,
                    f"Step '{step.name}' failed: {exc.reason}", job_context,
                )

            if step_execution.status == BatchStatus.STOPPED:
                return self._finish(
                    job, job_execution, BatchStatus.STOPPED, ExitCode.STOPPED,
                    f"Stopped in step '{step.name}'", job_context,
                )

        exit_code = ExitCode.COMPLETED if steps_run else ExitCode.NOOP
        return self._finish(
            job, job_execution, BatchStatus.COMPLETED, exit_code, None, job_context,
        )

    def _stop_requested(self, job_execution: JobExecution) -> bool:
        current = self._repository.get_job_execution(job_execution.execution_id)
        return current.status == BatchStatus.STOPPING

    def _finish(
        self,
        job: JobDefinition,
        job_execution: JobExecution,
        status: BatchStatus,
        exit_code: ExitCode,
        description: str | None,
        job_context: ExecutionContext | None = None,
    ) -> JobExecution:
        """Record the terminal status and notify ``after_job`` listeners."""
        changes: dict[str, Any] = {
            "status": status,
            "exit_code": exit_code,
            "exit_description": description,
            "end_time": self._clock.now(),
        }
        if job_context is not None:
            changes["execution_context"] = job_context.snapshot()
        final = replace(job_execution, **changes)
        try:
            final = self._repository.update_job_execution(final)
        except Exception:
            logger.exception("job_final_status_not_persisted")

        logger.log(
            logging.ERROR if status == BatchStatus.FAILED else logging.INFO,
            "job_finished",
            extra={
                "status": status.value,
                "exit_code": exit_code.value,
                "exit_description": description,
            },
        )

        for listener in job.listeners:
            hook = getattr(listener, "after_job", None)
            if hook is None:
                continue
            try:
                hook(final)
            except Exception:
                logger.exception(
                    "after_job_listener_failed",
                    extra={"listener": type(listener).__name__},
                )
        return final
