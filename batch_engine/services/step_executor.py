"""
StepExecutor -- runs one step execution to COMPLETED, FAILED or STOPPED.

Contract:
    ``execute(step, job_execution, previous=None, job_context=None)`` creates
    a StepExecution (seeded from ``previous``'s context when resuming), opens
    the step's components, runs the chunk loop or the tasklet, and persists
    every transition.

    State machine: STARTING -> STARTED -> {COMPLETED | FAILED | STOPPED}.
    STARTED is recorded once the components are open.

Architecture: batch_engine/services.  Uses ChunkOrchestrator for chunked
    steps and the JobRepository for persistence.

Invariants enforced:
    - A failed step is persisted FAILED with its exit description before
      ``StepFailedError`` is raised to the job executor.
    - Stop requests (STOPPING on the job execution) are observed between
      chunks / tasklet calls only.
    - Components are closed whatever the outcome.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from typing import Any
from uuid import UUID

from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import RepositoryError, StepFailedError
from batch_kernel.logging_config import LogContext, get_logger

from batch_engine.domain.definitions import StepDefinition
from batch_engine.domain.types import (
    BatchStatus,
    ExecutionContext,
    ExitCode,
    JobExecution,
    StepExecution,
)
from batch_engine.items.base import (
    RepeatStatus,
    StepContribution,
    close_stream,
    open_stream,
    step_components,
)
from batch_engine.repository.base import JobRepository
from batch_engine.services.chunk import ChunkOrchestrator
from batch_engine.services.transactions import (
    ResourcelessTransactionManager,
    TransactionManager,
)

logger = get_logger("batch.step")


def describe_failure(exc: BaseException) -> str:
    """Exit description recorded for a failure."""
    return f"{type(exc).__name__}: {exc}"


class StepExecutor:
    """Executes single steps against a JobRepository.

    Non-goals:
        - Does NOT decide whether a step should run -- the job executor
          resolves RUN / RESUME / SKIP first.
    """

    def __init__(
        self,
        repository: JobRepository,
        clock: Clock | None = None,
        transaction_manager: TransactionManager | None = None,
    ):
        self._repository = repository
        self._clock = clock or SystemClock()
        self._transaction_manager = transaction_manager

    def execute(
        self,
        step: StepDefinition,
        job_execution: JobExecution,
        previous: StepExecution | None = None,
        job_context: ExecutionContext | None = None,
    ) -> StepExecution:
        """Run ``step`` once within ``job_execution``.

        Args:
            step: The step definition.
            job_execution: Owning job execution.
            previous: Prior attempt to resume from, or None for a fresh run.
            job_context: Job-level context handed to tasklets.

        Returns:
            The final COMPLETED or STOPPED StepExecution.

        Raises:
            StepFailedError: The step ended FAILED (already persisted).
        """
        seed = previous.execution_context if previous is not None else {}
        step_execution = self._repository.create_step_execution(
            job_execution, step.name, seed,
        )

        with LogContext.bind(
            step_name=step.name,
            step_execution_id=str(step_execution.step_execution_id),
        ):
            logger.info(
                "step_execution_created",
                extra={
                    "attempt": step_execution.attempt,
                    "resumed": previous is not None,
                    "tasklet": step.is_tasklet,
                },
            )
            return self._run(step, job_execution, step_execution, job_context)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run(
        self,
        step: StepDefinition,
        job_execution: JobExecution,
        step_execution: StepExecution,
        job_context: ExecutionContext | None,
    ) -> StepExecution:
        context = ExecutionContext.from_snapshot(step_execution.execution_context)
        stop_requested = self._stop_check(job_execution.execution_id)
        components = step_components(step)
        opened: list[Any] = []
        orchestrator: ChunkOrchestrator | None = None

        try:
            for listener in step.listeners:
                hook = getattr(listener, "before_step", None)
                if hook is not None:
                    hook(step_execution)

            for component in components:
                open_stream(component, context)
                opened.append(component)

            step_execution = self._repository.update_step_execution(
                replace(
                    step_execution,
                    status=BatchStatus.STARTED,
                    exit_code=ExitCode.EXECUTING,
                    start_time=self._clock.now(),
                )
            )
            logger.info("step_started")

            if step.is_tasklet:
                step_execution, finished = self._run_tasklet(
                    step, step_execution, context, job_context, stop_requested,
                )
            else:
                orchestrator = ChunkOrchestrator(
                    step=step,
                    step_execution=step_execution,
                    context=context,
                    repository=self._repository,
                    clock=self._clock,
                    transaction_manager=(
                        step.transaction_manager or self._transaction_manager
                    ),
                )
                finished = orchestrator.run(stop_requested)
                step_execution = orchestrator.step_execution

            if finished:
                final = replace(
                    step_execution,
                    status=BatchStatus.COMPLETED,
                    exit_code=ExitCode.COMPLETED,
                    end_time=self._clock.now(),
                )
            else:
                final = replace(
                    step_execution,
                    status=BatchStatus.STOPPED,
                    exit_code=ExitCode.STOPPED,
                    exit_description="Stop requested",
                    end_time=self._clock.now(),
                )
            step_execution = self._repository.update_step_execution(final)
        except Exception as exc:
            if orchestrator is not None:
                step_execution = orchestrator.step_execution
            self._fail(step, step_execution, exc)
        finally:
            for component in reversed(opened):
                try:
                    close_stream(component)
                except Exception:
                    logger.exception(
                        "step_component_close_failed",
                        extra={"component": type(component).__name__},
                    )

        logger.info(
            "step_finished",
            extra={
                "status": step_execution.status.value,
                "read_count": step_execution.read_count,
                "write_count": step_execution.write_count,
                "filter_count": step_execution.filter_count,
                "skip_count": step_execution.skip_count,
                "commit_count": step_execution.commit_count,
            },
        )
        self._after_step(step, step_execution)
        return step_execution

    def _run_tasklet(
        self,
        step: StepDefinition,
        step_execution: StepExecution,
        context: ExecutionContext,
        job_context: ExecutionContext | None,
        stop_requested: Callable[[], bool],
    ) -> tuple[StepExecution, bool]:
        """Call the tasklet until FINISHED, one transaction per call."""
        tasklet = step.tasklet
        execute = getattr(tasklet, "execute", tasklet)
        manager = (
            step.transaction_manager
            or self._transaction_manager
            or ResourcelessTransactionManager()
        )

        while True:
            if stop_requested():
                logger.info("step_stop_observed")
                return step_execution, False

            contribution = StepContribution(job_context=job_context)
            transaction = manager.begin()
            try:
                status = execute(contribution, context)
                transaction.commit()
            except Exception as exc:
                step_execution = replace(
                    step_execution,
                    rollback_count=step_execution.rollback_count + 1,
                )
                try:
                    transaction.rollback()
                except Exception:
                    logger.exception("tasklet_rollback_failed")
                raise _TaskletFailure(step_execution) from exc

            step_execution = self._repository.update_step_execution(
                replace(
                    step_execution,
                    read_count=step_execution.read_count + contribution.read_count,
                    write_count=step_execution.write_count + contribution.write_count,
                    filter_count=step_execution.filter_count + contribution.filter_count,
                    commit_count=step_execution.commit_count + 1,
                    execution_context=context.snapshot(),
                )
            )
            if status is None or status == RepeatStatus.FINISHED:
                return step_execution, True

    def _fail(
        self,
        step: StepDefinition,
        step_execution: StepExecution,
        exc: Exception,
    ) -> None:
        """Persist FAILED and raise StepFailedError."""
        if isinstance(exc, _TaskletFailure):
            step_execution = exc.step_execution
            exc = exc.__cause__ or exc
        reason = describe_failure(exc)
        failed = replace(
            step_execution,
            status=BatchStatus.FAILED,
            exit_code=ExitCode.FAILED,
            exit_description=reason,
            end_time=self._clock.now(),
        )
        try:
            failed = self._repository.update_step_execution(failed)
        except RepositoryError:
            logger.exception("step_failure_not_persisted")

        logger.error(
            "step_failed",
            extra={
                "reason": reason,
                "commit_count": failed.commit_count,
                "rollback_count": failed.rollback_count,
            },
        )
        self._after_step(step, failed)
        raise StepFailedError(step.name, failed, reason) from exc

    def _after_step(self, step: StepDefinition, step_execution: StepExecution) -> None:
        for listener in step.listeners:
            hook = getattr(listener, "after_step", None)
            if hook is not None:
                hook(step_execution)

    def _stop_check(self, execution_id: UUID) -> Callable[[], bool]:
        def stop_requested() -> bool:
            current = self._repository.get_job_execution(execution_id)
            return current.status == BatchStatus.STOPPING

        return stop_requested


class _TaskletFailure(Exception):
    """Carries the step execution (with its rollback count) out of the loop."""

    def __init__(self, step_execution: StepExecution):
        self.step_execution = step_execution
        super().__init__("tasklet failed")
