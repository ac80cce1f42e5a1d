"""
JobLauncher -- validated, exclusive start of a job execution.

Contract:
    ``launch(job, parameters)``:
        1. validates the parameters (JobParametersValidationError),
        2. gets or creates the JobInstance for (job name, identifying params),
        3. rejects a rerun of a non-restartable job (JobRestartNotAllowedError),
        4. creates the JobExecution -- atomically refused with
           AlreadyRunningError while another execution of the instance is
           non-terminal, and with JobInstanceCompleteError once the instance
           has completed,
        5. runs it synchronously (returns the terminal JobExecution) or on a
           worker thread (returns the STARTING execution immediately).

    Launch-time errors are raised to the caller.  Once the execution exists,
    failures are recorded on it and never raised.

Architecture: batch_engine/services.  Uses JobRepository and JobExecutor.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from uuid import UUID, uuid4

from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import (
    AlreadyRunningError,
    JobInstanceCompleteError,
    JobRestartNotAllowedError,
)
from batch_kernel.logging_config import LogContext, get_logger

from batch_engine.config import LaunchMode
from batch_engine.domain.definitions import JobDefinition
from batch_engine.domain.types import BatchStatus, JobExecution, JobParameters
from batch_engine.repository.base import JobRepository
from batch_engine.services.job_executor import JobExecutor

logger = get_logger("batch.launcher")


class JobLauncher:
    """Starts job executions.

    Non-goals:
        - Does NOT schedule -- callers decide when to launch.
        - Does NOT recover crashed executions -- an operator abandons them.
    """

    def __init__(
        self,
        repository: JobRepository,
        job_executor: JobExecutor | None = None,
        clock: Clock | None = None,
        mode: LaunchMode | str = LaunchMode.SYNC,
        max_workers: int = 4,
    ):
        self._repository = repository
        self._clock = clock or SystemClock()
        self._job_executor = job_executor or JobExecutor(repository, clock=self._clock)
        self._mode = LaunchMode(mode)
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None
        self._futures: dict[UUID, Future] = {}
        self._lock = threading.Lock()

    @property
    def mode(self) -> LaunchMode:
        return self._mode

    # -------------------------------------------------------------------------
    # Launch
    # -------------------------------------------------------------------------

    def launch(self, job: JobDefinition, parameters: JobParameters | None = None) -> JobExecution:
        """Launch ``job`` with ``parameters``.

        Raises:
            JobParametersValidationError: Parameters rejected by the job.
            AlreadyRunningError: The instance has a non-terminal execution.
            JobInstanceCompleteError: The instance already completed.
            JobRestartNotAllowedError: The job is not restartable and the
                instance already ran.
            RepositoryError: Execution metadata could not be stored.
        """
        parameters = parameters if parameters is not None else JobParameters()

        with LogContext.bind(correlation_id=str(uuid4()), job_name=job.name):
            job.validate_parameters(parameters)
            instance = self._repository.create_job_instance(
                job.name, parameters, resume=True,
            )

            if not job.restartable:
                last = self._repository.get_last_job_execution(instance)
                if last is not None:
                    if last.status.is_running:
                        raise AlreadyRunningError(job.name, str(last.execution_id))
                    if last.status == BatchStatus.COMPLETED:
                        raise JobInstanceCompleteError(job.name, instance.job_key)
                    raise JobRestartNotAllowedError(job.name, instance.job_key)

            execution = self._repository.create_job_execution(instance, parameters)
            logger.info(
                "job_launched",
                extra={
                    "job_instance_id": str(instance.instance_id),
                    "job_execution_id": str(execution.execution_id),
                    "run_number": execution.run_number,
                    "mode": self._mode.value,
                },
            )

            if self._mode is LaunchMode.SYNC:
                return self._job_executor.execute(job, execution)

            future = self._executor().submit(self._job_executor.execute, job, execution)
            with self._lock:
                self._futures[execution.execution_id] = future
            future.add_done_callback(
                lambda _f, eid=execution.execution_id: self._forget(eid)
            )
            return execution

    def wait(self, execution: JobExecution | UUID, timeout: float | None = None) -> JobExecution:
        """Block until an asynchronously launched execution finishes.

        Returns the stored JobExecution; for executions that are not running
        on this launcher, returns the stored state immediately.

        Raises:
            TimeoutError: The execution did not finish within ``timeout``.
        """
        execution_id = (
            execution.execution_id if isinstance(execution, JobExecution) else execution
        )
        with self._lock:
            future = self._futures.get(execution_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError:
                raise TimeoutError(
                    f"Job execution {execution_id} still running after {timeout}s"
                ) from None
        return self._repository.get_job_execution(execution_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting launches and optionally wait for running jobs."""
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
            logger.info("job_launcher_shutdown", extra={"waited": wait})

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="batch-job",
                )
            return self._pool

    def _forget(self, execution_id: UUID) -> None:
        with self._lock:
            self._futures.pop(execution_id, None)
