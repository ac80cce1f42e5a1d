"""
InMemoryJobRepository -- process-local JobRepository.

Contract:
    Same semantics as SqlJobRepository, backed by dicts guarded by one
    ``threading.RLock``.  Stored records are frozen snapshots and contexts
    are deep-copied on the way in, so callers never share mutable state with
    the store.

Non-goals:
    - Does NOT survive the process.  Use it for tests and for jobs whose
      restart state need not outlive the process.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import replace
from typing import Any
from uuid import UUID, uuid4

from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import (
    AlreadyRunningError,
    DuplicateInstanceError,
    JobExecutionNotFoundError,
    JobExecutionNotRunningError,
    JobInstanceCompleteError,
    RepositoryError,
)
from batch_kernel.logging_config import get_logger

from batch_engine.domain.types import (
    BatchStatus,
    ExitCode,
    JobExecution,
    JobInstance,
    JobParameters,
    StepExecution,
)
from batch_engine.repository.base import JobRepository, ensure_serializable

logger = get_logger("batch.repository.memory")


class InMemoryJobRepository(JobRepository):
    """Thread-safe in-memory execution repository."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._instances: dict[UUID, JobInstance] = {}
        self._instance_keys: dict[tuple[str, str], UUID] = {}
        self._job_executions: dict[UUID, JobExecution] = {}
        self._executions_by_instance: dict[UUID, list[UUID]] = {}
        self._step_executions: dict[UUID, StepExecution] = {}
        self._steps_by_job_execution: dict[UUID, list[UUID]] = {}
        self._steps_by_instance: dict[tuple[UUID, str], list[UUID]] = {}

    # -------------------------------------------------------------------------
    # Job instances
    # -------------------------------------------------------------------------

    def create_job_instance(
        self, job_name: str, parameters: JobParameters, resume: bool = False,
    ) -> JobInstance:
        job_key = parameters.identity_key()
        with self._lock:
            existing_id = self._instance_keys.get((job_name, job_key))
            if existing_id is not None:
                if resume:
                    return self._instances[existing_id]
                raise DuplicateInstanceError(job_name, job_key)

            instance = JobInstance(
                instance_id=uuid4(),
                job_name=job_name,
                job_key=job_key,
                parameters=parameters,
                created_at=self._clock.now(),
            )
            self._instances[instance.instance_id] = instance
            self._instance_keys[(job_name, job_key)] = instance.instance_id
            self._executions_by_instance[instance.instance_id] = []

        logger.info(
            "job_instance_created",
            extra={
                "job_instance_id": str(instance.instance_id),
                "job_name": job_name,
                "job_key": job_key,
            },
        )
        return instance

    def find_job_instance(
        self, job_name: str, parameters: JobParameters,
    ) -> JobInstance | None:
        with self._lock:
            instance_id = self._instance_keys.get(
                (job_name, parameters.identity_key())
            )
            return self._instances.get(instance_id) if instance_id else None

    def get_job_instance(self, instance_id: UUID) -> JobInstance | None:
        with self._lock:
            return self._instances.get(instance_id)

    def find_job_instances(self, job_name: str) -> tuple[JobInstance, ...]:
        with self._lock:
            return tuple(
                instance
                for instance in self._instances.values()
                if instance.job_name == job_name
            )

    def get_job_names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted({i.job_name for i in self._instances.values()}))

    # -------------------------------------------------------------------------
    # Job executions
    # -------------------------------------------------------------------------

    def create_job_execution(
        self, instance: JobInstance, parameters: JobParameters,
    ) -> JobExecution:
        with self._lock:
            execution_ids = self._executions_by_instance.get(instance.instance_id)
            if execution_ids is None:
                raise RepositoryError(
                    "create_job_execution",
                    f"job instance not found: {instance.instance_id}",
                )
            executions = [self._job_executions[eid] for eid in execution_ids]

            for prior in executions:
                if prior.status.is_running:
                    raise AlreadyRunningError(
                        instance.job_name, str(prior.execution_id),
                    )
            last = executions[-1] if executions else None
            if last is not None and last.status == BatchStatus.COMPLETED:
                raise JobInstanceCompleteError(instance.job_name, instance.job_key)

            now = self._clock.now()
            execution = JobExecution(
                execution_id=uuid4(),
                job_instance_id=instance.instance_id,
                job_name=instance.job_name,
                parameters=parameters,
                status=BatchStatus.STARTING,
                run_number=len(executions) + 1,
                exit_code=ExitCode.UNKNOWN,
                created_at=now,
                last_updated=now,
                execution_context=(
                    ensure_serializable(
                        "create_job_execution", last.execution_context,
                    )
                    if last is not None
                    else {}
                ),
            )
            self._job_executions[execution.execution_id] = execution
            execution_ids.append(execution.execution_id)
            self._steps_by_job_execution[execution.execution_id] = []
            return execution

    def update_job_execution(self, execution: JobExecution) -> JobExecution:
        with self._lock:
            stored = self._job_executions.get(execution.execution_id)
            if stored is None:
                raise JobExecutionNotFoundError(str(execution.execution_id))
            status = execution.status
            if stored.status == BatchStatus.STOPPING and status in (
                BatchStatus.STARTING,
                BatchStatus.STARTED,
            ):
                status = BatchStatus.STOPPING
            updated = replace(
                execution,
                status=status,
                last_updated=self._clock.now(),
                execution_context=ensure_serializable(
                    "update_job_execution", execution.execution_context,
                ),
            )
            self._job_executions[execution.execution_id] = updated
            return updated

    def request_stop(self, execution_id: UUID) -> JobExecution:
        with self._lock:
            stored = self._job_executions.get(execution_id)
            if stored is None:
                raise JobExecutionNotFoundError(str(execution_id))
            if stored.status.is_terminal:
                raise JobExecutionNotRunningError(
                    str(execution_id), stored.status.value,
                )
            updated = replace(
                stored,
                status=BatchStatus.STOPPING,
                last_updated=self._clock.now(),
            )
            self._job_executions[execution_id] = updated
            return updated

    def get_job_execution(self, execution_id: UUID) -> JobExecution:
        with self._lock:
            stored = self._job_executions.get(execution_id)
            if stored is None:
                raise JobExecutionNotFoundError(str(execution_id))
            return stored

    def get_job_executions(self, instance: JobInstance) -> tuple[JobExecution, ...]:
        with self._lock:
            return tuple(
                self._job_executions[eid]
                for eid in self._executions_by_instance.get(instance.instance_id, ())
            )

    def get_last_job_execution(self, instance: JobInstance) -> JobExecution | None:
        executions = self.get_job_executions(instance)
        return executions[-1] if executions else None

    def find_running_job_executions(self, job_name: str) -> tuple[JobExecution, ...]:
        with self._lock:
            return tuple(
                execution
                for execution in self._job_executions.values()
                if execution.job_name == job_name and execution.status.is_running
            )

    # -------------------------------------------------------------------------
    # Step executions
    # -------------------------------------------------------------------------

    def create_step_execution(
        self,
        job_execution: JobExecution,
        step_name: str,
        execution_context: Mapping[str, Any] | None = None,
    ) -> StepExecution:
        with self._lock:
            owned = self._steps_by_job_execution.get(job_execution.execution_id)
            if owned is None:
                raise JobExecutionNotFoundError(str(job_execution.execution_id))
            key = (job_execution.job_instance_id, step_name)
            prior = self._steps_by_instance.setdefault(key, [])

            step_execution = StepExecution(
                step_execution_id=uuid4(),
                job_execution_id=job_execution.execution_id,
                job_instance_id=job_execution.job_instance_id,
                step_name=step_name,
                status=BatchStatus.STARTING,
                attempt=len(prior) + 1,
                last_updated=self._clock.now(),
                execution_context=ensure_serializable(
                    "create_step_execution", execution_context or {},
                ),
            )
            self._step_executions[step_execution.step_execution_id] = step_execution
            owned.append(step_execution.step_execution_id)
            prior.append(step_execution.step_execution_id)
            return step_execution

    def update_step_execution(self, step_execution: StepExecution) -> StepExecution:
        with self._lock:
            if step_execution.step_execution_id not in self._step_executions:
                raise RepositoryError(
                    "update_step_execution",
                    f"step execution not found: {step_execution.step_execution_id}",
                )
            updated = replace(
                step_execution,
                last_updated=self._clock.now(),
                execution_context=ensure_serializable(
                    "update_step_execution", step_execution.execution_context,
                ),
            )
            self._step_executions[step_execution.step_execution_id] = updated
            return updated

    def get_step_executions(
        self, job_execution: JobExecution,
    ) -> tuple[StepExecution, ...]:
        with self._lock:
            return tuple(
                self._step_executions[sid]
                for sid in self._steps_by_job_execution.get(
                    job_execution.execution_id, (),
                )
            )

    def find_last_step_execution(
        self, instance: JobInstance, step_name: str,
    ) -> StepExecution | None:
        with self._lock:
            ids = self._steps_by_instance.get((instance.instance_id, step_name))
            return self._step_executions[ids[-1]] if ids else None

    def count_step_executions(self, instance: JobInstance, step_name: str) -> int:
        with self._lock:
            return len(self._steps_by_instance.get((instance.instance_id, step_name), ()))
