"""
JobRepository -- contract of the execution metadata store.

Contract:
    The repository is the single source of truth for restart decisions and
    the only shared mutable state of the engine.  Every method returns
    immutable snapshots; every write is durable when the call returns.

    Mutual exclusion: a non-terminal JobExecution of a JobInstance acts as a
    lock.  ``create_job_execution`` checks for one and creates the new
    execution atomically per instance, so two concurrent launches of the
    same instance cannot both succeed.

Non-goals:
    - NOT a distributed lock manager.  Cross-process exclusion relies on the
      backing store (unique constraints, row locks).
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from batch_kernel.exceptions import RepositoryError

from batch_engine.domain.types import (
    JobExecution,
    JobInstance,
    JobParameters,
    StepExecution,
)


class JobRepository(ABC):
    """Abstract execution repository."""

    # -------------------------------------------------------------------------
    # Job instances
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_job_instance(
        self, job_name: str, parameters: JobParameters, resume: bool = False,
    ) -> JobInstance:
        """Create the instance for ``job_name`` + identifying parameters.

        Args:
            resume: If True and the instance exists, return it instead of
                raising (atomic get-or-create).

        Raises:
            DuplicateInstanceError: If the instance exists and ``resume`` is
                False.
        """

    @abstractmethod
    def find_job_instance(
        self, job_name: str, parameters: JobParameters,
    ) -> JobInstance | None:
        """Return the instance for ``job_name`` + parameters, if any."""

    @abstractmethod
    def get_job_instance(self, instance_id: UUID) -> JobInstance | None: ...

    @abstractmethod
    def find_job_instances(self, job_name: str) -> tuple[JobInstance, ...]:
        """All instances of a job, oldest first."""

    @abstractmethod
    def get_job_names(self) -> tuple[str, ...]:
        """Distinct job names with at least one instance, sorted."""

    # -------------------------------------------------------------------------
    # Job executions
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_job_execution(
        self, instance: JobInstance, parameters: JobParameters,
    ) -> JobExecution:
        """Create a STARTING execution for ``instance``.

        The new execution's context is seeded from the previous execution's.

        Raises:
            AlreadyRunningError: If a non-terminal execution exists.
            JobInstanceCompleteError: If the last execution COMPLETED.
            RepositoryError: If the instance does not exist.
        """

    @abstractmethod
    def update_job_execution(self, execution: JobExecution) -> JobExecution:
        """Persist ``execution`` and return the stored snapshot.

        A stored STOPPING status is never replaced by STARTING or STARTED:
        a stop request survives concurrent progress updates.

        Raises:
            JobExecutionNotFoundError: If the execution does not exist.
        """

    @abstractmethod
    def request_stop(self, execution_id: UUID) -> JobExecution:
        """Atomically mark a running execution STOPPING.

        Idempotent for executions already STOPPING.

        Raises:
            JobExecutionNotFoundError: If the execution does not exist.
            JobExecutionNotRunningError: If the execution is terminal.
        """

    @abstractmethod
    def get_job_execution(self, execution_id: UUID) -> JobExecution:
        """
        Raises:
            JobExecutionNotFoundError: If the execution does not exist.
        """

    @abstractmethod
    def get_job_executions(self, instance: JobInstance) -> tuple[JobExecution, ...]:
        """All executions of an instance, oldest first."""

    @abstractmethod
    def get_last_job_execution(self, instance: JobInstance) -> JobExecution | None: ...

    @abstractmethod
    def find_running_job_executions(self, job_name: str) -> tuple[JobExecution, ...]:
        """Non-terminal executions of ``job_name``."""

    # -------------------------------------------------------------------------
    # Step executions
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_step_execution(
        self,
        job_execution: JobExecution,
        step_name: str,
        execution_context: Mapping[str, Any] | None = None,
    ) -> StepExecution:
        """Create a STARTING step execution owned by ``job_execution``."""

    @abstractmethod
    def update_step_execution(self, step_execution: StepExecution) -> StepExecution:
        """Persist ``step_execution`` and return the stored snapshot.

        Raises:
            RepositoryError: If the step execution does not exist or its
                context is not JSON-serializable.
        """

    @abstractmethod
    def get_step_executions(
        self, job_execution: JobExecution,
    ) -> tuple[StepExecution, ...]:
        """Step executions of a job execution, in creation order."""

    @abstractmethod
    def find_last_step_execution(
        self, instance: JobInstance, step_name: str,
    ) -> StepExecution | None:
        """Most recent execution of ``step_name`` across the instance's runs."""

    @abstractmethod
    def count_step_executions(self, instance: JobInstance, step_name: str) -> int:
        """Number of executions of ``step_name`` across the instance's runs."""


def ensure_serializable(operation: str, context: Mapping[str, Any]) -> dict[str, Any]:
    """Return a JSON-safe deep copy of ``context``.

    Raises:
        RepositoryError: If the context cannot be serialized.
    """
    try:
        return json.loads(json.dumps(dict(context)))
    except (TypeError, ValueError) as exc:
        raise RepositoryError(
            operation, f"execution context is not JSON-serializable: {exc}",
        ) from exc
