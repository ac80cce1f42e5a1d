"""
SqlJobRepository -- SQLAlchemy-backed JobRepository.

Contract:
    Every call opens its own session from the injected factory, commits
    before returning, and closes the session.  Metadata writes are therefore
    durable and independent of any chunk transaction the caller has open.

Invariants enforced:
    - UNIQUE ``(job_name, job_key)`` on batch_job_instances: concurrent
      creators of the same instance race on the constraint, the loser sees
      DuplicateInstanceError (or the winner's row when resuming).
    - ``create_job_execution`` locks the instance row (SELECT ... FOR UPDATE)
      before checking for a non-terminal execution, so the check and insert
      are atomic per instance across processes.
    - Calls within one process are serialized by a repository lock (SQLite
      shares one connection between threads).

Failure modes:
    - Every ``SQLAlchemyError`` is wrapped in ``RepositoryError``.
"""

from __future__ import annotations

import threading
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import (
    AlreadyRunningError,
    BatchKernelError,
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
from batch_engine.models.batch import (
    JobExecutionModel,
    JobInstanceModel,
    StepExecutionModel,
)
from batch_engine.repository.base import JobRepository, ensure_serializable

logger = get_logger("batch.repository.sql")

_RUNNING_STATUSES = tuple(s.value for s in BatchStatus if s.is_running)


class SqlJobRepository(JobRepository):
    """Execution repository persisted through SQLAlchemy."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._lock = threading.RLock()

    @contextmanager
    def _session(self, operation: str) -> Generator[Session, None, None]:
        """One committed unit of work; SQLAlchemy errors -> RepositoryError."""
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except BatchKernelError:
                session.rollback()
                raise
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception(
                    "repository_operation_failed", extra={"operation": operation},
                )
                raise RepositoryError(operation, str(exc)) from exc
            finally:
                session.close()

    # -------------------------------------------------------------------------
    # Job instances
    # -------------------------------------------------------------------------

    def create_job_instance(
        self, job_name: str, parameters: JobParameters, resume: bool = False,
    ) -> JobInstance:
        job_key = parameters.identity_key()
        with self._session("create_job_instance") as session:
            existing = self._select_instance(session, job_name, job_key)
            if existing is not None:
                if resume:
                    return existing.to_dto()
                raise DuplicateInstanceError(job_name, job_key)

            instance = JobInstance(
                instance_id=uuid4(),
                job_name=job_name,
                job_key=job_key,
                parameters=parameters,
                created_at=self._clock.now(),
            )
            session.add(JobInstanceModel.from_dto(instance))
            try:
                session.flush()
            except IntegrityError:
                # Another process created the same instance first
                session.rollback()
                if not resume:
                    raise DuplicateInstanceError(job_name, job_key) from None
                winner = self._select_instance(session, job_name, job_key)
                if winner is None:
                    raise
                return winner.to_dto()

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
        with self._session("find_job_instance") as session:
            model = self._select_instance(
                session, job_name, parameters.identity_key(),
            )
            return model.to_dto() if model is not None else None

    def get_job_instance(self, instance_id: UUID) -> JobInstance | None:
        with self._session("get_job_instance") as session:
            model = session.get(JobInstanceModel, instance_id)
            return model.to_dto() if model is not None else None

    def find_job_instances(self, job_name: str) -> tuple[JobInstance, ...]:
        with self._session("find_job_instances") as session:
            models = session.execute(
                select(JobInstanceModel)
                .where(JobInstanceModel.job_name == job_name)
                .order_by(JobInstanceModel.create_time)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    def get_job_names(self) -> tuple[str, ...]:
        with self._session("get_job_names") as session:
            names = session.execute(
                select(JobInstanceModel.job_name)
                .distinct()
                .order_by(JobInstanceModel.job_name)
            ).scalars().all()
            return tuple(names)

    # -------------------------------------------------------------------------
    # Job executions
    # -------------------------------------------------------------------------

    def create_job_execution(
        self, instance: JobInstance, parameters: JobParameters,
    ) -> JobExecution:
        with self._session("create_job_execution") as session:
            # Lock the instance row: the running-execution check and the
            # insert below must be atomic per instance.
            instance_model = session.execute(
                select(JobInstanceModel)
                .where(JobInstanceModel.id == instance.instance_id)
                .with_for_update()
            ).scalar_one_or_none()
            if instance_model is None:
                raise RepositoryError(
                    "create_job_execution",
                    f"job instance not found: {instance.instance_id}",
                )

            executions = session.execute(
                select(JobExecutionModel)
                .where(JobExecutionModel.job_instance_id == instance.instance_id)
                .order_by(JobExecutionModel.run_number)
            ).scalars().all()

            for prior in executions:
                if prior.status in _RUNNING_STATUSES:
                    raise AlreadyRunningError(instance.job_name, str(prior.id))
            last = executions[-1] if executions else None
            if last is not None and last.status == BatchStatus.COMPLETED.value:
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
                execution_context=dict(last.execution_context or {}) if last else {},
            )
            session.add(JobExecutionModel.from_dto(execution))
            return execution

    def update_job_execution(self, execution: JobExecution) -> JobExecution:
        context = ensure_serializable(
            "update_job_execution", execution.execution_context,
        )
        with self._session("update_job_execution") as session:
            model = session.get(JobExecutionModel, execution.execution_id)
            if model is None:
                raise JobExecutionNotFoundError(str(execution.execution_id))
            stop_requested = model.status == BatchStatus.STOPPING.value
            model.apply(execution)
            if stop_requested and execution.status in (
                BatchStatus.STARTING,
                BatchStatus.STARTED,
            ):
                model.status = BatchStatus.STOPPING.value
            model.execution_context = context or None
            model.last_updated = self._clock.now()
            session.flush()
            return model.to_dto()

    def request_stop(self, execution_id: UUID) -> JobExecution:
        with self._session("request_stop") as session:
            model = session.execute(
                select(JobExecutionModel)
                .where(JobExecutionModel.id == execution_id)
                .with_for_update()
            ).scalar_one_or_none()
            if model is None:
                raise JobExecutionNotFoundError(str(execution_id))
            if model.status not in _RUNNING_STATUSES:
                raise JobExecutionNotRunningError(str(execution_id), model.status)
            model.status = BatchStatus.STOPPING.value
            model.last_updated = self._clock.now()
            session.flush()
            return model.to_dto()

    def get_job_execution(self, execution_id: UUID) -> JobExecution:
        with self._session("get_job_execution") as session:
            model = session.get(JobExecutionModel, execution_id)
            if model is None:
                raise JobExecutionNotFoundError(str(execution_id))
            return model.to_dto()

    def get_job_executions(self, instance: JobInstance) -> tuple[JobExecution, ...]:
        with self._session("get_job_executions") as session:
            models = session.execute(
                select(JobExecutionModel)
                .where(JobExecutionModel.job_instance_id == instance.instance_id)
                .order_by(JobExecutionModel.run_number)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    def get_last_job_execution(self, instance: JobInstance) -> JobExecution | None:
        with self._session("get_last_job_execution") as session:
            model = session.execute(
                select(JobExecutionModel)
                .where(JobExecutionModel.job_instance_id == instance.instance_id)
                .order_by(JobExecutionModel.run_number.desc())
                .limit(1)
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None

    def find_running_job_executions(self, job_name: str) -> tuple[JobExecution, ...]:
        with self._session("find_running_job_executions") as session:
            models = session.execute(
                select(JobExecutionModel).where(
                    JobExecutionModel.job_name == job_name,
                    JobExecutionModel.status.in_(_RUNNING_STATUSES),
                )
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    # -------------------------------------------------------------------------
    # Step executions
    # -------------------------------------------------------------------------

    def create_step_execution(
        self,
        job_execution: JobExecution,
        step_name: str,
        execution_context: Mapping[str, Any] | None = None,
    ) -> StepExecution:
        context = ensure_serializable(
            "create_step_execution", execution_context or {},
        )
        with self._session("create_step_execution") as session:
            if session.get(JobExecutionModel, job_execution.execution_id) is None:
                raise JobExecutionNotFoundError(str(job_execution.execution_id))

            prior = self._count_steps(
                session, job_execution.job_instance_id, step_name,
            )
            sequence = session.execute(
                select(func.count(StepExecutionModel.id)).where(
                    StepExecutionModel.job_execution_id == job_execution.execution_id,
                )
            ).scalar_one()

            step_execution = StepExecution(
                step_execution_id=uuid4(),
                job_execution_id=job_execution.execution_id,
                job_instance_id=job_execution.job_instance_id,
                step_name=step_name,
                status=BatchStatus.STARTING,
                attempt=prior + 1,
                last_updated=self._clock.now(),
                execution_context=context,
            )
            session.add(StepExecutionModel.from_dto(step_execution, sequence + 1))
            return step_execution

    def update_step_execution(self, step_execution: StepExecution) -> StepExecution:
        context = ensure_serializable(
            "update_step_execution", step_execution.execution_context,
        )
        with self._session("update_step_execution") as session:
            model = session.get(StepExecutionModel, step_execution.step_execution_id)
            if model is None:
                raise RepositoryError(
                    "update_step_execution",
                    f"step execution not found: {step_execution.step_execution_id}",
                )
            model.apply(step_execution)
            model.execution_context = context or None
            model.last_updated = self._clock.now()
            session.flush()
            return model.to_dto()

    def get_step_executions(
        self, job_execution: JobExecution,
    ) -> tuple[StepExecution, ...]:
        with self._session("get_step_executions") as session:
            models = session.execute(
                select(StepExecutionModel)
                .where(StepExecutionModel.job_execution_id == job_execution.execution_id)
                .order_by(StepExecutionModel.sequence)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    def find_last_step_execution(
        self, instance: JobInstance, step_name: str,
    ) -> StepExecution | None:
        with self._session("find_last_step_execution") as session:
            model = session.execute(
                select(StepExecutionModel)
                .where(
                    StepExecutionModel.job_instance_id == instance.instance_id,
                    StepExecutionModel.step_name == step_name,
                )
                .order_by(StepExecutionModel.attempt.desc())
                .limit(1)
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None

    def count_step_executions(self, instance: JobInstance, step_name: str) -> int:
        with self._session("count_step_executions") as session:
            return self._count_steps(session, instance.instance_id, step_name)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _select_instance(
        session: Session, job_name: str, job_key: str,
    ) -> JobInstanceModel | None:
        return session.execute(
            select(JobInstanceModel).where(
                JobInstanceModel.job_name == job_name,
                JobInstanceModel.job_key == job_key,
            )
        ).scalar_one_or_none()

    @staticmethod
    def _count_steps(session: Session, instance_id: UUID, step_name: str) -> int:
        return session.execute(
            select(func.count(StepExecutionModel.id)).where(
                StepExecutionModel.job_instance_id == instance_id,
                StepExecutionModel.step_name == step_name,
            )
        ).scalar_one()
