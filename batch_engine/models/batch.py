"""
ORM models for batch execution metadata.

Contract:
    JobInstanceModel, JobExecutionModel and StepExecutionModel persist the
    three execution records.  Each has ``to_dto()`` / ``from_dto()``
    round-trip methods to the frozen types in batch_engine.domain.types.

Architecture: batch_engine/models. Imports from batch_kernel.db.base only
    (plus the domain types it converts to).

Invariants enforced:
    - ``(job_name, job_key)`` is UNIQUE on JobInstanceModel: a second launch
      with identical identifying parameters resolves to the same instance.
    - Rows are append-only from the engine's point of view: executions are
      updated in place but never deleted.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from batch_kernel.db.base import TimestampedBase, UUIDString

if TYPE_CHECKING:
    from batch_engine.domain.types import JobExecution, JobInstance, StepExecution


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; timestamps are always stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobInstanceModel(TimestampedBase):
    """Persistent job instance (one per job name + identifying parameters)."""

    __tablename__ = "batch_job_instances"

    __table_args__ = (
        UniqueConstraint("job_name", "job_key", name="uq_batch_job_instances_key"),
        Index("ix_batch_job_instances_job_name", "job_name"),
    )

    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    parameters: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    create_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> JobInstance:
        from batch_engine.domain.types import JobInstance, JobParameters

        return JobInstance(
            instance_id=self.id,
            job_name=self.job_name,
            job_key=self.job_key,
            parameters=JobParameters.from_dict(self.parameters),
            created_at=_aware(self.create_time),
        )

    @classmethod
    def from_dto(cls, dto: JobInstance) -> JobInstanceModel:
        return cls(
            id=dto.instance_id,
            job_name=dto.job_name,
            job_key=dto.job_key,
            parameters=dto.parameters.to_dict() or None,
            create_time=dto.created_at,
        )


class JobExecutionModel(TimestampedBase):
    """Persistent job execution (one per attempt of an instance)."""

    __tablename__ = "batch_job_executions"

    __table_args__ = (
        Index("ix_batch_job_executions_instance", "job_instance_id", "run_number"),
        Index("ix_batch_job_executions_status", "status"),
        Index("ix_batch_job_executions_job_name", "job_name"),
    )

    job_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_instances.id"),
        nullable=False,
    )
    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    parameters: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    run_number: Mapped[int] = mapped_column(Integer, nullable=False)
    exit_code: Mapped[str] = mapped_column(String(50), nullable=False)
    exit_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    create_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_updated: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    execution_context: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True,
    )

    def to_dto(self) -> JobExecution:
        from batch_engine.domain.types import (
            BatchStatus,
            ExitCode,
            JobExecution,
            JobParameters,
        )

        return JobExecution(
            execution_id=self.id,
            job_instance_id=self.job_instance_id,
            job_name=self.job_name,
            parameters=JobParameters.from_dict(self.parameters),
            status=BatchStatus(self.status),
            run_number=self.run_number,
            exit_code=ExitCode(self.exit_code),
            exit_description=self.exit_description,
            created_at=_aware(self.create_time),
            start_time=_aware(self.start_time),
            end_time=_aware(self.end_time),
            last_updated=_aware(self.last_updated),
            execution_context=dict(self.execution_context or {}),
        )

    @classmethod
    def from_dto(cls, dto: JobExecution) -> JobExecutionModel:
        return cls(
            id=dto.execution_id,
            job_instance_id=dto.job_instance_id,
            job_name=dto.job_name,
            parameters=dto.parameters.to_dict() or None,
            status=dto.status.value,
            run_number=dto.run_number,
            exit_code=dto.exit_code.value,
            exit_description=dto.exit_description,
            create_time=dto.created_at,
            start_time=dto.start_time,
            end_time=dto.end_time,
            last_updated=dto.last_updated,
            execution_context=dto.execution_context or None,
        )

    def apply(self, dto: JobExecution) -> None:
        """Copy the mutable fields of ``dto`` onto this row."""
        self.status = dto.status.value
        self.exit_code = dto.exit_code.value
        self.exit_description = dto.exit_description
        self.start_time = dto.start_time
        self.end_time = dto.end_time
        self.last_updated = dto.last_updated
        self.execution_context = dto.execution_context or None


class StepExecutionModel(TimestampedBase):
    """Persistent step execution (one per attempt of a step)."""

    __tablename__ = "batch_step_executions"

    __table_args__ = (
        Index(
            "ix_batch_step_executions_instance_step",
            "job_instance_id", "step_name", "attempt",
        ),
        Index("ix_batch_step_executions_job_execution", "job_execution_id", "sequence"),
    )

    job_execution_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_executions.id"),
        nullable=False,
    )
    job_instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_instances.id"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    # Position of the step execution within its job execution
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    read_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    filter_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rollback_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    read_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    process_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    exit_code: Mapped[str] = mapped_column(String(50), nullable=False)
    exit_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_updated: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    execution_context: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True,
    )

    def to_dto(self) -> StepExecution:
        from batch_engine.domain.types import BatchStatus, ExitCode, StepExecution

        return StepExecution(
            step_execution_id=self.id,
            job_execution_id=self.job_execution_id,
            job_instance_id=self.job_instance_id,
            step_name=self.step_name,
            status=BatchStatus(self.status),
            attempt=self.attempt,
            read_count=self.read_count,
            write_count=self.write_count,
            filter_count=self.filter_count,
            commit_count=self.commit_count,
            rollback_count=self.rollback_count,
            read_skip_count=self.read_skip_count,
            process_skip_count=self.process_skip_count,
            write_skip_count=self.write_skip_count,
            exit_code=ExitCode(self.exit_code),
            exit_description=self.exit_description,
            start_time=_aware(self.start_time),
            end_time=_aware(self.end_time),
            last_updated=_aware(self.last_updated),
            execution_context=dict(self.execution_context or {}),
        )

    @classmethod
    def from_dto(cls, dto: StepExecution, sequence: int) -> StepExecutionModel:
        model = cls(
            id=dto.step_execution_id,
            job_execution_id=dto.job_execution_id,
            job_instance_id=dto.job_instance_id,
            step_name=dto.step_name,
            attempt=dto.attempt,
            sequence=sequence,
        )
        model.apply(dto)
        return model

    def apply(self, dto: StepExecution) -> None:
        """Copy the mutable fields of ``dto`` onto this row."""
        self.status = dto.status.value
        self.read_count = dto.read_count
        self.write_count = dto.write_count
        self.filter_count = dto.filter_count
        self.commit_count = dto.commit_count
        self.rollback_count = dto.rollback_count
        self.read_skip_count = dto.read_skip_count
        self.process_skip_count = dto.process_skip_count
        self.write_skip_count = dto.write_skip_count
        self.exit_code = dto.exit_code.value
        self.exit_description = dto.exit_description
        self.start_time = dto.start_time
        self.end_time = dto.end_time
        self.last_updated = dto.last_updated
        self.execution_context = dto.execution_context or None
