"""
BatchOrchestrator -- DI container for the batch engine.

Contract:
    Composes one Clock, JobRepository, JobRegistry, StepExecutor,
    JobExecutor, JobLauncher and JobOperator.  Single place where the engine's
    dependencies are wired.

Architecture: batch_engine (top-level).  Canonical entry point for
    configuring and running batch jobs.

Invariants enforced:
    - Every service receives the same Clock.
    - Every service shares the same JobRepository.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.db.engine import create_tables, init_engine_from_url
from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.logging_config import get_logger

from batch_engine.config import BatchSettings, LaunchMode
from batch_engine.domain.definitions import JobDefinition
from batch_engine.jobs.registry import JobRegistry
from batch_engine.repository.base import JobRepository
from batch_engine.repository.memory import InMemoryJobRepository
from batch_engine.repository.sql import SqlJobRepository
from batch_engine.services.job_executor import JobExecutor
from batch_engine.services.launcher import JobLauncher
from batch_engine.services.operator import JobOperator
from batch_engine.services.step_executor import StepExecutor
from batch_engine.services.transactions import TransactionManager

logger = get_logger("batch.orchestrator")


class BatchOrchestrator:
    """DI container for the batch engine.

    Contract:
        - ``in_memory()`` wires an InMemoryJobRepository.
        - ``from_session_factory()`` wires a SqlJobRepository.
        - ``from_settings()`` initializes the database named by the settings
          and wires a SqlJobRepository on it.
        - ``launcher`` / ``operator`` / ``registry`` expose the services.

    Non-goals:
        - Does NOT own item components -- jobs are built by the caller and
          registered here.
    """

    def __init__(
        self,
        repository: JobRepository,
        registry: JobRegistry | None = None,
        clock: Clock | None = None,
        launch_mode: LaunchMode | str = LaunchMode.SYNC,
        max_workers: int = 4,
        transaction_manager: TransactionManager | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._repository = repository
        self._registry = registry if registry is not None else JobRegistry()
        self._step_executor = StepExecutor(
            repository, self._clock, transaction_manager,
        )
        self._job_executor = JobExecutor(
            repository, self._step_executor, self._clock,
        )
        self._launcher = JobLauncher(
            repository,
            self._job_executor,
            self._clock,
            mode=launch_mode,
            max_workers=max_workers,
        )
        self._operator = JobOperator(
            repository, self._registry, self._launcher, self._clock,
        )

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @classmethod
    def in_memory(
        cls,
        jobs: Iterable[JobDefinition] = (),
        clock: Clock | None = None,
        launch_mode: LaunchMode | str = LaunchMode.SYNC,
        max_workers: int = 4,
    ) -> BatchOrchestrator:
        """Orchestrator on a process-local repository."""
        effective_clock = clock or SystemClock()
        return cls(
            repository=InMemoryJobRepository(effective_clock),
            registry=JobRegistry(jobs),
            clock=effective_clock,
            launch_mode=launch_mode,
            max_workers=max_workers,
        )

    @classmethod
    def from_session_factory(
        cls,
        session_factory: sessionmaker[Session],
        jobs: Iterable[JobDefinition] = (),
        clock: Clock | None = None,
        launch_mode: LaunchMode | str = LaunchMode.SYNC,
        max_workers: int = 4,
        transaction_manager: TransactionManager | None = None,
    ) -> BatchOrchestrator:
        """Orchestrator on a SQL repository.

        Args:
            session_factory: Factory for the repository's sessions.  The
                tables must already exist (see ``create_tables``).
        """
        effective_clock = clock or SystemClock()
        return cls(
            repository=SqlJobRepository(session_factory, effective_clock),
            registry=JobRegistry(jobs),
            clock=effective_clock,
            launch_mode=launch_mode,
            max_workers=max_workers,
            transaction_manager=transaction_manager,
        )

    @classmethod
    def from_settings(
        cls,
        settings: BatchSettings,
        jobs: Iterable[JobDefinition] = (),
        clock: Clock | None = None,
    ) -> BatchOrchestrator:
        """Initialize ``settings.database_url`` and wire a SQL repository."""
        engine = init_engine_from_url(settings.database_url)
        create_tables(engine)
        logger.info(
            "orchestrator_configured",
            extra={
                "launch_mode": settings.launch_mode.value,
                "max_workers": settings.max_workers,
                "settings_checksum": settings.checksum,
            },
        )
        return cls.from_session_factory(
            sessionmaker(bind=engine, expire_on_commit=False),
            jobs=jobs,
            clock=clock,
            launch_mode=settings.launch_mode,
            max_workers=settings.max_workers,
        )

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def register(self, job: JobDefinition) -> None:
        self._registry.register(job)

    def shutdown(self, wait: bool = True) -> None:
        """Shut down the launcher's worker pool."""
        self._launcher.shutdown(wait=wait)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def repository(self) -> JobRepository:
        return self._repository

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def step_executor(self) -> StepExecutor:
        return self._step_executor

    @property
    def job_executor(self) -> JobExecutor:
        return self._job_executor

    @property
    def launcher(self) -> JobLauncher:
        return self._launcher

    @property
    def operator(self) -> JobOperator:
        return self._operator
