"""
Tests for chunk transaction managers.

Validates that SessionTransactionManager commits each chunk's writes and
rolls back the writes of a failing chunk, leaving earlier chunks committed.
"""

import pytest
from sqlalchemy import Integer, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.pool import StaticPool

from batch_engine.domain import BatchStatus, JobDefinition, JobParameters, StepDefinition
from batch_engine.items import ListItemReader
from batch_engine.repository import InMemoryJobRepository
from batch_engine.services import (
    JobExecutor,
    JobLauncher,
    ResourcelessTransactionManager,
    SessionTransactionManager,
    StepExecutor,
)


class _Base(DeclarativeBase):
    pass


class BillingLine(_Base):
    __tablename__ = "billing_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)


class SessionWriter:
    """Adds one BillingLine per item and flushes; rejects poison amounts."""

    def __init__(self, session: Session, poison: int | None = None):
        self._session = session
        self._poison = poison

    def write(self, items):
        self._session.add_all(BillingLine(amount=item) for item in items)
        self._session.flush()
        if self._poison in items:
            raise RuntimeError(f"amount {self._poison} rejected")


@pytest.fixture
def billing_session():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    _Base.metadata.create_all(engine)
    session = Session(engine)
    yield session
    session.close()
    engine.dispose()


def _stored_amounts(session: Session) -> list[int]:
    return list(session.scalars(select(BillingLine.amount).order_by(BillingLine.id)))


class TestSessionTransactionManager:
    def test_each_chunk_committed(self, billing_session):
        manager = SessionTransactionManager(billing_session)
        step = StepDefinition(
            name="post",
            reader=ListItemReader([10, 20, 30, 40, 50]),
            writer=SessionWriter(billing_session),
            chunk_size=2,
            transaction_manager=manager,
        )
        execution = JobLauncher(InMemoryJobRepository()).launch(
            JobDefinition(name="billing", steps=(step,)), JobParameters(),
        )

        assert execution.status == BatchStatus.COMPLETED
        assert _stored_amounts(billing_session) == [10, 20, 30, 40, 50]
        assert manager.session is billing_session

    def test_failing_chunk_rolled_back(self, billing_session):
        step = StepDefinition(
            name="post",
            reader=ListItemReader([10, 20, 30, 40, 50]),
            writer=SessionWriter(billing_session, poison=40),
            chunk_size=2,
            transaction_manager=SessionTransactionManager(billing_session),
        )
        repository = InMemoryJobRepository()
        execution = JobLauncher(repository).launch(
            JobDefinition(name="billing", steps=(step,)), JobParameters(),
        )

        assert execution.status == BatchStatus.FAILED
        assert _stored_amounts(billing_session) == [10, 20]
        (step_execution,) = repository.get_step_executions(execution)
        assert step_execution.commit_count == 1
        assert step_execution.rollback_count == 1

    def test_executor_level_manager_used_by_default(self, billing_session):
        repository = InMemoryJobRepository()
        step_executor = StepExecutor(
            repository, transaction_manager=SessionTransactionManager(billing_session),
        )
        launcher = JobLauncher(repository, JobExecutor(repository, step_executor))
        step = StepDefinition(
            name="post",
            reader=ListItemReader([1, 2, 3]),
            writer=SessionWriter(billing_session, poison=3),
            chunk_size=2,
        )
        execution = launcher.launch(JobDefinition(name="billing", steps=(step,)), JobParameters())

        assert execution.status == BatchStatus.FAILED
        assert _stored_amounts(billing_session) == [1, 2]


class TestResourcelessTransactionManager:
    def test_noop_transaction(self):
        transaction = ResourcelessTransactionManager().begin()
        savepoint = transaction.savepoint()
        savepoint.commit()
        savepoint.rollback()
        transaction.commit()
        transaction.rollback()
