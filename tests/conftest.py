"""
Pytest fixtures for the batch engine test suite.

Provides:
- Structured logging setup and a JSON log capture fixture
- A deterministic clock
- In-memory and SQLite-backed job repositories

SQLite databases are in-memory and private to each test; no external
database is required.
"""

import json
import logging
from io import StringIO
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from batch_kernel.db.engine import create_tables
from batch_kernel.domain.clock import DeterministicClock
from batch_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

from batch_engine.repository import InMemoryJobRepository, SqlJobRepository


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture batch_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, launcher):
            launcher.launch(job, params)
            logs = captured_logs()
            assert any(r["message"] == "chunk_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("batch_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        handler.flush()
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Clock fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    return DeterministicClock()


# =============================================================================
# Database fixtures (in-memory SQLite)
# =============================================================================


def make_sqlite_engine() -> Engine:
    """Private in-memory SQLite database shared by all threads of a test."""
    return create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest.fixture
def sql_engine() -> Generator[Engine, None, None]:
    engine = make_sqlite_engine()
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine) -> sessionmaker[Session]:
    return sessionmaker(bind=sql_engine, expire_on_commit=False)


# =============================================================================
# Repository fixtures
# =============================================================================


@pytest.fixture
def memory_repository(deterministic_clock) -> InMemoryJobRepository:
    return InMemoryJobRepository(deterministic_clock)


@pytest.fixture
def sql_repository(session_factory, deterministic_clock) -> SqlJobRepository:
    return SqlJobRepository(session_factory, deterministic_clock)


@pytest.fixture(params=["memory", "sql"])
def repository(request, deterministic_clock):
    """Runs a test once against each JobRepository implementation."""
    if request.param == "memory":
        yield InMemoryJobRepository(deterministic_clock)
        return
    engine = make_sqlite_engine()
    create_tables(engine)
    yield SqlJobRepository(
        sessionmaker(bind=engine, expire_on_commit=False), deterministic_clock,
    )
    engine.dispose()
