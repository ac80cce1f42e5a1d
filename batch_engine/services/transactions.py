"""
Chunk transaction managers.

Contract:
    ``TransactionManager.begin()`` opens the transaction of one chunk.  The
    returned ``Transaction`` is committed after a successful write and rolled
    back on failure.  ``Transaction.savepoint()`` opens a nested transaction
    around a single item write, so one failing item in a re-scanned chunk
    does not undo the others.

    ``ResourcelessTransactionManager`` is the default for writers whose side
    effects are not transactional (or manage their own transactions).
    ``SessionTransactionManager`` binds chunks to a SQLAlchemy session that
    the step's writer also uses.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sqlalchemy.orm import Session, SessionTransaction


@runtime_checkable
class Savepoint(Protocol):
    def commit(self) -> None: ...

    def rollback(self) -> None: ...


@runtime_checkable
class Transaction(Protocol):
    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def savepoint(self) -> Savepoint: ...


@runtime_checkable
class TransactionManager(Protocol):
    def begin(self) -> Transaction: ...


# =============================================================================
# Resourceless
# =============================================================================


class _NoOpTransaction:
    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    def savepoint(self) -> "_NoOpTransaction":
        return self


class ResourcelessTransactionManager:
    """Transaction manager for components without transactional resources."""

    def begin(self) -> _NoOpTransaction:
        return _NoOpTransaction()


# =============================================================================
# SQLAlchemy session
# =============================================================================


class _SessionSavepoint:
    def __init__(self, nested: SessionTransaction) -> None:
        self._nested = nested

    def commit(self) -> None:
        self._nested.commit()

    def rollback(self) -> None:
        self._nested.rollback()


class _SessionTransaction:
    def __init__(self, session: Session) -> None:
        self._session = session

    def commit(self) -> None:
        self._session.commit()

    def rollback(self) -> None:
        self._session.rollback()

    def savepoint(self) -> _SessionSavepoint:
        return _SessionSavepoint(self._session.begin_nested())


class SessionTransactionManager:
    """Chunk transactions on a SQLAlchemy session shared with the writer.

    The session must not be used for the execution repository: repository
    writes commit independently of chunk transactions.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def begin(self) -> _SessionTransaction:
        return _SessionTransaction(self._session)
