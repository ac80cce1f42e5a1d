"""
batch_engine.repository -- Execution metadata stores.

``JobRepository`` is the contract; ``InMemoryJobRepository`` and
``SqlJobRepository`` implement it.
"""

from batch_engine.repository.base import JobRepository
from batch_engine.repository.memory import InMemoryJobRepository
from batch_engine.repository.sql import SqlJobRepository

__all__ = [
    "InMemoryJobRepository",
    "JobRepository",
    "SqlJobRepository",
]
