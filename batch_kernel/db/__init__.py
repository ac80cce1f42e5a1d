"""Database layer - engine, base classes and types."""

from batch_kernel.db.base import Base, TimestampedBase, UUIDString
from batch_kernel.db.engine import create_tables, get_engine, get_session

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TimestampedBase",
    "UUIDString",
]
