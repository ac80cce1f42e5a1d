"""
Batch Kernel - infrastructure for the batch execution engine.

Provides:
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging with execution-scoped context
- Injectable clock
- SQLAlchemy declarative base and engine/session helpers
"""

__version__ = "0.1.0"
