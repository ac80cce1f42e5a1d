"""
Item reader/processor/writer protocols, tasklet protocol and stream helpers.

Contract:
    The engine treats item components as capability interfaces.  Concrete
    implementations are plain objects that satisfy the methods below; they
    are never required to inherit from anything.

    ``ItemReader``:    open(context), read() -> item | None, update(context), close()
    ``ItemProcessor``: process(item) -> item | None   (None = filtered)
    ``ItemWriter``:    write(items)                   (all or nothing per call)
    ``Tasklet``:       execute(contribution, context) -> RepeatStatus | None

    ``read()`` returning None signals end of input.  Processors and writers
    may additionally implement open/update/close (ItemStream); the engine
    calls whichever of those methods exist.

Non-goals:
    - Components do NOT manage transactions -- the chunk orchestrator owns
      the transaction boundary.
    - Components do NOT retry -- the step's RetryPolicy does.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from batch_engine.domain.types import ExecutionContext


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class ItemStream(Protocol):
    """Open/update/close lifecycle around a step execution."""

    def open(self, context: ExecutionContext) -> None:
        """Restore position from ``context`` (empty on a fresh run)."""
        ...

    def update(self, context: ExecutionContext) -> None:
        """Save the current position into ``context`` after a commit."""
        ...

    def close(self) -> None: ...


@runtime_checkable
class ItemReader(Protocol):
    """Supplies items one at a time; must be resumable from its context."""

    def read(self) -> Any:
        """Return the next item, or None at end of input."""
        ...


@runtime_checkable
class ItemProcessor(Protocol):
    """Transforms or filters one item."""

    def process(self, item: Any) -> Any:
        """Return the transformed item, or None to filter it out."""
        ...


@runtime_checkable
class ItemWriter(Protocol):
    """Writes one chunk; fully applies or fully aborts its side effects."""

    def write(self, items: Sequence[Any]) -> None: ...


class RepeatStatus(str, Enum):
    """Returned by a tasklet: call again, or done."""

    CONTINUABLE = "continuable"
    FINISHED = "finished"


@dataclass
class StepContribution:
    """Counters a tasklet may bump during one call.

    Folded into the StepExecution when the call's transaction commits.
    ``job_context`` is the job-level ExecutionContext, shared by all steps
    of the job execution.
    """

    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    job_context: ExecutionContext | None = None

    def increment_read_count(self, count: int = 1) -> None:
        self.read_count += count

    def increment_write_count(self, count: int = 1) -> None:
        self.write_count += count

    def increment_filter_count(self, count: int = 1) -> None:
        self.filter_count += count


@runtime_checkable
class Tasklet(Protocol):
    """Single unit of work for non-chunked steps."""

    def execute(
        self, contribution: StepContribution, context: ExecutionContext,
    ) -> RepeatStatus | None: ...


# =============================================================================
# Stream helpers
# =============================================================================


def open_stream(component: Any, context: ExecutionContext) -> None:
    """Call ``component.open(context)`` if the component has it."""
    method = getattr(component, "open", None)
    if callable(method):
        method(context)


def update_stream(component: Any, context: ExecutionContext) -> None:
    """Call ``component.update(context)`` if the component has it."""
    method = getattr(component, "update", None)
    if callable(method):
        method(context)


def close_stream(component: Any) -> None:
    """Call ``component.close()`` if the component has it."""
    method = getattr(component, "close", None)
    if callable(method):
        method()


def step_components(step: Any) -> tuple[Any, ...]:
    """Distinct non-None stream candidates of a step, in open order."""
    seen: list[Any] = []
    for component in (step.reader, step.processor, step.writer, step.tasklet):
        if component is not None and not any(component is s for s in seen):
            seen.append(component)
    return tuple(seen)
