"""
Reusable item readers, processors, writers and tasklets.

``ItemCountingReader`` implements the checkpoint convention used by the
bundled readers: the number of source positions consumed (failed reads
included) is stored in the step's ExecutionContext under
``<name>.read.count`` after every commit, and on open the reader jumps past
that many positions.  Readers whose source can seek should
override ``_jump_to``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import Any

from batch_kernel.logging_config import get_logger

from batch_engine.domain.types import ExecutionContext
from batch_engine.items.base import RepeatStatus, StepContribution

logger = get_logger("batch.items")


# =============================================================================
# Readers
# =============================================================================


class ItemCountingReader:
    """Base reader that checkpoints the number of items read."""

    def __init__(self, name: str) -> None:
        if not name:
            raise ValueError("Reader name must be non-empty")
        self.name = name
        self._count = 0

    @property
    def count_key(self) -> str:
        return f"{self.name}.read.count"

    @property
    def current_count(self) -> int:
        return self._count

    def open(self, context: ExecutionContext) -> None:
        self._count = 0
        self._do_open()
        saved = context.get_int(self.count_key, 0)
        if saved:
            self._jump_to(saved)
            self._count = saved

    def read(self) -> Any:
        # A failed read still consumes a source position
        self._count += 1
        item = self._do_read()
        if item is None:
            self._count -= 1
        return item

    def update(self, context: ExecutionContext) -> None:
        context[self.count_key] = self._count

    def close(self) -> None:
        self._do_close()

    # Hooks -------------------------------------------------------------------

    def _do_open(self) -> None:
        pass

    def _do_read(self) -> Any:
        raise NotImplementedError

    def _do_close(self) -> None:
        pass

    def _jump_to(self, count: int) -> None:
        """Position the source after ``count`` items (default: read past).

        Records that fail to read were skipped before the checkpoint and are
        passed over again.
        """
        for position in range(count):
            try:
                item = self._do_read()
            except Exception as exc:
                logger.warning(
                    "reader_jump_passed_failed_record",
                    extra={
                        "reader": self.name,
                        "position": position,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                continue
            if item is None:
                break


class ListItemReader(ItemCountingReader):
    """Reads from an in-memory sequence; seeks by index on restart."""

    def __init__(self, items: Sequence[Any], name: str = "list_reader") -> None:
        super().__init__(name)
        self._items = list(items)
        self._index = 0

    def _do_open(self) -> None:
        self._index = 0

    def _do_read(self) -> Any:
        if self._index >= len(self._items):
            return None
        item = self._items[self._index]
        self._index += 1
        return item

    def _jump_to(self, count: int) -> None:
        self._index = min(count, len(self._items))


class IteratorItemReader(ItemCountingReader):
    """Reads from an iterable produced by ``source`` on every open.

    The source must yield the same items in the same order each time it is
    called, since restart re-reads and discards the checkpointed prefix.
    """

    def __init__(
        self, source: Callable[[], Iterable[Any]], name: str = "iterator_reader",
    ) -> None:
        super().__init__(name)
        self._source = source
        self._iterator: Iterator[Any] | None = None

    def _do_open(self) -> None:
        self._iterator = iter(self._source())

    def _do_read(self) -> Any:
        if self._iterator is None:
            raise RuntimeError(f"Reader '{self.name}' read before open")
        return next(self._iterator, None)

    def _do_close(self) -> None:
        self._iterator = None


# =============================================================================
# Processors
# =============================================================================


class PassThroughItemProcessor:
    """Returns every item unchanged."""

    def process(self, item: Any) -> Any:
        return item


class FunctionItemProcessor:
    """Adapts a plain function into a processor."""

    def __init__(self, function: Callable[[Any], Any]) -> None:
        self._function = function

    def process(self, item: Any) -> Any:
        return self._function(item)


class CompositeItemProcessor:
    """Chains processors; a None result from any link filters the item."""

    def __init__(self, processors: Sequence[Any]) -> None:
        if not processors:
            raise ValueError("CompositeItemProcessor needs at least one processor")
        self._processors = tuple(processors)

    def process(self, item: Any) -> Any:
        result = item
        for processor in self._processors:
            result = processor.process(result)
            if result is None:
                return None
        return result


# =============================================================================
# Writers
# =============================================================================


class ListItemWriter:
    """Collects written items in memory.

    ``written`` holds every item in write order; ``chunks`` holds each
    ``write()`` call's items.
    """

    def __init__(self) -> None:
        self.written: list[Any] = []
        self.chunks: list[list[Any]] = []

    def write(self, items: Sequence[Any]) -> None:
        batch = list(items)
        self.chunks.append(batch)
        self.written.extend(batch)


# =============================================================================
# Tasklets
# =============================================================================


class CallableTasklet:
    """Adapts ``fn(contribution, context)`` into a tasklet.

    A None return value means FINISHED.
    """

    def __init__(
        self,
        function: Callable[[StepContribution, ExecutionContext], RepeatStatus | None],
    ) -> None:
        self._function = function

    def execute(
        self, contribution: StepContribution, context: ExecutionContext,
    ) -> RepeatStatus:
        status = self._function(contribution, context)
        return RepeatStatus.FINISHED if status is None else status
