"""
ChunkOrchestrator -- read-process-write loop of one chunk-oriented step.

Contract:
    Reads up to ``chunk_size`` items, passes each through the processor
    (None = filtered), writes the survivors as one list and commits the
    chunk's transaction.  After the commit, the counters and the components'
    checkpoint (``update(context)``) are folded into the StepExecution, which
    is persisted before the next chunk starts reading.

Architecture: batch_engine/services.  Driven by StepExecutor.

Invariants enforced:
    - Chunks commit strictly in input order; counters and checkpoints only
      move forward and are persisted once per committed chunk.
    - A retry re-attempts the single failing item, never the whole chunk.
    - A failing chunk write whose error is retryable or skippable is rolled
      back and re-written item by item inside one new transaction, each item
      in its own savepoint.
    - Any unresolved failure rolls back the in-flight chunk; chunks committed
      before it stay committed.
    - Stop requests are observed between chunks only.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from batch_kernel.domain.clock import Clock
from batch_kernel.exceptions import ItemProcessError, ItemReadError, ItemWriteError
from batch_kernel.logging_config import get_logger

from batch_engine.domain.definitions import StepDefinition
from batch_engine.domain.types import ExecutionContext, StepExecution
from batch_engine.items.base import step_components, update_stream
from batch_engine.repository.base import JobRepository
from batch_engine.services.transactions import (
    ResourcelessTransactionManager,
    Transaction,
    TransactionManager,
)

logger = get_logger("batch.chunk")

_PHASE_ERRORS = {
    "read": ItemReadError,
    "process": ItemProcessError,
    "write": ItemWriteError,
}

_SKIP_HOOKS = {
    "read": "on_skip_in_read",
    "process": "on_skip_in_process",
    "write": "on_skip_in_write",
}


@dataclass
class _Chunk:
    """Working state of the chunk in flight."""

    inputs: list[Any] = field(default_factory=list)
    outputs: list[Any] = field(default_factory=list)
    filtered: int = 0
    written: int = 0
    read_skips: int = 0
    process_skips: int = 0
    write_skips: int = 0
    exhausted: bool = False
    rolled_back: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.inputs and not self.read_skips


class ChunkOrchestrator:
    """Drives one step execution's chunks.

    ``step_execution`` always holds the latest snapshot, including the
    rollback count of a chunk that just failed, so the step executor can
    record the failure on it.
    """

    def __init__(
        self,
        step: StepDefinition,
        step_execution: StepExecution,
        context: ExecutionContext,
        repository: JobRepository,
        clock: Clock,
        transaction_manager: TransactionManager | None = None,
    ):
        self._step = step
        self.step_execution = step_execution
        self._context = context
        self._repository = repository
        self._clock = clock
        self._tm = (
            transaction_manager
            or step.transaction_manager
            or ResourcelessTransactionManager()
        )
        self._transaction: Transaction | None = None
        self._skip_counts: dict[type[BaseException], int] = {}

    @property
    def skip_counts(self) -> dict[type[BaseException], int]:
        """Skips consumed so far, keyed by configured exception class."""
        return dict(self._skip_counts)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def run(self, stop_requested: Callable[[], bool]) -> bool:
        """Process chunks until input is exhausted or a stop is requested.

        Returns:
            True when the input was exhausted, False when stopped.
        """
        while True:
            if stop_requested():
                logger.info(
                    "step_stop_observed",
                    extra={"commit_count": self.step_execution.commit_count},
                )
                return False
            if self.execute_chunk():
                return True

    def execute_chunk(self) -> bool:
        """Read, process, write and commit one chunk.

        Returns:
            True if the reader signalled end of input.

        Raises:
            ItemReadError / ItemProcessError / ItemWriteError: If a failure
                could not be resolved by retry or skip.  The chunk has been
                rolled back.
        """
        chunk = _Chunk()
        self._transaction = self._tm.begin()
        try:
            self._read(chunk)
            if chunk.is_empty:
                self._transaction.rollback()
                return True
            self._process(chunk)
            self._write(chunk)
            self._transaction.commit()
        except Exception:
            self._rollback(chunk)
            raise
        self._after_commit(chunk)
        return chunk.exhausted

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _read(self, chunk: _Chunk) -> None:
        reader = self._step.reader
        while len(chunk.inputs) < self._step.chunk_size:
            try:
                item = self._with_retry("read", reader.read)
            except Exception as exc:
                self._skip_or_raise("read", None, exc)
                chunk.read_skips += 1
                continue
            if item is None:
                chunk.exhausted = True
                return
            chunk.inputs.append(item)

    def _process(self, chunk: _Chunk) -> None:
        processor = self._step.processor
        if processor is None:
            chunk.outputs = list(chunk.inputs)
            return
        for item in chunk.inputs:
            try:
                result = self._with_retry("process", processor.process, item)
            except Exception as exc:
                self._skip_or_raise("process", item, exc)
                chunk.process_skips += 1
                continue
            if result is None:
                chunk.filtered += 1
            else:
                chunk.outputs.append(result)

    def _write(self, chunk: _Chunk) -> None:
        if not chunk.outputs:
            return
        try:
            self._step.writer.write(list(chunk.outputs))
        except Exception as exc:
            if not self._is_recoverable(exc):
                raise ItemWriteError(list(chunk.outputs), exc) from exc
            logger.warning(
                "chunk_write_failed_scanning",
                extra={
                    "items": len(chunk.outputs),
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            self._rollback(chunk)
            self._transaction = self._tm.begin()
            self._scan(chunk)
            return
        chunk.written = len(chunk.outputs)

    def _scan(self, chunk: _Chunk) -> None:
        """Re-write a failed chunk one item at a time."""
        for item in chunk.outputs:
            try:
                self._with_retry("write", self._write_one, item)
            except Exception as exc:
                self._skip_or_raise("write", item, exc)
                chunk.write_skips += 1
                continue
            chunk.written += 1

    def _write_one(self, item: Any) -> None:
        savepoint = self._transaction.savepoint()
        try:
            self._step.writer.write([item])
        except Exception:
            savepoint.rollback()
            raise
        savepoint.commit()

    # -------------------------------------------------------------------------
    # Retry / skip
    # -------------------------------------------------------------------------

    def _with_retry(self, phase: str, operation: Callable[..., Any], *args: Any) -> Any:
        policy = self._step.retry_policy
        attempts = 0
        while True:
            try:
                return operation(*args)
            except Exception as exc:
                if not policy.can_retry(exc, attempts):
                    raise
                attempts += 1
                logger.warning(
                    "item_retry",
                    extra={
                        "phase": phase,
                        "attempt": attempts,
                        "retry_limit": policy.retry_limit,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                if policy.backoff_seconds:
                    time.sleep(policy.backoff_seconds * attempts)

    def _is_recoverable(self, exc: BaseException) -> bool:
        if self._step.retry_policy.is_retryable(exc):
            return True
        policy = self._step.skip_policy
        klass = policy.classify(exc)
        return klass is not None and policy.skippable[klass] > 0

    def _skip_or_raise(self, phase: str, item: Any, exc: Exception) -> None:
        """Consume one skip for ``exc`` or raise the phase's ItemError."""
        policy = self._step.skip_policy
        if not policy.should_skip(exc, self._skip_counts):
            raise _PHASE_ERRORS[phase](item, exc) from exc

        klass = policy.classify(exc)
        self._skip_counts[klass] = self._skip_counts.get(klass, 0) + 1
        logger.warning(
            "item_skipped",
            extra={
                "phase": phase,
                "error_type": type(exc).__name__,
                "error": str(exc),
                "skip_class": klass.__name__,
                "skips_used": self._skip_counts[klass],
                "skip_limit": policy.skippable[klass],
            },
        )

        hook_name = _SKIP_HOOKS[phase]
        for listener in self._step.listeners:
            hook = getattr(listener, hook_name, None)
            if hook is None:
                continue
            if phase == "read":
                hook(exc)
            else:
                hook(item, exc)

    # -------------------------------------------------------------------------
    # Commit / rollback
    # -------------------------------------------------------------------------

    def _rollback(self, chunk: _Chunk) -> None:
        # One chunk counts one rollback, including a failed re-write
        if not chunk.rolled_back:
            chunk.rolled_back = True
            self.step_execution = replace(
                self.step_execution,
                rollback_count=self.step_execution.rollback_count + 1,
            )
        if self._transaction is None:
            return
        try:
            self._transaction.rollback()
        except Exception:
            logger.exception("chunk_rollback_failed")

    def _after_commit(self, chunk: _Chunk) -> None:
        current = self.step_execution
        for component in step_components(self._step):
            update_stream(component, self._context)

        updated = replace(
            current,
            read_count=current.read_count + len(chunk.inputs),
            write_count=current.write_count + chunk.written,
            filter_count=current.filter_count + chunk.filtered,
            commit_count=current.commit_count + 1,
            read_skip_count=current.read_skip_count + chunk.read_skips,
            process_skip_count=current.process_skip_count + chunk.process_skips,
            write_skip_count=current.write_skip_count + chunk.write_skips,
            last_updated=self._clock.now(),
            execution_context=self._context.snapshot(),
        )
        self._context.clear_dirty()
        self.step_execution = self._repository.update_step_execution(updated)

        logger.info(
            "chunk_committed",
            extra={
                "commit_count": updated.commit_count,
                "read": len(chunk.inputs),
                "written": chunk.written,
                "filtered": chunk.filtered,
                "skipped": chunk.read_skips + chunk.process_skips + chunk.write_skips,
            },
        )
