"""
batch_engine.items -- Item component protocols and reusable implementations.

ZERO repository/service imports.
"""

from batch_engine.items.base import (
    ItemProcessor,
    ItemReader,
    ItemStream,
    ItemWriter,
    RepeatStatus,
    StepContribution,
    Tasklet,
)
from batch_engine.items.support import (
    CallableTasklet,
    CompositeItemProcessor,
    FunctionItemProcessor,
    ItemCountingReader,
    IteratorItemReader,
    ListItemReader,
    ListItemWriter,
    PassThroughItemProcessor,
)

__all__ = [
    "CallableTasklet",
    "CompositeItemProcessor",
    "FunctionItemProcessor",
    "ItemCountingReader",
    "ItemProcessor",
    "ItemReader",
    "ItemStream",
    "ItemWriter",
    "IteratorItemReader",
    "ListItemReader",
    "ListItemWriter",
    "PassThroughItemProcessor",
    "RepeatStatus",
    "StepContribution",
    "Tasklet",
]
