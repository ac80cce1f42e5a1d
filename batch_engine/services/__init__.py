"""
batch_engine.services -- Execution services.

ChunkOrchestrator -> StepExecutor -> JobExecutor -> JobLauncher -> JobOperator,
plus the chunk transaction managers.
"""

from batch_engine.services.chunk import ChunkOrchestrator
from batch_engine.services.job_executor import JobExecutor
from batch_engine.services.launcher import JobLauncher, LaunchMode
from batch_engine.services.operator import JobOperator
from batch_engine.services.step_executor import StepExecutor
from batch_engine.services.transactions import (
    ResourcelessTransactionManager,
    SessionTransactionManager,
    TransactionManager,
)

__all__ = [
    "ChunkOrchestrator",
    "JobExecutor",
    "JobLauncher",
    "JobOperator",
    "LaunchMode",
    "ResourcelessTransactionManager",
    "SessionTransactionManager",
    "StepExecutor",
    "TransactionManager",
]
