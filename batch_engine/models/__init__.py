"""
batch_engine.models -- ORM models for batch execution metadata.

Architecture: batch_engine/models. Imports from batch_kernel.db.base only.
"""

from batch_engine.models.batch import (
    JobExecutionModel,
    JobInstanceModel,
    StepExecutionModel,
)

__all__ = [
    "JobExecutionModel",
    "JobInstanceModel",
    "StepExecutionModel",
]
