"""
batch_engine.jobs -- Job registry and the job definitions shipped with the engine.
"""

from batch_engine.jobs.billing import BILLING_JOB_NAME, BILLING_STEP_NAME, billing_job
from batch_engine.jobs.registry import JobRegistry

__all__ = [
    "BILLING_JOB_NAME",
    "BILLING_STEP_NAME",
    "JobRegistry",
    "billing_job",
]
