"""
Billing job definition.

The billing computation itself is supplied by the caller: ``billing_job``
only wires the reader, processor and writer into a single chunk-oriented,
restartable step whose chunking and retry/skip behaviour come from settings.
"""

from __future__ import annotations

from typing import Any

from batch_engine.config import BatchSettings
from batch_engine.domain.definitions import JobDefinition, JobParametersValidator

BILLING_JOB_NAME = "billing"
BILLING_STEP_NAME = "billing"


def billing_job(
    reader: Any,
    processor: Any,
    writer: Any,
    settings: BatchSettings | None = None,
    validator: JobParametersValidator | None = None,
    listeners: tuple[Any, ...] = (),
) -> JobDefinition:
    """Build the billing JobDefinition.

    Args:
        reader: ItemReader over the records to bill.
        processor: ItemProcessor computing the billing result (or None).
        writer: ItemWriter persisting billing results.
        settings: Batch settings; the ``billing`` entry under ``steps`` sets
            chunk size and retry/skip limits.
        validator: Optional JobParametersValidator.
        listeners: Step and job listeners.
    """
    step_settings = (settings or BatchSettings()).step(BILLING_STEP_NAME)
    step = step_settings.build_step(
        BILLING_STEP_NAME,
        reader=reader,
        processor=processor,
        writer=writer,
        listeners=tuple(listeners),
    )
    return JobDefinition(
        name=BILLING_JOB_NAME,
        steps=(step,),
        restartable=True,
        validator=validator,
        listeners=tuple(listeners),
    )
