"""
batch_engine -- Restartable chunk-oriented batch job execution.

Runs multi-step jobs (e.g. the billing run) to completion, records progress
durably after every committed chunk, and resumes a failed or stopped job
from its last checkpoint instead of from scratch.  Item-level failures are
classified into retry, skip or abort outcomes per step.

Architecture:
    batch_engine/ depends on batch_kernel/ (exceptions, logging, clock, db).
    Nothing in batch_kernel/ imports from batch_engine/ at module level.

Invariants:
    - At most one non-terminal JobExecution per JobInstance
    - A JobInstance with a COMPLETED execution is never run again
    - Counters and checkpoints are persisted only after the chunk commits
    - A COMPLETED step is skipped on restart unless explicitly allowed
    - Retry and skip budgets are scoped to one step execution
    - Clock injection (no datetime.now() calls outside SystemClock)
"""
