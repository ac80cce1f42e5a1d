"""
Tests for batch exceptions.

Validates the exception hierarchy, error codes, structured attributes and
message formatting.
"""

import pytest

from batch_kernel.exceptions import (
    AlreadyRunningError,
    BatchConfigError,
    BatchKernelError,
    DuplicateInstanceError,
    ItemError,
    ItemProcessError,
    ItemReadError,
    ItemWriteError,
    JobExecutionNotFoundError,
    JobExecutionNotRunningError,
    JobInstanceCompleteError,
    JobNotRegisteredError,
    JobParametersValidationError,
    JobRestartNotAllowedError,
    LaunchError,
    OperatorError,
    RepositoryError,
    StartLimitExceededError,
    StepError,
    StepFailedError,
)


# =============================================================================
# Exception hierarchy tests
# =============================================================================


class TestExceptionHierarchy:
    @pytest.mark.parametrize("exc_class", [
        JobParametersValidationError,
        DuplicateInstanceError,
        AlreadyRunningError,
        JobNotRegisteredError,
    ])
    def test_launch_errors(self, exc_class):
        assert issubclass(exc_class, LaunchError)
        assert issubclass(exc_class, BatchKernelError)

    def test_instance_errors_are_duplicates(self):
        assert issubclass(JobInstanceCompleteError, DuplicateInstanceError)
        assert issubclass(JobRestartNotAllowedError, DuplicateInstanceError)

    @pytest.mark.parametrize("exc_class", [ItemReadError, ItemProcessError, ItemWriteError])
    def test_item_errors(self, exc_class):
        assert issubclass(exc_class, ItemError)

    def test_step_errors(self):
        assert issubclass(StepFailedError, StepError)
        assert issubclass(StartLimitExceededError, StepError)

    def test_not_found_is_repository_error(self):
        assert issubclass(JobExecutionNotFoundError, RepositoryError)

    def test_operator_and_config_errors(self):
        assert issubclass(JobExecutionNotRunningError, OperatorError)
        assert issubclass(BatchConfigError, BatchKernelError)

    def test_every_code_is_unique(self):
        classes = [
            BatchKernelError, LaunchError, JobParametersValidationError,
            DuplicateInstanceError, JobInstanceCompleteError,
            JobRestartNotAllowedError, AlreadyRunningError, JobNotRegisteredError,
            ItemError, ItemReadError, ItemProcessError, ItemWriteError,
            StepError, StepFailedError, StartLimitExceededError,
            RepositoryError, JobExecutionNotFoundError, OperatorError,
            JobExecutionNotRunningError, BatchConfigError,
        ]
        codes = [klass.code for klass in classes]
        assert len(codes) == len(set(codes))


# =============================================================================
# Exception construction tests
# =============================================================================


class TestJobParametersValidationError:
    def test_without_job(self):
        exc = JobParametersValidationError("missing run_date")
        assert exc.job_name is None
        assert exc.reason == "missing run_date"
        assert str(exc) == "Invalid job parameters: missing run_date"

    def test_with_job(self):
        exc = JobParametersValidationError("missing run_date", "billing")
        assert "billing" in str(exc)
        assert exc.code == "JOB_PARAMETERS_INVALID"


class TestAlreadyRunningError:
    def test_construction(self):
        exc = AlreadyRunningError("billing", "exec-1")
        assert exc.job_name == "billing"
        assert exc.running_execution_id == "exec-1"
        assert "exec-1" in str(exc)
        assert exc.code == "JOB_ALREADY_RUNNING"


class TestInstanceErrors:
    def test_complete(self):
        exc = JobInstanceCompleteError("billing", "a" * 64)
        assert exc.job_key == "a" * 64
        assert "already complete" in str(exc)
        assert "a" * 13 not in str(exc)

    def test_restart_not_allowed(self):
        exc = JobRestartNotAllowedError("billing", "b" * 64)
        assert "not restartable" in str(exc)
        assert exc.code == "JOB_RESTART_NOT_ALLOWED"


class TestJobNotRegisteredError:
    def test_lists_available(self):
        exc = JobNotRegisteredError("payroll", ("billing",))
        assert exc.available == ("billing",)
        assert "payroll" in str(exc)
        assert "billing" in str(exc)


class TestItemErrors:
    def test_wraps_cause(self):
        cause = ValueError("bad amount")
        exc = ItemProcessError({"id": 7}, cause)
        assert exc.item == {"id": 7}
        assert exc.cause is cause
        assert str(exc) == "process failed: ValueError: bad amount"

    def test_phase_per_class(self):
        assert ItemReadError(None, OSError("x")).phase == "read"
        assert ItemWriteError([1], OSError("x")).code == "ITEM_WRITE_FAILED"


class TestStepErrors:
    def test_step_failed(self):
        exc = StepFailedError("billing", object(), "ItemWriteError: boom")
        assert exc.step_name == "billing"
        assert str(exc) == "Step 'billing' failed: ItemWriteError: boom"

    def test_start_limit(self):
        exc = StartLimitExceededError("billing", 3)
        assert exc.start_limit == 3
        assert "3" in str(exc)


class TestRepositoryErrors:
    def test_repository_error(self):
        exc = RepositoryError("create_job_execution", "disk full")
        assert exc.operation == "create_job_execution"
        assert str(exc) == "Repository create_job_execution failed: disk full"

    def test_not_found(self):
        exc = JobExecutionNotFoundError("exec-9")
        assert exc.execution_id == "exec-9"
        assert exc.operation == "lookup"


class TestOperatorAndConfigErrors:
    def test_not_running(self):
        exc = JobExecutionNotRunningError("exec-1", "completed")
        assert exc.status == "completed"
        assert "completed" in str(exc)

    def test_config_error(self):
        exc = BatchConfigError("batch.yaml", "unknown keys ['x']")
        assert exc.source == "batch.yaml"
        assert str(exc).startswith("Invalid batch configuration in batch.yaml")
