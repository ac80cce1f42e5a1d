"""
Tests for JobLauncher.

Validates:
- Synchronous launch returns the terminal execution
- Asynchronous launch returns immediately; wait() blocks until done
- Concurrent launch of the same instance is refused with AlreadyRunningError
- Parameter validation, non-restartable jobs and completed instances
- Graceful stop between chunks and restart from the checkpoint
- Structured log records carry the job and step context
"""

import threading

import pytest

from batch_kernel.exceptions import (
    AlreadyRunningError,
    JobInstanceCompleteError,
    JobParametersValidationError,
    JobRestartNotAllowedError,
)

from batch_engine.config import LaunchMode
from batch_engine.domain import (
    BatchStatus,
    DefaultJobParametersValidator,
    ExitCode,
    JobDefinition,
    JobParameters,
    StepDefinition,
)
from batch_engine.items import FunctionItemProcessor, ListItemReader, ListItemWriter
from batch_engine.jobs import JobRegistry
from batch_engine.services import JobLauncher, JobOperator


ITEMS = ["A", "B", "C", "D", "E"]
PARAMS = JobParameters({"run_date": "2024-01-31"})


class BlockingWriter(ListItemWriter):
    """Blocks in write() until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def write(self, items):
        self.entered.set()
        if not self.release.wait(timeout=10):
            raise RuntimeError("writer never released")
        super().write(items)


class FailOnceWriter(ListItemWriter):
    def __init__(self):
        super().__init__()
        self.failed = False

    def write(self, items):
        if not self.failed:
            self.failed = True
            raise RuntimeError("first write fails")
        super().write(items)


def _job(writer, name="billing", restartable=True, validator=None, processor=None):
    return JobDefinition(
        name=name,
        steps=(
            StepDefinition(
                name="billing",
                reader=ListItemReader(ITEMS),
                processor=processor,
                writer=writer,
                chunk_size=2,
            ),
        ),
        restartable=restartable,
        validator=validator,
    )


# =============================================================================
# Launch modes
# =============================================================================


class TestSyncLaunch:
    def test_returns_terminal_execution(self, memory_repository, deterministic_clock):
        launcher = JobLauncher(memory_repository, clock=deterministic_clock)
        execution = launcher.launch(_job(ListItemWriter()), PARAMS)

        assert execution.status == BatchStatus.COMPLETED
        assert execution.exit_code == ExitCode.COMPLETED
        assert execution.run_number == 1
        assert execution.parameters == PARAMS
        assert execution.start_time == deterministic_clock.now()
        assert launcher.mode is LaunchMode.SYNC

    def test_same_parameters_reuse_instance(self, memory_repository):
        launcher = JobLauncher(memory_repository)
        first = launcher.launch(_job(FailOnceWriter()), PARAMS)
        assert first.status == BatchStatus.FAILED

        job = _job(ListItemWriter())
        second = launcher.launch(job, PARAMS)
        assert second.job_instance_id == first.job_instance_id
        assert second.run_number == 2

    def test_different_parameters_new_instance(self, memory_repository):
        launcher = JobLauncher(memory_repository)
        job = _job(ListItemWriter())
        first = launcher.launch(job, PARAMS)
        second = launcher.launch(job, JobParameters({"run_date": "2024-02-29"}))
        assert first.job_instance_id != second.job_instance_id
        assert second.status == BatchStatus.COMPLETED

    def test_non_identifying_parameter_does_not_split_instance(self, memory_repository):
        launcher = JobLauncher(memory_repository)
        first = launcher.launch(
            _job(FailOnceWriter()),
            JobParameters({"run_date": "2024-01-31", "attempt": 1}, non_identifying=("attempt",)),
        )
        second = launcher.launch(
            _job(ListItemWriter()),
            JobParameters({"run_date": "2024-01-31", "attempt": 2}, non_identifying=("attempt",)),
        )
        assert second.job_instance_id == first.job_instance_id
        assert second.parameters["attempt"] == 2

    def test_sql_repository(self, sql_repository):
        writer = ListItemWriter()
        launcher = JobLauncher(sql_repository)
        execution = launcher.launch(_job(writer), PARAMS)

        assert execution.status == BatchStatus.COMPLETED
        assert writer.chunks == [["A", "B"], ["C", "D"], ["E"]]
        (step_execution,) = sql_repository.get_step_executions(execution)
        assert step_execution.commit_count == 3
        assert step_execution.read_count == 5
        assert step_execution.write_count == 5


class TestAsyncLaunch:
    def test_launch_returns_before_completion(self, memory_repository):
        writer = BlockingWriter()
        launcher = JobLauncher(memory_repository, mode=LaunchMode.ASYNC)
        try:
            execution = launcher.launch(_job(writer), PARAMS)
            assert execution.status == BatchStatus.STARTING
            assert writer.entered.wait(timeout=10)

            writer.release.set()
            finished = launcher.wait(execution, timeout=10)
            assert finished.status == BatchStatus.COMPLETED
            assert writer.written == ITEMS
        finally:
            writer.release.set()
            launcher.shutdown()

    def test_wait_timeout(self, memory_repository):
        writer = BlockingWriter()
        launcher = JobLauncher(memory_repository, mode="async")
        try:
            execution = launcher.launch(_job(writer), PARAMS)
            assert writer.entered.wait(timeout=10)
            with pytest.raises(TimeoutError):
                launcher.wait(execution.execution_id, timeout=0.05)
        finally:
            writer.release.set()
            launcher.shutdown()

    def test_wait_on_unknown_future_returns_stored_state(self, memory_repository):
        sync = JobLauncher(memory_repository)
        execution = sync.launch(_job(ListItemWriter()), PARAMS)
        async_launcher = JobLauncher(memory_repository, mode=LaunchMode.ASYNC)
        assert async_launcher.wait(execution).status == BatchStatus.COMPLETED


class TestConcurrentLaunch:
    def test_second_launch_refused_while_running(self, memory_repository):
        writer = BlockingWriter()
        launcher = JobLauncher(memory_repository, mode=LaunchMode.ASYNC)
        job = _job(writer)
        try:
            running = launcher.launch(job, PARAMS)
            assert writer.entered.wait(timeout=10)

            with pytest.raises(AlreadyRunningError) as exc_info:
                launcher.launch(job, PARAMS)
            assert exc_info.value.running_execution_id == str(running.execution_id)

            writer.release.set()
            assert launcher.wait(running, timeout=10).status == BatchStatus.COMPLETED
            with pytest.raises(JobInstanceCompleteError):
                launcher.launch(job, PARAMS)
        finally:
            writer.release.set()
            launcher.shutdown()

    def test_sql_second_launch_refused_while_running(self, sql_repository):
        writer = BlockingWriter()
        launcher = JobLauncher(sql_repository, mode=LaunchMode.ASYNC)
        job = _job(writer)
        try:
            running = launcher.launch(job, PARAMS)
            assert writer.entered.wait(timeout=10)
            with pytest.raises(AlreadyRunningError):
                launcher.launch(job, PARAMS)
            writer.release.set()
            assert launcher.wait(running, timeout=10).status == BatchStatus.COMPLETED
        finally:
            writer.release.set()
            launcher.shutdown()


# =============================================================================
# Launch-time refusals
# =============================================================================


class TestLaunchRefusals:
    def test_invalid_parameters_rejected_before_instance(self, memory_repository):
        launcher = JobLauncher(memory_repository)
        job = _job(
            ListItemWriter(),
            validator=DefaultJobParametersValidator(required_keys=("run_date",)),
        )
        with pytest.raises(JobParametersValidationError) as exc_info:
            launcher.launch(job, JobParameters({"region": "eu"}))

        assert exc_info.value.job_name == "billing"
        assert memory_repository.get_job_names() == ()

    def test_callable_validator(self, memory_repository):
        def validate(parameters):
            if parameters.get("run_date", "") < "2000":
                raise JobParametersValidationError("run_date too early")

        launcher = JobLauncher(memory_repository)
        job = _job(ListItemWriter(), validator=validate)
        with pytest.raises(JobParametersValidationError):
            launcher.launch(job, JobParameters({"run_date": "1999-12-31"}))
        assert launcher.launch(job, PARAMS).status == BatchStatus.COMPLETED

    def test_non_restartable_job_cannot_rerun(self, memory_repository):
        launcher = JobLauncher(memory_repository)
        first = launcher.launch(_job(FailOnceWriter(), restartable=False), PARAMS)
        assert first.status == BatchStatus.FAILED

        with pytest.raises(JobRestartNotAllowedError):
            launcher.launch(_job(ListItemWriter(), restartable=False), PARAMS)

    def test_non_restartable_completed_instance(self, memory_repository):
        launcher = JobLauncher(memory_repository)
        job = _job(ListItemWriter(), restartable=False)
        launcher.launch(job, PARAMS)
        with pytest.raises(JobInstanceCompleteError):
            launcher.launch(job, PARAMS)


# =============================================================================
# Stop and restart
# =============================================================================


class TestStopAndRestart:
    def test_stop_between_chunks_then_restart(self, memory_repository):
        writer = ListItemWriter()
        holder = {}

        def stop_on_first_item(item):
            if item == "A":
                holder["operator"].stop(
                    memory_repository.find_running_job_executions("billing")[0].execution_id
                )
            return item

        job = _job(writer, processor=FunctionItemProcessor(stop_on_first_item))
        launcher = JobLauncher(memory_repository)
        operator = JobOperator(memory_repository, JobRegistry([job]), launcher)
        holder["operator"] = operator

        stopped = launcher.launch(job, PARAMS)

        assert stopped.status == BatchStatus.STOPPED
        assert stopped.exit_code == ExitCode.STOPPED
        assert writer.chunks == [["A", "B"]]
        (step_execution,) = memory_repository.get_step_executions(stopped)
        assert step_execution.status == BatchStatus.STOPPED
        assert step_execution.commit_count == 1

        restarted = operator.restart(stopped.execution_id)

        assert restarted.status == BatchStatus.COMPLETED
        assert restarted.run_number == 2
        assert writer.chunks == [["A", "B"], ["C", "D"], ["E"]]

    def test_stop_before_next_step(self, memory_repository):
        def request_stop(contribution, context):
            execution = memory_repository.find_running_job_executions("two")[0]
            memory_repository.request_stop(execution.execution_id)

        second_writer = ListItemWriter()
        job = JobDefinition(
            name="two",
            steps=(
                StepDefinition(name="first", tasklet=request_stop),
                StepDefinition(
                    name="second", reader=ListItemReader(ITEMS), writer=second_writer,
                ),
            ),
        )
        execution = JobLauncher(memory_repository).launch(job, PARAMS)

        assert execution.status == BatchStatus.STOPPED
        assert execution.exit_description == "Stop requested"
        assert second_writer.chunks == []
        steps = memory_repository.get_step_executions(execution)
        assert [(s.step_name, s.status) for s in steps] == [
            ("first", BatchStatus.COMPLETED),
        ]


# =============================================================================
# Listeners and logging
# =============================================================================


class RecordingJobListener:
    def __init__(self):
        self.events = []

    def before_job(self, execution):
        self.events.append(("before", execution.status))

    def after_job(self, execution):
        self.events.append(("after", execution.status))


class TestJobListeners:
    def test_before_and_after_job(self, memory_repository):
        listener = RecordingJobListener()
        job = JobDefinition(
            name="listened",
            steps=_job(ListItemWriter()).steps,
            listeners=(listener,),
        )
        JobLauncher(memory_repository).launch(job, PARAMS)
        assert listener.events == [
            ("before", BatchStatus.STARTED),
            ("after", BatchStatus.COMPLETED),
        ]

    def test_after_job_error_does_not_change_outcome(self, memory_repository):
        class Broken:
            def after_job(self, execution):
                raise RuntimeError("listener broke")

        job = JobDefinition(
            name="listened", steps=_job(ListItemWriter()).steps, listeners=(Broken(),),
        )
        execution = JobLauncher(memory_repository).launch(job, PARAMS)
        assert execution.status == BatchStatus.COMPLETED

    def test_before_job_error_fails_execution(self, memory_repository):
        class Broken:
            def before_job(self, execution):
                raise RuntimeError("not today")

        job = JobDefinition(
            name="listened", steps=_job(ListItemWriter()).steps, listeners=(Broken(),),
        )
        execution = JobLauncher(memory_repository).launch(job, PARAMS)
        assert execution.status == BatchStatus.FAILED
        assert execution.exit_description == "RuntimeError: not today"


class TestLaunchLogging:
    def test_records_carry_context(self, memory_repository, captured_logs):
        JobLauncher(memory_repository).launch(_job(ListItemWriter()), PARAMS)
        records = captured_logs()
        messages = [r["message"] for r in records]

        assert "job_launched" in messages
        assert messages.count("chunk_committed") == 3
        assert "job_finished" in messages

        commit = next(r for r in records if r["message"] == "chunk_committed")
        assert commit["job_name"] == "billing"
        assert commit["step_name"] == "billing"
        assert "job_execution_id" in commit
        assert "correlation_id" in commit

        finished = next(r for r in records if r["message"] == "job_finished")
        assert finished["status"] == "completed"
        assert finished["level"] == "INFO"
