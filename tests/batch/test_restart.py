"""
Tests for restart semantics.

Validates:
- A crashed execution blocks relaunch until it is abandoned, after which a
  new execution resumes from the last committed checkpoint
- A failed execution resumes from its checkpoint on relaunch
- Completed steps are skipped on restart (zero reads)
- allow_start_if_complete, start_limit and optional steps
- A run with nothing left to do ends COMPLETED with exit code NOOP
"""

import pytest

from batch_kernel.exceptions import AlreadyRunningError, JobInstanceCompleteError

from batch_engine.domain import (
    BatchStatus,
    ExitCode,
    JobDefinition,
    JobParameters,
    SkipPolicy,
    StepDefinition,
)
from batch_engine.items import ItemCountingReader, ListItemReader, ListItemWriter
from batch_engine.jobs import JobRegistry
from batch_engine.repository import InMemoryJobRepository
from batch_engine.services import JobLauncher, JobOperator


# =============================================================================
# Test components
# =============================================================================


class Crash(BaseException):
    """Simulates the process dying mid-step; nothing catches it."""


class CrashingWriter(ListItemWriter):
    """Dies on the N-th write call while ``armed`` is set."""

    def __init__(self, crash_on_call: int, error: BaseException | None = None):
        super().__init__()
        self.crash_on_call = crash_on_call
        self.error = error or Crash("process killed")
        self.armed = True
        self._calls = 0

    def write(self, items):
        self._calls += 1
        if self.armed and self._calls == self.crash_on_call:
            raise self.error
        super().write(items)


class CountingReader(ListItemReader):
    def __init__(self, items, name="list_reader"):
        super().__init__(items, name=name)
        self.read_calls = 0

    def read(self):
        self.read_calls += 1
        return super().read()


class LineReader(ItemCountingReader):
    """Reads raw lines by position; a line equal to "bad" cannot be parsed."""

    def __init__(self, lines, name="lines"):
        super().__init__(name)
        self._lines = list(lines)
        self._index = 0

    def _do_open(self):
        self._index = 0

    def _do_read(self):
        if self._index >= len(self._lines):
            return None
        line = self._lines[self._index]
        self._index += 1
        if line == "bad":
            raise ValueError("malformed")
        return line


ITEMS = ["A", "B", "C", "D", "E"]
PARAMS = JobParameters({"run_date": "2024-01-31"})


@pytest.fixture
def repository(deterministic_clock):
    return InMemoryJobRepository(deterministic_clock)


@pytest.fixture
def launcher(repository, deterministic_clock):
    return JobLauncher(repository, clock=deterministic_clock)


@pytest.fixture
def operator(repository, launcher, deterministic_clock):
    return JobOperator(repository, JobRegistry(), launcher, deterministic_clock)


# =============================================================================
# Crash and abandon
# =============================================================================


class TestCrashRecovery:
    def test_crash_abandon_and_resume(self, repository, launcher, operator):
        writer = CrashingWriter(crash_on_call=2)
        job = JobDefinition(
            name="billing",
            steps=(
                StepDefinition(
                    name="billing",
                    reader=ListItemReader(ITEMS),
                    writer=writer,
                    chunk_size=2,
                ),
            ),
        )

        with pytest.raises(Crash):
            launcher.launch(job, PARAMS)

        (crashed,) = repository.find_running_job_executions("billing")
        assert crashed.status == BatchStatus.STARTED
        (step_execution,) = repository.get_step_executions(crashed)
        assert step_execution.status == BatchStatus.STARTED
        assert step_execution.commit_count == 1
        assert step_execution.execution_context == {"list_reader.read.count": 2}

        with pytest.raises(AlreadyRunningError):
            launcher.launch(job, PARAMS)

        abandoned = operator.abandon(crashed.execution_id)
        assert abandoned.status == BatchStatus.ABANDONED

        writer.armed = False
        execution = launcher.launch(job, PARAMS)

        assert execution.status == BatchStatus.COMPLETED
        assert execution.run_number == 2
        assert writer.chunks == [["A", "B"], ["C", "D"], ["E"]]
        assert writer.written == ITEMS
        (resumed,) = repository.get_step_executions(execution)
        assert resumed.attempt == 2
        assert resumed.read_count == 3
        assert resumed.commit_count == 2
        assert resumed.execution_context == {"list_reader.read.count": 5}

    def test_resume_after_skipped_read(self, repository, launcher, operator):
        writer = CrashingWriter(crash_on_call=2)
        job = JobDefinition(
            name="billing",
            steps=(
                StepDefinition(
                    name="billing",
                    reader=LineReader(["a", "bad", "b", "c", "d"]),
                    writer=writer,
                    chunk_size=2,
                    skip_policy=SkipPolicy.limit(5, ValueError),
                ),
            ),
        )

        with pytest.raises(Crash):
            launcher.launch(job, PARAMS)

        (crashed,) = repository.find_running_job_executions("billing")
        (step_execution,) = repository.get_step_executions(crashed)
        assert step_execution.read_skip_count == 1
        assert step_execution.execution_context == {"lines.read.count": 3}

        operator.abandon(crashed.execution_id)
        writer.armed = False
        execution = launcher.launch(job, PARAMS)

        assert execution.status == BatchStatus.COMPLETED
        assert writer.chunks == [["a", "b"], ["c", "d"]]
        (resumed,) = repository.get_step_executions(execution)
        assert resumed.read_count == 2
        assert resumed.read_skip_count == 0
        assert resumed.execution_context == {"lines.read.count": 5}

    def test_completed_instance_cannot_relaunch(self, launcher):
        job = JobDefinition(
            name="billing",
            steps=(
                StepDefinition(
                    name="billing", reader=ListItemReader(ITEMS), writer=ListItemWriter(),
                ),
            ),
        )
        assert launcher.launch(job, PARAMS).status == BatchStatus.COMPLETED
        with pytest.raises(JobInstanceCompleteError):
            launcher.launch(job, PARAMS)

    def test_noop_when_nothing_left(self, repository, launcher, operator):
        class CrashAfterStep:
            armed = True

            def after_step(self, step_execution):
                if self.armed and step_execution.status == BatchStatus.COMPLETED:
                    raise Crash("died after step")

        listener = CrashAfterStep()
        job = JobDefinition(
            name="noop",
            steps=(
                StepDefinition(
                    name="only",
                    reader=ListItemReader(ITEMS),
                    writer=ListItemWriter(),
                    listeners=(listener,),
                ),
            ),
        )
        with pytest.raises(Crash):
            launcher.launch(job, PARAMS)

        (crashed,) = repository.find_running_job_executions("noop")
        operator.abandon(crashed.execution_id)
        listener.armed = False

        execution = launcher.launch(job, PARAMS)
        assert execution.status == BatchStatus.COMPLETED
        assert execution.exit_code == ExitCode.NOOP
        assert repository.get_step_executions(execution) == ()


# =============================================================================
# Failed executions
# =============================================================================


class TestFailedRestart:
    def test_failed_execution_resumes_from_checkpoint(self, repository, launcher):
        writer = CrashingWriter(crash_on_call=2, error=RuntimeError("db down"))
        job = JobDefinition(
            name="billing",
            steps=(
                StepDefinition(
                    name="billing",
                    reader=ListItemReader(ITEMS),
                    writer=writer,
                    chunk_size=2,
                ),
            ),
        )

        first = launcher.launch(job, PARAMS)
        assert first.status == BatchStatus.FAILED
        assert "db down" in first.exit_description

        writer.armed = False
        second = launcher.launch(job, PARAMS)

        assert second.status == BatchStatus.COMPLETED
        assert second.job_instance_id == first.job_instance_id
        assert writer.written == ITEMS
        (step_execution,) = repository.get_step_executions(second)
        assert step_execution.read_count == 3

    def test_completed_step_skipped_on_restart(self, repository, launcher):
        first_reader = CountingReader(["x", "y"], name="first")
        second_writer = CrashingWriter(crash_on_call=1, error=RuntimeError("boom"))
        job = JobDefinition(
            name="two-steps",
            steps=(
                StepDefinition(name="load", reader=first_reader, writer=ListItemWriter()),
                StepDefinition(
                    name="post", reader=ListItemReader(ITEMS), writer=second_writer,
                ),
            ),
        )

        first = launcher.launch(job, PARAMS)
        assert first.status == BatchStatus.FAILED
        reads_after_first_run = first_reader.read_calls

        second_writer.armed = False
        second = launcher.launch(job, PARAMS)

        assert second.status == BatchStatus.COMPLETED
        assert first_reader.read_calls == reads_after_first_run
        steps = repository.get_step_executions(second)
        assert [s.step_name for s in steps] == ["post"]

    def test_allow_start_if_complete_reruns_step(self, repository, launcher):
        always_reader = CountingReader(["x"], name="always")
        failing_writer = CrashingWriter(crash_on_call=1, error=RuntimeError("boom"))
        job = JobDefinition(
            name="rerun",
            steps=(
                StepDefinition(
                    name="prepare",
                    reader=always_reader,
                    writer=ListItemWriter(),
                    allow_start_if_complete=True,
                ),
                StepDefinition(
                    name="post", reader=ListItemReader(ITEMS), writer=failing_writer,
                ),
            ),
        )
        launcher.launch(job, PARAMS)
        reads = always_reader.read_calls

        failing_writer.armed = False
        second = launcher.launch(job, PARAMS)

        assert second.status == BatchStatus.COMPLETED
        assert always_reader.read_calls > reads
        prepare = [s for s in repository.get_step_executions(second) if s.step_name == "prepare"]
        assert prepare[0].attempt == 2
        assert prepare[0].read_count == 1

    def test_start_limit_exceeded_fails_job(self, repository, launcher):
        writer = CrashingWriter(crash_on_call=1, error=RuntimeError("boom"))
        job = JobDefinition(
            name="limited",
            steps=(
                StepDefinition(
                    name="post",
                    reader=ListItemReader(ITEMS),
                    writer=writer,
                    start_limit=1,
                ),
            ),
        )
        assert launcher.launch(job, PARAMS).status == BatchStatus.FAILED

        writer.armed = False
        second = launcher.launch(job, PARAMS)
        assert second.status == BatchStatus.FAILED
        assert "StartLimitExceededError" in second.exit_description
        assert repository.get_step_executions(second) == ()


# =============================================================================
# Optional steps
# =============================================================================


class TestOptionalStep:
    def test_optional_failure_does_not_fail_job(self, repository, launcher):
        final_writer = ListItemWriter()
        job = JobDefinition(
            name="optional",
            steps=(
                StepDefinition(
                    name="enrich",
                    reader=ListItemReader(ITEMS),
                    writer=CrashingWriter(crash_on_call=1, error=RuntimeError("boom")),
                    optional=True,
                ),
                StepDefinition(
                    name="post", reader=ListItemReader(ITEMS), writer=final_writer,
                ),
            ),
        )
        execution = launcher.launch(job, PARAMS)

        assert execution.status == BatchStatus.COMPLETED
        assert execution.exit_code == ExitCode.COMPLETED
        assert final_writer.written == ITEMS
        statuses = {s.step_name: s.status for s in repository.get_step_executions(execution)}
        assert statuses == {"enrich": BatchStatus.FAILED, "post": BatchStatus.COMPLETED}

    def test_required_failure_stops_job_before_later_steps(self, repository, launcher):
        later_reader = CountingReader(ITEMS)
        job = JobDefinition(
            name="required",
            steps=(
                StepDefinition(
                    name="first",
                    reader=ListItemReader(ITEMS),
                    writer=CrashingWriter(crash_on_call=1, error=RuntimeError("boom")),
                ),
                StepDefinition(name="second", reader=later_reader, writer=ListItemWriter()),
            ),
        )
        execution = launcher.launch(job, PARAMS)

        assert execution.status == BatchStatus.FAILED
        assert execution.exit_description == (
            "Step 'first' failed: ItemWriteError: write failed: RuntimeError: boom"
        )
        assert later_reader.read_calls == 0
