"""
JobRegistry -- job definitions keyed by job name.

Contract:
    ``register()`` adds a JobDefinition; raises ValueError on duplicate names.
    ``get()`` retrieves by name; raises JobNotRegisteredError if missing.
    ``list_jobs()`` returns all registered names, sorted.
"""

from __future__ import annotations

from collections.abc import Iterable

from batch_kernel.exceptions import JobNotRegisteredError

from batch_engine.domain.definitions import JobDefinition


class JobRegistry:
    """Registry mapping job names to JobDefinitions."""

    def __init__(self, jobs: Iterable[JobDefinition] = ()) -> None:
        self._jobs: dict[str, JobDefinition] = {}
        for job in jobs:
            self.register(job)

    def register(self, job: JobDefinition) -> None:
        """Register a job definition.

        Raises:
            ValueError: If a job with the same name is already registered.
        """
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' is already registered")
        self._jobs[job.name] = job

    def get(self, job_name: str) -> JobDefinition:
        try:
            return self._jobs[job_name]
        except KeyError:
            raise JobNotRegisteredError(job_name, self.list_jobs()) from None

    def list_jobs(self) -> tuple[str, ...]:
        return tuple(sorted(self._jobs))

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_name: str) -> bool:
        return job_name in self._jobs
