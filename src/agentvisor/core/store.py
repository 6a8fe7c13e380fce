"""Job store contract used by the coordinator.

The coordinator only depends on this interface; ``agentvisor.db.Database``
is the SQLite implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from agentvisor.models import FailureKind, Job, JobResult, JobStatus


class JobStoreError(ValueError):
    """A job cannot be stored as given."""

    pass


class JobStore(ABC):
    """Abstract durable record of job state.

    State-changing methods return False instead of raising when the job is
    missing, the transition is not allowed, or ``worker_instance_id`` no
    longer owns the job.
    """

    @abstractmethod
    def add_job(self, job: Job) -> Job:
        """Store a new job.

        Raises:
            JobStoreError: Duplicate id, or unknown/self dependency.
        """
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Job | None:
        pass

    @abstractmethod
    def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        pass

    @abstractmethod
    def get_children(self, parent_job_id: str) -> list[Job]:
        pass

    @abstractmethod
    def get_eligible_pending_jobs(self, limit: int | None = None) -> list[Job]:
        """Pending jobs whose dependency (if any) is Completed.

        Ordered by priority descending, then creation time ascending, then id.
        """
        pass

    @abstractmethod
    def get_running_jobs(self) -> list[Job]:
        pass

    @abstractmethod
    def get_dependency_failed_jobs(self) -> list[Job]:
        """Pending jobs whose dependency has Failed."""
        pass

    @abstractmethod
    def mark_running(self, job_id: str, worker_instance_id: str, process_id: int | None) -> bool:
        """Claim a Pending job, or refresh the process id of a job this worker owns."""
        pass

    @abstractmethod
    def heartbeat(self, job_id: str, timestamp: datetime, worker_instance_id: str | None = None) -> bool:
        pass

    @abstractmethod
    def update_usage(self, job_id: str, tokens_used: int, cost_usd: float) -> bool:
        pass

    @abstractmethod
    def mark_completed(self, job_id: str, result: JobResult, worker_instance_id: str | None = None) -> bool:
        pass

    @abstractmethod
    def mark_failed(
        self,
        job_id: str,
        reason: str,
        kind: FailureKind | None = None,
        result: JobResult | None = None,
        worker_instance_id: str | None = None,
    ) -> bool:
        pass

    @abstractmethod
    def requeue(
        self,
        job_id: str,
        reason: str | None = None,
        kind: FailureKind | None = None,
        count_retry: bool = True,
        worker_instance_id: str | None = None,
    ) -> bool:
        """Return a Running job to Pending, clearing worker/process fields.

        Increments the retry count unless ``count_retry`` is False.
        """
        pass
