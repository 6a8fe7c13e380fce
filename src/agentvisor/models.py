"""Pydantic models for Agentvisor configuration and job state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Lifecycle status of a job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"  # Interactive agents only
    AWAITING_INTERACTION = "awaiting_interaction"  # Interactive agents only

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Completed and Failed have no outgoing transitions.
VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.RUNNING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.PENDING,
        JobStatus.PAUSED,
        JobStatus.AWAITING_INTERACTION,
    }),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.AWAITING_INTERACTION: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether a job may move from one status to another."""
    return target in VALID_TRANSITIONS.get(current, frozenset())


class FailureKind(str, Enum):
    """Why a job failed (or was requeued)."""

    LAUNCH_FAILURE = "launch_failure"
    UNHEALTHY = "unhealthy"
    RESTART_EXHAUSTED = "restart_exhausted"
    BUDGET_EXCEEDED = "budget_exceeded"
    ORPHANED = "orphaned"
    EXIT_CODE = "exit_code"
    OUTPUT_PATTERN = "output_pattern"
    TIMEOUT = "timeout"
    DEPENDENCY_FAILED = "dependency_failed"


class Job(BaseModel):
    """A unit of work delegated to one agent CLI invocation."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    name: str = ""
    status: JobStatus = JobStatus.PENDING

    # Command
    executable: str
    arguments: str = ""
    executable_path: str | None = None  # Explicit path, overrides PATH lookup
    working_directory: str | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    agent_family: str | None = None  # Selects output noise patterns
    model: str | None = None

    # Scheduling
    priority: int = 0  # Higher runs first
    created_at: datetime = Field(default_factory=utcnow)
    depends_on_job_id: str | None = None
    parent_job_id: str | None = None

    # Resource ceilings
    max_tokens: int | None = Field(default=None, ge=0)
    max_cost_usd: float | None = Field(default=None, ge=0)
    max_execution_minutes: float | None = Field(default=None, ge=0)
    stall_timeout_seconds: float | None = Field(default=None, gt=0)
    max_restarts: int = Field(default=3, ge=0)

    # Output expectations
    success_patterns: list[str] = Field(default_factory=list)
    failure_patterns: list[str] = Field(default_factory=list)

    # Worker / recovery bookkeeping
    worker_instance_id: str | None = None
    process_id: int | None = None
    started_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)

    # Results
    completed_at: datetime | None = None
    execution_duration_seconds: float | None = None
    exit_code: int | None = None
    output: str | None = None
    error_output: str | None = None
    error_message: str | None = None
    failure_kind: FailureKind | None = None
    session_summary: str | None = None
    success_pattern_matches: list[str] = Field(default_factory=list)
    failure_pattern_matches: list[str] = Field(default_factory=list)
    model_used: str | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    @property
    def display_name(self) -> str:
        return self.name or self.id


class JobResult(BaseModel):
    """Outcome of one job execution, written to the job store."""

    success: bool
    exit_code: int | None = None
    duration_seconds: float = 0.0
    output: str = ""
    error_output: str = ""
    session_summary: str = ""
    success_pattern_matches: list[str] = Field(default_factory=list)
    failure_pattern_matches: list[str] = Field(default_factory=list)
    model_used: str | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0


class ProcessStartOptions(BaseModel):
    """How to launch one supervised process."""

    executable: str
    arguments: str = ""
    executable_path: str | None = None
    working_directory: str | None = None  # Defaults to the current directory
    environment: dict[str, str] = Field(default_factory=dict)
    max_restarts: int = Field(default=3, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    stall_timeout_seconds: float | None = Field(default=None, gt=0)  # Overrides the supervisor default
    agent_family: str | None = None
    clean_output: bool = True

    @classmethod
    def from_job(cls, job: Job) -> ProcessStartOptions:
        """Build launch options from a job record."""
        return cls(
            executable=job.executable,
            arguments=job.arguments,
            executable_path=job.executable_path,
            working_directory=job.working_directory,
            environment=dict(job.environment),
            max_restarts=job.max_restarts,
            stall_timeout_seconds=job.stall_timeout_seconds,
            agent_family=job.agent_family,
        )


class SupervisorConfig(BaseModel):
    """Process supervisor settings."""

    health_check_interval: float = Field(default=10.0, gt=0)  # seconds
    max_memory_mb: float = Field(default=2048.0, gt=0)
    stall_threshold_seconds: float = Field(default=300.0, gt=0)
    restart_grace_seconds: float = Field(default=5.0, ge=0)
    restart_cooldown_seconds: float = Field(default=2.0, ge=0)
    drain_timeout_seconds: float = Field(default=5.0, ge=0)
    stop_grace_seconds: float = Field(default=10.0, ge=0)


class CoordinatorConfig(BaseModel):
    """Job coordinator settings."""

    max_concurrent_jobs: int = Field(default=4, ge=1)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=15.0, gt=0)
    default_stall_timeout_seconds: float = Field(default=300.0, gt=0)
    fail_blocked_dependents: bool = True
    worker_instance_id: str | None = None


class DaemonConfig(BaseModel):
    """Daemon process settings."""

    log_level: str = "INFO"
    log_file: str | None = None
    log_rotation: str = "10 MB"
    log_retention: int = 5
    db_path: str | None = None


class AgentvisorConfig(BaseModel):
    """Main Agentvisor configuration."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
