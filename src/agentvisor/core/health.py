"""Health checks for supervised agent processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Callable

import psutil
from loguru import logger

from agentvisor.core.platform import read_tree_memory_mb
from agentvisor.models import utcnow

if TYPE_CHECKING:
    from agentvisor.core.supervisor import SupervisedProcess


class HealthIssue(str, Enum):
    """Kind of unhealthy verdict."""

    NOT_FOUND = "not_found"
    EXITED = "exited"
    MEMORY = "memory"
    STALLED = "stalled"


@dataclass
class ProcessHealthStatus:
    """Snapshot produced by one health evaluation."""

    job_id: str
    healthy: bool
    reason: str = ""
    issue: HealthIssue | None = None
    uptime_seconds: float = 0.0
    memory_mb: float | None = None
    seconds_since_output: float | None = None
    restart_count: int = 0
    checked_at: datetime = field(default_factory=utcnow)

    @classmethod
    def not_found(cls, job_id: str) -> ProcessHealthStatus:
        return cls(job_id=job_id, healthy=False, reason="Process not found", issue=HealthIssue.NOT_FOUND)

    def __bool__(self) -> bool:
        return self.healthy

    def __repr__(self) -> str:
        status = "healthy" if self.healthy else "unhealthy"
        return f"ProcessHealthStatus({self.job_id!r}, {status}, {self.reason!r})"


def _format_seconds(seconds: float) -> str:
    if seconds >= 60:
        return f"{seconds / 60:.1f}m"
    return f"{seconds:.0f}s"


class HealthMonitor:
    """Evaluates memory, stall and exit state of a supervised process.

    The monitor only produces verdicts. Acting on them (restart, stop) is
    left to whoever subscribes to the supervisor's events.
    """

    def __init__(
        self,
        max_memory_mb: float = 2048.0,
        stall_threshold_seconds: float = 300.0,
        memory_reader: Callable[[int], float] | None = None,
    ):
        """Initialize the health monitor.

        Args:
            max_memory_mb: Resident memory ceiling for a process tree.
            stall_threshold_seconds: Default silence allowed before a
                process counts as stalled.
            memory_reader: Returns resident MB for a PID (psutil by default).
        """
        self.max_memory_mb = max_memory_mb
        self.stall_threshold_seconds = stall_threshold_seconds
        self._read_memory = memory_reader or read_tree_memory_mb

    def stall_threshold_for(self, process: SupervisedProcess) -> float:
        """Per-process stall threshold, falling back to the monitor default."""
        return process.options.stall_timeout_seconds or self.stall_threshold_seconds

    def read_memory_mb(self, pid: int) -> float | None:
        """Read resident memory; None when it is transiently unavailable."""
        try:
            return self._read_memory(pid)
        except (psutil.Error, OSError) as e:
            logger.debug(f"Memory read failed for PID {pid}: {e}")
            return None

    def evaluate(self, process: SupervisedProcess, now: datetime | None = None) -> ProcessHealthStatus:
        """Evaluate the health of one supervised process.

        Checks, in order: exit, memory ceiling, output stall.
        """
        now = now or utcnow()
        status = ProcessHealthStatus(
            job_id=process.job_id,
            healthy=True,
            uptime_seconds=(now - process.start_time).total_seconds(),
            restart_count=process.restart_count,
            checked_at=now,
        )
        if process.last_output_at is not None:
            status.seconds_since_output = (now - process.last_output_at).total_seconds()

        if process.process is None or process.has_exited:
            status.healthy = False
            status.issue = HealthIssue.EXITED
            status.reason = "Process has exited"
            return status

        memory = self.read_memory_mb(process.pid)
        status.memory_mb = memory
        if memory is not None and memory > self.max_memory_mb:
            status.healthy = False
            status.issue = HealthIssue.MEMORY
            status.reason = f"Memory usage ({memory:.0f} MB) exceeds limit ({self.max_memory_mb:.0f} MB)"
            return status

        threshold = self.stall_threshold_for(process)
        if status.seconds_since_output is not None:
            if status.seconds_since_output > threshold:
                status.healthy = False
                status.issue = HealthIssue.STALLED
                status.reason = (
                    f"No output for {_format_seconds(status.seconds_since_output)} "
                    f"(stall threshold: {_format_seconds(threshold)})"
                )
        else:
            # Measured from the current spawn so a restart gets a fresh window
            silent_for = (now - process.spawned_at).total_seconds()
            if silent_for > threshold:
                status.healthy = False
                status.issue = HealthIssue.STALLED
                status.reason = (
                    f"No output received since process start "
                    f"(stall threshold: {_format_seconds(threshold)})"
                )

        return status
