"""Tests for process health evaluation."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import psutil

from agentvisor.core.health import HealthIssue, HealthMonitor, ProcessHealthStatus
from agentvisor.models import ProcessStartOptions

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_process(
    started_ago: float = 60,
    output_ago: float | None = 1,
    exited: bool = False,
    stall_timeout: float | None = None,
    spawned_ago: float | None = None,
):
    """Build a stand-in for a supervised process with fixed timestamps."""
    return SimpleNamespace(
        job_id="job-1",
        options=ProcessStartOptions(executable="agent", stall_timeout_seconds=stall_timeout),
        process=SimpleNamespace(pid=4242, returncode=1 if exited else None),
        pid=4242,
        has_exited=exited,
        start_time=NOW - timedelta(seconds=started_ago),
        spawned_at=NOW - timedelta(seconds=started_ago if spawned_ago is None else spawned_ago),
        last_output_at=None if output_ago is None else NOW - timedelta(seconds=output_ago),
        restart_count=0,
    )


class TestHealthMonitor:
    """Tests for HealthMonitor.evaluate."""

    def test_healthy_process(self):
        monitor = HealthMonitor(memory_reader=lambda pid: 100.0)
        status = monitor.evaluate(make_process(), now=NOW)

        assert status.healthy
        assert bool(status)
        assert status.issue is None
        assert status.memory_mb == 100.0
        assert status.uptime_seconds == 60
        assert status.seconds_since_output == 1

    def test_exited_process(self):
        monitor = HealthMonitor(memory_reader=lambda pid: 100.0)
        status = monitor.evaluate(make_process(exited=True), now=NOW)

        assert not status.healthy
        assert status.issue == HealthIssue.EXITED
        assert "process has exited" in status.reason.lower()

    def test_memory_over_limit(self):
        monitor = HealthMonitor(max_memory_mb=512, memory_reader=lambda pid: 900.0)
        status = monitor.evaluate(make_process(), now=NOW)

        assert not status.healthy
        assert status.issue == HealthIssue.MEMORY
        assert "900 MB" in status.reason
        assert "512 MB" in status.reason

    def test_memory_at_limit_is_healthy(self):
        monitor = HealthMonitor(max_memory_mb=512, memory_reader=lambda pid: 512.0)
        assert monitor.evaluate(make_process(), now=NOW).healthy

    def test_memory_read_failure_is_not_fatal(self):
        def failing_reader(pid):
            raise psutil.AccessDenied(pid)

        monitor = HealthMonitor(memory_reader=failing_reader)
        status = monitor.evaluate(make_process(), now=NOW)

        assert status.healthy
        assert status.memory_mb is None

    def test_stalled_after_threshold(self):
        monitor = HealthMonitor(stall_threshold_seconds=60, memory_reader=lambda pid: 1.0)
        status = monitor.evaluate(make_process(started_ago=600, output_ago=120), now=NOW)

        assert not status.healthy
        assert status.issue == HealthIssue.STALLED
        assert "No output for 2.0m" in status.reason

    def test_not_stalled_at_half_threshold(self):
        monitor = HealthMonitor(stall_threshold_seconds=60, memory_reader=lambda pid: 1.0)
        status = monitor.evaluate(make_process(started_ago=600, output_ago=30), now=NOW)
        assert status.healthy

    def test_no_output_since_start(self):
        monitor = HealthMonitor(stall_threshold_seconds=60, memory_reader=lambda pid: 1.0)
        status = monitor.evaluate(make_process(started_ago=90, output_ago=None), now=NOW)

        assert not status.healthy
        assert status.issue == HealthIssue.STALLED
        assert "since process start" in status.reason

    def test_silent_new_process_is_healthy(self):
        monitor = HealthMonitor(stall_threshold_seconds=60, memory_reader=lambda pid: 1.0)
        assert monitor.evaluate(make_process(started_ago=10, output_ago=None), now=NOW).healthy

    def test_silence_measured_from_latest_spawn(self):
        monitor = HealthMonitor(stall_threshold_seconds=60, memory_reader=lambda pid: 1.0)
        process = make_process(started_ago=600, spawned_ago=5, output_ago=None)
        assert monitor.evaluate(process, now=NOW).healthy

    def test_per_process_stall_override(self):
        monitor = HealthMonitor(stall_threshold_seconds=300, memory_reader=lambda pid: 1.0)
        process = make_process(started_ago=600, output_ago=45, stall_timeout=30)

        assert monitor.stall_threshold_for(process) == 30
        assert monitor.evaluate(process, now=NOW).issue == HealthIssue.STALLED

    def test_exit_checked_before_memory(self):
        monitor = HealthMonitor(max_memory_mb=1, memory_reader=lambda pid: 999.0)
        status = monitor.evaluate(make_process(exited=True), now=NOW)
        assert status.issue == HealthIssue.EXITED


class TestProcessHealthStatus:
    """Tests for the status snapshot."""

    def test_not_found(self):
        status = ProcessHealthStatus.not_found("ghost")

        assert not status
        assert status.issue == HealthIssue.NOT_FOUND
        assert status.reason == "Process not found"

    def test_repr(self):
        status = ProcessHealthStatus(job_id="a", healthy=True)
        assert repr(status) == "ProcessHealthStatus('a', healthy, '')"
