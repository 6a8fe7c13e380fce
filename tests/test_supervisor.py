"""Tests for the process supervisor, using real agent subprocesses."""

import asyncio
import shlex
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from agentvisor.core import platform
from agentvisor.core.events import ProcessExitedUnexpectedly, ProcessRestarted, ProcessUnhealthy
from agentvisor.core.health import HealthIssue
from agentvisor.core.supervisor import ProcessSupervisor, SupervisedProcess
from agentvisor.models import ProcessStartOptions, SupervisorConfig

MOCK_AGENTS = Path(__file__).parent / "mock_agents"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


def agent_options(script: str, *args, **kwargs) -> ProcessStartOptions:
    """Launch options running a mock agent with the current interpreter."""
    arguments = " ".join(shlex.quote(str(a)) for a in [MOCK_AGENTS / script, *args])
    return ProcessStartOptions(executable=sys.executable, arguments=arguments, **kwargs)


def fast_config(**overrides) -> SupervisorConfig:
    """Supervisor settings suited to tests (no background sweeps by default)."""
    settings = dict(
        health_check_interval=60,
        restart_grace_seconds=2,
        restart_cooldown_seconds=0,
        drain_timeout_seconds=2,
        stop_grace_seconds=2,
    )
    settings.update(overrides)
    return SupervisorConfig(**settings)


async def wait_until(predicate, timeout: float = 10.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.05)


class TestStartAndComplete:
    """Tests for starting processes and collecting results."""

    def test_echo_completes_successfully(self):
        async def scenario():
            lines = []
            async with ProcessSupervisor(fast_config()) as supervisor:
                supervised = await supervisor.start_process(
                    "job-a",
                    agent_options("echo_agent.py", "hello"),
                    on_output=lambda line, is_stderr: lines.append((line, is_stderr)),
                )
                assert supervised is not None
                assert supervised.pid is not None
                result = await supervisor.wait_for_completion("job-a")
                return result, lines, supervisor.get_process("job-a")

        result, lines, leftover = asyncio.run(scenario())

        assert result.success
        assert bool(result)
        assert result.exit_code == 0
        assert result.output == "hello\n"
        assert result.error == ""
        assert result.failure_reason is None
        assert lines == [("hello", False)]
        assert leftover is None

    def test_output_is_cleaned(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("chatty_agent.py"))
                return await supervisor.wait_for_completion("job")

        result = asyncio.run(scenario())

        assert result.success
        assert result.output == (
            "Starting session\n"
            "Created src/feature.py with the new handler\n"
            "Modified tests/test_feature.py to cover it\n"
            "Progress 100%\n"
            "All done.\n"
        )

    def test_raw_output_when_cleaning_disabled(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("chatty_agent.py", clean_output=False))
                return await supervisor.wait_for_completion("job")

        result = asyncio.run(scenario())
        assert "● Read(src/app.py)" in result.output

    def test_nonzero_exit(self):
        async def scenario():
            exits = []
            async with ProcessSupervisor(fast_config()) as supervisor:
                supervisor.events.subscribe(exits.append, ProcessExitedUnexpectedly)
                supervised = await supervisor.start_process("job-b", agent_options("failing_agent.py", 1))
                await supervised.process.wait()

                statuses = supervisor.check_all()
                result = await supervisor.wait_for_completion("job-b")
                return statuses, exits, result

        statuses, exits, result = asyncio.run(scenario())

        assert len(statuses) == 1
        assert not statuses[0].healthy
        assert statuses[0].issue == HealthIssue.EXITED
        assert "process has exited" in statuses[0].reason.lower()
        assert exits == [ProcessExitedUnexpectedly("job-b", 1)]

        assert not result.success
        assert result.exit_code == 1
        assert "Simulated failure" in result.error
        assert result.failure_reason == "Process exited with code 1"

    def test_launch_failure_returns_none(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                supervised = await supervisor.start_process(
                    "job", ProcessStartOptions(executable="agentvisor-no-such-binary-xyz")
                )
                return supervised, supervisor.get_process("job")

        supervised, registered = asyncio.run(scenario())
        assert supervised is None
        assert registered is None

    def test_duplicate_job_rejected(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                first = await supervisor.start_process("job", agent_options("silent_agent.py", 30))
                second = await supervisor.start_process("job", agent_options("echo_agent.py"))
                await supervisor.stop_process("job", graceful=False)
                return first, second

        first, second = asyncio.run(scenario())
        assert first is not None
        assert second is None

    def test_concurrent_jobs(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                for i in range(3):
                    await supervisor.start_process(f"job-{i}", agent_options("echo_agent.py", f"out-{i}"))
                assert supervisor.running_process_count == 3
                return await asyncio.gather(*(supervisor.wait_for_completion(f"job-{i}") for i in range(3)))

        results = asyncio.run(scenario())
        assert [r.output for r in results] == ["out-0\n", "out-1\n", "out-2\n"]

    def test_wait_for_unknown_job(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                return await supervisor.wait_for_completion("ghost")

        result = asyncio.run(scenario())
        assert not result.success
        assert result.failure_reason == "Process not found"

    def test_check_health_unknown_job(self):
        supervisor = ProcessSupervisor(fast_config())
        status = supervisor.check_health("ghost")
        assert not status.healthy
        assert status.reason == "Process not found"


class TestStopAndCancel:
    """Tests for stopping, cancelling and timing out processes."""

    def test_stop_process(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("silent_agent.py", 30))
                waiter = asyncio.create_task(supervisor.wait_for_completion("job"))
                await asyncio.sleep(0.2)
                stopped = await supervisor.stop_process("job")
                result = await waiter
                return stopped, result, supervisor.get_process("job")

        stopped, result, leftover = asyncio.run(scenario())
        assert stopped
        assert not result.success
        assert leftover is None

    def test_stop_unknown_job(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                return await supervisor.stop_process("ghost")

        assert asyncio.run(scenario()) is False

    @posix_only
    def test_stop_escalates_to_kill(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                supervised = await supervisor.start_process("job", agent_options("stubborn_agent.py"))
                await wait_until(lambda: supervised.last_output_at is not None)
                stopped = await supervisor.stop_process("job", graceful_timeout=0.5)
                return stopped, supervised.process.returncode

        stopped, returncode = asyncio.run(scenario())
        assert stopped
        assert returncode == -9

    @posix_only
    def test_stop_kills_descendants(self, tmp_path):
        pid_file = tmp_path / "child.pid"

        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("spawning_agent.py", pid_file))
                await wait_until(lambda: pid_file.exists() and pid_file.read_text().strip())
                child_pid = int(pid_file.read_text())
                assert platform.check_pid(child_pid)
                await supervisor.stop_process("job")
                return child_pid

        child_pid = asyncio.run(scenario())
        assert not platform.check_pid(child_pid)

    def test_cancel_event(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("silent_agent.py", 30))
                cancel = asyncio.Event()
                waiter = asyncio.create_task(supervisor.wait_for_completion("job", cancel_event=cancel))
                await asyncio.sleep(0.2)
                cancel.set()
                result = await waiter
                return result, supervisor.get_process("job")

        result, leftover = asyncio.run(scenario())
        assert result.was_cancelled
        assert not result.success
        assert result.failure_reason == "Process was cancelled"
        assert leftover is None

    def test_timeout(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("silent_agent.py", 30, timeout_seconds=0.5))
                return await supervisor.wait_for_completion("job")

        result = asyncio.run(scenario())
        assert result.timed_out
        assert not result.success
        assert "timed out" in result.failure_reason

    def test_shutdown_terminates_everything(self):
        async def scenario():
            supervisor = ProcessSupervisor(fast_config())
            await supervisor.start()
            processes = [
                await supervisor.start_process(f"job-{i}", agent_options("silent_agent.py", 30)) for i in range(2)
            ]
            await supervisor.shutdown()
            return supervisor, processes

        supervisor, processes = asyncio.run(scenario())
        assert not supervisor.is_running
        assert supervisor.get_all_processes() == []
        assert all(p.has_exited for p in processes)


class TestRestarts:
    """Tests for restart handling and the restart limit."""

    def test_manual_restart(self):
        async def scenario():
            restarted = []
            async with ProcessSupervisor(fast_config()) as supervisor:
                supervisor.events.subscribe(restarted.append, ProcessRestarted)
                supervised = await supervisor.start_process("job", agent_options("silent_agent.py", 30))
                old_pid = supervised.pid
                ok = await supervisor.restart_process("job")
                new_pid = supervised.pid
                await supervisor.stop_process("job")
                return ok, old_pid, new_pid, supervised.restart_count, restarted

        ok, old_pid, new_pid, restart_count, restarted = asyncio.run(scenario())
        assert ok
        assert new_pid != old_pid
        assert restart_count == 1
        assert restarted == [ProcessRestarted("job", old_pid, new_pid)]

    def test_restart_limit_drops_process(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("silent_agent.py", 30, max_restarts=3))
                waiter = asyncio.create_task(supervisor.wait_for_completion("job"))
                outcomes = [await supervisor.restart_process("job") for _ in range(4)]
                result = await waiter
                return outcomes, result, supervisor.get_process("job")

        outcomes, result, leftover = asyncio.run(scenario())
        assert outcomes == [True, True, True, False]
        assert result.restarts_exhausted
        assert not result.success
        assert result.failure_reason == "Restart limit (3) exceeded"
        assert leftover is None

    def test_zero_restarts_allowed(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("silent_agent.py", 30, max_restarts=0))
                waiter = asyncio.create_task(supervisor.wait_for_completion("job"))
                ok = await supervisor.restart_process("job")
                return ok, await waiter

        ok, result = asyncio.run(scenario())
        assert not ok
        assert result.restarts_exhausted

    def test_stall_detection_drives_restarts(self):
        """Four stall detections with three restarts allowed: three restarts, then removal."""

        async def scenario():
            detections = []
            restarts = []
            config = fast_config(health_check_interval=0.1, stall_threshold_seconds=0.3)
            async with ProcessSupervisor(config) as supervisor:

                async def on_unhealthy(event):
                    detections.append(event.status.issue)
                    await supervisor.restart_process(event.job_id)

                supervisor.events.subscribe(on_unhealthy, ProcessUnhealthy)
                supervisor.events.subscribe(restarts.append, ProcessRestarted)

                await supervisor.start_process("job", agent_options("silent_agent.py", 30, max_restarts=3))
                result = await asyncio.wait_for(supervisor.wait_for_completion("job"), timeout=30)
                return detections, restarts, result, supervisor.get_process("job")

        detections, restarts, result, leftover = asyncio.run(scenario())
        assert len(restarts) == 3
        assert detections[:4] == [HealthIssue.STALLED] * 4
        assert result.restarts_exhausted
        assert leftover is None

    def test_restart_unknown_job(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                return await supervisor.restart_process("ghost")

        assert asyncio.run(scenario()) is False

    def test_wait_follows_restarted_process(self):
        async def scenario():
            async with ProcessSupervisor(fast_config()) as supervisor:
                await supervisor.start_process("job", agent_options("silent_agent.py", 1))
                waiter = asyncio.create_task(supervisor.wait_for_completion("job"))
                await supervisor.restart_process("job")
                return await waiter

        result = asyncio.run(scenario())
        assert result.success
        assert result.restart_count == 1

    @posix_only
    def test_stop_during_restart_kills_replacement(self):
        real_spawn = platform.spawn
        spawned = []

        async def slow_spawn(*args, **kwargs):
            process = await real_spawn(*args, **kwargs)
            spawned.append(process)
            if len(spawned) > 1:
                await asyncio.sleep(0.5)
            return process

        async def scenario():
            with patch.object(platform, "spawn", new=slow_spawn):
                async with ProcessSupervisor(fast_config()) as supervisor:
                    await supervisor.start_process("job", agent_options("silent_agent.py", 30))
                    restart = asyncio.create_task(supervisor.restart_process("job"))
                    await wait_until(lambda: len(spawned) == 2)
                    stopped = await supervisor.stop_process("job")
                    restarted = await restart
                    return stopped, restarted, supervisor.get_process("job"), spawned[1]

        stopped, restarted, leftover, replacement = asyncio.run(scenario())
        assert stopped
        assert not restarted
        assert leftover is None
        assert replacement.returncode is not None
        assert not platform.check_pid(replacement.pid)


class TestOutputCapture:
    """Tests for stream reading."""

    def test_oversized_line_counts_as_output(self):
        async def scenario():
            stdout = asyncio.StreamReader(limit=16)
            stdout.feed_data(b"{" + b"x" * 100 + b"}\n")
            stdout.feed_eof()
            process = MagicMock(pid=12345, returncode=0, stdout=stdout, stderr=None)

            supervised = SupervisedProcess("job", ProcessStartOptions(executable="agent"), process)
            drained = await supervised.drain(timeout=2)
            return drained, supervised.last_output_at, supervised.output

        drained, last_output_at, output = asyncio.run(scenario())
        assert drained
        assert last_output_at is not None
        assert output == ""
