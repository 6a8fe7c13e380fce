"""Process supervisor for agent CLI jobs.

Owns one OS process per running job: starts it, captures its output through
the output cleaner, checks its health on a fixed interval, restarts or
terminates it on request and reports a completion result.
"""

from __future__ import annotations

import asyncio
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from loguru import logger

from agentvisor.core import platform
from agentvisor.core.events import EventHub, ProcessExitedUnexpectedly, ProcessRestarted, ProcessUnhealthy
from agentvisor.core.health import HealthMonitor, ProcessHealthStatus
from agentvisor.core.output_cleaner import get_cleaner
from agentvisor.core.platform import LaunchError
from agentvisor.models import ProcessStartOptions, SupervisorConfig, utcnow

# (line, is_stderr)
OutputCallback = Callable[[str, bool], None]


@dataclass
class ProcessCompletionResult:
    """Terminal snapshot of a supervised process."""

    job_id: str
    success: bool
    exit_code: int | None = None
    duration_seconds: float = 0.0
    output: str = ""
    error: str = ""
    was_cancelled: bool = False
    timed_out: bool = False
    restarts_exhausted: bool = False
    restart_failed: bool = False
    restart_count: int = 0
    failure_reason: str | None = None

    def __bool__(self) -> bool:
        return self.success


class SupervisedProcess:
    """Runtime handle binding a job to its OS process."""

    def __init__(
        self,
        job_id: str,
        options: ProcessStartOptions,
        process: asyncio.subprocess.Process,
        on_output: OutputCallback | None = None,
    ):
        self.job_id = job_id
        self.options = options
        self.on_output = on_output
        self.process: asyncio.subprocess.Process | None = None
        self.start_time = utcnow()
        self.spawned_at = self.start_time
        self.last_output_at: datetime | None = None
        self.last_restart_at: datetime | None = None
        self.restart_count = 0
        self.is_completed = False
        self.exit_code: int | None = None
        self.cancel_event = asyncio.Event()
        self.removed = False
        self.restarts_exhausted = False
        self.restart_failed = False
        self.failure_reason: str | None = None

        self._lock = threading.Lock()
        self._output: list[str] = []
        self._error: list[str] = []
        self._readers: list[asyncio.Task] = []
        self._restarting = False
        self._restart_settled = asyncio.Event()
        self._restart_settled.set()

        self.attach(process)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def has_exited(self) -> bool:
        return self.process is not None and self.process.returncode is not None

    @property
    def restarting(self) -> bool:
        return self._restarting

    @property
    def output(self) -> str:
        with self._lock:
            return "".join(self._output)

    @property
    def error(self) -> str:
        with self._lock:
            return "".join(self._error)

    def attach(self, process: asyncio.subprocess.Process) -> None:
        """Bind a (new) OS process and start capturing its streams."""
        self.process = process
        self.spawned_at = utcnow()
        self.last_output_at = None
        self.is_completed = False
        self.exit_code = None
        self.cancel_event = asyncio.Event()
        self._readers = [
            asyncio.create_task(self._read_stream(process.stdout, False)),
            asyncio.create_task(self._read_stream(process.stderr, True)),
        ]

    def mark_completed(self) -> None:
        if not self.is_completed:
            self.is_completed = True
            self.exit_code = self.process.returncode if self.process is not None else None

    def begin_restart(self) -> None:
        self._restarting = True
        self._restart_settled.clear()

    def end_restart(self) -> None:
        self._restarting = False
        self._restart_settled.set()

    async def wait_restart_settled(self) -> None:
        await self._restart_settled.wait()

    async def drain(self, timeout: float) -> bool:
        """Wait for the stream readers to reach end of stream.

        Returns:
            True if both streams drained within the timeout.
        """
        readers = [task for task in self._readers if not task.done()]
        if not readers:
            return True
        _, pending = await asyncio.wait(readers, timeout=timeout)
        return not pending

    async def _read_stream(self, stream: asyncio.StreamReader | None, is_stderr: bool) -> None:
        if stream is None:
            return

        line_filter = get_cleaner(self.options.agent_family).line_filter() if self.options.clean_output else None

        while True:
            try:
                raw = await stream.readline()
            except ValueError as e:
                self.last_output_at = utcnow()
                logger.warning(f"Dropped oversized output line from job '{self.job_id}': {e}")
                continue
            if not raw:
                break

            # Any line, noise included, proves the process is alive
            self.last_output_at = utcnow()

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if line_filter is not None:
                line = line_filter.feed(line)
                if line is None:
                    continue

            self._append(line, is_stderr)

    def _append(self, line: str, is_stderr: bool) -> None:
        with self._lock:
            (self._error if is_stderr else self._output).append(line + "\n")

        if self.on_output is not None:
            try:
                self.on_output(line, is_stderr)
            except Exception as e:
                logger.error(f"Output callback failed for job '{self.job_id}': {e}")

    def __repr__(self) -> str:
        return f"SupervisedProcess({self.job_id!r}, pid={self.pid}, restarts={self.restart_count})"


class ProcessSupervisor:
    """Supervises agent CLI processes, one per job.

    Usage::

        async with ProcessSupervisor() as supervisor:
            await supervisor.start_process("job-1", ProcessStartOptions(executable="claude"))
            result = await supervisor.wait_for_completion("job-1")

    The health-check loop runs as a background task between ``start()`` and
    ``shutdown()``. Unhealthy verdicts are published on ``events``; the
    supervisor itself never restarts or stops a process on its own.
    """

    def __init__(
        self,
        config: SupervisorConfig | None = None,
        health_monitor: HealthMonitor | None = None,
        events: EventHub | None = None,
    ):
        """Initialize the supervisor.

        Args:
            config: Supervisor settings (intervals, limits, timeouts).
            health_monitor: Health evaluator; built from config if omitted.
            events: Event hub to publish on; a private one if omitted.
        """
        self.config = config or SupervisorConfig()
        self.health_monitor = health_monitor or HealthMonitor(
            max_memory_mb=self.config.max_memory_mb,
            stall_threshold_seconds=self.config.stall_threshold_seconds,
        )
        self.events = events or EventHub()
        self._owns_events = events is None
        self._processes: dict[str, SupervisedProcess] = {}
        self._starting: set[str] = set()
        self._lock = threading.Lock()
        self._health_task: asyncio.Task | None = None
        self._running = False

    async def __aenter__(self) -> ProcessSupervisor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # Lifecycle

    async def start(self) -> None:
        """Start the health-check loop (idempotent)."""
        if self._health_task is not None and not self._health_task.done():
            return
        self._running = True
        self._health_task = asyncio.create_task(self.run())

    async def run(self) -> None:
        """Run the health-check loop."""
        interval = self.config.health_check_interval
        logger.info(f"Process supervisor started (health check every {interval}s)")

        while self._running:
            await asyncio.sleep(interval)
            try:
                self.check_all()
            except Exception as e:
                logger.error(f"Health sweep error: {e}")

        logger.info("Process supervisor health loop stopped")

    def stop(self) -> None:
        """Stop the health-check loop after the current tick."""
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def shutdown(self) -> None:
        """Stop the health loop and terminate every supervised process."""
        self._running = False
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        with self._lock:
            processes = list(self._processes.values())
            self._processes.clear()

        if processes:
            logger.info(f"Terminating {len(processes)} supervised processes")
            for supervised in processes:
                supervised.removed = True
            await asyncio.gather(
                *(self._terminate(p, True, self.config.stop_grace_seconds) for p in processes),
                return_exceptions=True,
            )

        if self._owns_events:
            await self.events.aclose()

        logger.info("Process supervisor stopped")

    # Process operations

    async def start_process(
        self,
        job_id: str,
        options: ProcessStartOptions,
        on_output: OutputCallback | None = None,
    ) -> SupervisedProcess | None:
        """Start a process for a job.

        Args:
            job_id: Job identifier; at most one process per job.
            options: Launch options.
            on_output: Called with (line, is_stderr) for every kept line.

        Returns:
            The supervised process, or None if it could not be started.
        """
        await self.start()

        with self._lock:
            if job_id in self._processes or job_id in self._starting:
                logger.warning(f"Job '{job_id}' already has a supervised process")
                return None
            self._starting.add(job_id)

        try:
            try:
                process = await self._spawn(options)
            except LaunchError as e:
                logger.error(f"Failed to start process for job '{job_id}': {e}")
                return None

            supervised = SupervisedProcess(job_id, options, process, on_output)
            with self._lock:
                self._processes[job_id] = supervised
        finally:
            with self._lock:
                self._starting.discard(job_id)

        logger.info(f"Started process for job '{job_id}' (PID: {process.pid})")
        return supervised

    def get_process(self, job_id: str) -> SupervisedProcess | None:
        with self._lock:
            return self._processes.get(job_id)

    def get_all_processes(self) -> list[SupervisedProcess]:
        with self._lock:
            return list(self._processes.values())

    @property
    def running_process_count(self) -> int:
        return sum(1 for p in self.get_all_processes() if not p.is_completed)

    async def stop_process(
        self,
        job_id: str,
        graceful: bool = True,
        graceful_timeout: float | None = None,
    ) -> bool:
        """Stop a job's process and drop it from supervision.

        Returns:
            False if the job is not supervised.
        """
        with self._lock:
            supervised = self._processes.pop(job_id, None)

        if supervised is None:
            logger.warning(f"Job '{job_id}' is not supervised")
            return False

        supervised.removed = True
        timeout = self.config.stop_grace_seconds if graceful_timeout is None else graceful_timeout
        if graceful:
            logger.info(f"Stopping job '{job_id}' (grace period: {timeout}s)")
        else:
            logger.info(f"Force killing job '{job_id}'")

        return await self._terminate(supervised, graceful, timeout)

    async def restart_process(self, job_id: str) -> bool:
        """Terminate a job's process and start a replacement.

        Returns:
            True if a replacement is running. False if the job is unknown,
            already restarting, out of restarts (it is then dropped from
            supervision) or the replacement failed to start.
        """
        supervised = self.get_process(job_id)
        if supervised is None:
            logger.warning(f"Cannot restart job '{job_id}': not supervised")
            return False
        if supervised.restarting:
            logger.debug(f"Job '{job_id}' is already restarting")
            return False

        supervised.begin_restart()
        try:
            old_pid = supervised.pid
            logger.info(f"Restarting job '{job_id}' (PID: {old_pid})")
            await self._terminate(supervised, True, self.config.restart_grace_seconds)

            supervised.restart_count += 1
            max_restarts = supervised.options.max_restarts
            if supervised.restart_count > max_restarts:
                logger.warning(f"Job '{job_id}' exceeded max restarts ({max_restarts}), dropping from supervision")
                supervised.restarts_exhausted = True
                supervised.failure_reason = f"Restart limit ({max_restarts}) exceeded"
                supervised.mark_completed()
                self._remove(job_id, supervised)
                return False

            await asyncio.sleep(self.config.restart_cooldown_seconds)
            if supervised.removed:
                logger.info(f"Job '{job_id}' was stopped during restart cooldown")
                return False

            try:
                process = await self._spawn(supervised.options)
            except LaunchError as e:
                logger.error(f"Failed to restart job '{job_id}': {e}")
                supervised.failure_reason = f"Restart failed: {e}"
                supervised.restart_failed = True
                supervised.mark_completed()
                self._remove(job_id, supervised)
                return False

            if supervised.removed:
                logger.info(f"Job '{job_id}' was stopped during restart, killing replacement (PID: {process.pid})")
                await asyncio.to_thread(platform.kill_process_tree, process.pid)
                try:
                    await asyncio.wait_for(process.wait(), timeout=5)
                except asyncio.TimeoutError:
                    logger.error(f"Replacement process {process.pid} of job '{job_id}' survived kill")
                return False

            supervised.attach(process)
            supervised.last_restart_at = utcnow()
            logger.info(
                f"Restarted job '{job_id}' (PID: {old_pid} -> {process.pid}, "
                f"restart {supervised.restart_count}/{max_restarts})"
            )
            self.events.publish(ProcessRestarted(job_id, old_pid, process.pid))
            return True
        finally:
            supervised.end_restart()

    async def wait_for_completion(
        self,
        job_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> ProcessCompletionResult:
        """Wait for a job's process to finish and collect its result.

        Follows the job across restarts. Setting ``cancel_event`` stops the
        process and returns a result with ``was_cancelled`` set. The job is
        always removed from supervision on return.
        """
        supervised = self.get_process(job_id)
        if supervised is None:
            return ProcessCompletionResult(job_id=job_id, success=False, failure_reason="Process not found")

        timeout = supervised.options.timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None

        try:
            outcome = await self._wait_for_exit(supervised, cancel_event, deadline)

            if outcome == "cancelled":
                logger.info(f"Wait for job '{job_id}' cancelled, stopping process")
                await self._terminate(supervised, True, self.config.stop_grace_seconds)
                return ProcessCompletionResult(
                    job_id=job_id,
                    success=False,
                    duration_seconds=(utcnow() - supervised.start_time).total_seconds(),
                    output=supervised.output,
                    error=supervised.error,
                    was_cancelled=True,
                    restart_count=supervised.restart_count,
                    failure_reason="Process was cancelled",
                )

            if outcome == "timeout":
                logger.warning(f"Job '{job_id}' exceeded its timeout of {timeout}s, terminating")
                supervised.failure_reason = f"Process timed out after {timeout:g}s"
                await self._terminate(supervised, True, self.config.restart_grace_seconds)

            supervised.mark_completed()
            if not await supervised.drain(self.config.drain_timeout_seconds):
                logger.warning(f"Output of job '{job_id}' did not drain within {self.config.drain_timeout_seconds}s")

            return self._build_result(supervised, timed_out=outcome == "timeout")
        finally:
            self._remove(job_id, supervised)

    def check_health(self, job_id: str) -> ProcessHealthStatus:
        """Evaluate one job's health now."""
        supervised = self.get_process(job_id)
        if supervised is None:
            return ProcessHealthStatus.not_found(job_id)
        return self.health_monitor.evaluate(supervised)

    def check_all(self) -> list[ProcessHealthStatus]:
        """Run one health sweep over all supervised processes.

        Publishes an unhealthy event for every failing check and an
        unexpected-exit event for processes found dead with a nonzero code.
        """
        statuses = []
        for supervised in self.get_all_processes():
            if supervised.is_completed or supervised.restarting:
                continue

            try:
                status = self.health_monitor.evaluate(supervised)
                statuses.append(status)

                if not status.healthy:
                    logger.warning(f"Job '{supervised.job_id}' unhealthy: {status.reason}")
                    self.events.publish(ProcessUnhealthy(supervised.job_id, status))

                if supervised.has_exited:
                    supervised.mark_completed()
                    if supervised.exit_code != 0:
                        logger.warning(f"Job '{supervised.job_id}' exited unexpectedly (code: {supervised.exit_code})")
                        self.events.publish(ProcessExitedUnexpectedly(supervised.job_id, supervised.exit_code))
            except Exception as e:
                logger.error(f"Health check failed for job '{supervised.job_id}': {e}")

        return statuses

    # Internals

    async def _spawn(self, options: ProcessStartOptions) -> asyncio.subprocess.Process:
        return await platform.spawn(
            options.executable,
            options.arguments,
            cwd=options.working_directory or os.getcwd(),
            env=platform.build_environment(options.environment),
            custom_path=options.executable_path,
        )

    def _remove(self, job_id: str, supervised: SupervisedProcess) -> None:
        supervised.removed = True
        with self._lock:
            if self._processes.get(job_id) is supervised:
                del self._processes[job_id]

    async def _wait_for_exit(
        self,
        supervised: SupervisedProcess,
        cancel_event: asyncio.Event | None,
        deadline: float | None,
    ) -> str:
        """Wait for exit, cancellation or deadline, following restarts."""
        loop = asyncio.get_running_loop()

        while True:
            process = supervised.process
            waiters = [asyncio.ensure_future(process.wait())]
            cancel_waiter = None
            if cancel_event is not None:
                cancel_waiter = asyncio.ensure_future(cancel_event.wait())
                waiters.append(cancel_waiter)

            timeout = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    if not waiter.done():
                        waiter.cancel()

            if cancel_waiter is not None and cancel_waiter in done:
                return "cancelled"
            if not done:
                return "timeout"

            if supervised.restarting:
                await supervised.wait_restart_settled()
            if supervised.process is not process and not supervised.removed:
                continue
            return "exited"

    async def _terminate(self, supervised: SupervisedProcess, graceful: bool, grace_timeout: float) -> bool:
        """Terminate a process, escalating to a process-tree kill."""
        supervised.cancel_event.set()
        process = supervised.process
        if process is None or process.returncode is not None:
            return True

        descendants = platform.snapshot_descendants(process.pid)
        try:
            if graceful:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass

                try:
                    await asyncio.wait_for(process.wait(), timeout=grace_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"Job '{supervised.job_id}' did not exit within {grace_timeout}s, killing process tree")
                else:
                    survivors = [p for p in descendants if p.is_running()]
                    if survivors:
                        logger.debug(f"Killing {len(survivors)} leftover processes of job '{supervised.job_id}'")
                        await asyncio.to_thread(platform.kill_processes, survivors)
                    return True

            await asyncio.to_thread(platform.kill_process_tree, process.pid, descendants)
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                logger.error(f"Job '{supervised.job_id}' (PID: {process.pid}) survived kill")
                return False
            return True
        except Exception as e:
            logger.error(f"Failed to terminate job '{supervised.job_id}': {e}")
            return False

    def _build_result(self, supervised: SupervisedProcess, timed_out: bool) -> ProcessCompletionResult:
        exit_code = supervised.exit_code
        success = (
            exit_code == 0 and not timed_out and not supervised.restarts_exhausted and not supervised.restart_failed
        )
        failure_reason = None
        if not success:
            failure_reason = supervised.failure_reason or f"Process exited with code {exit_code}"

        return ProcessCompletionResult(
            job_id=supervised.job_id,
            success=success,
            exit_code=exit_code,
            duration_seconds=(utcnow() - supervised.start_time).total_seconds(),
            output=supervised.output,
            error=supervised.error,
            timed_out=timed_out,
            restarts_exhausted=supervised.restarts_exhausted,
            restart_failed=supervised.restart_failed,
            restart_count=supervised.restart_count,
            failure_reason=failure_reason,
        )
