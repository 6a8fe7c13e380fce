"""Job coordinator.

Bridges the job store and the process supervisor: picks eligible jobs,
starts them, heartbeats them, enforces their budgets and writes their
outcome back to the store. Also recovers jobs left Running by workers
that went away.
"""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable

from loguru import logger

from agentvisor.core import platform
from agentvisor.core.events import ProcessExitedUnexpectedly, ProcessRestarted, ProcessUnhealthy
from agentvisor.core.health import HealthIssue
from agentvisor.core.results import build_job_result, output_pattern_failure
from agentvisor.core.store import JobStore
from agentvisor.core.supervisor import ProcessCompletionResult, ProcessSupervisor
from agentvisor.core.usage import UsageParser, UsageTracker, check_budget, parse_usage_line
from agentvisor.models import CoordinatorConfig, FailureKind, Job, JobResult, ProcessStartOptions, utcnow

# (job_id, line, is_stderr)
JobOutputListener = Callable[[str, str, bool], None]

# Issues the coordinator answers with a restart; exits are reported by
# the completion path instead.
RESTARTABLE_ISSUES = (HealthIssue.STALLED, HealthIssue.MEMORY)


def make_worker_instance_id() -> str:
    """Build an identifier unique to this worker process."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass
class StopRequest:
    """Why the coordinator stopped a running job.

    ``outcome`` is "fail" (mark Failed), "requeue" (back to Pending without
    spending a retry) or "abandon" (another worker owns the job now).
    """

    reason: str
    kind: FailureKind | None = None
    outcome: str = "fail"


class JobCoordinator:
    """Runs jobs from a job store under a process supervisor.

    Every scheduling pass recovers orphaned jobs, fails jobs whose
    dependency failed and starts the highest-priority eligible jobs up to
    the concurrency limit. Eligibility and order always come from the store.
    """

    def __init__(
        self,
        store: JobStore,
        supervisor: ProcessSupervisor,
        config: CoordinatorConfig | None = None,
        usage_parser: UsageParser | None = parse_usage_line,
        on_output: JobOutputListener | None = None,
    ):
        """Initialize the coordinator.

        Args:
            store: Durable job state.
            supervisor: Process supervisor that runs the jobs.
            config: Coordinator settings.
            usage_parser: Extracts token/cost usage from output lines.
            on_output: Called with (job_id, line, is_stderr) for every kept line.
        """
        self.store = store
        self.supervisor = supervisor
        self.config = config or CoordinatorConfig()
        self.worker_instance_id = self.config.worker_instance_id or make_worker_instance_id()
        self._usage_parser = usage_parser
        self._on_output = on_output

        self._active: dict[str, asyncio.Task] = {}
        self._jobs: dict[str, Job] = {}
        self._usage: dict[str, UsageTracker] = {}
        self._stop_requests: dict[str, StopRequest] = {}
        self._background: set[asyncio.Task] = set()
        self._running = False

        events = supervisor.events
        self._unsubscribers = [
            events.subscribe(self._on_unhealthy, ProcessUnhealthy),
            events.subscribe(self._on_restarted, ProcessRestarted),
            events.subscribe(self._on_unexpected_exit, ProcessExitedUnexpectedly),
        ]

    @property
    def active_job_ids(self) -> list[str]:
        return list(self._active)

    @property
    def is_running(self) -> bool:
        return self._running

    # Scheduling

    def select_eligible(self, limit: int | None = None) -> list[Job]:
        """Eligible pending jobs not already run by this coordinator, in run order."""
        jobs = [job for job in self.store.get_eligible_pending_jobs() if job.id not in self._active]
        return jobs if limit is None else jobs[:limit]

    async def schedule_once(self) -> list[str]:
        """Run one scheduling pass.

        Returns:
            Ids of the jobs started in this pass.
        """
        self.recover_orphans()
        if self.config.fail_blocked_dependents:
            self.fail_blocked_dependents()

        slots = self.config.max_concurrent_jobs - len(self._active)
        if slots <= 0:
            return []

        started = []
        for job in self.select_eligible(slots):
            if await self.start_job(job):
                started.append(job.id)
        return started

    async def start_job(self, job: Job) -> bool:
        """Claim a pending job and start its process.

        Returns:
            True if the job is now running under this coordinator.
        """
        usage = UsageTracker.from_job(job)
        breach = check_budget(job, usage, elapsed_seconds=0)
        if breach:
            logger.warning(f"Job '{job.display_name}' is over budget before start: {breach}")
            self.store.mark_failed(job.id, breach, FailureKind.BUDGET_EXCEEDED)
            return False

        if not self.store.mark_running(job.id, self.worker_instance_id, None):
            logger.info(f"Job '{job.display_name}' was claimed elsewhere, skipping")
            return False

        self._usage[job.id] = usage
        supervised = await self.supervisor.start_process(
            job.id,
            ProcessStartOptions.from_job(job),
            on_output=partial(self._handle_output, job.id),
        )
        if supervised is None:
            self._usage.pop(job.id, None)
            self._record_attempt_failure(job, f"Failed to launch '{job.executable}'", FailureKind.LAUNCH_FAILURE)
            return False

        self.store.mark_running(job.id, self.worker_instance_id, supervised.pid)
        self._jobs[job.id] = job
        self._active[job.id] = asyncio.create_task(self._supervise(job))
        logger.info(f"Started job '{job.display_name}' (PID: {supervised.pid}, priority: {job.priority})")
        return True

    def fail_blocked_dependents(self) -> list[str]:
        """Fail pending jobs whose dependency failed, transitively."""
        failed = []
        while True:
            blocked = [job for job in self.store.get_dependency_failed_jobs() if job.id not in failed]
            if not blocked:
                return failed
            for job in blocked:
                reason = f"Dependency '{job.depends_on_job_id}' failed"
                if self.store.mark_failed(job.id, reason, FailureKind.DEPENDENCY_FAILED):
                    failed.append(job.id)
            if not any(job.id in failed for job in blocked):
                return failed

    # Orphans

    def recover_orphans(self, now: datetime | None = None) -> list[str]:
        """Requeue or fail Running jobs whose worker stopped heartbeating.

        A job is orphaned when its last heartbeat is older than its stall
        timeout and no live process of its owner still runs it.

        Returns:
            Ids of the recovered jobs.
        """
        now = now or utcnow()
        recovered = []
        for job in self.store.get_running_jobs():
            if job.id in self._active:
                continue

            stall_timeout = job.stall_timeout_seconds or self.config.default_stall_timeout_seconds
            last_seen = job.last_heartbeat_at or job.started_at
            if last_seen is not None and (now - last_seen).total_seconds() <= stall_timeout:
                continue
            if self._owner_alive(job):
                continue

            if self._recover_orphan(job):
                recovered.append(job.id)
        return recovered

    def _owner_alive(self, job: Job) -> bool:
        if job.worker_instance_id == self.worker_instance_id:
            return self.supervisor.get_process(job.id) is not None
        return job.process_id is not None and platform.check_pid(job.process_id)

    def _recover_orphan(self, job: Job) -> bool:
        reason = f"Orphaned: worker '{job.worker_instance_id or 'unknown'}' stopped heartbeating"

        # Leftover process from an earlier run of this worker
        if job.process_id and job.worker_instance_id == self.worker_instance_id and platform.check_pid(job.process_id):
            logger.warning(f"Killing leftover process {job.process_id} of orphaned job '{job.id}'")
            platform.kill_process_tree(job.process_id)

        if job.can_retry:
            logger.warning(f"{reason}, requeueing job '{job.display_name}' (retry {job.retry_count + 1}/{job.max_retries})")
            return self.store.requeue(job.id, reason, FailureKind.ORPHANED, worker_instance_id=job.worker_instance_id)

        logger.warning(f"{reason}, job '{job.display_name}' has no retries left")
        return self.store.mark_failed(
            job.id,
            f"{reason} (retries exhausted: {job.retry_count}/{job.max_retries})",
            FailureKind.ORPHANED,
            worker_instance_id=job.worker_instance_id,
        )

    # Running jobs

    def request_stop(self, job_id: str, reason: str, kind: FailureKind | None = None, outcome: str = "fail") -> bool:
        """Stop a running job; its outcome is recorded once the process is gone.

        Returns:
            False if the job is not run by this coordinator.
        """
        if job_id not in self._active:
            return False
        if job_id in self._stop_requests:
            return True

        self._stop_requests[job_id] = StopRequest(reason, kind, outcome)
        task = asyncio.ensure_future(self.supervisor.stop_process(job_id, graceful=True))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _supervise(self, job: Job) -> None:
        heartbeat = asyncio.create_task(self._heartbeat_loop(job))
        try:
            try:
                completion = await self.supervisor.wait_for_completion(job.id)
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

            try:
                self._finish(job, completion)
            except Exception as e:
                logger.error(f"Failed to record result of job '{job.id}': {e}")
        finally:
            self._active.pop(job.id, None)
            self._jobs.pop(job.id, None)
            self._usage.pop(job.id, None)
            self._stop_requests.pop(job.id, None)

    async def _heartbeat_loop(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            if not self.store.heartbeat(job.id, utcnow(), self.worker_instance_id):
                logger.warning(f"Lost ownership of job '{job.id}', stopping its process")
                self.request_stop(job.id, "Job is owned by another worker", outcome="abandon")
                return
            self._enforce_budget(job.id)

    def _handle_output(self, job_id: str, line: str, is_stderr: bool) -> None:
        if self._on_output is not None:
            try:
                self._on_output(job_id, line, is_stderr)
            except Exception as e:
                logger.error(f"Output listener failed for job '{job_id}': {e}")

        usage = self._usage.get(job_id)
        if usage is None or self._usage_parser is None:
            return
        report = self._usage_parser(line)
        if report is not None:
            usage.add(report)
            self._enforce_budget(job_id)

    def _enforce_budget(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        usage = self._usage.get(job_id)
        if job is None or usage is None:
            return False
        if job_id in self._stop_requests:
            return True

        supervised = self.supervisor.get_process(job_id)
        elapsed = (utcnow() - supervised.start_time).total_seconds() if supervised else 0.0
        breach = check_budget(job, usage, elapsed)
        if breach is None:
            return False

        logger.warning(f"Job '{job.display_name}' over budget: {breach}")
        return self.request_stop(job_id, breach, FailureKind.BUDGET_EXCEEDED)

    def _finish(self, job: Job, completion: ProcessCompletionResult) -> None:
        usage = self._usage.get(job.id) or UsageTracker.from_job(job)
        result = build_job_result(job, completion, usage)
        worker = self.worker_instance_id

        stop = self._stop_requests.get(job.id)
        if stop is not None:
            if stop.outcome == "abandon":
                logger.warning(f"Discarding result of job '{job.id}': {stop.reason}")
            elif stop.outcome == "requeue":
                self.store.update_usage(job.id, result.tokens_used, result.cost_usd)
                self.store.requeue(job.id, stop.reason, stop.kind, count_retry=False, worker_instance_id=worker)
            else:
                self.store.mark_failed(job.id, stop.reason, stop.kind, result, worker)
            return

        if completion.restarts_exhausted:
            self._record_attempt_failure(job, completion.failure_reason, FailureKind.RESTART_EXHAUSTED, result)
        elif completion.restart_failed:
            self._record_attempt_failure(job, completion.failure_reason, FailureKind.LAUNCH_FAILURE, result)
        elif completion.timed_out:
            self.store.mark_failed(job.id, completion.failure_reason, FailureKind.TIMEOUT, result, worker)
        elif not completion.success:
            self.store.mark_failed(job.id, completion.failure_reason, FailureKind.EXIT_CODE, result, worker)
        else:
            reason = output_pattern_failure(job, result)
            if reason:
                self.store.mark_failed(job.id, reason, FailureKind.OUTPUT_PATTERN, result, worker)
            else:
                self.store.mark_completed(job.id, result, worker)

    def _record_attempt_failure(
        self,
        job: Job,
        reason: str,
        kind: FailureKind,
        result: JobResult | None = None,
    ) -> None:
        """Requeue a failed attempt while retries remain, otherwise fail the job."""
        current = self.store.get_job(job.id) or job
        worker = self.worker_instance_id
        if result is not None:
            self.store.update_usage(job.id, result.tokens_used, result.cost_usd)

        if current.can_retry:
            logger.warning(f"{reason}; requeueing job '{job.display_name}' (retry {current.retry_count + 1}/{current.max_retries})")
            self.store.requeue(job.id, reason, kind, worker_instance_id=worker)
        else:
            self.store.mark_failed(
                job.id,
                f"{reason} (retries exhausted: {current.retry_count}/{current.max_retries})",
                kind,
                result,
                worker,
            )

    # Supervisor events

    async def _on_unhealthy(self, event: ProcessUnhealthy) -> None:
        job_id = event.job_id
        if job_id not in self._active or job_id in self._stop_requests:
            return
        if event.status.issue not in RESTARTABLE_ISSUES:
            return

        logger.warning(f"Restarting unhealthy job '{job_id}': {event.status.reason}")
        if not await self.supervisor.restart_process(job_id):
            logger.warning(f"Restart of job '{job_id}' did not produce a new process")

    def _on_restarted(self, event: ProcessRestarted) -> None:
        if event.job_id in self._active:
            self.store.mark_running(event.job_id, self.worker_instance_id, event.new_pid)

    def _on_unexpected_exit(self, event: ProcessExitedUnexpectedly) -> None:
        logger.info(f"Job '{event.job_id}' process exited with code {event.exit_code}")

    # Lifecycle

    async def run(self) -> None:
        """Schedule jobs until ``stop()`` is called."""
        self._running = True
        logger.info(
            f"Job coordinator started (worker: {self.worker_instance_id}, "
            f"max concurrent jobs: {self.config.max_concurrent_jobs})"
        )
        await self.supervisor.start()

        while self._running:
            try:
                await self.schedule_once()
            except Exception as e:
                logger.error(f"Scheduling pass failed: {e}")
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def run_until_idle(self) -> None:
        """Schedule jobs until nothing is running and nothing is eligible.

        ``stop()`` ends the loop early.
        """
        self._running = True
        await self.supervisor.start()
        while self._running:
            started = await self.schedule_once()
            if not self._active:
                if not started and not self.select_eligible(1):
                    return
                # Launch failures requeue immediately
                continue
            await asyncio.wait(
                list(self._active.values()),
                timeout=self.config.poll_interval_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

    def stop(self) -> None:
        """Stop scheduling new jobs."""
        self._running = False

    async def shutdown(self) -> None:
        """Stop scheduling and return running jobs to the queue.

        Requeued jobs keep their retry count.
        """
        self._running = False
        for job_id in list(self._active):
            self.request_stop(job_id, "Worker shutting down", outcome="requeue")

        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        logger.info("Job coordinator stopped")
