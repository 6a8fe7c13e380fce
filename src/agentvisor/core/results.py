"""Result assembly for finished jobs.

Turns a process completion result into the ``JobResult`` written to the
job store: session summary, output pattern matches, usage totals.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from loguru import logger

from agentvisor.models import Job, JobResult

if TYPE_CHECKING:
    from agentvisor.core.supervisor import ProcessCompletionResult
    from agentvisor.core.usage import UsageTracker

ACTION_WORDS = ("created", "modified", "updated", "added", "removed", "fixed", "implemented", "refactored")


def _is_prose(line: str) -> bool:
    return bool(line) and not line.startswith(("{", "["))


def summarize_output(output: str, max_actions: int = 3) -> str:
    """Summarize agent output.

    Prefers action statements ("Created ...", "Fixed ..."); otherwise the
    first meaningful line.
    """
    if not output or not output.strip():
        return ""

    lines = [line.strip() for line in output.split("\n")]

    actions = []
    for line in lines:
        if not _is_prose(line) or len(line) < 10 or len(line) >= 200:
            continue
        lowered = line.lower()
        if any(word in lowered for word in ACTION_WORDS):
            actions.append(line)

    if actions:
        return "; ".join(actions[:max_actions])

    for line in lines:
        if _is_prose(line) and 20 <= len(line) <= 200:
            return line

    return ""


def match_patterns(patterns: list[str], text: str) -> list[str]:
    """Return the patterns that match anywhere in the text."""
    matched = []
    for pattern in patterns:
        try:
            if re.search(pattern, text, re.MULTILINE | re.IGNORECASE):
                matched.append(pattern)
        except re.error as e:
            logger.warning(f"Invalid output pattern {pattern!r}: {e}")
    return matched


def build_job_result(job: Job, completion: ProcessCompletionResult, usage: UsageTracker) -> JobResult:
    """Assemble the stored result of one job execution."""
    searchable = "\n".join(part for part in (completion.output, completion.error) if part)
    return JobResult(
        success=completion.success,
        exit_code=completion.exit_code,
        duration_seconds=completion.duration_seconds,
        output=completion.output,
        error_output=completion.error,
        session_summary=summarize_output(completion.output),
        success_pattern_matches=match_patterns(job.success_patterns, searchable),
        failure_pattern_matches=match_patterns(job.failure_patterns, searchable),
        model_used=job.model,
        tokens_used=usage.total_tokens,
        cost_usd=usage.total_cost_usd,
    )


def output_pattern_failure(job: Job, result: JobResult) -> str | None:
    """Reason to fail a zero-exit run based on its output, if any."""
    if result.failure_pattern_matches:
        return f"Output matched failure pattern {result.failure_pattern_matches[0]!r}"
    if job.success_patterns and not result.success_pattern_matches:
        return "Output matched none of the success patterns"
    return None
