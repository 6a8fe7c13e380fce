"""Token and cost accounting for agent output streams."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from agentvisor.models import Job


@dataclass
class UsageReport:
    """Usage extracted from one output line.

    ``cumulative`` reports carry run totals (e.g. a final result event)
    rather than per-message increments.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    cumulative: bool = False


@dataclass
class UsageTracker:
    """Accumulated usage for one job.

    ``input_tokens``, ``output_tokens`` and ``cost_usd`` count the current
    run only; the ``baseline_*`` fields hold what earlier attempts spent.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    baseline_tokens: int = 0
    baseline_cost_usd: float = 0.0

    @classmethod
    def from_job(cls, job: Job) -> UsageTracker:
        """Start from what earlier attempts of the job already spent."""
        return cls(baseline_tokens=job.tokens_used, baseline_cost_usd=job.cost_usd)

    @property
    def total_tokens(self) -> int:
        return self.baseline_tokens + self.input_tokens + self.output_tokens

    @property
    def total_cost_usd(self) -> float:
        return self.baseline_cost_usd + self.cost_usd

    def add(self, report: UsageReport) -> None:
        # Run totals only ever cover this run
        if report.cumulative:
            self.input_tokens = max(self.input_tokens, report.input_tokens)
            self.output_tokens = max(self.output_tokens, report.output_tokens)
            self.cost_usd = max(self.cost_usd, report.cost_usd)
        else:
            self.input_tokens += report.input_tokens
            self.output_tokens += report.output_tokens
            self.cost_usd += report.cost_usd


UsageParser = Callable[[str], "UsageReport | None"]


def _int_field(data: dict, *keys: str) -> int:
    for key in keys:
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return 0


def parse_usage_line(line: str) -> UsageReport | None:
    """Extract usage from a JSON event line.

    Understands ``usage`` objects (top level or under ``message``) with
    ``input_tokens``/``output_tokens`` or ``prompt_tokens``/``completion_tokens``,
    and ``total_cost_usd``/``cost_usd``. Events of type ``result`` are
    treated as run totals.
    """
    text = line.strip()
    if not text.startswith("{"):
        return None

    try:
        data = json.loads(text)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    usage = data.get("usage")
    if not isinstance(usage, dict):
        message = data.get("message")
        usage = message.get("usage") if isinstance(message, dict) else None

    input_tokens = output_tokens = 0
    if isinstance(usage, dict):
        input_tokens = _int_field(usage, "input_tokens", "prompt_tokens")
        output_tokens = _int_field(usage, "output_tokens", "completion_tokens")

    cost = None
    for key in ("total_cost_usd", "cost_usd"):
        value = data.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            cost = float(value)
            break

    if not input_tokens and not output_tokens and cost is None:
        return None

    return UsageReport(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost_usd=cost or 0.0,
        cumulative=data.get("type") == "result",
    )


def check_budget(job: Job, usage: UsageTracker, elapsed_seconds: float) -> str | None:
    """Compare usage against the job's ceilings.

    Returns:
        A reason string for the first ceiling exceeded, or None.
    """
    if job.max_tokens is not None and usage.total_tokens > job.max_tokens:
        return f"Token budget exceeded ({usage.total_tokens} > {job.max_tokens})"

    if job.max_cost_usd is not None and usage.total_cost_usd > job.max_cost_usd:
        return f"Cost budget exceeded (${usage.total_cost_usd:.2f} > ${job.max_cost_usd:.2f})"

    if job.max_execution_minutes is not None:
        minutes = elapsed_seconds / 60
        if minutes > job.max_execution_minutes:
            return f"Execution time exceeded ({minutes:.1f} > {job.max_execution_minutes:g} minutes)"

    return None
