"""Output cleaning for agent CLI streams.

Agent CLIs decorate their output with terminal escape sequences and with
tool-usage chatter (tool invocation markers, result continuation lines,
progress ellipses). This module strips both so that buffered output and
live subscribers only see meaningful text.

Noise patterns are grouped in pattern sets, one per agent family. New
families are added with ``register_pattern_set`` without touching the
supervisor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from loguru import logger

# OSC sequences first: "ESC ]" would otherwise match the two-byte form.
ANSI_ESCAPE = re.compile(
    r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)"
    r"|\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])"
)

# Control characters left behind after escape removal (keeps \t, \n and \r).
_STRAY_CONTROL = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

COMMON_FAMILY = "common"


@dataclass
class PatternSet:
    """Noise patterns for one agent family.

    ``markers`` match tool invocation lines; the continuation lines that
    follow a marker (lines starting with one of ``continuation_prefixes``)
    are dropped with it. ``noise`` match standalone lines to drop.
    """

    name: str
    markers: list[str] = field(default_factory=list)
    noise: list[str] = field(default_factory=list)
    continuation_prefixes: tuple[str, ...] = ("└",)

    def extend(self, name: str, markers: Iterable[str] = (), noise: Iterable[str] = (),
               continuation_prefixes: Iterable[str] = ()) -> PatternSet:
        """Build a new pattern set on top of this one."""
        return PatternSet(
            name=name,
            markers=[*self.markers, *markers],
            noise=[*self.noise, *noise],
            continuation_prefixes=tuple(dict.fromkeys([*self.continuation_prefixes, *continuation_prefixes])),
        )


COMMON_PATTERNS = PatternSet(
    name=COMMON_FAMILY,
    markers=[
        r"^● .*$",
    ],
    noise=[
        r"^\s*└ \d+.*$",
        r"^> .*\.\.\.$",
        r"^Running tool:.*$",
        r"^\[tool\].*$",
        r"^→ .*$",
        r"^Searching.*\.\.\.$",
        r"^Reading.*\.\.\.$",
        r"^Analyzing.*\.\.\.$",
        r"^\s*\(.*files?\s*(found|read|analyzed)\)$",
    ],
)

_PATTERN_SETS: dict[str, PatternSet] = {}
_CLEANERS: dict[str, OutputCleaner] = {}


def register_pattern_set(pattern_set: PatternSet) -> None:
    """Register (or replace) the pattern set for an agent family."""
    _PATTERN_SETS[pattern_set.name] = pattern_set
    _CLEANERS.pop(pattern_set.name, None)
    logger.debug(f"Registered output pattern set '{pattern_set.name}'")


def get_pattern_set(agent_family: str | None) -> PatternSet:
    """Get the pattern set for an agent family, falling back to the common set."""
    if agent_family and agent_family in _PATTERN_SETS:
        return _PATTERN_SETS[agent_family]
    if agent_family:
        logger.debug(f"No pattern set for agent family '{agent_family}', using common patterns")
    return _PATTERN_SETS[COMMON_FAMILY]


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and stray control characters."""
    if not text:
        return text
    return _STRAY_CONTROL.sub("", ANSI_ESCAPE.sub("", text))


def trim_blank_lines(lines: list[str]) -> list[str]:
    """Drop leading and trailing whitespace-only lines."""
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


class OutputCleaner:
    """Cleans agent output using one pattern set."""

    def __init__(self, pattern_set: PatternSet | None = None):
        self.pattern_set = pattern_set or get_pattern_set(None)
        self._marker_regex = self._compile_patterns(self.pattern_set.markers)
        self._noise_regex = self._compile_patterns(self.pattern_set.noise)

    def _compile_patterns(self, patterns: list[str]) -> re.Pattern | None:
        """Compile a list of patterns into a single regex."""
        if not patterns:
            return None

        combined = "|".join(f"(?:{p})" for p in patterns)
        return re.compile(combined, re.IGNORECASE)

    def normalize_line(self, line: str) -> str:
        """Strip escapes, keep only the last carriage-return redraw, trim the end."""
        line = strip_ansi(line.rstrip("\r\n"))
        if "\r" in line:
            line = line.rsplit("\r", 1)[-1]
        return line.rstrip()

    def is_marker(self, line: str) -> bool:
        return bool(self._marker_regex and self._marker_regex.match(line))

    def is_noise(self, line: str) -> bool:
        return bool(self._noise_regex and self._noise_regex.match(line))

    def is_continuation(self, line: str) -> bool:
        return line.lstrip().startswith(self.pattern_set.continuation_prefixes)

    def line_filter(self) -> LineFilter:
        """Create a filter for one stream of lines."""
        return LineFilter(self)

    def clean(self, text: str) -> str:
        """Clean a block of output text.

        Args:
            text: Raw output, possibly containing escape sequences.

        Returns:
            The cleaned text with leading/trailing blank lines removed.
        """
        if not text:
            return ""

        line_filter = self.line_filter()
        kept = []
        for line in text.split("\n"):
            cleaned = line_filter.feed(line)
            if cleaned is not None:
                kept.append(cleaned)

        return "\n".join(trim_blank_lines(kept))


class LineFilter:
    """Line-at-a-time view of an ``OutputCleaner``.

    Tracks whether the previous line opened a tool block so that the
    block's continuation lines are dropped too. One filter per stream.
    """

    def __init__(self, cleaner: OutputCleaner):
        self._cleaner = cleaner
        self._in_tool_block = False

    def feed(self, line: str) -> str | None:
        """Return the cleaned line, or None if it should be dropped."""
        line = self._cleaner.normalize_line(line)

        if self._in_tool_block:
            if not line.strip():
                self._in_tool_block = False
                return None
            if self._cleaner.is_continuation(line):
                return None
            self._in_tool_block = False

        if self._cleaner.is_marker(line):
            self._in_tool_block = True
            return None

        if self._cleaner.is_noise(line):
            return None

        return line


def get_cleaner(agent_family: str | None = None) -> OutputCleaner:
    """Get a cached cleaner for an agent family."""
    pattern_set = get_pattern_set(agent_family)
    cleaner = _CLEANERS.get(pattern_set.name)
    if cleaner is None:
        cleaner = OutputCleaner(pattern_set)
        _CLEANERS[pattern_set.name] = cleaner
    return cleaner


def clean_output(text: str, agent_family: str | None = None) -> str:
    """Strip escape sequences and tool-usage noise from agent output."""
    return get_cleaner(agent_family).clean(text)


register_pattern_set(COMMON_PATTERNS)
register_pattern_set(
    COMMON_PATTERNS.extend(
        "claude",
        markers=[r"^⏺ .*$"],
        noise=[r"^\s*⎿\s+.*$", r"^\s*✻ .*…$"],
        continuation_prefixes=["⎿"],
    )
)
register_pattern_set(
    COMMON_PATTERNS.extend(
        "copilot",
        noise=[r"^\s*└ .*$", r"^Thinking\.\.\.$"],
    )
)
register_pattern_set(
    COMMON_PATTERNS.extend(
        "opencode",
        noise=[r"^\|\s+(Read|Write|Edit|Bash|Glob|Grep|List|Patch)\s+.*$"],
    )
)
