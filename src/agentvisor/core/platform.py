"""Platform helpers for launching and killing agent CLI processes."""

from __future__ import annotations

import asyncio
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path

import psutil
from loguru import logger

# Directories where CLI installers commonly drop binaries; often missing
# from PATH when running under a service manager.
EXTRA_PATH_DIRS = [
    Path.home() / ".local" / "bin",
    Path.home() / "bin",
    Path("/usr/local/bin"),
    Path("/opt/homebrew/bin"),
]

WINDOWS_EXTENSIONS = (".exe", ".cmd", ".bat")

# Stream reader buffer size; agent CLIs emit long JSON lines.
STREAM_LIMIT = 4 * 1024 * 1024


class LaunchError(Exception):
    """A process could not be started."""

    pass


def is_windows() -> bool:
    return sys.platform == "win32"


def augmented_path(path: str | None = None) -> str:
    """Return PATH with the well-known CLI install directories appended."""
    current = os.environ.get("PATH", "") if path is None else path
    parts = [p for p in current.split(os.pathsep) if p]

    for directory in EXTRA_PATH_DIRS:
        if directory.is_dir() and str(directory) not in parts:
            parts.append(str(directory))

    return os.pathsep.join(parts)


def resolve_executable(name: str, custom_path: str | None = None, search_path: str | None = None) -> str:
    """Resolve a logical executable name to an invocable path.

    Args:
        name: Executable name or path (e.g. "claude").
        custom_path: Explicitly configured path, used when it exists.
        search_path: PATH to search (defaults to the augmented process PATH).

    Returns:
        The resolved path, or the bare name if nothing was found.
    """
    if custom_path:
        candidate = Path(custom_path).expanduser()
        if candidate.is_file():
            return str(candidate)
        logger.warning(f"Configured executable not found at {candidate}, searching PATH for '{name}'")

    path = augmented_path(search_path)

    if is_windows() and not Path(name).suffix:
        for ext in WINDOWS_EXTENSIONS:
            found = shutil.which(name + ext, path=path)
            if found:
                return found

    found = shutil.which(name, path=path)
    if found:
        return found

    logger.debug(f"Executable '{name}' not found on PATH, using as-is")
    return name


def build_environment(overrides: dict[str, str] | None = None) -> dict[str, str]:
    """Build the child environment: inherited env, augmented PATH, overrides."""
    env = os.environ.copy()
    env["PATH"] = augmented_path(env.get("PATH", ""))
    if overrides:
        env.update({key: str(value) for key, value in overrides.items()})
    return env


def split_arguments(arguments: str) -> list[str]:
    """Split an argument string the way the platform shell would."""
    if not arguments:
        return []
    return shlex.split(arguments, posix=not is_windows())


def spawn_kwargs() -> dict:
    """Process-start adjustments: own process group, no console window."""
    if is_windows():
        return {
            "creationflags": subprocess.CREATE_NO_WINDOW | subprocess.CREATE_NEW_PROCESS_GROUP,
        }
    return {"start_new_session": True}


async def spawn(
    executable: str,
    arguments: str = "",
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    custom_path: str | None = None,
) -> asyncio.subprocess.Process:
    """Start a process with piped stdout/stderr and a closed stdin.

    The executable is launched directly, never through a shell.

    Raises:
        LaunchError: If the executable cannot be resolved or started.
    """
    try:
        argv = [resolve_executable(executable, custom_path), *split_arguments(arguments)]
    except ValueError as e:
        raise LaunchError(f"Invalid arguments for '{executable}': {e}") from e

    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            limit=STREAM_LIMIT,
            **spawn_kwargs(),
        )
    except (OSError, ValueError) as e:
        raise LaunchError(f"Failed to start '{executable}': {e}") from e


def check_pid(pid: int) -> bool:
    """Check if a process with given PID is running."""
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def snapshot_descendants(pid: int) -> list[psutil.Process]:
    """Get all descendants of a process while it is still alive."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def read_tree_memory_mb(pid: int) -> float:
    """Resident memory of a process and its descendants, in MB.

    Raises:
        psutil.Error: If the root process cannot be read.
    """
    process = psutil.Process(pid)
    total = process.memory_info().rss
    for child in process.children(recursive=True):
        try:
            total += child.memory_info().rss
        except psutil.Error:
            continue
    return total / (1024 * 1024)


def kill_processes(processes: list[psutil.Process], timeout: float = 3.0, wait: bool = True) -> int:
    """Force-kill the given processes.

    Returns:
        Number of processes signalled.
    """
    killed = []
    for proc in processes:
        try:
            proc.kill()
            killed.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot kill process {proc.pid}: {e}")

    if wait and killed:
        _, alive = psutil.wait_procs(killed, timeout=timeout)
        for proc in alive:
            logger.warning(f"Process {proc.pid} still alive after kill")

    return len(killed)


def kill_process_tree(
    pid: int,
    descendants: list[psutil.Process] | None = None,
    timeout: float = 3.0,
) -> int:
    """Force-kill a process and all of its descendants.

    Args:
        pid: Root process ID.
        descendants: Descendants captured earlier, so grandchildren that
            outlived their parent are still found.
        timeout: Seconds to wait for the killed descendants to go away.

    Returns:
        Number of processes signalled.
    """
    targets: dict[int, psutil.Process] = {proc.pid: proc for proc in descendants or []}
    root = None

    try:
        root = psutil.Process(pid)
        for child in root.children(recursive=True):
            targets.setdefault(child.pid, child)
    except psutil.NoSuchProcess:
        pass
    targets.pop(pid, None)

    # The root may be our own child; its exit status belongs to the asyncio
    # child watcher, so it is signalled but never waited on here.
    count = kill_processes(list(targets.values()) + ([root] if root is not None else []), wait=False)
    if targets:
        _, alive = psutil.wait_procs(list(targets.values()), timeout=timeout)
        for proc in alive:
            logger.warning(f"Process {proc.pid} still alive after kill")

    logger.debug(f"Killed process tree of {pid} ({count} processes)")
    return count
