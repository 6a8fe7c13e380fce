"""Configuration loading and management for Agentvisor."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger

from agentvisor.models import AgentvisorConfig

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".agentvisor"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "agentvisor.yaml"
DEFAULT_DB_FILE = DEFAULT_CONFIG_DIR / "agentvisor.db"
DEFAULT_LOGS_DIR = DEFAULT_CONFIG_DIR / "logs"

DEFAULT_CONFIG_TEMPLATE = """\
# Agentvisor configuration
daemon:
  log_level: INFO
  # log_file: ~/.agentvisor/logs/agentvisor.log
  log_rotation: 10 MB
  log_retention: 5

supervisor:
  health_check_interval: 10      # seconds between health sweeps
  max_memory_mb: 2048            # per process tree
  stall_threshold_seconds: 300   # silence before a process counts as stalled
  restart_cooldown_seconds: 2

coordinator:
  max_concurrent_jobs: 4
  poll_interval_seconds: 5
  heartbeat_interval_seconds: 15
  default_stall_timeout_seconds: 300
  fail_blocked_dependents: true
"""

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure the config directory exists."""
    config_dir = config_dir or DEFAULT_CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "logs").mkdir(parents=True, exist_ok=True)
    return config_dir


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${VAR_NAME:-default} - environment variable with fallback
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        var_name, default = match.group(1), match.group(2)
        if default is None:
            return match.group(0)
        return os.environ.get(var_name, default)

    value = _ENV_REF.sub(replace_env, value)
    return os.path.expandvars(value)


def _expand_tree(data: object) -> object:
    """Expand env references in every string of a loaded YAML tree."""
    if isinstance(data, str):
        return expand_env_vars(data)
    if isinstance(data, dict):
        return {key: _expand_tree(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_expand_tree(item) for item in data]
    return data


def expand_path(path: str | None) -> str | None:
    """Expand a path with ~ and environment variables."""
    if path is None:
        return None
    return os.path.expanduser(expand_env_vars(path))


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> AgentvisorConfig:
    """Load the main Agentvisor configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return AgentvisorConfig()

    data = _expand_tree(load_yaml_file(path))

    try:
        config = AgentvisorConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    config.daemon.db_path = expand_path(config.daemon.db_path)
    config.daemon.log_file = expand_path(config.daemon.log_file)
    logger.debug(f"Loaded config from {path}")
    return config


def get_db_path(config: AgentvisorConfig) -> Path:
    """Database location from config, falling back to the default."""
    if config.daemon.db_path:
        return Path(config.daemon.db_path)
    return DEFAULT_DB_FILE


def write_default_config(config_path: Path | None = None) -> bool:
    """Write the default configuration file if none exists.

    Returns:
        True if a file was written.
    """
    path = config_path or DEFAULT_CONFIG_FILE
    if path.exists():
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TEMPLATE)
    logger.info(f"Created default config at {path}")
    return True
