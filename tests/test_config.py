"""Tests for configuration loading."""

import pytest

from agentvisor.config import (
    ConfigError,
    ensure_config_dir,
    expand_env_vars,
    get_db_path,
    load_config,
    write_default_config,
)
from agentvisor.models import AgentvisorConfig


class TestExpandEnvVars:
    """Tests for environment variable expansion."""

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("AGENTVISOR_TEST_UNSET", raising=False)
        assert expand_env_vars("${AGENTVISOR_TEST_UNSET:-fallback}") == "fallback"

    def test_value_wins_over_default(self, monkeypatch):
        monkeypatch.setenv("AGENTVISOR_TEST_VAR", "real")
        assert expand_env_vars("${AGENTVISOR_TEST_VAR:-fallback}/x") == "real/x"

    def test_plain_references(self, monkeypatch):
        monkeypatch.setenv("AGENTVISOR_TEST_VAR", "v")
        assert expand_env_vars("$AGENTVISOR_TEST_VAR-${AGENTVISOR_TEST_VAR}") == "v-v"


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config == AgentvisorConfig()
        assert config.supervisor.health_check_interval == 10
        assert config.supervisor.max_memory_mb == 2048
        assert config.supervisor.stall_threshold_seconds == 300

    def test_values_loaded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENTVISOR_TEST_HOME", str(tmp_path))
        path = tmp_path / "agentvisor.yaml"
        path.write_text(
            "daemon:\n"
            "  db_path: ${AGENTVISOR_TEST_HOME}/jobs.db\n"
            "supervisor:\n"
            "  max_memory_mb: 512\n"
            "coordinator:\n"
            "  max_concurrent_jobs: 2\n"
            "  worker_instance_id: worker-a\n"
        )

        config = load_config(path)

        assert config.supervisor.max_memory_mb == 512
        assert config.coordinator.max_concurrent_jobs == 2
        assert config.coordinator.worker_instance_id == "worker-a"
        assert get_db_path(config) == tmp_path / "jobs.db"

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "agentvisor.yaml"
        path.write_text("supervisor: [unclosed\n")

        with pytest.raises(ConfigError, match="Cannot parse"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "agentvisor.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError, match="expected a mapping"):
            load_config(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "agentvisor.yaml"
        path.write_text("coordinator:\n  max_concurrent_jobs: 0\n")

        with pytest.raises(ConfigError, match="Invalid config file"):
            load_config(path)

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "agentvisor.yaml"
        path.write_text("")
        assert load_config(path) == AgentvisorConfig()


class TestDefaultConfig:
    """Tests for writing the default configuration."""

    def test_written_once(self, tmp_path):
        path = tmp_path / "conf" / "agentvisor.yaml"

        assert write_default_config(path)
        assert not write_default_config(path)
        assert load_config(path).coordinator.max_concurrent_jobs == 4

    def test_ensure_config_dir(self, tmp_path):
        config_dir = ensure_config_dir(tmp_path / "home")
        assert config_dir.is_dir()
        assert (config_dir / "logs").is_dir()
