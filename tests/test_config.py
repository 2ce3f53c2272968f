"""
Tests for settings loading.
"""
import pytest

from stackmap.config import StackConfig, load_config
from stackmap.errors import ConfigurationError


class TestLoadConfig:
    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(environ={})
        assert config == StackConfig()
        assert config.mutable_for("docker_container") == {"restart", "must_run"}
        assert config.mutable_for("docker_volume") == set()

    def test_file_values(self, tmp_path):
        path = tmp_path / "stackmap.yaml"
        path.write_text(
            "state_path: prod.state.json\n"
            "parallelism: 8\n"
            "backoff_base: 0.1\n"
            "secret_seed: abc\n"
            "mutable_attributes:\n"
            "  docker_container: [restart]\n"
            "  docker_volume: [labels]\n"
        )
        config = load_config(str(path), environ={})
        assert config.state_path == "prod.state.json"
        assert config.parallelism == 8
        assert config.backoff_base == 0.1
        assert config.secret_seed == "abc"
        assert config.mutable_for("docker_container") == {"restart"}
        assert config.mutable_for("docker_volume") == {"labels"}
        assert config.mutable_for("docker_image") == {"keep_locally"}

    def test_default_file_picked_up(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "stackmap.yaml").write_text("runtime: memory\n")
        assert load_config(environ={}).runtime == "memory"

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "stackmap.yaml"
        path.write_text("parallelism: 8\n")
        config = load_config(str(path), environ={"STACKMAP_PARALLELISM": "2", "STACKMAP_RUNTIME": "memory"})
        assert config.parallelism == 2
        assert config.runtime == "memory"

    def test_explicit_file_must_exist(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "missing.yaml"), environ={})

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "stackmap.yaml"
        path.write_text("paralelism: 8\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(path), environ={})
        assert "paralelism" in str(exc_info.value)

    def test_invalid_number(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(environ={"STACKMAP_CONFIG": str(tmp_path / "x.yaml"), "STACKMAP_MAX_ATTEMPTS": "lots"})

    def test_invalid_runtime(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(environ={"STACKMAP_CONFIG": str(tmp_path / "x.yaml"), "STACKMAP_RUNTIME": "podman"})

    def test_zero_parallelism_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(environ={"STACKMAP_CONFIG": str(tmp_path / "x.yaml"), "STACKMAP_PARALLELISM": "0"})


class TestConfigureLogging:
    def test_rich_handler_installed(self):
        import logging

        from rich.logging import RichHandler

        from stackmap.log import configure_logging

        configure_logging("debug", no_color=True)
        logger = logging.getLogger("stackmap")
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert [type(h) for h in logger.handlers] == [RichHandler]

        configure_logging("nonsense")
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1
