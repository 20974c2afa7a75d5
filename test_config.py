"""
Tests for configuration loading and validation.
"""

import pytest
import yaml

from cutout_animator.config import (
    API_KEY_ENV_VAR,
    Config,
    create_example_config,
    load_config,
    save_config,
)
from cutout_animator.errors import ConfigError


@pytest.fixture(autouse=True)
def no_env_key(monkeypatch):
    monkeypatch.delenv(API_KEY_ENV_VAR, raising=False)


class TestConfig:
    """Test the Config dataclass."""

    def test_defaults(self):
        config = Config()

        assert config.api_key is None
        assert config.queue_base_url == "https://queue.fal.run"
        assert config.max_polls == 120
        assert config.poll_interval == 1.0
        assert config.key_color == (255, 0, 255)
        assert config.default_fps == 16

    def test_blank_api_key_treated_as_missing(self):
        config = Config(api_key="   ")

        with pytest.raises(ConfigError, match=API_KEY_ENV_VAR):
            config.require_api_key()

    def test_thresholds_validated(self):
        with pytest.raises(ValueError):
            Config(weak_threshold=90, strong_threshold=80)

    def test_key_color_validated(self):
        with pytest.raises(ValueError):
            Config(key_color=(255, 0))

    def test_max_polls_validated(self):
        with pytest.raises(ValueError):
            Config(max_polls=0)

    def test_chroma_settings(self):
        settings = Config(key_color=[0, 255, 0], weak_threshold=30).chroma_settings()

        assert settings.key_color == (0, 255, 0)
        assert settings.weak_threshold == 30


class TestLoadConfig:
    """Test YAML loading."""

    def test_missing_file_creates_default_without_secrets(self, tmp_path, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV_VAR, "secret")
        path = tmp_path / "config.yaml"

        config = load_config(str(path))

        assert config.api_key == "secret"
        assert path.exists()
        assert yaml.safe_load(path.read_text())["api_key"] is None

    def test_load_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("api_key: from-file\nmax_polls: 30\nkey_color: [0, 255, 0]\n")

        config = load_config(str(path))

        assert config.api_key == "from-file"
        assert config.max_polls == 30
        assert config.key_color == (0, 255, 0)

    def test_environment_overrides_file_key(self, tmp_path, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV_VAR, "from-env")
        path = tmp_path / "config.yaml"
        path.write_text("api_key: from-file\n")

        assert load_config(str(path)).api_key == "from-env"

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("max_polls: 5\nspeed: ludicrous\n")

        assert load_config(str(path)).max_polls == 5

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(str(path)) == Config()

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError):
            load_config(str(path))

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "config.yaml"
        original = Config(api_key="k", max_polls=42, resolution="720p")

        save_config(original, str(path))

        assert load_config(str(path)) == original

    def test_example_config_loads(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(create_example_config())

        config = load_config(str(path))

        assert config.model_id == "fal-ai/wan/v2.2-a14b/image-to-video"
        assert config.api_key is None
