"""Tests for configuration loading."""
import os
from unittest.mock import patch

import pytest

from arcane.config import Config, load_config


@pytest.fixture(autouse=True)
def no_dotenv():
    """Keep a developer's .env out of the environment under test."""
    with patch("arcane.config.load_dotenv"):
        yield


class TestConfigDataclass:
    """Tests for Config dataclass defaults."""

    def test_config_default_values(self):
        config = Config(openrouter_api_key="test-key")

        assert config.discord_token is None
        assert config.fal_key is None
        assert config.default_model == "google/gemini-2.5-flash"
        assert config.fallback_model == "google/gemini-2.5-flash-lite"
        assert config.db_path == "data/arcane.db"
        assert config.image_dir == "data/images"
        assert config.use_context_images is False
        assert config.compress_images is True
        assert config.run_scheduled_jobs is True
        assert config.job_max_attempts == 3
        assert config.auto_start_players == 2
        assert config.command_guild_ids is None


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_config_missing_openrouter_key(self):
        with patch.dict(os.environ, {"DISCORD_TOKEN": "test-token"}, clear=True):
            with pytest.raises(RuntimeError, match="OPENROUTER_API_KEY is required"):
                load_config()

    def test_load_config_empty_openrouter_key(self):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "   "}, clear=True):
            with pytest.raises(RuntimeError, match="OPENROUTER_API_KEY is required"):
                load_config()

    def test_load_config_minimal(self):
        """Discord is optional; the engine can run headless."""
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "test-key"}, clear=True):
            config = load_config()

        assert config.openrouter_api_key == "test-key"
        assert config.discord_token is None
        assert config.log_level == "INFO"
        assert config.auto_start_players == 2

    def test_load_config_with_all_env_vars(self):
        env = {
            "OPENROUTER_API_KEY": "test-key",
            "DISCORD_TOKEN": "test-token",
            "FAL_KEY": "fal-key",
            "DEFAULT_MODEL": "custom/model",
            "FALLBACK_MODEL": "custom/fallback",
            "IMAGE_MODEL": "custom/image",
            "OPENROUTER_SITE_URL": "https://example.com",
            "OPENROUTER_APP_NAME": "TestApp",
            "ARCANE_DB_PATH": "/custom/db.sqlite",
            "ARCANE_IMAGE_DIR": "/custom/images",
            "LOG_LEVEL": "DEBUG",
            "USE_CONTEXT_IMAGES": "yes",
            "COMPRESS_IMAGES": "off",
            "RUN_SCHEDULED_JOBS": "false",
            "JOB_MAX_ATTEMPTS": "5",
            "JOB_WORKERS": "4",
            "AUTO_START_PLAYERS": "3",
            "COMMAND_GUILD_IDS": "123,456,789",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config()

        assert config.discord_token == "test-token"
        assert config.fal_key == "fal-key"
        assert config.default_model == "custom/model"
        assert config.fallback_model == "custom/fallback"
        assert config.image_model == "custom/image"
        assert config.openrouter_site_url == "https://example.com"
        assert config.openrouter_app_name == "TestApp"
        assert config.db_path == "/custom/db.sqlite"
        assert config.image_dir == "/custom/images"
        assert config.log_level == "DEBUG"
        assert config.use_context_images is True
        assert config.compress_images is False
        assert config.run_scheduled_jobs is False
        assert config.job_max_attempts == 5
        assert config.job_workers == 4
        assert config.auto_start_players == 3
        assert config.command_guild_ids == [123, 456, 789]

    def test_load_config_strips_whitespace(self):
        env = {
            "DISCORD_TOKEN": "  test-token  ",
            "OPENROUTER_API_KEY": "  test-key  ",
            "DEFAULT_MODEL": "  custom/model  ",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config()

        assert config.discord_token == "test-token"
        assert config.openrouter_api_key == "test-key"
        assert config.default_model == "custom/model"

    @pytest.mark.parametrize("val", ["1", "true", "yes", "on", "TRUE", "Yes"])
    def test_flag_true_variants(self, val):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "k", "USE_CONTEXT_IMAGES": val}, clear=True):
            assert load_config().use_context_images is True

    @pytest.mark.parametrize("val", ["0", "false", "no", "anything"])
    def test_flag_false_variants(self, val):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "k", "COMPRESS_IMAGES": val}, clear=True):
            assert load_config().compress_images is False

    @pytest.mark.parametrize("val", ["0", "off", "none"])
    def test_auto_start_can_be_disabled(self, val):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "k", "AUTO_START_PLAYERS": val}, clear=True):
            assert load_config().auto_start_players is None

    def test_invalid_integer_setting(self):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "k", "JOB_MAX_ATTEMPTS": "lots"}, clear=True):
            with pytest.raises(RuntimeError, match="JOB_MAX_ATTEMPTS must be an integer"):
                load_config()

    def test_non_positive_integer_setting(self):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "k", "JOB_WORKERS": "-1"}, clear=True):
            with pytest.raises(RuntimeError, match="JOB_WORKERS must be at least 1"):
                load_config()

    def test_load_config_guild_ids_with_semicolons_and_junk(self):
        env = {"OPENROUTER_API_KEY": "k", "COMMAND_GUILD_IDS": "123; abc ;456,"}
        with patch.dict(os.environ, env, clear=True):
            assert load_config().command_guild_ids == [123, 456]

    def test_load_config_guild_ids_all_invalid(self):
        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "k", "COMMAND_GUILD_IDS": "abc"}, clear=True):
            assert load_config().command_guild_ids is None
