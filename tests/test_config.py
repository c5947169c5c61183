"""Tests for configuration parsing and the config singleton."""

from __future__ import annotations

import pydantic
import pytest

import video_hook_mcp.config as cfg_mod
from video_hook_mcp.config import ServerConfig, get_config, update_config


class TestFromEnv:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("VIDEO_HOOK_STATE_DB", raising=False)
        cfg = ServerConfig.from_env()
        assert cfg.rate_limit_per_minute == 10
        assert cfg.rate_limit_window_seconds == 60.0
        assert cfg.max_retries == 3
        assert cfg.retry_base_delay == 2.0
        assert cfg.min_pacing_seconds == 1.0
        assert cfg.request_timeout == 120.0
        assert cfg.max_video_size_bytes == 100 * 1024 * 1024
        assert cfg.queue_name == "video-analysis-queue"
        assert cfg.state_db_path.endswith("queue.db")
        assert cfg.remote_url == ""

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("VIDEO_HOOK_RATE_LIMIT_PER_MINUTE", "4")
        monkeypatch.setenv("VIDEO_HOOK_MAX_RETRIES", "0")
        monkeypatch.setenv("VIDEO_HOOK_MIN_PACING", "0")
        monkeypatch.setenv("GEMINI_MODEL", "gemini-2.5-pro")
        cfg = ServerConfig.from_env()
        assert cfg.rate_limit_per_minute == 4
        assert cfg.max_retries == 0
        assert cfg.min_pacing_seconds == 0.0
        assert cfg.default_model == "gemini-2.5-pro"

    def test_google_api_key_fallback(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
        assert ServerConfig.from_env().gemini_api_key == "google-key"

    @pytest.mark.parametrize(
        "var,value",
        [
            ("VIDEO_HOOK_RATE_LIMIT_PER_MINUTE", "0"),
            ("VIDEO_HOOK_MAX_RETRIES", "-1"),
            ("VIDEO_HOOK_RATE_LIMIT_WINDOW", "0"),
            ("VIDEO_HOOK_MIN_PACING", "-0.5"),
            ("VIDEO_HOOK_MAX_VIDEO_SIZE_MB", "0"),
        ],
    )
    def test_invalid_values_rejected(self, monkeypatch, var, value):
        monkeypatch.setenv(var, value)
        with pytest.raises(pydantic.ValidationError):
            ServerConfig.from_env()


class TestRemoteUrl:
    def test_trailing_slash_dropped(self, monkeypatch):
        monkeypatch.setenv("VIDEO_HOOK_REMOTE_URL", "http://localhost:3000/")
        assert ServerConfig.from_env().remote_url == "http://localhost:3000"

    @pytest.mark.parametrize("value", ["${VIDEO_HOOK_REMOTE_URL}", "${VIDEO_HOOK_REMOTE_URL:-}", "  "])
    def test_placeholders_mean_unset(self, monkeypatch, value):
        monkeypatch.setenv("VIDEO_HOOK_REMOTE_URL", value)
        assert ServerConfig.from_env().remote_url == ""


class TestTracingFlag:
    def test_enabled_by_tracking_uri(self, monkeypatch):
        monkeypatch.delenv("VIDEO_HOOK_TRACING_ENABLED", raising=False)
        monkeypatch.setenv("MLFLOW_TRACKING_URI", "http://mlflow:5000")
        assert ServerConfig.from_env().tracing_enabled is True

    def test_explicit_opt_out_wins(self, monkeypatch):
        monkeypatch.setenv("VIDEO_HOOK_TRACING_ENABLED", "false")
        monkeypatch.setenv("MLFLOW_TRACKING_URI", "http://mlflow:5000")
        assert ServerConfig.from_env().tracing_enabled is False

    def test_disabled_without_uri(self, monkeypatch):
        monkeypatch.delenv("VIDEO_HOOK_TRACING_ENABLED", raising=False)
        monkeypatch.delenv("MLFLOW_TRACKING_URI", raising=False)
        assert ServerConfig.from_env().tracing_enabled is False


class TestSingleton:
    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_get_config_loads_dotenv(self, tmp_path, monkeypatch):
        env = tmp_path / ".env"
        env.write_text("VIDEO_HOOK_MAX_RETRIES=7\n")
        # blank counts as unset and lets monkeypatch restore the var afterwards
        monkeypatch.setenv("VIDEO_HOOK_MAX_RETRIES", "")
        monkeypatch.setattr("video_hook_mcp.dotenv.DEFAULT_ENV_PATH", env)
        cfg_mod._config = None

        assert get_config().max_retries == 7

    def test_update_config_patches_and_ignores_none(self):
        cfg = update_config(rate_limit_per_minute=2, max_retries=None)
        assert cfg.rate_limit_per_minute == 2
        assert cfg.max_retries == 3
        assert get_config() is cfg

    def test_update_config_validates(self):
        with pytest.raises(pydantic.ValidationError):
            update_config(rate_limit_per_minute=0)
