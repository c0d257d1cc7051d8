"""Test environment configuration."""

from pathlib import Path

import pytest

from ragchat.config import ChatConfig, load_config, parse_duration, redact_secrets
from ragchat.errors import ConfigurationError


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw,expected",
        [("30", 30.0), ("0.5", 0.5), ("500ms", 0.5), ("30s", 30.0), ("2m", 120.0), ("1h", 3600.0), (" 10s ", 10.0)],
    )
    def test_valid(self, raw, expected):
        assert parse_duration(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", ["", "abc", "10d", "-5s"])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)


class TestLoadConfig:
    def test_defaults(self, monkeypatch):
        for name in ("TOP_K", "MIN_SCORE", "RATE_LIMIT", "CHAT_JWT_SECRET", "STREAMING_ENABLED", "CHAT_DB_DSN"):
            monkeypatch.delenv(name, raising=False)
        cfg = load_config()
        assert cfg.top_k == 3
        assert cfg.min_score == 0.25
        assert cfg.rate_limit == 30
        assert cfg.streaming_enabled is True
        assert cfg.jwt_secret == ""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TOP_K", "5")
        monkeypatch.setenv("MAX_SOURCES", "3")
        monkeypatch.setenv("MIN_SCORE", "0.4")
        monkeypatch.setenv("RATE_WINDOW", "2m")
        monkeypatch.setenv("CHAT_JWT_SECRET", "abc")
        monkeypatch.setenv("CHAT_JWT_LEEWAY", "30s")
        monkeypatch.setenv("STREAMING_ENABLED", "false")
        monkeypatch.setenv("CHAT_LOG_FLUSH_EVERY", "250ms")
        monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:11434/v1/")
        monkeypatch.setenv("LANG_STOPWORDS_PATH", "/etc/stopwords.json")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        cfg = load_config()
        assert cfg.top_k == 5
        assert cfg.max_sources == 3
        assert cfg.min_score == 0.4
        assert cfg.rate_window_seconds == 120.0
        assert cfg.jwt_secret == "abc"
        assert cfg.jwt_leeway_seconds == 30.0
        assert cfg.streaming_enabled is False
        assert cfg.log_flush_every == 0.25
        assert cfg.openai_base_url == "http://localhost:11434/v1"
        assert cfg.lang_stopwords_path == Path("/etc/stopwords.json")
        assert cfg.log_level == "DEBUG"

    def test_unparseable_values_keep_defaults(self, monkeypatch):
        monkeypatch.setenv("TOP_K", "many")
        monkeypatch.setenv("RATE_WINDOW", "forever")
        cfg = load_config()
        assert cfg.top_k == 3
        assert cfg.rate_window_seconds == 60.0


class TestValidate:
    def test_defaults_valid(self):
        assert ChatConfig().validate() == ChatConfig()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"provider": "cohere"},
            {"top_k": 0},
            {"rate_limit": -1},
            {"rate_window_seconds": 0},
            {"embed_cache_max": -1},
            {"openai_base_url": "ftp://x"},
        ],
    )
    def test_invalid(self, overrides):
        with pytest.raises(ConfigurationError):
            ChatConfig(**overrides).validate()

    def test_summary_hides_secrets(self):
        summary = ChatConfig(openai_api_key="sk-123", jwt_secret="s", db_dsn="postgresql://u:p@h/db").summary()
        assert summary["openai_api_key"] == "***"
        assert summary["jwt_secret"] == "***"
        assert summary["db_dsn"] == "***"
        assert isinstance(summary["chunks_path"], str)


def test_redact_secrets():
    text = 'Authorization: Bearer abc.def key=sk-abcdef123456'
    assert redact_secrets(text) == "Authorization: Bearer *** key=sk-***"
