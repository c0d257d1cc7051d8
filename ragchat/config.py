#!/usr/bin/env python3
"""Centralized configuration with validation and sensible defaults."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from ragchat.errors import ConfigurationError

load_dotenv()

ROOT = Path(__file__).resolve().parents[1]
OUT = ROOT / "out"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {None: 1.0, "ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def _get_env(name: str, default: Optional[str] = None) -> str:
    val = os.getenv(name)
    return val if val is not None and val != "" else (default or "")


def _parse_int(name: str, default: int) -> int:
    try:
        return int(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_float(name: str, default: float) -> float:
    try:
        return float(_get_env(name, str(default)))
    except ValueError:
        return default


def _parse_bool(name: str, default: bool) -> bool:
    v = _get_env(name).strip().lower()
    if v in ("1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    return default


def parse_duration(value: str) -> float:
    """Parse '30', '0.5', '500ms', '30s', '1m' or '2h' into seconds."""
    m = _DURATION_RE.match(value or "")
    if not m:
        raise ValueError(f"invalid duration: {value!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2)]


def _parse_duration(name: str, default: float) -> float:
    raw = _get_env(name)
    if not raw:
        return default
    try:
        return parse_duration(raw)
    except ValueError:
        return default


def redact_secrets(text: str) -> str:
    """Mask bearer tokens and OpenAI-style keys in free text."""
    text = re.sub(r"Bearer\s+[^\s\"']+", "Bearer ***", text, flags=re.IGNORECASE)
    return re.sub(r"sk-[A-Za-z0-9_\-]{6,}", "sk-***", text)


@dataclass(frozen=True)
class ChatConfig:
    """Runtime settings for the chat service. Build with load_config()."""

    host: str = "0.0.0.0"
    port: int = 8080
    chunks_path: Path = OUT / "chunks.json"
    cache_path: Path = OUT / "embeddings_cache.json"

    # Providers
    provider: str = "openai"
    embed_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4o-mini"
    openai_api_key: str = field(default="", repr=False)
    openai_base_url: str = "https://api.openai.com/v1"
    timeout_seconds: float = 30.0
    temperature: float = 0.2

    # Retrieval / answering
    top_k: int = 3
    max_sources: int = 2
    min_score: float = 0.25
    embed_cache_max: int = 256
    streaming_enabled: bool = True
    lang_stopwords_path: Optional[Path] = None

    # Edge
    cors_allowed_origin: str = "https://example.com"
    rate_limit: int = 30
    rate_window_seconds: float = 60.0

    # Auth
    jwt_secret: str = field(default="", repr=False)
    jwt_issuer: str = "example.com"
    jwt_audience: str = "content-chat"
    jwt_leeway_seconds: float = 10.0
    jwt_ttl_seconds: float = 120.0

    # Audit log
    db_dsn: str = field(default="", repr=False)
    run_migrations: bool = True
    log_buffer: int = 1000
    log_batch_size: int = 100
    log_flush_every: float = 0.5
    log_report_every: float = 30.0
    disable_logging: bool = False

    # Application logs
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def validate(self) -> "ChatConfig":
        """Raise ConfigurationError for values the service cannot run with."""
        if self.provider != "openai":
            raise ConfigurationError(f"EMBED_PROVIDER must be 'openai', got: {self.provider}")
        for name in ("top_k", "max_sources", "rate_limit", "log_buffer", "log_batch_size"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got: {getattr(self, name)}")
        for name in ("rate_window_seconds", "timeout_seconds", "log_flush_every", "log_report_every"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got: {getattr(self, name)}")
        if self.embed_cache_max < 0:
            raise ConfigurationError("embed_cache_max must be >= 0")
        if not self.openai_base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"OPENAI_BASE_URL must be http:// or https://, got: {self.openai_base_url}")
        return self

    def summary(self) -> dict:
        """Non-secret view of the settings for startup logs."""
        out = asdict(self)
        for secret in ("openai_api_key", "jwt_secret", "db_dsn"):
            out[secret] = "***" if out[secret] else ""
        return {k: str(v) if isinstance(v, Path) else v for k, v in out.items()}


def load_config() -> ChatConfig:
    """Read ChatConfig from the environment (.env already loaded)."""
    d = ChatConfig()
    stopwords = _get_env("LANG_STOPWORDS_PATH")
    return ChatConfig(
        host=_get_env("API_HOST", d.host),
        port=_parse_int("API_PORT", d.port),
        chunks_path=Path(_get_env("CHUNKS_PATH", str(d.chunks_path))),
        cache_path=Path(_get_env("CACHE_PATH", str(d.cache_path))),
        provider=_get_env("EMBED_PROVIDER", d.provider).strip().lower(),
        embed_model=_get_env("EMBED_MODEL", d.embed_model),
        chat_model=_get_env("CHAT_MODEL", d.chat_model),
        openai_api_key=_get_env("OPENAI_API_KEY").strip(),
        openai_base_url=_get_env("OPENAI_BASE_URL", d.openai_base_url).rstrip("/"),
        timeout_seconds=_parse_duration("TIMEOUT", d.timeout_seconds),
        temperature=_parse_float("LLM_TEMPERATURE", d.temperature),
        top_k=_parse_int("TOP_K", d.top_k),
        max_sources=_parse_int("MAX_SOURCES", d.max_sources),
        min_score=_parse_float("MIN_SCORE", d.min_score),
        embed_cache_max=_parse_int("EMBED_CACHE_MAX", d.embed_cache_max),
        streaming_enabled=_parse_bool("STREAMING_ENABLED", d.streaming_enabled),
        lang_stopwords_path=Path(stopwords) if stopwords else None,
        cors_allowed_origin=_get_env("CORS_ALLOWED_ORIGIN", d.cors_allowed_origin),
        rate_limit=_parse_int("RATE_LIMIT", d.rate_limit),
        rate_window_seconds=_parse_duration("RATE_WINDOW", d.rate_window_seconds),
        jwt_secret=_get_env("CHAT_JWT_SECRET"),
        jwt_issuer=_get_env("CHAT_JWT_ISSUER", d.jwt_issuer),
        jwt_audience=_get_env("CHAT_JWT_AUDIENCE", d.jwt_audience),
        jwt_leeway_seconds=_parse_duration("CHAT_JWT_LEEWAY", d.jwt_leeway_seconds),
        jwt_ttl_seconds=_parse_duration("CHAT_JWT_TTL", d.jwt_ttl_seconds),
        db_dsn=_get_env("CHAT_DB_DSN"),
        run_migrations=_parse_bool("RUN_MIGRATIONS", d.run_migrations),
        log_buffer=_parse_int("CHAT_LOG_BUFFER", d.log_buffer),
        log_batch_size=_parse_int("CHAT_LOG_BATCH_SIZE", d.log_batch_size),
        log_flush_every=_parse_duration("CHAT_LOG_FLUSH_EVERY", d.log_flush_every),
        log_report_every=_parse_duration("CHAT_LOG_REPORT_EVERY", d.log_report_every),
        disable_logging=_parse_bool("CHAT_LOG_DISABLE", d.disable_logging),
        log_level=_get_env("LOG_LEVEL", d.log_level).upper(),
        log_file=_get_env("LOG_FILE") or None,
    )
