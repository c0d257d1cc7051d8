"""
Loguru setup and the one-line JSON events the chat service emits.
"""

from __future__ import annotations

import sys
from typing import Any, Dict, Optional

import orjson
from loguru import logger

from ragchat.config import ChatConfig, redact_secrets

CONSOLE_FORMAT = (
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(config: ChatConfig) -> None:
    """Route logs to stderr, and to LOG_FILE (rotated daily) when set. Call once at startup."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=config.log_level, colorize=True)
    if config.log_file:
        logger.add(config.log_file, level=config.log_level, rotation="00:00", retention="7 days")
    logger.info(f"Logging configured: level={config.log_level} file={config.log_file or '-'}")


def _event(event: str, fields: Dict[str, Any], level: str = "INFO") -> None:
    fields = {"event": event, **fields}
    for key in ("message", "error"):
        if fields.get(key):
            fields[key] = redact_secrets(str(fields[key]))
    logger.log(level, orjson.dumps(fields, default=str).decode())


def log_chat(
    request_id: str,
    answer_type: str,
    latency_ms: int,
    sources: int,
    top_score: Optional[float] = None,
    streamed: bool = False,
) -> None:
    """Log a finished chat request."""
    _event(
        "chat_completed",
        {
            "request_id": request_id,
            "answer_type": answer_type,
            "latency_ms": latency_ms,
            "sources": sources,
            "top_score": round(top_score, 4) if top_score is not None else None,
            "streamed": streamed,
        },
    )


def log_error(error_type: str, message: str, request_id: Optional[str] = None, **context: Any) -> None:
    _event(
        "error_occurred",
        {"error_type": error_type, "message": message, "request_id": request_id, **context},
        level="ERROR",
    )


def fmt_duration(seconds: float) -> str:
    """Render a stage timing as '0.12s (120ms)'."""
    return f"{seconds:.2f}s ({int(seconds * 1000)}ms)"
