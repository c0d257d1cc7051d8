"""
Asynchronous chat audit log.

Every answered or unanswered chat request produces one redacted ChatLogRecord.
Records go through a bounded in-memory queue to a single background worker
that writes them in batches; the request path never waits on storage.

State machine:
    IDLE --start()--> RUNNING --stop()--> DRAINING --> STOPPED

Backpressure: when the queue is full the record is dropped and counted. The
drop count is reported periodically (only when it changed). Failed batch
writes are logged and discarded, never retried.
"""

from __future__ import annotations

import hashlib
import queue
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Tuple

from loguru import logger
from sqlalchemy import (
    ARRAY,
    JSON,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine

from ragchat import metrics
from ragchat.models import ScoredChunk

# ============================================================================
# Records
# ============================================================================

_EMAIL = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_PHONE = re.compile(r"\+?\d[\d\s\-().]{7,}")
_URL = re.compile(r"https?://\S+|www\.\S+")


class AnswerType(str, Enum):
    GROUNDED = "grounded"
    NO_ANSWER = "no_answer"


def redact_question(question: str) -> str:
    """Replace e-mail addresses, phone numbers and URLs with placeholders."""
    out = question.strip()
    out = _EMAIL.sub("[redacted_email]", out)
    out = _PHONE.sub("[redacted_phone]", out)
    out = _URL.sub("[redacted_url]", out)
    return out.strip()


def hash_question(redacted: str) -> str:
    return hashlib.sha256(redacted.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ChatLogRecord:
    """What is persisted per request. Never holds the raw question."""

    question_redacted: str
    question_hash: str
    answer_type: str
    top_sources: Tuple[str, ...] = ()
    top_scores: Tuple[float, ...] = ()
    latency_ms: int = 0

    @classmethod
    def build(
        cls,
        question: str,
        answer_type: AnswerType,
        results: Sequence[ScoredChunk],
        max_sources: int,
        latency_ms: int,
    ) -> "ChatLogRecord":
        redacted = redact_question(question)
        top = list(results[:max(max_sources, 0)])
        return cls(
            question_redacted=redacted,
            question_hash=hash_question(redacted),
            answer_type=AnswerType(answer_type).value,
            top_sources=tuple(r.chunk.url for r in top),
            top_scores=tuple(float(r.score) for r in top),
            latency_ms=int(latency_ms),
        )

    def to_row(self) -> dict:
        return {
            "question_redacted": self.question_redacted,
            "question_hash": self.question_hash,
            "answer_type": self.answer_type,
            "top_sources": list(self.top_sources),
            "top_scores": list(self.top_scores),
            "latency_ms": self.latency_ms,
        }


# ============================================================================
# Storage
# ============================================================================

metadata = MetaData()

chat_logs = Table(
    "chat_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("question_redacted", Text, nullable=False),
    Column("question_hash", String(64), nullable=False, index=True),
    Column("answer_type", String(16), nullable=False),
    Column("top_sources", ARRAY(Text).with_variant(JSON(), "sqlite"), nullable=False),
    Column("top_scores", ARRAY(Float).with_variant(JSON(), "sqlite"), nullable=False),
    Column("latency_ms", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
)


class BatchWriter(Protocol):
    def write_batch(self, records: Sequence[ChatLogRecord]) -> None:
        ...


class ChatLogStore:
    """SQLAlchemy Core writer for the chat_logs table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_dsn(cls, dsn: str) -> "ChatLogStore":
        connect_args = {"check_same_thread": False} if dsn.startswith("sqlite") else {}
        engine = create_engine(dsn, connect_args=connect_args, pool_pre_ping=True, echo=False)
        return cls(engine)

    def ensure_schema(self) -> None:
        """Create chat_logs if missing."""
        metadata.create_all(bind=self.engine)
        logger.info("chat_logs table ready")

    def write_batch(self, records: Sequence[ChatLogRecord]) -> None:
        """One multi-row INSERT for the whole batch."""
        if not records:
            return
        stmt = chat_logs.insert().values([r.to_row() for r in records])
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def count(self) -> int:
        with self.engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(chat_logs)).scalar_one())

    def recent(self, limit: int = 10) -> List[dict]:
        stmt = select(chat_logs).order_by(chat_logs.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]

    def dispose(self) -> None:
        self.engine.dispose()


# ============================================================================
# Background logger
# ============================================================================


class LoggerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class AuditLoggerConfig:
    buffer: int = 1000
    batch_size: int = 100
    flush_every: float = 0.5
    report_every: float = 30.0
    poll_interval: float = field(default=0.1, repr=False)


class AuditLogger:
    """
    Non-blocking, batched, best-effort chat-log writer.

    One daemon thread consumes the queue. `log()` never blocks and never
    raises; `stop()` signals the worker, which drains what is queued,
    flushes, and exits.
    """

    def __init__(self, writer: BatchWriter, config: Optional[AuditLoggerConfig] = None):
        cfg = config or AuditLoggerConfig()
        if cfg.buffer <= 0 or cfg.batch_size <= 0 or cfg.flush_every <= 0:
            cfg = AuditLoggerConfig()
        self.config = cfg
        self._writer = writer
        self._queue: "queue.Queue[ChatLogRecord]" = queue.Queue(maxsize=cfg.buffer)
        self._stop_event = threading.Event()
        self._state = LoggerState.IDLE
        self._state_lock = threading.Lock()
        self._dropped = 0
        self._dropped_lock = threading.Lock()
        self._last_reported = 0
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> LoggerState:
        with self._state_lock:
            return self._state

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def pending(self) -> int:
        return self._queue.qsize()

    def _set_state(self, state: LoggerState) -> None:
        with self._state_lock:
            logger.debug(f"Audit logger {self._state.value} -> {state.value}")
            self._state = state

    def start(self) -> None:
        """Start the worker once; later calls are no-ops."""
        with self._state_lock:
            if self._state is not LoggerState.IDLE:
                return
            self._state = LoggerState.RUNNING
            self._thread = threading.Thread(target=self._run, name="chat-audit-logger", daemon=True)
            self._thread.start()
        logger.info(
            f"Audit logger started: buffer={self.config.buffer} batch={self.config.batch_size} "
            f"flush_every={self.config.flush_every}s"
        )

    def log(self, record: ChatLogRecord) -> None:
        """Enqueue without blocking; drop and count when full or stopped."""
        if self.state is LoggerState.STOPPED:
            self._count_drop()
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._count_drop()

    def _count_drop(self) -> None:
        with self._dropped_lock:
            self._dropped += 1

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Signal the worker and wait for its final drain and flush."""
        with self._state_lock:
            if self._state is LoggerState.IDLE:
                self._state = LoggerState.STOPPED
                return
            thread = self._thread
        self._stop_event.set()
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Audit logger did not stop within {timeout}s")

    def _run(self) -> None:
        cfg = self.config
        batch: List[ChatLogRecord] = []
        now = time.monotonic()
        next_flush = now + cfg.flush_every
        next_report = now + cfg.report_every

        while not self._stop_event.is_set():
            wait = min(next_flush, next_report) - time.monotonic()
            wait = max(0.0, min(wait, cfg.poll_interval))
            try:
                batch.append(self._queue.get(timeout=wait))
                if len(batch) >= cfg.batch_size:
                    self._flush(batch)
                    batch = []
            except queue.Empty:
                pass

            now = time.monotonic()
            if now >= next_flush:
                self._flush(batch)
                batch = []
                next_flush = now + cfg.flush_every
            if now >= next_report:
                self._report_drops()
                next_report = now + cfg.report_every

        self._set_state(LoggerState.DRAINING)
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break
            if len(batch) >= cfg.batch_size:
                self._flush(batch)
                batch = []
        self._flush(batch)
        self._report_drops()
        self._set_state(LoggerState.STOPPED)
        logger.info("Audit logger stopped")

    def _flush(self, batch: List[ChatLogRecord]) -> None:
        if not batch:
            return
        try:
            self._writer.write_batch(batch)
        except Exception as e:
            metrics.audit_failures.inc()
            logger.error(f"Audit batch write failed ({len(batch)} records dropped): {type(e).__name__}: {e}")
            return
        metrics.audit_flushed.inc(len(batch))
        logger.debug(f"Audit batch written: {len(batch)} records")

    def _report_drops(self) -> None:
        dropped = self.dropped
        if dropped == self._last_reported:
            return
        self._last_reported = dropped
        metrics.audit_dropped.set(dropped)
        logger.warning(f"Audit logger dropped={dropped} records since start")
