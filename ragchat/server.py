from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence
from uuid import uuid4

import pydantic
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse, PlainTextResponse, Response, StreamingResponse
from loguru import logger

from ragchat.audit import AuditLogger, AuditLoggerConfig, ChatLogStore
from ragchat.auth import TokenVerifier, extract_bearer_token
from ragchat.cache import EmbeddingCache
from ragchat.config import ChatConfig, load_config
from ragchat.corpus import load_embed_cache, read_chunks
from ragchat.embeddings import OpenAIEmbedder
from ragchat.errors import (
    AdmissionError,
    AuthError,
    AuthNotConfiguredError,
    RAGError,
    StreamingUnavailableError,
    ValidationError,
    format_error_for_logging,
)
from ragchat.index import VectorIndex
from ragchat.language import LanguageGate
from ragchat.llm_client import LLMClient, build_http_client
from ragchat.logging_config import log_error, setup_logging
from ragchat.metrics import auth_failures, get_content_type, get_metrics, index_size, rate_limit_denials, track_request
from ragchat.models import ChatRequest
from ragchat.orchestrator import ChatService
from ragchat.rate_limit import RateLimiter, client_ip
from ragchat.synthesizer import AnswerSynthesizer, StreamEvent

MAX_BODY_BYTES = 64 * 1024
CHAT_PATH = "/chat"
DISCONNECT_POLL_SECONDS = 0.25


class ClientDisconnected(Exception):
    """The caller went away before the blocking answer was ready."""


def wants_stream(request: Request) -> bool:
    if request.query_params.get("stream") == "1":
        return True
    return "text/event-stream" in request.headers.get("accept", "")


async def _run_until_disconnect(request: Request, work: Awaitable):
    """Await work, cancelling it if the client disconnects first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


async def _sse(events: AsyncIterator[StreamEvent], request_id: str) -> AsyncIterator[bytes]:
    try:
        async for event in events:
            yield event.encode()
    except RAGError as e:
        logger.error(f"[{request_id}] stream aborted: {e!r}")
        yield StreamEvent.error("streaming error").encode()
    except asyncio.CancelledError:
        logger.info(f"[{request_id}] stream cancelled by client disconnect")
        raise


def create_app(
    service: ChatService,
    config: ChatConfig,
    limiter: Optional[RateLimiter] = None,
    verifier: Optional[TokenVerifier] = None,
    audit_logger: Optional[AuditLogger] = None,
    vectors: int = 0,
    closers: Sequence[Callable[[], Awaitable[None]]] = (),
) -> FastAPI:
    """
    Build the HTTP app around an assembled ChatService.

    /chat runs CORS -> admission -> credentials -> body validation -> service.
    """
    limiter = limiter or RateLimiter(config.rate_limit, config.rate_window_seconds)
    verifier = verifier or TokenVerifier(
        secret=config.jwt_secret,
        issuer=config.jwt_issuer,
        audience=config.jwt_audience,
        leeway_seconds=config.jwt_leeway_seconds,
    )
    index_size.set(vectors)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if audit_logger is not None:
            audit_logger.start()
        logger.info(f"Chat service ready: vectors={vectors} streaming={config.streaming_enabled}")
        yield
        if audit_logger is not None:
            await asyncio.to_thread(audit_logger.stop)
        for close in closers:
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing HTTP client: {e}")

    app = FastAPI(default_response_class=ORJSONResponse, lifespan=lifespan)
    app.state.service = service
    app.state.limiter = limiter
    app.state.verifier = verifier
    app.state.audit_logger = audit_logger

    # ------------------------------------------------------------------
    # Middleware
    # ------------------------------------------------------------------

    @app.middleware("http")
    async def cors(request: Request, call_next):
        """Reflect the single allowed origin; answer /chat preflight with 204."""
        if request.url.path != CHAT_PATH:
            return await call_next(request)
        origin = request.headers.get("origin", "")
        allowed = bool(origin) and origin == config.cors_allowed_origin
        if request.method == "OPTIONS":
            response: Response = Response(status_code=204)
        else:
            response = await call_next(request)
        if allowed:
            response.headers["Access-Control-Allow-Origin"] = config.cors_allowed_origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Assign a request id and log every request with timing and status."""
        request_id = request.headers.get("x-request-id") or str(uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        logger.info(
            f"[{request_id}] → {request.method} {request.url.path} "
            f"client={request.client.host if request.client else 'unknown'}"
        )
        response = await call_next(request)
        duration = time.time() - start_time

        if request.url.path != "/metrics":
            track_request(
                endpoint=request.url.path,
                method=request.method,
                status=response.status_code,
                duration=duration,
            )
        response.headers["X-Request-ID"] = request_id
        logger.info(
            f"[{request_id}] ← {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )
        return response

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    @app.exception_handler(RAGError)
    async def rag_error_handler(request: Request, exc: RAGError):
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            details = format_error_for_logging(exc)
            log_error(details.pop("error_type"), details.pop("message"), request_id, **details)
        else:
            logger.info(f"[{request_id}] request rejected: {exc.error_code} {exc.message}")
        headers = {}
        if isinstance(exc, AdmissionError) and exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return PlainTextResponse(exc.public_message, status_code=exc.status_code, headers=headers)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def admit(request: Request, request_id: str) -> None:
        ip = client_ip(request.headers, request.client.host if request.client else None)
        if not ip:
            rate_limit_denials.inc()
            logger.info(f"[{request_id}] rate_limit blocked ip=unknown reason=missing_ip")
            raise AdmissionError("missing client ip")
        decision = limiter.allow_with_status(ip)
        reset_in = limiter.seconds_until(decision.reset_at)
        if not decision.allowed:
            rate_limit_denials.inc()
            logger.info(f"[{request_id}] rate_limit blocked ip={ip} reset_in={reset_in}s")
            raise AdmissionError(f"rate limit exceeded for {ip}", retry_after_seconds=reset_in)
        logger.debug(f"[{request_id}] rate_limit allowed ip={ip} remaining={decision.remaining} reset_in={reset_in}s")

    def authenticate(request: Request, request_id: str) -> None:
        if not verifier.configured:
            raise AuthNotConfiguredError()
        token = extract_bearer_token(request.headers.get("authorization"))
        try:
            verifier.verify(token)
        except AuthError as e:
            auth_failures.labels(reason=e.reason).inc()
            logger.info(f"[{request_id}] auth rejected: {e.reason}")
            raise

    async def read_body(request: Request) -> bytes:
        """Read the request body, stopping as soon as it passes MAX_BODY_BYTES."""
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > MAX_BODY_BYTES:
            raise ValidationError("request body too large", status_code=413)
        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > MAX_BODY_BYTES:
                raise ValidationError("request body too large", status_code=413)
        return bytes(body)

    async def read_chat_request(request: Request) -> ChatRequest:
        body = await read_body(request)
        try:
            req = ChatRequest.model_validate_json(body)
        except pydantic.ValidationError as e:
            raise ValidationError("invalid json") from e
        question = req.question.strip()
        if not question:
            raise ValidationError("question is required", field="question")
        lang = req.lang or "en"
        if lang != "en":
            raise ValidationError("only English is supported", field="lang")
        return ChatRequest(question=question, lang=lang)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @app.post(CHAT_PATH)
    async def chat(request: Request):
        request_id = request.state.request_id
        admit(request, request_id)
        authenticate(request, request_id)
        req = await read_chat_request(request)

        if wants_stream(request):
            if not config.streaming_enabled:
                raise StreamingUnavailableError()
            prepared = await service.prepare(req.question, req.lang, request_id)
            return StreamingResponse(
                _sse(service.stream(prepared), request_id),
                media_type="text/event-stream; charset=utf-8",
                headers={
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no",
                },
            )

        try:
            answer = await _run_until_disconnect(request, service.answer(req.question, req.lang, request_id))
        except ClientDisconnected:
            logger.info(f"[{request_id}] client disconnected; upstream work cancelled")
            return Response(status_code=499)
        return ORJSONResponse(answer.model_dump())

    @app.get("/healthz")
    def healthz():
        return PlainTextResponse("ok")

    @app.get("/readyz")
    def readyz():
        cache = service.cache
        body = {
            "ok": vectors > 0,
            "vectors": vectors,
            "audit": audit_logger.state.value if audit_logger is not None else "disabled",
            "audit_dropped": audit_logger.dropped if audit_logger is not None else 0,
            "embed_cache": cache.stats() if cache is not None else None,
        }
        return ORJSONResponse(body, status_code=200 if vectors > 0 else 503)

    @app.get("/metrics")
    def metrics():
        return Response(content=get_metrics(), media_type=get_content_type())

    return app


def build_app(config: ChatConfig) -> FastAPI:
    """Assemble every production collaborator from config."""
    chunks = read_chunks(config.chunks_path)
    cache_file = load_embed_cache(config.cache_path)
    index = VectorIndex.build(chunks, cache_file, config.embed_model)
    if len(index) == 0:
        logger.warning("Vector index is empty: every question will get the fallback answer")

    http = build_http_client(config.timeout_seconds)
    embedder = OpenAIEmbedder(
        api_key=config.openai_api_key,
        model=config.embed_model,
        base_url=config.openai_base_url,
        http_client=http,
    )
    llm = LLMClient(
        api_key=config.openai_api_key,
        model=config.chat_model,
        base_url=config.openai_base_url,
        temperature=config.temperature,
        http_client=http,
    )

    audit_logger: Optional[AuditLogger] = None
    if config.db_dsn and not config.disable_logging:
        store = ChatLogStore.from_dsn(config.db_dsn)
        if config.run_migrations:
            store.ensure_schema()
        audit_logger = AuditLogger(
            store,
            AuditLoggerConfig(
                buffer=config.log_buffer,
                batch_size=config.log_batch_size,
                flush_every=config.log_flush_every,
                report_every=config.log_report_every,
            ),
        )
    else:
        logger.warning("Chat audit log disabled (no CHAT_DB_DSN or CHAT_LOG_DISABLE=true)")

    if not config.jwt_secret:
        logger.warning("CHAT_JWT_SECRET is empty: /chat will answer 500 auth not configured")

    service = ChatService(
        embedder=embedder,
        retriever=index,
        synthesizer=AnswerSynthesizer(llm, top_k=config.top_k, max_sources=config.max_sources),
        language_gate=LanguageGate.from_file(config.lang_stopwords_path),
        cache=EmbeddingCache(config.embed_cache_max) if config.embed_cache_max > 0 else None,
        audit=audit_logger,
        top_k=config.top_k,
        max_sources=config.max_sources,
        min_score=config.min_score,
    )
    return create_app(
        service,
        config,
        audit_logger=audit_logger,
        vectors=len(index),
        closers=[http.aclose],
    )


def main() -> None:
    import uvicorn

    config = load_config().validate()
    setup_logging(config)
    logger.info(f"Config: {config.summary()}")
    app = build_app(config)
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
