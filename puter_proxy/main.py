from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from puter_proxy.catalog import ModelCatalog
from puter_proxy.dispatcher import UpstreamDispatcher
from puter_proxy.errors import InvalidRequestError, ProxyError
from puter_proxy.gateway.audit import JsonlAuditLogger
from puter_proxy.gateway.auth import Authenticator
from puter_proxy.orchestrator import (
    DEFAULT_PROVIDER,
    ChatRequest,
    EmbeddingsRequest,
    RetryOrchestrator,
    resolve_service,
)
from puter_proxy.settings import get_settings
from puter_proxy.token_pool import TokenHealthPoller, TokenPool, get_token_pool

app = FastAPI(
    title="Puter OpenAI Proxy",
    description="OpenAI-compatible API in front of Puter drivers with token rotation and fallback.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)

    audit_logger = JsonlAuditLogger(
        path=settings.proxy_audit_log_path,
        enabled=settings.proxy_audit_log_enabled,
    )
    app.state.audit_logger = audit_logger

    dispatcher = UpstreamDispatcher(
        hosts=settings.puter_hosts_list,
        origin=settings.puter_origin,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        read_timeout_seconds=settings.upstream_read_timeout_seconds,
        write_timeout_seconds=settings.upstream_write_timeout_seconds,
        pool_timeout_seconds=settings.upstream_pool_timeout_seconds,
    )
    app.state.dispatcher = dispatcher

    pool = get_token_pool(settings)
    app.state.token_pool = pool
    app.state.orchestrator = RetryOrchestrator(
        pool=pool,
        dispatcher=dispatcher,
        max_attempts=settings.max_attempts,
        openai_service=settings.puter_openai_service,
        service_overrides=settings.puter_service_overrides,
        allow_openai_temperature=settings.puter_allow_openai_temperature,
        heartbeat_seconds=settings.heartbeat_interval_seconds,
        audit_hook=audit_logger.log if audit_logger.enabled else None,
    )
    app.state.model_catalog = ModelCatalog(
        dispatcher=dispatcher,
        models_url=settings.puter_models_url,
        ttl_seconds=settings.models_cache_seconds,
    )

    poller = TokenHealthPoller(
        pool=pool,
        dispatcher=dispatcher,
        interval_seconds=settings.puter_token_poll_interval_seconds,
        enabled=settings.puter_token_polling,
        service=resolve_service(
            DEFAULT_PROVIDER,
            openai_service=settings.puter_openai_service,
            overrides=settings.puter_service_overrides,
        ),
    )
    await poller.start()
    app.state.token_poller = poller

    logger.info(
        "startup tokens=%d hosts=%s max_attempts=%d heartbeat_seconds=%.1f "
        "auth_required=%s token_polling=%s audit_log_enabled=%s",
        len(pool.entries),
        ",".join(dispatcher.hosts),
        settings.max_attempts,
        settings.heartbeat_interval_seconds,
        app.state.authenticator.required,
        settings.puter_token_polling,
        audit_logger.enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    poller: TokenHealthPoller | None = getattr(app.state, "token_poller", None)
    if poller is not None:
        await poller.stop()
    dispatcher: UpstreamDispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


async def _json_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise InvalidRequestError(f"Expected JSON body: {exc}") from exc

    if not isinstance(payload, dict):
        raise InvalidRequestError("Expected a JSON object request body.")
    return payload


@app.get("/health")
async def health() -> dict[str, Any]:
    pool: TokenPool = app.state.token_pool
    snapshot = pool.snapshot()
    return {
        "status": "ok" if snapshot else "no_tokens",
        "tokens": snapshot,
        "available_tokens": sum(1 for row in snapshot if row["available"]),
    }


@app.get("/v1/models")
async def models(provider: str | None = None) -> dict[str, Any]:
    catalog: ModelCatalog = app.state.model_catalog
    return await catalog.list_models(provider)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    chat_request = ChatRequest.from_payload(await _json_payload(request))
    orchestrator: RetryOrchestrator = app.state.orchestrator
    request_id = uuid4().hex
    result = await orchestrator.complete_chat(
        chat_request,
        request_id=request_id,
        is_disconnected=request.is_disconnected,
    )
    if result.stream is not None:
        return StreamingResponse(
            result.stream,
            media_type="text/event-stream; charset=utf-8",
            headers={**SSE_HEADERS, "x-request-id": request_id},
        )
    return JSONResponse(content=result.completion, headers={"x-request-id": request_id})


@app.post("/v1/embeddings")
async def embeddings(request: Request) -> JSONResponse:
    embeddings_request = EmbeddingsRequest.from_payload(await _json_payload(request))
    orchestrator: RetryOrchestrator = app.state.orchestrator
    request_id = uuid4().hex
    result = await orchestrator.create_embeddings(embeddings_request, request_id=request_id)
    return JSONResponse(content=result, headers={"x-request-id": request_id})


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "request_failed path=%s status=%d type=%s message=%s",
            request.url.path,
            exc.status_code,
            exc.error_type,
            exc.message[:200],
        )
    return exc.to_response()


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_crashed path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"message": "Internal server error.", "type": "server_error"}},
    )


def run() -> None:
    import uvicorn

    uvicorn.run("puter_proxy.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
