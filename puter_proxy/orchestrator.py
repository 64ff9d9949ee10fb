from __future__ import annotations

import logging
import re
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from puter_proxy.dispatcher import DriverResponse, UpstreamDispatcher
from puter_proxy.errors import (
    ConfigurationError,
    InvalidRequestError,
    UpstreamError,
    UpstreamUnreachableError,
)
from puter_proxy.normalizer import (
    build_chat_completion,
    normalize_content,
    normalize_embeddings,
)
from puter_proxy.streaming import StreamRelay, replay_completion_as_stream
from puter_proxy.token_pool import (
    NETWORK_ERROR_STATUS,
    TokenPool,
    is_auth_status,
    is_transient_status,
    mask_token,
)

logger = logging.getLogger("uvicorn.error")

DEFAULT_CHAT_MODEL = "gpt-5-nano"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_PROVIDER = "openai"

CHAT_INTERFACE = "puter-chat-completion"
CHAT_METHOD = "complete"
LEGACY_CHAT_SERVICE = "ai-chat"
EMBEDDINGS_INTERFACE = "puter-embeddings"
EMBEDDINGS_SERVICE = "openai"
EMBEDDINGS_METHOD = "embed"

CANONICAL_SEARCH_TOOLS: list[dict[str, Any]] = [{"type": "web_search"}]
SEARCH_TOOL_TYPES = {"web_search", "web_search_preview", "browser_search", "google_search"}
_SEARCH_NAME_PATTERN = re.compile(r"search|brows", re.IGNORECASE)
_TRANSIENT_PATTERN = re.compile(
    r"temporarily unavailable|rate.?limit|overloaded|try again|timed? ?out|timeout",
    re.IGNORECASE,
)

_PROVIDER_PREFIXES: list[tuple[tuple[str, ...], str]] = [
    (("claude",), "claude"),
    (("gemini",), "gemini"),
    (("grok", "xai"), "xai"),
    (("mistral",), "mistral"),
    (("deepseek",), "deepseek"),
    (("openrouter",), "openrouter"),
    (("qwen",), "qwen"),
    (("gpt",), "openai"),
]


def resolve_provider(model: str | None) -> str:
    normalized = (model or "").strip().lower()
    if "/" in normalized:
        prefix = normalized.split("/", 1)[0]
        return prefix or DEFAULT_PROVIDER
    for prefixes, provider in _PROVIDER_PREFIXES:
        if normalized.startswith(prefixes):
            return provider
    return DEFAULT_PROVIDER


def resolve_service(
    provider: str,
    *,
    openai_service: str | None = "openai-completion",
    overrides: dict[str, str] | None = None,
) -> str:
    if overrides and overrides.get(provider):
        return overrides[provider]
    if provider == DEFAULT_PROVIDER and openai_service:
        return openai_service
    return provider


def qualify_model(model: str, provider: str) -> str:
    """The legacy chat service expects ``provider/model`` identifiers."""
    if "/" in model:
        return model
    return f"{provider}/{model}"


def is_retryable_status(status_code: int | None) -> bool:
    return is_auth_status(status_code) or is_transient_status(status_code)


def is_transient_message(message: str) -> bool:
    return bool(_TRANSIENT_PATTERN.search(message or ""))


def has_search_tool(tools: list[Any] | None) -> bool:
    for tool in tools or []:
        if isinstance(tool, str):
            if tool.strip().lower() in SEARCH_TOOL_TYPES:
                return True
            continue
        if not isinstance(tool, dict):
            continue
        tool_type = str(tool.get("type") or "").strip().lower()
        if tool_type in SEARCH_TOOL_TYPES:
            return True
        function = tool.get("function")
        name = function.get("name") if isinstance(function, dict) else tool.get("name")
        if isinstance(name, str) and _SEARCH_NAME_PATTERN.search(name):
            return True
    return False


def _drop_none(args: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in args.items() if value is not None}


@dataclass(slots=True)
class ChatRequest:
    messages: list[dict[str, Any]]
    model: str = DEFAULT_CHAT_MODEL
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[Any] | None = None
    stream: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ChatRequest:
        messages = payload.get("messages")
        if not isinstance(messages, list):
            raise InvalidRequestError(
                "Invalid request: messages must be an array", param="messages"
            )
        for index, message in enumerate(messages):
            if not isinstance(message, dict) or not isinstance(message.get("role"), str):
                raise InvalidRequestError(
                    f"Invalid request: messages[{index}] must be an object with a role",
                    param=f"messages[{index}]",
                )
        model = payload.get("model") or DEFAULT_CHAT_MODEL
        if not isinstance(model, str):
            raise InvalidRequestError("Invalid request: model must be a string", param="model")
        temperature = payload.get("temperature")
        if temperature is not None and (
            isinstance(temperature, bool) or not isinstance(temperature, (int, float))
        ):
            raise InvalidRequestError(
                "Invalid request: temperature must be a number", param="temperature"
            )
        max_tokens = payload.get("max_tokens")
        if max_tokens is not None and (
            isinstance(max_tokens, bool) or not isinstance(max_tokens, int)
        ):
            raise InvalidRequestError(
                "Invalid request: max_tokens must be an integer", param="max_tokens"
            )
        tools = payload.get("tools")
        if tools is not None and not isinstance(tools, list):
            raise InvalidRequestError("Invalid request: tools must be an array", param="tools")
        return cls(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools or None,
            stream=bool(payload.get("stream")),
        )


@dataclass(slots=True)
class EmbeddingsRequest:
    input: str | list[str]
    model: str = DEFAULT_EMBEDDING_MODEL

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> EmbeddingsRequest:
        value = payload.get("input")
        if not isinstance(value, str) and not (
            isinstance(value, list) and all(isinstance(item, str) for item in value)
        ):
            raise InvalidRequestError(
                "Invalid request: input must be a string or an array of strings",
                param="input",
            )
        if isinstance(value, list) and not value:
            raise InvalidRequestError("Invalid request: input must not be empty", param="input")
        model = payload.get("model") or DEFAULT_EMBEDDING_MODEL
        if not isinstance(model, str):
            raise InvalidRequestError("Invalid request: model must be a string", param="model")
        return cls(input=value, model=model)


@dataclass(slots=True)
class DriverCall:
    interface: str
    service: str
    method: str
    args: dict[str, Any]

    def to_body(self) -> dict[str, Any]:
        return {
            "interface": self.interface,
            "service": self.service,
            "method": self.method,
            "args": self.args,
        }


@dataclass(slots=True)
class AttemptContext:
    request_id: str
    model: str
    service: str
    primary: DriverCall
    legacy: DriverCall | None = None
    legacy_first: bool = False
    stream: bool = False
    attempt: int = 0
    last_status: int | None = None
    last_message: str | None = None
    attempted_tokens: list[str] = field(default_factory=list)

    def record_error(self, status_code: int | None, message: str) -> None:
        self.last_status = status_code
        self.last_message = message


@dataclass(slots=True)
class ChatResult:
    completion: dict[str, Any] | None = None
    stream: AsyncIterator[bytes] | None = None


def _http_error_message(upstream: DriverResponse) -> str:
    body = upstream.json
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str) and error.strip():
            return error
        if isinstance(body.get("message"), str):
            return body["message"]
    return upstream.error_text() or f"Upstream HTTP {upstream.status_code}"


class RetryOrchestrator:
    """Drives one inbound request across tokens, hosts and driver interfaces."""

    def __init__(
        self,
        *,
        pool: TokenPool,
        dispatcher: UpstreamDispatcher,
        max_attempts: int = 3,
        openai_service: str | None = "openai-completion",
        service_overrides: dict[str, str] | None = None,
        allow_openai_temperature: bool = False,
        heartbeat_seconds: float = 8.0,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.pool = pool
        self.dispatcher = dispatcher
        self.max_attempts = max(1, int(max_attempts))
        self.openai_service = openai_service
        self.service_overrides = dict(service_overrides or {})
        self.allow_openai_temperature = allow_openai_temperature
        self.heartbeat_seconds = heartbeat_seconds
        self._audit_hook = audit_hook

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    def _require_tokens(self) -> None:
        if not self.pool.has_any_token():
            raise ConfigurationError(
                "Server misconfiguration: no Puter tokens configured (set PUTER_TOKENS)."
            )

    def build_chat_context(self, request: ChatRequest, request_id: str) -> AttemptContext:
        provider = resolve_provider(request.model)
        service = resolve_service(
            provider,
            openai_service=self.openai_service,
            overrides=self.service_overrides,
        )
        temperature = request.temperature
        if provider == DEFAULT_PROVIDER and not self.allow_openai_temperature:
            temperature = None
        search = has_search_tool(request.tools)
        primary = DriverCall(
            interface=CHAT_INTERFACE,
            service=service,
            method=CHAT_METHOD,
            args=_drop_none(
                {
                    "messages": request.messages,
                    "model": request.model,
                    "stream": request.stream,
                    "max_tokens": request.max_tokens,
                    "tools": request.tools,
                    "temperature": temperature,
                }
            ),
        )
        legacy = DriverCall(
            interface=CHAT_INTERFACE,
            service=LEGACY_CHAT_SERVICE,
            method=CHAT_METHOD,
            args=_drop_none(
                {
                    "messages": [
                        {**message, "content": normalize_content(message.get("content"))}
                        for message in request.messages
                    ],
                    "model": qualify_model(request.model, provider),
                    "stream": request.stream,
                    "max_tokens": request.max_tokens,
                    "temperature": request.temperature,
                    "tools": CANONICAL_SEARCH_TOOLS if search else request.tools,
                }
            ),
        )
        return AttemptContext(
            request_id=request_id,
            model=request.model,
            service=service,
            primary=primary,
            legacy=legacy,
            legacy_first=search,
            stream=request.stream,
        )

    def build_embeddings_context(
        self, request: EmbeddingsRequest, request_id: str
    ) -> AttemptContext:
        service = EMBEDDINGS_SERVICE
        return AttemptContext(
            request_id=request_id,
            model=request.model,
            service=service,
            primary=DriverCall(
                interface=EMBEDDINGS_INTERFACE,
                service=service,
                method=EMBEDDINGS_METHOD,
                args={"input": request.input, "model": request.model},
            ),
        )

    async def complete_chat(
        self,
        request: ChatRequest,
        *,
        request_id: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> ChatResult:
        self._require_tokens()
        context = self.build_chat_context(request, request_id)
        upstream = await self.run(context)
        completion_id = f"chatcmpl-{request_id}"
        created = int(time.time())

        if upstream.is_incremental and upstream.stream is not None:
            relay = StreamRelay(
                upstream=upstream.stream,
                completion_id=completion_id,
                model=request.model,
                created=created,
                heartbeat_seconds=self.heartbeat_seconds,
                is_disconnected=is_disconnected,
                request_id=request_id,
            )
            return ChatResult(stream=relay.frames())

        completion = build_chat_completion(
            upstream.result(),
            model=request.model,
            completion_id=completion_id,
            created=created,
        )
        if request.stream:
            return ChatResult(stream=replay_completion_as_stream(completion))
        return ChatResult(completion=completion)

    async def create_embeddings(
        self, request: EmbeddingsRequest, *, request_id: str
    ) -> dict[str, Any]:
        self._require_tokens()
        context = self.build_embeddings_context(request, request_id)
        upstream = await self.run(context)
        return normalize_embeddings(upstream.result(), model=request.model)

    async def run(self, context: AttemptContext) -> DriverResponse:
        """Return the first successful driver response or raise ``UpstreamError``.

        Attempts are strictly sequential; each outcome is reported to the pool
        before the next attempt starts.
        """
        for attempt in range(1, self.max_attempts + 1):
            token = self.pool.get_token()
            if token is None:
                break
            context.attempt = attempt
            context.attempted_tokens.append(mask_token(token))

            call = context.primary
            if context.legacy_first and context.legacy is not None:
                call = context.legacy
                logger.info(
                    "proxy_legacy_route request_id=%s reason=search_tool service=%s",
                    context.request_id,
                    call.service,
                )
            self._record_attempt(context, call, token)

            upstream = await self._call(context, call, token)
            if upstream is None:
                continue

            failure = upstream.envelope_failure()
            if (
                failure is not None
                and call is context.primary
                and context.legacy is not None
                and failure.unimplemented
            ):
                logger.info(
                    "proxy_legacy_fallback request_id=%s attempt=%d service=%s message=%s",
                    context.request_id,
                    attempt,
                    call.service,
                    failure.message[:200],
                )
                self._audit(
                    "proxy_legacy_fallback",
                    request_id=context.request_id,
                    attempt=attempt,
                    token=mask_token(token),
                    service=call.service,
                    legacy_service=context.legacy.service,
                )
                upstream = await self._call(context, context.legacy, token)
                if upstream is None:
                    continue
                failure = upstream.envelope_failure()

            if failure is not None:
                self.pool.report_failure(token, failure.status, failure.message)
                context.record_error(failure.status, failure.message)
                if is_retryable_status(failure.status) or is_transient_message(
                    failure.message
                ):
                    self._record_retry(context, token, failure.status, failure.message)
                    continue
                logger.warning(
                    "proxy_upstream_rejected request_id=%s attempt=%d host=%s message=%s",
                    context.request_id,
                    attempt,
                    upstream.host,
                    failure.message[:200],
                )
                raise UpstreamError(failure.message)

            if not upstream.ok:
                message = _http_error_message(upstream)
                self.pool.report_failure(token, upstream.status_code, message)
                context.record_error(upstream.status_code, message)
                if is_retryable_status(upstream.status_code):
                    self._record_retry(context, token, upstream.status_code, message)
                    continue
                logger.warning(
                    "proxy_upstream_rejected request_id=%s attempt=%d host=%s status=%d",
                    context.request_id,
                    attempt,
                    upstream.host,
                    upstream.status_code,
                )
                raise UpstreamError(message, status_code=upstream.status_code)

            self.pool.report_success(token)
            logger.info(
                "proxy_response request_id=%s attempt=%d host=%s status=%d incremental=%s",
                context.request_id,
                attempt,
                upstream.host,
                upstream.status_code,
                upstream.is_incremental,
            )
            self._audit(
                "proxy_response",
                request_id=context.request_id,
                attempt=attempt,
                token=mask_token(token),
                host=upstream.host,
                status=upstream.status_code,
                incremental=upstream.is_incremental,
            )
            return upstream

        raise self._exhausted(context)

    async def _call(
        self, context: AttemptContext, call: DriverCall, token: str
    ) -> DriverResponse | None:
        try:
            return await self.dispatcher.call_driver(
                token=token, body=call.to_body(), stream=context.stream
            )
        except UpstreamUnreachableError as exc:
            message = str(exc)
            self.pool.report_failure(token, NETWORK_ERROR_STATUS, message)
            context.record_error(NETWORK_ERROR_STATUS, message)
            self._record_retry(context, token, NETWORK_ERROR_STATUS, message)
            return None

    def _record_attempt(self, context: AttemptContext, call: DriverCall, token: str) -> None:
        logger.info(
            "proxy_attempt request_id=%s attempt=%d/%d token=%s interface=%s service=%s model=%s",
            context.request_id,
            context.attempt,
            self.max_attempts,
            mask_token(token),
            call.interface,
            call.service,
            context.model,
        )
        self._audit(
            "proxy_attempt",
            request_id=context.request_id,
            attempt=context.attempt,
            total_attempts=self.max_attempts,
            token=mask_token(token),
            interface=call.interface,
            service=call.service,
            model=context.model,
        )

    def _record_retry(
        self,
        context: AttemptContext,
        token: str,
        status_code: int | None,
        message: str,
    ) -> None:
        logger.info(
            "proxy_retry request_id=%s attempt=%d token=%s status=%s message=%s",
            context.request_id,
            context.attempt,
            mask_token(token),
            status_code,
            message[:200],
        )
        self._audit(
            "proxy_retry",
            request_id=context.request_id,
            attempt=context.attempt,
            token=mask_token(token),
            status=status_code,
        )

    def _exhausted(self, context: AttemptContext) -> UpstreamError:
        logger.error(
            "proxy_exhausted request_id=%s attempts=%d tokens=%s last_status=%s",
            context.request_id,
            context.attempt,
            ",".join(context.attempted_tokens),
            context.last_status,
        )
        self._audit(
            "proxy_exhausted",
            request_id=context.request_id,
            attempts=context.attempt,
            last_status=context.last_status,
        )
        status_code = context.last_status
        if status_code is None or not 400 <= status_code < 599:
            status_code = 502
        return UpstreamError(
            context.last_message or "All Puter tokens failed.",
            status_code=status_code,
        )
