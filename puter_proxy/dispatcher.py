from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any

import httpx

from puter_proxy.errors import UpstreamUnreachableError

logger = logging.getLogger("uvicorn.error")

DRIVER_PATH = "/drivers/call"
DEFAULT_HOSTS = ["https://api.puter.com", "https://puter.com"]
DEFAULT_ORIGIN = "https://puter.com"

_UNIMPLEMENTED_PATTERN = re.compile(
    r"no implementation available|not implemented|unimplemented", re.IGNORECASE
)


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    return details


def _is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


@dataclass(slots=True)
class EnvelopeFailure:
    message: str
    status: int | None

    @property
    def unimplemented(self) -> bool:
        """The driver has no such interface or method; says nothing about the token."""
        return bool(_UNIMPLEMENTED_PATTERN.search(self.message))


@dataclass(slots=True)
class DriverResponse:
    status_code: int
    host: str
    content_type: str
    json: Any = None
    text: str | None = None
    stream: httpx.Response | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_incremental(self) -> bool:
        return self.stream is not None

    def envelope_failure(self) -> EnvelopeFailure | None:
        """Drivers report application errors as HTTP 2xx with ``success: false``.

        Non-2xx responses are HTTP failures even when they carry the same body.
        """
        if not self.ok or not isinstance(self.json, dict) or self.json.get("success") is not False:
            return None
        error = self.json.get("error")
        message: str | None = None
        status: int | None = None
        if isinstance(error, dict):
            raw_message = error.get("message")
            if isinstance(raw_message, str) and raw_message.strip():
                message = raw_message
            raw_status = error.get("status")
            if isinstance(raw_status, int) and not isinstance(raw_status, bool):
                status = raw_status
        elif isinstance(error, str) and error.strip():
            message = error
        if message is None:
            message = json.dumps(error if error is not None else self.json)
        return EnvelopeFailure(message=message, status=status)

    def result(self) -> Any:
        if isinstance(self.json, dict) and self.json.get("result") is not None:
            return self.json["result"]
        if self.json is not None:
            return self.json
        return self.text

    def error_text(self) -> str:
        if self.text is not None:
            return self.text
        if self.json is not None:
            return json.dumps(self.json)
        return ""

    async def aclose(self) -> None:
        if self.stream is not None:
            await self.stream.aclose()


class UpstreamDispatcher:
    """Performs driver calls against an ordered list of Puter hosts."""

    def __init__(
        self,
        *,
        hosts: list[str] | None = None,
        origin: str = DEFAULT_ORIGIN,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float | None = None,
        read_timeout_seconds: float | None = None,
        write_timeout_seconds: float | None = None,
        pool_timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.hosts = [host.rstrip("/") for host in (hosts or DEFAULT_HOSTS)]
        self.origin = origin
        if client is None:
            connect_timeout = max(0.1, float(connect_timeout_seconds or min(10.0, timeout_seconds)))
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    timeout=None,
                    connect=connect_timeout,
                    read=max(0.1, float(read_timeout_seconds or timeout_seconds)),
                    write=max(0.1, float(write_timeout_seconds or timeout_seconds)),
                    pool=max(0.1, float(pool_timeout_seconds or connect_timeout)),
                ),
                limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            )
        self.client = client

    async def close(self) -> None:
        await self.client.aclose()

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Origin": self.origin,
        }

    async def call_driver(
        self,
        *,
        token: str,
        body: dict[str, Any],
        stream: bool = False,
    ) -> DriverResponse:
        """POST a driver call, moving to the next host only on transport errors.

        With ``stream=True`` a successful non-JSON body is left open on the
        returned ``DriverResponse.stream`` for incremental reading; the caller
        owns closing it.
        """
        last_error: dict[str, Any] | None = None
        for host in self.hosts:
            started = time.perf_counter()
            try:
                request = self.client.build_request(
                    "POST",
                    f"{host}{DRIVER_PATH}",
                    json=body,
                    headers=self._headers(token),
                )
                upstream = await self.client.send(request, stream=stream)
            except httpx.RequestError as exc:
                last_error = _request_error_details(exc)
                logger.warning(
                    "upstream_request_error host=%s interface=%s error_type=%s error=%s",
                    host,
                    body.get("interface"),
                    last_error["error_type"],
                    last_error["error"],
                )
                continue

            logger.info(
                "upstream_connected host=%s interface=%s service=%s status=%d connect_ms=%.2f",
                host,
                body.get("interface"),
                body.get("service"),
                upstream.status_code,
                (time.perf_counter() - started) * 1000.0,
            )
            content_type = upstream.headers.get("content-type", "").lower()
            if (
                stream
                and 200 <= upstream.status_code < 300
                and not _is_json_content_type(content_type)
            ):
                return DriverResponse(
                    status_code=upstream.status_code,
                    host=host,
                    content_type=content_type,
                    stream=upstream,
                )
            try:
                return await self._read_buffered(upstream, host, content_type)
            except httpx.RequestError as exc:
                last_error = _request_error_details(exc)
                logger.warning(
                    "upstream_read_error host=%s error_type=%s error=%s",
                    host,
                    last_error["error_type"],
                    last_error["error"],
                )
                continue

        message = "All upstream hosts failed"
        if last_error is not None:
            message = f"{message}: {last_error['error_type']}: {last_error['error']}"
        raise UpstreamUnreachableError(message, attempted_hosts=list(self.hosts))

    async def get_json(self, url: str, params: dict[str, str] | None = None) -> Any:
        response = await self.client.get(
            url,
            params=params,
            headers={"Accept": "application/json", "Origin": self.origin},
        )
        if response.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"Upstream returned {response.status_code}: {response.text[:200]}",
                request=response.request,
                response=response,
            )
        try:
            return response.json()
        except ValueError as exc:
            content_type = response.headers.get("content-type") or "unknown"
            raise ValueError(
                f"Upstream returned non-JSON content-type: {content_type}"
            ) from exc

    @staticmethod
    async def _read_buffered(
        upstream: httpx.Response, host: str, content_type: str
    ) -> DriverResponse:
        try:
            raw = await upstream.aread()
        finally:
            await upstream.aclose()
        text = raw.decode(upstream.encoding or "utf-8", errors="replace")
        if _is_json_content_type(content_type):
            try:
                return DriverResponse(
                    status_code=upstream.status_code,
                    host=host,
                    content_type=content_type,
                    json=json.loads(text) if text.strip() else None,
                )
            except ValueError:
                pass
        return DriverResponse(
            status_code=upstream.status_code,
            host=host,
            content_type=content_type,
            text=text,
        )
