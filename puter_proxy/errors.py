from __future__ import annotations

from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse

MAX_ERROR_MESSAGE_CHARS = 500


def truncate_message(message: str, limit: int = MAX_ERROR_MESSAGE_CHARS) -> str:
    text = message.strip()
    if len(text) <= limit:
        return text
    return text[:limit]


class ProxyError(Exception):
    """Base class for failures rendered as an OpenAI-style error envelope."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        param: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.param = param
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"message": self.message, "type": self.error_type}
        if self.param is not None:
            error["param"] = self.param
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_payload())


class ConfigurationError(ProxyError):
    """Raised when the proxy cannot serve requests because of its own configuration."""


class InvalidRequestError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"


class UpstreamError(ProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(
            truncate_message(message) or "Upstream request failed.",
            status_code=status_code,
            details=details,
        )


class UnrecognizedShapeError(UpstreamError):
    """The upstream payload matched none of the known response shapes."""

    def __init__(self, message: str, *, payload: Any) -> None:
        super().__init__(message, details=payload)


class UpstreamUnreachableError(Exception):
    """Every configured upstream host failed at the transport level."""

    def __init__(self, message: str, *, attempted_hosts: list[str]) -> None:
        super().__init__(message)
        self.attempted_hosts = attempted_hosts
