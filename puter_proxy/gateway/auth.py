from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

from puter_proxy.settings import Settings


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


class Authenticator:
    """Shared-secret ingress check; disabled when no proxy key is configured."""

    def __init__(self, settings: Settings):
        self.api_keys = set(settings.proxy_api_keys_list)
        self.required = bool(self.api_keys)

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing Bearer token.")

        if token.strip() in self.api_keys:
            request.state.auth = AuthResult(method="api_key", principal="api-key-client")
            return None

        return _unauthorized("Invalid Proxy API Key")


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
