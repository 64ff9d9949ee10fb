from __future__ import annotations

import re
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_TOKEN_SEPARATORS = re.compile(r"[\n,\s]+")


class Settings(BaseSettings):
    puter_tokens: str = ""
    puter_token: str = ""
    puter_hosts: str = "https://api.puter.com,https://puter.com"
    puter_origin: str = "https://puter.com"
    puter_models_url: str = "https://puter.com/puterai/chat/models/details"
    puter_token_cooldown_seconds: float = 15 * 60.0
    puter_token_max_attempts: int = 3
    puter_token_polling: bool = False
    puter_token_poll_interval_seconds: float = 5 * 60.0
    puter_openai_service: str = "openai-completion"
    puter_service_overrides: dict[str, str] = {}
    puter_allow_openai_temperature: bool = False
    proxy_api_key: str = ""
    stream_heartbeat_seconds: float = 8.0
    models_cache_seconds: float = 10 * 60.0
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 120.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 10.0
    proxy_audit_log_enabled: bool = False
    proxy_audit_log_path: str = "logs/proxy_attempts.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def token_list(self) -> list[str]:
        return parse_tokens(self.puter_tokens or self.puter_token)

    @property
    def proxy_api_keys_list(self) -> list[str]:
        return _split_csv(self.proxy_api_key)

    @property
    def puter_hosts_list(self) -> list[str]:
        return [host.rstrip("/") for host in _split_csv(self.puter_hosts)]

    @property
    def max_attempts(self) -> int:
        return max(1, int(self.puter_token_max_attempts))

    @property
    def heartbeat_interval_seconds(self) -> float:
        return max(3.0, float(self.stream_heartbeat_seconds))


def parse_tokens(raw: str | None) -> list[str]:
    """Split a credential list on commas/whitespace, dropping blanks and repeats."""
    if not raw:
        return []
    seen: set[str] = set()
    tokens: list[str] = []
    for part in _TOKEN_SEPARATORS.split(raw):
        value = part.strip()
        if not value or value in seen:
            continue
        seen.add(value)
        tokens.append(value)
    return tokens


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
