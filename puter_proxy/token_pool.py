from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from puter_proxy.errors import UpstreamUnreachableError, truncate_message
from puter_proxy.settings import Settings, get_settings

if TYPE_CHECKING:
    from puter_proxy.dispatcher import UpstreamDispatcher

logger = logging.getLogger("uvicorn.error")

NETWORK_ERROR_STATUS = 599
AUTH_COOLDOWN_FLOOR_SECONDS = 60 * 60.0
TRANSIENT_COOLDOWN_CAP_SECONDS = 5 * 60.0
TRANSIENT_BACKOFF_MAX_MULTIPLIER = 8
RECENT_SUCCESS_WINDOW_SECONDS = 10 * 60.0


def is_transient_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or 500 <= status_code <= 599


def is_auth_status(status_code: int | None) -> bool:
    return status_code in {401, 403}


def mask_token(token: str) -> str:
    if len(token) > 10:
        return f"{token[:6]}...{token[-4:]}"
    return "****"


@dataclass(slots=True)
class TokenError:
    status: int | None
    message: str
    at_epoch: float


@dataclass(slots=True)
class TokenEntry:
    value: str
    disabled_until: float = 0.0
    failure_count: int = 0
    last_success_at: float = 0.0
    last_error: TokenError | None = None

    def is_available(self, now: float) -> bool:
        return not self.disabled_until or self.disabled_until <= now


class TokenPool:
    """Round-robin credential rotation with advisory, status-classified cooldowns.

    Every method is synchronous: within one event loop a selection or a report
    runs to completion without interleaving, so the pool needs no lock.
    """

    def __init__(
        self,
        tokens: list[str] | None = None,
        *,
        cooldown_base_seconds: float = 15 * 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cooldown_base_seconds = max(0.0, float(cooldown_base_seconds))
        self._clock = clock
        self._entries: list[TokenEntry] = []
        self._cursor = 0
        self.sync(tokens or [])

    @property
    def entries(self) -> list[TokenEntry]:
        return list(self._entries)

    def tokens(self) -> list[str]:
        return [entry.value for entry in self._entries]

    def sync(self, tokens: list[str]) -> bool:
        """Replace the pool wholesale when the configured list changed.

        Returns True when the entries were rebuilt.
        """
        if self.tokens() == list(tokens):
            return False
        self._entries = [TokenEntry(value=token) for token in tokens]
        self._cursor = 0
        if self._entries:
            logger.info("token_pool_synced tokens=%d", len(self._entries))
        return True

    def has_any_token(self) -> bool:
        return bool(self._entries)

    def get_token(self) -> str | None:
        if not self._entries:
            return None
        now = self._clock()
        total = len(self._entries)
        for offset in range(total):
            index = (self._cursor + offset) % total
            entry = self._entries[index]
            if entry.is_available(now):
                self._cursor = (index + 1) % total
                return entry.value

        # Cooldowns are advisory: hand out whichever token recovers first.
        soonest = min(self._entries, key=lambda item: item.disabled_until)
        return soonest.value

    def report_result(
        self,
        token: str,
        *,
        ok: bool,
        status: int | None = None,
        error_text: str | None = None,
    ) -> None:
        entry = self._find(token)
        if entry is None:
            return
        now = self._clock()
        if ok:
            entry.disabled_until = 0.0
            entry.failure_count = 0
            entry.last_error = None
            entry.last_success_at = now
            return

        entry.failure_count += 1
        entry.last_error = TokenError(
            status=status,
            message=truncate_message(error_text or ""),
            at_epoch=now,
        )
        cooldown = self.cooldown_for(status, entry.failure_count)
        entry.disabled_until = now + cooldown
        logger.info(
            "token_cooldown token=%s status=%s failures=%d cooldown_seconds=%.1f",
            mask_token(token),
            status,
            entry.failure_count,
            cooldown,
        )

    def report_success(self, token: str) -> None:
        self.report_result(token, ok=True)

    def report_failure(
        self, token: str, status: int | None, error_text: str | None = None
    ) -> None:
        self.report_result(token, ok=False, status=status, error_text=error_text)

    def cooldown_for(self, status: int | None, failure_count: int) -> float:
        base = self.cooldown_base_seconds
        if is_auth_status(status):
            return max(base, AUTH_COOLDOWN_FLOOR_SECONDS)
        if is_transient_status(status):
            multiplier = min(TRANSIENT_BACKOFF_MAX_MULTIPLIER, max(1, failure_count))
            return min(TRANSIENT_COOLDOWN_CAP_SECONDS, base * multiplier)
        return base

    def snapshot(self) -> list[dict[str, Any]]:
        now = self._clock()
        rows: list[dict[str, Any]] = []
        for entry in self._entries:
            row: dict[str, Any] = {
                "token": mask_token(entry.value),
                "available": entry.is_available(now),
                "failure_count": entry.failure_count,
                "cooldown_remaining_seconds": round(
                    max(0.0, entry.disabled_until - now), 3
                ),
            }
            if entry.last_error is not None:
                row["last_error_status"] = entry.last_error.status
            rows.append(row)
        return rows

    def _find(self, token: str) -> TokenEntry | None:
        for entry in self._entries:
            if entry.value == token:
                return entry
        return None


_POOL: TokenPool | None = None


def get_token_pool(settings: Settings | None = None) -> TokenPool:
    """Process-wide pool, re-synced against the configured credential list."""
    global _POOL
    settings = settings or get_settings()
    if _POOL is None:
        _POOL = TokenPool(cooldown_base_seconds=settings.puter_token_cooldown_seconds)
    _POOL.cooldown_base_seconds = max(0.0, settings.puter_token_cooldown_seconds)
    _POOL.sync(settings.token_list)
    return _POOL


def reset_token_pool() -> None:
    global _POOL
    _POOL = None


DEFAULT_PROBE_SERVICE = "openai-completion"


def build_probe_request(service: str = DEFAULT_PROBE_SERVICE) -> dict[str, Any]:
    return {
        "interface": "puter-chat-completion",
        "service": service,
        "method": "complete",
        "args": {
            "model": "gpt-5-nano",
            "stream": False,
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "ping"}],
        },
    }


class TokenHealthPoller:
    """Background re-check of idle credentials so recovered tokens rejoin early."""

    def __init__(
        self,
        *,
        pool: TokenPool,
        dispatcher: UpstreamDispatcher,
        interval_seconds: float = 5 * 60.0,
        enabled: bool = True,
        service: str = DEFAULT_PROBE_SERVICE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pool = pool
        self._dispatcher = dispatcher
        self._probe_body = build_probe_request(service)
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._enabled = enabled
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="token-health-poller")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    def due_tokens(self) -> list[str]:
        now = self._clock()
        due: list[str] = []
        for entry in self._pool.entries:
            if entry.disabled_until > now:
                continue
            if (
                entry.last_success_at
                and now - entry.last_success_at < RECENT_SUCCESS_WINDOW_SECONDS
            ):
                continue
            due.append(entry.value)
        return due

    async def run_once(self) -> int:
        if self._running:
            logger.debug("token_health_poll_skipped reason=already_running")
            return 0
        self._running = True
        try:
            tokens = self.due_tokens()
            await asyncio.gather(*(self._probe(token) for token in tokens))
            return len(tokens)
        finally:
            self._running = False

    async def _probe(self, token: str) -> None:
        try:
            upstream = await self._dispatcher.call_driver(token=token, body=self._probe_body)
        except UpstreamUnreachableError as exc:
            self._pool.report_failure(token, NETWORK_ERROR_STATUS, str(exc))
            return
        failure = upstream.envelope_failure()
        if upstream.ok and failure is None:
            self._pool.report_success(token)
            return
        if failure is not None and failure.unimplemented:
            logger.warning(
                "token_health_probe_unsupported token=%s service=%s message=%s",
                mask_token(token),
                self._probe_body["service"],
                failure.message[:200],
            )
            return
        if failure is not None:
            self._pool.report_failure(token, failure.status, failure.message)
            return
        self._pool.report_failure(token, upstream.status_code, upstream.error_text())

    async def _run(self) -> None:
        while True:
            try:
                probed = await self.run_once()
                logger.debug("token_health_poll_complete probed=%d", probed)
            except Exception as exc:
                logger.warning("token_health_poll_failed error=%s", str(exc))
            await asyncio.sleep(self._interval_seconds)
