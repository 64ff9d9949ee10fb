from __future__ import annotations

from typing import Any

from puter_proxy.settings import Settings, parse_tokens
from puter_proxy.token_pool import (
    NETWORK_ERROR_STATUS,
    TokenPool,
    get_token_pool,
    mask_token,
    reset_token_pool,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _pool(tokens: list[str], base: float = 60.0) -> tuple[TokenPool, FakeClock]:
    clock = FakeClock()
    return TokenPool(tokens, cooldown_base_seconds=base, clock=clock), clock


def _entry(pool: TokenPool, token: str) -> Any:
    return next(entry for entry in pool.entries if entry.value == token)


def test_round_robin_visits_every_token_in_order() -> None:
    pool, _ = _pool(["a", "b", "c"])
    picks = [pool.get_token() for _ in range(6)]
    assert picks == ["a", "b", "c", "a", "b", "c"]


def test_disabled_token_is_skipped_until_cooldown_elapses() -> None:
    pool, clock = _pool(["a", "b"])
    pool.report_failure("a", 429, "rate limited")

    assert [pool.get_token() for _ in range(3)] == ["b", "b", "b"]

    clock.now += 61
    picks = {pool.get_token() for _ in range(2)}
    assert picks == {"a", "b"}


def test_success_resets_failure_state() -> None:
    pool, clock = _pool(["a"])
    pool.report_failure("a", 500, "boom")
    pool.report_failure("a", 500, "boom")
    pool.report_success("a")

    entry = _entry(pool, "a")
    assert entry.disabled_until == 0.0
    assert entry.failure_count == 0
    assert entry.last_error is None
    assert entry.last_success_at == clock.now


def test_auth_failure_cooldown_has_one_hour_floor() -> None:
    pool, clock = _pool(["a"], base=900.0)
    pool.report_failure("a", 401, "unauthorized")
    assert _entry(pool, "a").disabled_until - clock.now == 3600.0

    pool, clock = _pool(["b"], base=7200.0)
    pool.report_failure("b", 403, "forbidden")
    assert _entry(pool, "b").disabled_until - clock.now == 7200.0


def test_transient_cooldown_grows_linearly_and_is_capped() -> None:
    pool, clock = _pool(["a"], base=60.0)

    pool.report_failure("a", 429, "slow down")
    assert _entry(pool, "a").disabled_until - clock.now == 60.0

    for _ in range(4):
        pool.report_failure("a", 503, "unavailable")
    entry = _entry(pool, "a")
    assert entry.failure_count == 5
    assert entry.disabled_until - clock.now == 300.0

    for _ in range(5):
        pool.report_failure("a", NETWORK_ERROR_STATUS, "connect failed")
    assert _entry(pool, "a").disabled_until - clock.now == 300.0


def test_other_failures_use_flat_base_cooldown() -> None:
    pool, clock = _pool(["a"], base=120.0)
    pool.report_failure("a", 400, "bad request")
    pool.report_failure("a", None, "model refused")
    entry = _entry(pool, "a")
    assert entry.failure_count == 2
    assert entry.disabled_until - clock.now == 120.0
    assert entry.last_error is not None
    assert entry.last_error.message == "model refused"


def test_all_disabled_returns_token_that_recovers_first() -> None:
    pool, _ = _pool(["a", "b", "c"], base=60.0)
    pool.report_failure("a", 401, "unauthorized")
    pool.report_failure("b", 429, "rate limited")
    pool.report_failure("c", 400, "bad")
    _entry(pool, "c").disabled_until += 30

    assert pool.get_token() == "b"


def test_empty_pool_returns_none() -> None:
    pool, _ = _pool([])
    assert pool.has_any_token() is False
    assert pool.get_token() is None


def test_unknown_token_reports_are_ignored() -> None:
    pool, _ = _pool(["a"])
    pool.report_failure("ghost", 401, "nope")
    pool.report_success("ghost")
    assert _entry(pool, "a").failure_count == 0


def test_error_text_is_truncated_to_500_characters() -> None:
    pool, _ = _pool(["a"])
    pool.report_failure("a", 500, "x" * 900)
    entry = _entry(pool, "a")
    assert entry.last_error is not None
    assert len(entry.last_error.message) == 500


def test_sync_replaces_pool_only_when_list_changes() -> None:
    pool, _ = _pool(["a", "b"])
    pool.report_failure("a", 500, "boom")

    assert pool.sync(["a", "b"]) is False
    assert _entry(pool, "a").failure_count == 1

    assert pool.sync(["b", "a"]) is True
    assert pool.tokens() == ["b", "a"]
    assert all(entry.failure_count == 0 for entry in pool.entries)

    assert pool.sync([]) is True
    assert pool.get_token() is None


def test_snapshot_masks_tokens() -> None:
    pool, _ = _pool(["abcdefghijklmnop", "short"])
    pool.report_failure("short", 429, "slow")
    rows = pool.snapshot()
    assert rows[0]["token"] == "abcdef...mnop"
    assert rows[0]["available"] is True
    assert rows[1]["token"] == "****"
    assert rows[1]["available"] is False
    assert rows[1]["last_error_status"] == 429
    assert rows[1]["cooldown_remaining_seconds"] == 60.0


def test_mask_token_keeps_only_edges() -> None:
    assert mask_token("abcdefghijklmnop") == "abcdef...mnop"
    assert mask_token("0123456789") == "****"


def test_parse_tokens_splits_and_dedupes() -> None:
    assert parse_tokens("a, b\nc  a,,") == ["a", "b", "c"]
    assert parse_tokens("") == []
    assert parse_tokens(None) == []


def test_settings_prefer_token_list_over_single_token() -> None:
    settings = Settings(puter_tokens="t1,t2", puter_token="solo")
    assert settings.token_list == ["t1", "t2"]
    assert Settings(puter_tokens="", puter_token="solo").token_list == ["solo"]


def test_get_token_pool_is_a_resyncing_singleton() -> None:
    reset_token_pool()
    try:
        first = get_token_pool(Settings(puter_tokens="t1,t2", puter_token_cooldown_seconds=30))
        assert first.tokens() == ["t1", "t2"]
        assert first.cooldown_base_seconds == 30

        second = get_token_pool(Settings(puter_tokens="t3"))
        assert second is first
        assert second.tokens() == ["t3"]
    finally:
        reset_token_pool()
