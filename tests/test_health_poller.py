from __future__ import annotations

import asyncio
import json

import httpx

from puter_proxy.dispatcher import UpstreamDispatcher
from puter_proxy.token_pool import TokenHealthPoller, TokenPool, build_probe_request


class FakeClock:
    def __init__(self, now: float = 10_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _poller(
    handler, pool: TokenPool, clock: FakeClock, **kwargs
) -> TokenHealthPoller:
    dispatcher = UpstreamDispatcher(
        hosts=["https://api.puter.test"],
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return TokenHealthPoller(pool=pool, dispatcher=dispatcher, clock=clock, **kwargs)


def _entry(pool: TokenPool, token: str):
    return next(entry for entry in pool.entries if entry.value == token)


def test_due_tokens_skip_cooling_and_recently_successful_tokens() -> None:
    clock = FakeClock()
    pool = TokenPool(["idle", "cooling", "fresh", "stale"], cooldown_base_seconds=60, clock=clock)
    pool.report_failure("cooling", 401, "unauthorized")
    pool.report_success("fresh")
    pool.report_success("stale")
    clock.now += 5 * 60
    pool.report_success("fresh")
    clock.now += 6 * 60

    poller = _poller(lambda request: httpx.Response(200), pool, clock)

    assert poller.due_tokens() == ["idle", "stale"]


def test_run_once_probes_due_tokens_and_records_outcomes() -> None:
    probed: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        token = request.headers["authorization"].removeprefix("Bearer ")
        probed.append(token)
        assert json.loads(request.content) == build_probe_request()
        if token == "revoked":
            return httpx.Response(401, text="unauthorized")
        return httpx.Response(200, json={"success": True, "result": {"message": {"content": "p"}}})

    clock = FakeClock()
    pool = TokenPool(["healthy", "revoked"], cooldown_base_seconds=60, clock=clock)
    poller = _poller(handler, pool, clock)

    count = asyncio.run(poller.run_once())

    assert count == 2
    assert sorted(probed) == ["healthy", "revoked"]
    assert _entry(pool, "healthy").last_success_at == clock.now
    revoked = _entry(pool, "revoked")
    assert revoked.last_error is not None and revoked.last_error.status == 401
    assert revoked.disabled_until - clock.now == 3600.0


def test_run_once_reports_envelope_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, json={"success": False, "error": {"message": "quota exceeded", "status": 402}}
        )

    clock = FakeClock()
    pool = TokenPool(["broke"], cooldown_base_seconds=60, clock=clock)

    asyncio.run(_poller(handler, pool, clock).run_once())

    entry = _entry(pool, "broke")
    assert entry.failure_count == 1
    assert entry.last_error is not None
    assert entry.last_error.message == "quota exceeded"


def test_run_once_is_skipped_while_a_pass_is_in_flight() -> None:
    async def _run() -> tuple[int, int]:
        gate = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await gate.wait()
            return httpx.Response(200, json={"success": True, "result": "ok"})

        clock = FakeClock()
        pool = TokenPool(["only"], clock=clock)
        poller = _poller(handler, pool, clock)
        first = asyncio.create_task(poller.run_once())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert poller.running is True
        second = await poller.run_once()
        gate.set()
        return await first, second

    first, second = asyncio.run(_run())
    assert first == 1
    assert second == 0


def test_disabled_poller_does_not_start() -> None:
    clock = FakeClock()
    pool = TokenPool(["a"], clock=clock)
    dispatcher = UpstreamDispatcher(
        hosts=["https://api.puter.test"],
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))),
    )
    poller = TokenHealthPoller(pool=pool, dispatcher=dispatcher, enabled=False, clock=clock)

    async def _run() -> None:
        await poller.start()
        assert poller._task is None
        await poller.stop()

    asyncio.run(_run())


def test_probe_targets_configured_service() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "result": "ok"})

    clock = FakeClock()
    pool = TokenPool(["only"], clock=clock)

    asyncio.run(_poller(handler, pool, clock, service="openai-legacy").run_once())

    assert bodies == [build_probe_request("openai-legacy")]
    assert bodies[0]["service"] == "openai-legacy"
    assert bodies[0]["interface"] == "puter-chat-completion"
    assert _entry(pool, "only").last_success_at == clock.now


def test_unimplemented_probe_leaves_token_untouched(caplog) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "success": False,
                "error": {"message": "No implementation available for interface puter-chat-completion"},
            },
        )

    clock = FakeClock()
    pool = TokenPool(["only"], cooldown_base_seconds=60, clock=clock)

    with caplog.at_level("WARNING", logger="uvicorn.error"):
        asyncio.run(_poller(handler, pool, clock, service="missing-service").run_once())

    entry = _entry(pool, "only")
    assert entry.failure_count == 0
    assert entry.last_error is None
    assert entry.is_available(clock.now)
    assert any("token_health_probe_unsupported" in record.getMessage() for record in caplog.records)


def test_http_error_with_envelope_body_keeps_http_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"success": False, "error": {"message": "Token revoked"}})

    clock = FakeClock()
    pool = TokenPool(["revoked"], cooldown_base_seconds=60, clock=clock)

    asyncio.run(_poller(handler, pool, clock).run_once())

    entry = _entry(pool, "revoked")
    assert entry.last_error is not None
    assert entry.last_error.status == 401
    assert entry.disabled_until - clock.now == 3600.0
