from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from puter_proxy.normalizer import build_chat_completion
from puter_proxy.streaming import (
    DONE_FRAME,
    StreamRelay,
    parse_stream_line,
    replay_completion_as_stream,
)


class _ChunkUpstream:
    def __init__(
        self,
        chunks: list[bytes],
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self._chunks = chunks
        self._delay = delay
        self._error = error
        self.closed = False

    async def aiter_bytes(self) -> Any:
        for chunk in self._chunks:
            if self._delay:
                await asyncio.sleep(self._delay)
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self) -> None:
        self.closed = True


def _relay(upstream: Any, **kwargs: Any) -> StreamRelay:
    return StreamRelay(
        upstream=upstream,
        completion_id="chatcmpl-test",
        model="gpt-5-nano",
        created=1_700_000_000,
        **kwargs,
    )


async def _collect(relay: StreamRelay) -> list[bytes]:
    return [frame async for frame in relay.frames()]


def _decode(frame: bytes) -> dict[str, Any]:
    text = frame.decode("utf-8")
    assert text.startswith("data: ") and text.endswith("\n\n")
    return json.loads(text[len("data: ") :])


def _deltas(frames: list[bytes]) -> list[dict[str, Any]]:
    assert frames[-1] == DONE_FRAME
    return [_decode(frame)["choices"][0]["delta"] for frame in frames[:-1]]


def test_relay_emits_open_content_closed_and_done_in_order() -> None:
    upstream = _ChunkUpstream(
        [b'{"text":"Hel"}\n{"text":"lo, "}\n', b'{"text":"world"}\n', b"[DONE]\n"]
    )

    frames = asyncio.run(_collect(_relay(upstream)))

    assert _deltas(frames) == [
        {"role": "assistant", "content": ""},
        {"content": "Hel"},
        {"content": "lo, "},
        {"content": "world"},
        {},
    ]
    closed = _decode(frames[-2])
    assert closed["choices"][0]["finish_reason"] == "stop"
    assert closed["object"] == "chat.completion.chunk"
    assert closed["id"] == "chatcmpl-test"
    assert upstream.closed is True


def test_relay_reads_sse_data_lines_and_openai_deltas() -> None:
    upstream = _ChunkUpstream(
        [
            b"event: message\n",
            b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n',
            b": keepalive\n\n",
            b"data: [DONE]\n\n",
            b'data: {"text":"after sentinel"}\n\n',
        ]
    )

    frames = asyncio.run(_collect(_relay(upstream)))

    assert _deltas(frames)[1:-1] == [{"content": "Hi"}]


def test_relay_forwards_unparseable_lines_verbatim() -> None:
    upstream = _ChunkUpstream([b"plain words\n", b"data: not json either\n", b"trailing"])

    frames = asyncio.run(_collect(_relay(upstream)))

    assert _deltas(frames)[1:-1] == [
        {"content": "plain words"},
        {"content": "not json either"},
        {"content": "trailing"},
    ]


def test_relay_decodes_multibyte_characters_split_across_chunks() -> None:
    encoded = '{"text":"café ☕"}\n'.encode("utf-8")
    split_at = encoded.index("é".encode("utf-8")) + 1
    upstream = _ChunkUpstream([encoded[:split_at], encoded[split_at:]])

    frames = asyncio.run(_collect(_relay(upstream)))

    assert _deltas(frames)[1:-1] == [{"content": "café ☕"}]


def test_relay_flushes_oversized_partial_line() -> None:
    upstream = _ChunkUpstream([b"x" * 3000, b"y\n"])

    frames = asyncio.run(_collect(_relay(upstream, max_pending_chars=2048)))

    assert _deltas(frames)[1:-1] == [{"content": "x" * 3000}, {"content": "y"}]


def test_relay_closes_stream_after_upstream_failure(caplog: Any) -> None:
    upstream = _ChunkUpstream(
        [b'{"text":"partial"}\n'], error=ConnectionResetError("peer reset")
    )

    with caplog.at_level(logging.WARNING):
        frames = asyncio.run(_collect(_relay(upstream)))

    assert _deltas(frames) == [
        {"role": "assistant", "content": ""},
        {"content": "partial"},
        {},
    ]
    assert upstream.closed is True
    assert "stream_relay_upstream_error" in caplog.text


def test_heartbeats_share_the_content_frame_shape() -> None:
    upstream = _ChunkUpstream([b'{"text":"slow"}\n'], delay=0.3)
    relay = _relay(upstream, heartbeat_seconds=0.05)

    frames = asyncio.run(_collect(relay))

    decoded = [_decode(frame) for frame in frames[:-1]]
    content_frame = next(item for item in decoded if item["choices"][0]["delta"] == {"content": "slow"})
    heartbeats = [item for item in decoded if item["choices"][0]["delta"] == {"content": ""}]
    assert relay.heartbeat_frames >= 1
    assert len(heartbeats) == relay.heartbeat_frames
    for heartbeat in heartbeats:
        assert heartbeat.keys() == content_frame.keys()
        assert heartbeat["choices"][0].keys() == content_frame["choices"][0].keys()
        assert heartbeat["choices"][0]["finish_reason"] is None
    assert frames[-1] == DONE_FRAME


def test_relay_stops_without_closing_frames_when_client_disconnects() -> None:
    upstream = _ChunkUpstream([b'{"text":"never"}\n'], delay=5.0)

    async def _gone() -> bool:
        return True

    relay = _relay(upstream, heartbeat_seconds=0.05, is_disconnected=_gone)
    frames = asyncio.run(_collect(relay))

    assert len(frames) == 1
    assert _decode(frames[0])["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert upstream.closed is True


def test_parse_stream_line_variants() -> None:
    assert parse_stream_line("") == (False, None)
    assert parse_stream_line("data: [DONE]") == (True, None)
    assert parse_stream_line("[DONE]") == (True, None)
    assert parse_stream_line("id: 7") == (False, None)
    assert parse_stream_line('{"delta":"x"}') == (False, "x")
    assert parse_stream_line('{"usage":{}}') == (False, None)
    assert parse_stream_line("42") == (False, "42")


def test_replay_completion_as_stream_matches_streaming_sequence() -> None:
    completion = build_chat_completion(
        "buffered answer", model="gpt-5-nano", completion_id="chatcmpl-x", created=5
    )

    async def _run() -> list[bytes]:
        return [frame async for frame in replay_completion_as_stream(completion)]

    frames = asyncio.run(_run())

    assert _deltas(frames) == [
        {"role": "assistant", "content": ""},
        {"content": "buffered answer"},
        {},
    ]
    assert _decode(frames[0])["created"] == 5
