from __future__ import annotations

import asyncio
import codecs
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

logger = logging.getLogger("uvicorn.error")

DONE_SENTINEL = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"
MAX_PENDING_CHARS = 2048
SSE_FIELD_PREFIXES = ("event:", "id:", "retry:", ":")


class IncrementalBody(Protocol):
    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


def chat_completion_chunk(
    *,
    completion_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> bytes:
    chunk = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }
    return f"data: {json.dumps(chunk, separators=(',', ':'), ensure_ascii=False)}\n\n".encode(
        "utf-8"
    )


def _text_from_delta(delta: Any) -> str | None:
    if isinstance(delta, str):
        return delta
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        return delta["content"]
    return None


def extract_stream_text(event: Any) -> str | None:
    """Pull incremental text out of one decoded upstream event, or None."""
    if isinstance(event, str):
        return event
    if not isinstance(event, dict):
        return None
    if isinstance(event.get("text"), str):
        return event["text"]
    delta_text = _text_from_delta(event.get("delta"))
    if delta_text is not None:
        return delta_text
    if isinstance(event.get("content"), str):
        return event["content"]
    choices = event.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        choice = choices[0]
        choice_text = _text_from_delta(choice.get("delta"))
        if choice_text is not None:
            return choice_text
        if isinstance(choice.get("text"), str):
            return choice["text"]
    message = event.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    result = event.get("result")
    if isinstance(result, dict):
        nested = result.get("message")
        if isinstance(nested, dict) and isinstance(nested.get("content"), str):
            return nested["content"]
    return None


def parse_stream_line(line: str) -> tuple[bool, str | None]:
    """Return ``(is_sentinel, text)`` for one upstream line.

    Unparseable lines come back verbatim; structured lines without text give None.
    """
    raw = line.rstrip("\r")
    stripped = raw.strip()
    if not stripped:
        return False, None
    if stripped.startswith("data:"):
        raw = raw.lstrip()[5:].lstrip()
        stripped = raw.strip()
        if not stripped:
            return False, None
    elif stripped.startswith(SSE_FIELD_PREFIXES):
        return False, None
    if stripped == DONE_SENTINEL:
        return True, None
    try:
        event = json.loads(stripped)
    except ValueError:
        return False, raw
    if isinstance(event, (dict, str)):
        return False, extract_stream_text(event)
    return False, raw


class _LineBuffer:
    def __init__(self, max_pending_chars: int = MAX_PENDING_CHARS) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._max_pending_chars = max(1, int(max_pending_chars))

    def feed(self, chunk: bytes) -> list[tuple[str, bool]]:
        """Return complete lines as ``(text, is_overflow)`` pairs."""
        self._pending += self._decoder.decode(chunk)
        lines: list[tuple[str, bool]] = []
        while "\n" in self._pending:
            line, self._pending = self._pending.split("\n", 1)
            lines.append((line, False))
        if len(self._pending) > self._max_pending_chars:
            lines.append((self._pending, True))
            self._pending = ""
        return lines

    def drain(self) -> str:
        remainder = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return remainder


class StreamRelay:
    """Re-frames an incremental upstream body as chat.completion.chunk SSE frames.

    Output always starts with an open frame and, unless the client went away,
    ends with a closed frame plus ``data: [DONE]``. Heartbeats reuse the content
    frame shape with empty content.
    """

    def __init__(
        self,
        *,
        upstream: IncrementalBody,
        completion_id: str,
        model: str,
        created: int | None = None,
        heartbeat_seconds: float = 8.0,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        max_pending_chars: int = MAX_PENDING_CHARS,
        request_id: str | None = None,
    ) -> None:
        self._upstream = upstream
        self._completion_id = completion_id
        self._model = model
        self._created = created if created is not None else int(time.time())
        self._heartbeat_seconds = max(0.001, float(heartbeat_seconds))
        self._is_disconnected = is_disconnected
        self._max_pending_chars = max_pending_chars
        self._request_id = request_id
        self.content_frames = 0
        self.heartbeat_frames = 0

    def _frame(self, delta: dict[str, Any], finish_reason: str | None = None) -> bytes:
        return chat_completion_chunk(
            completion_id=self._completion_id,
            created=self._created,
            model=self._model,
            delta=delta,
            finish_reason=finish_reason,
        )

    def open_frame(self) -> bytes:
        return self._frame({"role": "assistant", "content": ""})

    def content_frame(self, text: str) -> bytes:
        return self._frame({"content": text})

    def closed_frame(self) -> bytes:
        return self._frame({}, finish_reason="stop")

    async def _read_upstream(self, queue: asyncio.Queue[tuple[str, Any]]) -> None:
        try:
            async for chunk in self._upstream.aiter_bytes():
                if chunk:
                    await queue.put(("data", chunk))
        except Exception as exc:
            await queue.put(("error", exc))
            return
        await queue.put(("end", None))

    async def _pulse(self, queue: asyncio.Queue[tuple[str, Any]]) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            await queue.put(("heartbeat", None))

    def _frames_for_lines(self, lines: list[tuple[str, bool]]) -> tuple[list[bytes], bool]:
        frames: list[bytes] = []
        for line, is_overflow in lines:
            if is_overflow:
                frames.append(self.content_frame(line))
                continue
            is_sentinel, text = parse_stream_line(line)
            if is_sentinel:
                return frames, True
            if text:
                frames.append(self.content_frame(text))
        return frames, False

    async def frames(self) -> AsyncIterator[bytes]:
        queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        buffer = _LineBuffer(self._max_pending_chars)
        yield self.open_frame()

        reader = asyncio.create_task(self._read_upstream(queue), name="stream-relay-reader")
        pulse = asyncio.create_task(self._pulse(queue), name="stream-relay-heartbeat")
        client_gone = False
        exit_reason = "end_of_body"
        try:
            while True:
                kind, payload = await queue.get()
                if kind == "heartbeat":
                    if self._is_disconnected is not None and await self._is_disconnected():
                        client_gone = True
                        exit_reason = "client_disconnect"
                        break
                    self.heartbeat_frames += 1
                    yield self.content_frame("")
                    continue
                if kind == "error":
                    exit_reason = "upstream_error"
                    logger.warning(
                        "stream_relay_upstream_error request_id=%s error_type=%s error=%s",
                        self._request_id,
                        payload.__class__.__name__,
                        payload,
                    )
                    break
                if kind == "end":
                    frames, _ = self._frames_for_lines([(buffer.drain(), False)])
                    for frame in frames:
                        self.content_frames += 1
                        yield frame
                    break

                frames, saw_sentinel = self._frames_for_lines(buffer.feed(payload))
                for frame in frames:
                    self.content_frames += 1
                    yield frame
                if saw_sentinel:
                    exit_reason = "sentinel"
                    break
        except Exception as exc:
            exit_reason = "relay_error"
            logger.exception(
                "stream_relay_failed request_id=%s error=%s", self._request_id, exc
            )
        finally:
            pulse.cancel()
            reader.cancel()
            await asyncio.gather(pulse, reader, return_exceptions=True)
            try:
                await self._upstream.aclose()
            except Exception as exc:
                logger.debug("stream_relay_close_failed error=%s", exc)
            logger.info(
                "stream_relay_complete request_id=%s reason=%s content_frames=%d heartbeats=%d",
                self._request_id,
                exit_reason,
                self.content_frames,
                self.heartbeat_frames,
            )

        if not client_gone:
            yield self.closed_frame()
            yield DONE_FRAME


async def replay_completion_as_stream(completion: dict[str, Any]) -> AsyncIterator[bytes]:
    """Emit an already-buffered chat.completion using the streaming frame sequence."""
    choice = completion["choices"][0]
    message = choice.get("message") or {}
    common = {
        "completion_id": completion["id"],
        "created": completion["created"],
        "model": completion["model"],
    }
    yield chat_completion_chunk(delta={"role": "assistant", "content": ""}, **common)
    delta: dict[str, Any] = {"content": message.get("content") or ""}
    if message.get("tool_calls"):
        delta["tool_calls"] = [
            {**call, "index": index} for index, call in enumerate(message["tool_calls"])
        ]
    yield chat_completion_chunk(delta=delta, **common)
    yield chat_completion_chunk(
        delta={}, finish_reason=choice.get("finish_reason") or "stop", **common
    )
    yield DONE_FRAME
