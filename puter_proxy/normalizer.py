"""Maps the many shapes Puter drivers answer with onto the OpenAI wire format."""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any

from puter_proxy.errors import UnrecognizedShapeError

ZERO_CHAT_USAGE = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
ZERO_EMBEDDING_USAGE = {"prompt_tokens": 0, "total_tokens": 0}


def _to_json_text(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def normalize_content(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts: list[str] = []
        for part in value:
            if part is None:
                continue
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                for key in ("text", "content", "value"):
                    if isinstance(part.get(key), str):
                        parts.append(part[key])
                        break
                else:
                    parts.append(_to_json_text(part))
            else:
                parts.append(str(part))
        return "".join(parts)
    return _to_json_text(value)


def _first_choice(result: dict[str, Any]) -> dict[str, Any] | None:
    choices = result.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def _result_message(result: Any) -> dict[str, Any] | None:
    if not isinstance(result, dict):
        return None
    message = result.get("message")
    if isinstance(message, dict):
        return message
    choice = _first_choice(result)
    if choice is not None and isinstance(choice.get("message"), dict):
        return choice["message"]
    return None


def extract_chat_text(result: Any) -> str:
    """Return assistant text from any known result shape; never raises."""
    if isinstance(result, str):
        return result
    message = _result_message(result)
    if message is not None:
        if message.get("content") is not None:
            return normalize_content(message["content"])
        if message.get("tool_calls"):
            return ""
    if isinstance(result, dict) and result.get("content") is not None:
        return normalize_content(result["content"])
    return normalize_content(result)


def extract_tool_calls(result: Any) -> list[dict[str, Any]]:
    message = _result_message(result)
    if message is None:
        return []
    tool_calls = message.get("tool_calls")
    if not isinstance(tool_calls, list):
        return []
    return [call for call in tool_calls if isinstance(call, dict)]


def build_chat_completion(
    result: Any,
    *,
    model: str,
    completion_id: str,
    created: int | None = None,
) -> dict[str, Any]:
    content = extract_chat_text(result)
    tool_calls = extract_tool_calls(result)
    message: dict[str, Any] = {"role": "assistant", "content": content}
    finish_reason = "stop"
    if tool_calls:
        message["tool_calls"] = tool_calls
        finish_reason = "tool_calls"
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": finish_reason,
            }
        ],
        "usage": dict(ZERO_CHAT_USAGE),
    }


class EmbeddingShape(str, Enum):
    CANONICAL_LIST = "canonical_list"
    BARE_VECTOR = "bare_vector"
    SINGLE_EMBEDDING = "single_embedding"
    EMBEDDINGS_LIST = "embeddings_list"
    DATA_VECTORS = "data_vectors"
    UNRECOGNIZED = "unrecognized"


def _is_vector(value: Any) -> bool:
    return (
        isinstance(value, list)
        and bool(value)
        and all(
            isinstance(item, (int, float)) and not isinstance(item, bool)
            for item in value
        )
    )


def _is_vector_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(_is_vector(item) for item in value)


def classify_embeddings(result: Any) -> EmbeddingShape:
    if _is_vector(result):
        return EmbeddingShape.BARE_VECTOR
    if not isinstance(result, dict):
        return EmbeddingShape.UNRECOGNIZED
    data = result.get("data")
    if (
        isinstance(data, list)
        and data
        and all(isinstance(item, dict) and _is_vector(item.get("embedding")) for item in data)
    ):
        return EmbeddingShape.CANONICAL_LIST
    if _is_vector_list(data):
        return EmbeddingShape.DATA_VECTORS
    if _is_vector(result.get("embedding")):
        return EmbeddingShape.SINGLE_EMBEDDING
    if _is_vector_list(result.get("embeddings")):
        return EmbeddingShape.EMBEDDINGS_LIST
    return EmbeddingShape.UNRECOGNIZED


def _embedding_list(vectors: list[list[float]], model: str) -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {"object": "embedding", "index": index, "embedding": vector}
            for index, vector in enumerate(vectors)
        ],
        "model": model,
        "usage": dict(ZERO_EMBEDDING_USAGE),
    }


def normalize_embeddings(result: Any, *, model: str) -> dict[str, Any]:
    shape = classify_embeddings(result)
    if shape == EmbeddingShape.CANONICAL_LIST:
        return {**result, "model": result.get("model") or model}
    if shape == EmbeddingShape.BARE_VECTOR:
        return _embedding_list([result], model)
    if shape == EmbeddingShape.SINGLE_EMBEDDING:
        return _embedding_list([result["embedding"]], model)
    if shape == EmbeddingShape.EMBEDDINGS_LIST:
        return _embedding_list(result["embeddings"], model)
    if shape == EmbeddingShape.DATA_VECTORS:
        return _embedding_list(result["data"], model)
    raise UnrecognizedShapeError(
        "Unrecognized upstream embeddings response shape", payload=result
    )


def _collect_nested_models(container: dict[str, Any]) -> list[Any]:
    collected: list[Any] = []
    for value in container.values():
        if isinstance(value, list):
            collected.extend(value)
        elif isinstance(value, dict):
            if isinstance(value.get("models"), list):
                collected.extend(value["models"])
            elif isinstance(value.get("data"), list):
                collected.extend(value["data"])
    return collected


def model_entries(raw: Any) -> list[Any] | None:
    if isinstance(raw, list):
        return raw
    if not isinstance(raw, dict):
        return None
    for key in ("models", "data", "results"):
        if isinstance(raw.get(key), list):
            return raw[key]
    providers = raw.get("providers")
    if isinstance(providers, dict):
        collected = _collect_nested_models(providers)
        if collected:
            return collected
    collected = _collect_nested_models(raw)
    return collected or None


def normalize_model_list(entries: list[Any], created: int | None = None) -> list[dict[str, Any]]:
    created_at = created if created is not None else int(time.time())
    models: list[dict[str, Any]] = []
    for entry in entries:
        if isinstance(entry, str):
            entry = {"id": entry}
        if not isinstance(entry, dict):
            continue
        model_id = next(
            (
                entry[key]
                for key in ("id", "model", "slug", "name", "model_id")
                if isinstance(entry.get(key), str) and entry[key]
            ),
            None,
        )
        if model_id is None:
            continue
        owner = entry.get("provider") or entry.get("owned_by")
        if not isinstance(owner, str) or not owner:
            owner = model_id.split("/", 1)[0] if "/" in model_id else "puter"
        models.append(
            {"id": model_id, "object": "model", "created": created_at, "owned_by": owner}
        )
    return models
