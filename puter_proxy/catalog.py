from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from puter_proxy.dispatcher import UpstreamDispatcher
from puter_proxy.normalizer import model_entries, normalize_model_list

logger = logging.getLogger("uvicorn.error")

ALL_PROVIDERS_KEY = "__all__"
FALLBACK_MODEL_IDS = ("gpt-5-nano", "openai/gpt-4o")
FALLBACK_WARNING = "Upstream model list unavailable; returned fallback list."


def fallback_models(created: int | None = None) -> list[dict[str, Any]]:
    created_at = created if created is not None else int(time.time())
    return [
        {"id": model_id, "object": "model", "created": created_at, "owned_by": "openai"}
        for model_id in FALLBACK_MODEL_IDS
    ]


@dataclass(slots=True)
class _CachedList:
    fetched_at: float
    models: list[dict[str, Any]]


class ModelCatalog:
    """Upstream model list, cached per provider filter."""

    def __init__(
        self,
        *,
        dispatcher: UpstreamDispatcher,
        models_url: str,
        ttl_seconds: float = 10 * 60.0,
        max_keys: int = 64,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dispatcher = dispatcher
        self._models_url = models_url
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._max_keys = max(1, int(max_keys))
        self._clock = clock
        self._cache: OrderedDict[str, _CachedList] = OrderedDict()

    def _cached(self, key: str) -> list[dict[str, Any]] | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self._ttl_seconds:
            self._cache.pop(key, None)
            return None
        return entry.models

    def _store(self, key: str, models: list[dict[str, Any]]) -> None:
        self._cache[key] = _CachedList(fetched_at=self._clock(), models=models)
        self._cache.move_to_end(key)
        if len(self._cache) > self._max_keys:
            self._cache.popitem(last=False)

    async def list_models(self, provider: str | None = None) -> dict[str, Any]:
        provider = (provider or "").strip() or None
        key = provider or ALL_PROVIDERS_KEY
        cached = self._cached(key)
        if cached is not None:
            return {"object": "list", "data": cached}

        params = {"provider": provider} if provider else None
        try:
            raw = await self._dispatcher.get_json(self._models_url, params=params)
            entries = model_entries(raw)
            if entries is None:
                raise ValueError("Unexpected model list shape")
            models = normalize_model_list(entries)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "model_catalog_fallback provider=%s error_type=%s error=%s",
                key,
                exc.__class__.__name__,
                str(exc)[:200],
            )
            return {
                "object": "list",
                "data": fallback_models(),
                "warning": FALLBACK_WARNING,
            }

        self._store(key, models)
        logger.info("model_catalog_refreshed provider=%s models=%d", key, len(models))
        return {"object": "list", "data": models}
