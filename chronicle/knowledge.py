"""Reference-document lookup for the Brain and Voice prompts.

Documents belong to a world or to ``global`` and target ``brain``, ``voice``
or ``both``. Lookups are cached per (world, role, limit) for a TTL held by
the instance, so tests get a fresh cache with every KnowledgeBase.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Literal

from chronicle.storage import JsonStore

logger = logging.getLogger(__name__)

Role = Literal["brain", "voice"]


class KnowledgeBase:
    def __init__(
        self,
        store: JsonStore,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: dict[tuple[str, str, int], tuple[float, list[str]]] = {}

    def clear(self) -> None:
        self._cache.clear()

    def _lookup(self, world: str, role: Role, limit: int) -> list[str]:
        docs = []
        for doc in self._store.list_knowledge():
            if doc.get("world") not in (world, "global"):
                continue
            if not doc.get("enabled", True):
                continue
            if doc.get("targetModel", "both") not in (role, "both"):
                continue
            docs.append(doc["content"])
            if len(docs) >= limit:
                break
        return docs

    async def fetch(self, world: str, role: Role, limit: int) -> list[str]:
        """Return up to ``limit`` document bodies. Lookup failures yield []."""
        key = (world, role, limit)
        now = self._clock()
        hit = self._cache.get(key)
        if hit is not None and hit[0] > now:
            return list(hit[1])

        try:
            docs = await asyncio.to_thread(self._lookup, world, role, limit)
        except (OSError, ValueError) as e:
            logger.warning("knowledge lookup failed world=%s role=%s: %s", world, role, e)
            return []
        self._cache[key] = (now + self._ttl, docs)
        logger.debug("knowledge world=%s role=%s docs=%d", world, role, len(docs))
        return list(docs)
