from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import aiohttp

from .types import MemoryEntryType, PatternMatch, WorkingMemoryEntry, new_id

logger = logging.getLogger(__name__)

SERVICE_URL_ENV = "ALE_MEMORY_SERVICE_URL"
ENGINE_USER_ID = "ale_engine"


class MemoryBackendError(RuntimeError):
    """External recall service failed or answered with an error."""


class BackendAvailability(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    DISABLED = "disabled"


class MemoryBackend(Protocol):
    """External store/recall service behind the local working-memory index."""

    async def probe(self) -> bool:
        """Return True if the service answers its health check."""

    async def store(self, entry: WorkingMemoryEntry) -> None:
        """Persist one entry; raise MemoryBackendError on failure."""

    async def search(self, query: str, entry_type: MemoryEntryType | None = None) -> list[PatternMatch]:
        """Return matches for a task query; raise MemoryBackendError on failure."""


class LocalOnlyBackend:
    """Default backend: the local index is the whole memory."""

    async def probe(self) -> bool:
        return True

    async def store(self, entry: WorkingMemoryEntry) -> None:
        return None

    async def search(self, query: str, entry_type: MemoryEntryType | None = None) -> list[PatternMatch]:
        return []


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class HttpMemoryBackend:
    """
    aiohttp client for a key-value / semantic-search memory service.

    Endpoints: GET /health, POST /api/memory/store, GET /api/memory/search.
    Only entries written by this engine (metadata.ale_working_memory) are recalled.
    """

    base_url: str
    probe_timeout: float = 2.0
    request_timeout: float = 10.0
    user_id: str = ENGINE_USER_ID

    @classmethod
    def from_env(cls) -> HttpMemoryBackend | None:
        url = os.getenv(SERVICE_URL_ENV)
        return cls(base_url=url) if url else None

    def _url(self, path: str) -> str:
        return self.base_url.rstrip("/") + path

    async def probe(self) -> bool:
        timeout = aiohttp.ClientTimeout(total=self.probe_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self._url("/health")) as resp:
                    return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.info("Memory service at %s unreachable: %s", self.base_url, e)
            return False

    async def store(self, entry: WorkingMemoryEntry) -> None:
        payload = {
            "content": entry.content,
            "type": entry.type.value,
            "metadata": {
                **entry.metadata,
                "type": entry.type.value,
                "task_pattern": entry.task_pattern,
                "confidence": entry.confidence,
                "hit_count": entry.hit_count,
                "ale_working_memory": True,
                "ale_id": entry.id,
            },
            "userId": self.user_id,
        }
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self._url("/api/memory/store"), json=payload) as resp:
                    if resp.status >= 400:
                        raise MemoryBackendError(f"store failed ({resp.status}): {await resp.text()}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MemoryBackendError(f"store failed: {e}") from e

    async def search(self, query: str, entry_type: MemoryEntryType | None = None) -> list[PatternMatch]:
        params = {"q": query, "userId": self.user_id}
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self._url("/api/memory/search"), params=params) as resp:
                    if resp.status >= 400:
                        raise MemoryBackendError(f"search failed ({resp.status}): {await resp.text()}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise MemoryBackendError(f"search failed: {e}") from e
        return self._parse_results(data, entry_type)

    @staticmethod
    def _parse_results(data: Any, entry_type: MemoryEntryType | None) -> list[PatternMatch]:
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []

        matches: list[PatternMatch] = []
        for raw in results:
            if not isinstance(raw, dict) or not isinstance(raw.get("content"), str):
                continue
            metadata = raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {}
            if metadata.get("ale_working_memory") is not True:
                continue
            try:
                kind = MemoryEntryType(metadata.get("type", MemoryEntryType.CONTEXT.value))
            except ValueError:
                continue
            if entry_type is not None and kind != entry_type:
                continue

            entry = WorkingMemoryEntry(
                id=str(metadata.get("ale_id") or raw.get("id") or new_id("wm")),
                type=kind,
                content=raw["content"],
                metadata=metadata,
                task_pattern=str(metadata.get("task_pattern", "")),
                confidence=_as_float(metadata.get("confidence"), 0.5),
                hit_count=int(_as_float(metadata.get("hit_count"), 1)),
            )
            similarity = _as_float(raw.get("score", raw.get("similarity")), 0.5)
            matches.append(PatternMatch(entry=entry, similarity=similarity, relevance="semantic match"))
        return matches


async def resolve_backend(
    backend: MemoryBackend | None,
) -> tuple[MemoryBackend, BackendAvailability]:
    """Probe once; anything unreachable degrades to local-only storage."""
    if backend is None or isinstance(backend, LocalOnlyBackend):
        return LocalOnlyBackend(), BackendAvailability.DISABLED
    try:
        reachable = await backend.probe()
    except Exception as e:
        logger.warning("Memory backend probe raised %s; using local memory only", e)
        reachable = False
    if reachable:
        return backend, BackendAvailability.AVAILABLE
    logger.warning("Memory backend unavailable; using local memory only")
    return LocalOnlyBackend(), BackendAvailability.UNAVAILABLE
