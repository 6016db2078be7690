from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

from cachetools import TTLCache

from tutor_studio.orchestrator import SessionOrchestrator


logger = logging.getLogger(__name__)


class _SessionCache(TTLCache):
    """
    TTLCache that remembers what it drops on its own (expiry and LRU eviction), so the
    store can dispose of those sessions.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.dropped: list[tuple[str, SessionOrchestrator]] = []

    def expire(self, time=None):
        expired = super().expire(time)
        self.dropped.extend(expired)
        return expired

    def popitem(self):
        item = super().popitem()
        self.dropped.append(item)
        return item


class SessionStore:
    """
    In-memory learner sessions (reset on restart). Each session gets its own orchestrator,
    built by `factory`, and is disposed when deleted, evicted, or after `ttl_seconds` without use.
    """

    def __init__(
        self,
        factory: Callable[[str], SessionOrchestrator],
        *,
        maxsize: int = 10_000,
        ttl_seconds: float = 60 * 60,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._cache = _SessionCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)

    def __len__(self) -> int:
        return len(self._cache)

    async def _reap(self) -> None:
        while self._cache.dropped:
            session_id, orch = self._cache.dropped.pop(0)
            logger.info("Session %s dropped from the store", session_id)
            await orch.aclose()

    async def create(self) -> SessionOrchestrator:
        session_id = uuid.uuid4().hex
        orch = self._factory(session_id)
        self._cache[session_id] = orch
        await self._reap()
        return orch

    async def get(self, session_id: str) -> SessionOrchestrator | None:
        self._cache.expire()
        orch = self._cache.get(session_id)
        if orch is not None:
            # Re-insert so active sessions keep sliding their TTL.
            self._cache[session_id] = orch
        await self._reap()
        return orch

    async def delete(self, session_id: str) -> bool:
        orch = self._cache.pop(session_id, None)
        await self._reap()
        if orch is None:
            return False
        await orch.aclose()
        return True

    async def aclose(self) -> None:
        self._cache.clear()
        await self._reap()
