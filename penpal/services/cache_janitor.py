"""Age-based eviction of cached rows."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Callable, Mapping, Optional

from logger import get_logger, info_domain
from penpal.models import Filter, eq
from penpal.services.local_base import LocalStore


class CacheJanitor:
    """Deletes synced rows whose ``cached_at`` is older than the collection TTL.

    Unsynced rows are never evicted; they still carry writes the remote store
    has not accepted.
    """

    def __init__(
        self,
        *,
        local: LocalStore,
        ttls: Mapping[str, timedelta],
        interval_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._local = local
        self._ttls = dict(ttls)
        self._interval = max(interval_seconds, 1)
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._logger = get_logger("penpal.cache_janitor")

    def start(self) -> None:
        if not self._ttls:
            return
        if self._task is None:
            self._task = asyncio.create_task(self._runner())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self._stop_event.clear()

    async def purge_expired(self) -> dict[str, int]:
        """Run one eviction pass and return removed row counts per collection."""

        now = self._clock()
        removed: dict[str, int] = {}
        for collection, ttl in self._ttls.items():
            cutoff = now - ttl.total_seconds()
            removed[collection] = await self._local.delete_where(
                collection, [Filter("cached_at", "<", cutoff), eq("is_synced", 1)]
            )
        total = sum(removed.values())
        if total:
            info_domain(
                "penpal.cache_janitor", "Expired cache rows purged", stage="PURGE", **removed
            )
        return removed

    async def _runner(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.purge_expired()
            except Exception:  # pragma: no cover - logged and retried on the next tick
                self._logger.exception("Cache purge failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue


__all__ = ["CacheJanitor"]
