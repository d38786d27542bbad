"""Tests for cache expiry."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from pathlib import Path

from penpal.codecs import PenpalMatchCodec
from penpal.models import PenpalMatch
from penpal.services.cache_janitor import CacheJanitor
from penpal.services.local_sqlite import SQLiteLocalStore


def _match(penpal_id: str, *, synced: bool) -> PenpalMatch:
    return PenpalMatch(
        id=f"u1_{penpal_id}",
        user_id="u1",
        penpal_id=penpal_id,
        first_name=penpal_id,
        last_name="",
        proficiency="A2",
        is_synced=synced,
    )


def test_purge_removes_only_expired_synced_rows(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = PenpalMatchCodec()
        local = SQLiteLocalStore(tmp_path / "cache.db")
        await local.open([codec.schema])
        await local.put(codec.collection, codec.to_row(_match("old", synced=True)))
        await local.put(codec.collection, codec.to_row(_match("draft", synced=False)))

        offset = [0.0]
        janitor = CacheJanitor(
            local=local,
            ttls={codec.collection: timedelta(days=7)},
            clock=lambda: time.time() + offset[0],
        )
        assert await janitor.purge_expired() == {codec.collection: 0}

        offset[0] = timedelta(days=8).total_seconds()
        assert await janitor.purge_expired() == {codec.collection: 1}
        remaining = await local.query(codec.collection)
        assert [row["id"] for row in remaining] == ["u1_draft"]

    asyncio.run(_run())


def test_background_loop_starts_and_stops(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = PenpalMatchCodec()
        local = SQLiteLocalStore(tmp_path / "cache.db")
        await local.open([codec.schema])
        await local.put(codec.collection, codec.to_row(_match("old", synced=True)))
        janitor = CacheJanitor(
            local=local,
            ttls={codec.collection: timedelta(days=1)},
            interval_seconds=60,
            clock=lambda: time.time() + timedelta(days=2).total_seconds(),
        )
        janitor.start()
        for _ in range(100):
            if await local.count(codec.collection) == 0:
                break
            await asyncio.sleep(0.01)
        await janitor.stop()
        await janitor.stop()
        assert await local.count(codec.collection) == 0

        idle = CacheJanitor(local=local, ttls={})
        idle.start()
        await idle.stop()

    asyncio.run(_run())
