"""Tests for the daily swipe quota ledger."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from penpal.errors import RemotePermissionDenied, RemoteUnavailable
from penpal.services.analytics import BufferedAnalytics
from penpal.services.local_sqlite import SQLiteLocalStore
from penpal.services.quota import (
    BLOCKED,
    QUOTA_COLLECTION,
    QUOTA_SCHEMA,
    QuotaLedger,
    day_key,
    window_end,
)
from penpal.services.remote_memory import InMemoryRemoteStore

NOW = datetime(2024, 5, 10, 15, 30, tzinfo=timezone.utc)


async def _ledger(tmp_path: Path, *, clock=lambda: NOW):
    remote = InMemoryRemoteStore()
    local = SQLiteLocalStore(tmp_path / "quota.db")
    await local.open([QUOTA_SCHEMA])
    analytics = BufferedAnalytics()
    ledger = QuotaLedger(remote=remote, local=local, analytics=analytics, clock=clock)
    return ledger, remote, local, analytics


def test_consume_until_blocked_then_grant(tmp_path: Path) -> None:
    async def _run() -> None:
        ledger, remote, _local, analytics = await _ledger(tmp_path)

        results = [await ledger.consume("u1", 40) for _ in range(40)]
        assert results == list(range(39, -1, -1))
        assert await ledger.consume("u1", 40) == BLOCKED
        assert remote.documents(QUOTA_COLLECTION)["u1"] == {
            "userId": "u1",
            "day": "2024-05-10",
            "used": 40,
            "max": 40,
        }
        assert analytics.names()[-1] == "quota_blocked"
        assert analytics.names().count("quota_consumed") == 40

        assert await ledger.grant("u1", 5, 40) == 5
        status = await ledger.status("u1", 40)
        assert status.remaining == 5
        assert status.window_ends_at == datetime(2024, 5, 11, tzinfo=timezone.utc)

        assert await ledger.grant("u1", 100, 40) == 40
        with pytest.raises(ValueError):
            await ledger.grant("u1", -1, 40)

    asyncio.run(_run())


def test_concurrent_consumes_never_exceed_the_cap(tmp_path: Path) -> None:
    async def _run() -> None:
        ledger, remote, _local, _analytics = await _ledger(tmp_path)

        results = await asyncio.gather(ledger.consume("u1", 1), ledger.consume("u1", 1))
        assert sorted(results) == [BLOCKED, 0]
        assert remote.documents(QUOTA_COLLECTION)["u1"]["used"] == 1

        many = await asyncio.gather(*(ledger.consume("u2", 3) for _ in range(6)))
        assert sorted(many) == [BLOCKED, BLOCKED, BLOCKED, 0, 1, 2]
        assert remote.documents(QUOTA_COLLECTION)["u2"]["used"] == 3

    asyncio.run(_run())


def test_status_is_read_only_and_day_rolls_over(tmp_path: Path) -> None:
    async def _run() -> None:
        ledger, remote, local, _analytics = await _ledger(tmp_path)

        fresh = await ledger.status("new-user", 40)
        assert fresh.remaining == 40
        assert "new-user" not in remote.documents(QUOTA_COLLECTION)
        assert await local.get(QUOTA_SCHEMA.name, "new-user") is None

        yesterday = {"userId": "u1", "day": "2024-05-09", "used": 40, "max": 40}
        remote.seed(QUOTA_COLLECTION, "u1", yesterday)
        status = await ledger.status("u1", 40)
        assert status.remaining == 40
        assert remote.documents(QUOTA_COLLECTION)["u1"] == yesterday

        assert await ledger.consume("u1", 40) == 39
        stored = remote.documents(QUOTA_COLLECTION)["u1"]
        assert stored["day"] == "2024-05-10"
        assert stored["used"] == 1
        mirror = await ledger.mirrored("u1")
        assert mirror is not None
        assert (mirror.day, mirror.used, mirror.max_per_day) == ("2024-05-10", 1, 40)

    asyncio.run(_run())


def test_stored_cap_overrides_the_default(tmp_path: Path) -> None:
    async def _run() -> None:
        ledger, remote, _local, _analytics = await _ledger(tmp_path)

        assert await ledger.consume("u1", 40) == 39
        record = await ledger.set_max("u1", 3)
        assert (record.max_per_day, record.used) == (3, 1)
        assert await ledger.consume("u1", 40) == 1
        assert (await ledger.status("u1", 40)).remaining == 1

        record = await ledger.set_max("u1", 0)
        assert record.used == 0
        assert await ledger.consume("u1", 40) == BLOCKED
        assert remote.documents(QUOTA_COLLECTION)["u1"]["max"] == 0

        with pytest.raises(ValueError):
            await ledger.set_max("u1", -2)

    asyncio.run(_run())


def test_unreachable_remote_falls_back_to_local_mirror(tmp_path: Path) -> None:
    async def _run() -> None:
        ledger, remote, _local, analytics = await _ledger(tmp_path)
        assert await ledger.consume("u1", 3) == 2

        remote.offline = True
        assert await ledger.consume("u1", 3) == 1
        assert await ledger.consume("u1", 3) == 0
        assert await ledger.consume("u1", 3) == BLOCKED
        assert "quota_local_fallback" in analytics.names()
        assert analytics.names()[-1] == "quota_blocked"

        status = await ledger.status("u1", 3)
        assert status.remaining == 0

        with pytest.raises(RemoteUnavailable):
            await ledger.grant("u1", 1, 3)
        with pytest.raises(RemoteUnavailable):
            await ledger.set_max("u1", 10)

        remote.offline = False
        assert remote.documents(QUOTA_COLLECTION)["u1"]["used"] == 1

    asyncio.run(_run())


def test_permanent_remote_errors_propagate(tmp_path: Path) -> None:
    async def _run() -> None:
        ledger, remote, local, analytics = await _ledger(tmp_path)
        remote.failure = RemotePermissionDenied("quota rules rejected the write")

        with pytest.raises(RemotePermissionDenied):
            await ledger.consume("u1", 40)
        with pytest.raises(RemotePermissionDenied):
            await ledger.status("u1", 40)
        assert await local.get(QUOTA_SCHEMA.name, "u1") is None
        assert analytics.names() == []

    asyncio.run(_run())


def test_window_follows_the_clock(tmp_path: Path) -> None:
    moments = [NOW]

    async def _run() -> None:
        ledger, _remote, _local, _analytics = await _ledger(tmp_path, clock=lambda: moments[0])
        for _ in range(2):
            await ledger.consume("u1", 2)
        assert await ledger.consume("u1", 2) == BLOCKED

        moments[0] = NOW + timedelta(hours=9)
        assert day_key(moments[0]) == "2024-05-11"
        assert await ledger.consume("u1", 2) == 1
        status = await ledger.status("u1", 2)
        assert status.window_ends_at == window_end(moments[0])
        assert status.window_ends_at == datetime(2024, 5, 12, tzinfo=timezone.utc)

    asyncio.run(_run())
