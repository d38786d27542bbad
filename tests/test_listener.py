"""Tests for realtime change mirroring."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

from penpal.codecs import MessageCodec
from penpal.models import Message
from penpal.services.listener import ChangeNotice, RealtimeChangeListener
from penpal.services.local_sqlite import SQLiteLocalStore
from penpal.services.remote_base import ChangeType
from penpal.services.remote_memory import InMemoryRemoteStore

SENT = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def _doc(conversation_id: str, text: str) -> dict:
    return {"conversationId": conversation_id, "senderId": "p1", "text": text, "sentAt": SENT}


async def _setup(tmp_path: Path):
    codec = MessageCodec()
    local = SQLiteLocalStore(tmp_path / "cache.db")
    await local.open([codec.schema])
    remote = InMemoryRemoteStore()
    return codec, local, remote, RealtimeChangeListener(local=local, remote=remote)


def test_snapshots_are_mirrored_into_the_cache(tmp_path: Path) -> None:
    async def _run() -> None:
        codec, local, remote, listener = await _setup(tmp_path)
        remote.seed(codec.remote_collection, "m1", _doc("c1", "hola"))
        remote.seed(codec.remote_collection, "bad", {"conversationId": "c1"})
        notices: list[ChangeNotice] = []

        async def subscriber(notice: ChangeNotice) -> None:
            notices.append(notice)

        subscription = listener.listen(codec, "c1", subscriber)
        await asyncio.wait_for(subscription.ready.wait(), timeout=1)
        row = await local.get(codec.collection, "m1")
        assert row is not None
        assert row["is_synced"] == 1
        assert await local.get(codec.collection, "bad") is None

        await remote.set_document(codec.remote_collection, "m2", _doc("c1", "que tal"))
        await remote.set_document(codec.remote_collection, "m1", _doc("c1", "hola!"))
        await remote.delete_document(codec.remote_collection, "m2")

        assert [(notice.type, notice.entity_id) for notice in notices] == [
            (ChangeType.ADDED, "m1"),
            (ChangeType.ADDED, "m2"),
            (ChangeType.MODIFIED, "m1"),
            (ChangeType.REMOVED, "m2"),
        ]
        assert isinstance(notices[2].entity, Message)
        assert notices[2].entity.text == "hola!"
        assert notices[3].entity is None
        assert [row["id"] for row in await local.query(codec.collection)] == ["m1"]

    asyncio.run(_run())


def test_relistening_replaces_the_previous_watch(tmp_path: Path) -> None:
    async def _run() -> None:
        codec, local, remote, listener = await _setup(tmp_path)
        first = listener.listen(codec, "c1")
        second = listener.listen(codec, "c1")
        other = listener.listen(codec, "c2")

        assert first.released is True
        assert second.released is False
        assert remote.active_watches == 2
        assert set(listener.active()) == {("messages", "c1"), ("messages", "c2")}

        first.release()
        assert listener.active() == (("messages", "c1"), ("messages", "c2"))

        other.release()
        other.release()
        assert remote.active_watches == 1

        listener.release_all()
        assert listener.active() == ()
        assert remote.active_watches == 0

        await remote.set_document(codec.remote_collection, "m9", _doc("c1", "late"))
        assert await local.get(codec.collection, "m9") is None

    asyncio.run(_run())


def test_release_during_a_batch_stops_cache_writes(tmp_path: Path) -> None:
    async def _run() -> None:
        codec, local, remote, listener = await _setup(tmp_path)
        remote.seed(codec.remote_collection, "m1", _doc("c1", "uno"))
        remote.seed(codec.remote_collection, "m2", _doc("c1", "dos"))
        notices: list[ChangeNotice] = []

        async def subscriber(notice: ChangeNotice) -> None:
            notices.append(notice)
            subscription.release()

        subscription = listener.listen(codec, "c1", subscriber)
        assert remote.pending_deliveries == 1
        await asyncio.wait_for(subscription.ready.wait(), timeout=1)

        assert [notice.entity_id for notice in notices] == ["m1"]
        assert [row["id"] for row in await local.query(codec.collection)] == ["m1"]

    asyncio.run(_run())
