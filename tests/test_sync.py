"""Tests for the cache-first sync coordinator."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from penpal.codecs import ConversationCodec, MessageCodec
from penpal.errors import RemotePermissionDenied, SessionRequiredError
from penpal.models import Conversation, Message
from penpal.services.local_sqlite import SQLiteLocalStore
from penpal.services.remote_memory import InMemoryRemoteStore
from penpal.services.session import UserSession
from penpal.services.sync import SyncCoordinator

BASE = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)


def _conversation(
    conv_id: str, text: str, minutes: int = 0, *, synced: bool = True
) -> Conversation:
    return Conversation(
        id=conv_id,
        user_id="u1",
        penpal_id=f"p-{conv_id}",
        participants=("u1", f"p-{conv_id}"),
        last_message=text,
        updated_at=BASE + timedelta(minutes=minutes),
        is_synced=synced,
    )


def _message(msg_id: str, minutes: int, text: str = "hola") -> Message:
    return Message(
        id=msg_id,
        conversation_id="c1",
        sender_id="u1",
        text=text,
        sent_at=BASE + timedelta(minutes=minutes),
        updated_at=BASE + timedelta(minutes=minutes),
        is_synced=True,
    )


async def _coordinator(tmp_path: Path, codec, *, user: str | None = "u1"):
    local = SQLiteLocalStore(tmp_path / "cache.db")
    await local.open([codec.schema])
    remote = InMemoryRemoteStore()
    coordinator = SyncCoordinator(codec, local=local, remote=remote, session=UserSession(user))
    return coordinator, local, remote


async def _cache(local, codec, *entities) -> None:
    await local.put_many(codec.collection, [codec.to_row(entity) for entity in entities])


def _seed(remote, codec, *entities) -> None:
    for entity in entities:
        remote.seed(codec.remote_collection, entity.id, codec.to_remote(entity))


def test_offline_fetch_serves_cache_twice(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        await _cache(
            local,
            codec,
            _conversation("c1", "one", 1),
            _conversation("c2", "two", 3),
            _conversation("c3", "three", 2),
        )
        remote.offline = True

        result = await coordinator.fetch("u1")
        assert [item.id for item in result.immediate] == ["c2", "c3", "c1"]
        refreshed = await result.eventual
        assert [item.id for item in refreshed] == ["c2", "c3", "c1"]
        assert await local.count(codec.collection) == 3

    asyncio.run(_run())


def test_remote_update_replaces_cached_copy(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        await _cache(local, codec, _conversation("c1", "hi", 0))
        _seed(remote, codec, _conversation("c1", "hi there", 5))

        result = await coordinator.fetch("u1")
        assert [item.last_message for item in result.immediate] == ["hi"]
        refreshed = await result.eventual
        assert [item.last_message for item in refreshed] == ["hi there"]

        cached = await coordinator.get("c1")
        assert cached is not None
        assert cached.last_message == "hi there"
        assert cached.is_synced is True

        again = await coordinator.fetch("u1")
        assert [item.last_message for item in again.immediate] == ["hi there"]
        await again.eventual
        assert await local.count(codec.collection) == 1

    asyncio.run(_run())


def test_unlimited_refresh_evicts_rows_deleted_remotely(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        await _cache(
            local,
            codec,
            _conversation("gone", "bye", 1),
            _conversation("draft", "unsent", 2, synced=False),
            _conversation("kept", "still here", 3),
        )
        _seed(remote, codec, _conversation("kept", "still here", 3))

        refreshed = await (await coordinator.fetch("u1")).eventual
        assert sorted(item.id for item in refreshed) == ["draft", "kept"]
        assert await coordinator.get("gone") is None
        assert await coordinator.get("draft") is not None

    asyncio.run(_run())


def test_limited_refresh_keeps_rows_outside_the_page(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        older = [_conversation(f"c{index}", "x", index) for index in range(4)]
        _seed(remote, codec, *older)
        await _cache(local, codec, *older)

        refreshed = await (await coordinator.fetch("u1", limit=2)).eventual
        assert [item.id for item in refreshed] == ["c3", "c2"]
        assert await local.count(codec.collection) == 4

    asyncio.run(_run())


def test_newer_local_write_is_kept_and_pushed_later(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        _seed(remote, codec, _conversation("c1", "remote", 0))

        remote.offline = True
        mutation = await coordinator.mutate(_conversation("c1", "local edit", 10))
        assert mutation.local.is_synced is False
        assert await mutation.confirmation is False
        remote.offline = False

        refreshed = await (await coordinator.fetch("u1")).eventual
        assert [item.last_message for item in refreshed] == ["local edit"]
        assert coordinator.requeued == ("c1",)
        assert remote.documents(codec.remote_collection)["c1"]["lastMessage"] == "remote"

        # a later read no longer protects the row, but the queued write survives
        refreshed = await (await coordinator.fetch("u1")).eventual
        assert [item.last_message for item in refreshed] == ["remote"]
        assert coordinator.requeued == ("c1",)

        assert await coordinator.retry_pending("u1") == 1
        assert coordinator.requeued == ()
        assert remote.documents(codec.remote_collection)["c1"]["lastMessage"] == "local edit"
        cached = await coordinator.get("c1")
        assert cached is not None
        assert (cached.last_message, cached.is_synced) == ("local edit", True)
        assert await coordinator.pending() == []

    asyncio.run(_run())


def test_newer_remote_copy_wins_over_local_write(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, _local, remote = await _coordinator(tmp_path, codec)

        remote.offline = True
        await (await coordinator.mutate(_conversation("c1", "local", 1))).confirmation
        remote.offline = False
        _seed(remote, codec, _conversation("c1", "from another device", 30))

        refreshed = await (await coordinator.fetch("u1")).eventual
        assert [item.last_message for item in refreshed] == ["from another device"]
        assert coordinator.requeued == ()
        assert await coordinator.pending("u1") == []

    asyncio.run(_run())


def test_unsynced_row_from_previous_session_is_replaced(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        await _cache(local, codec, _conversation("c1", "stale draft", 60, synced=False))
        _seed(remote, codec, _conversation("c1", "server", 0))

        refreshed = await (await coordinator.fetch("u1")).eventual
        assert [item.last_message for item in refreshed] == ["server"]
        assert coordinator.requeued == ()

    asyncio.run(_run())


def test_permanent_error_surfaces_from_eventual(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        await _cache(local, codec, _conversation("c1", "cached", 0))
        remote.failure = RemotePermissionDenied("not a participant")

        result = await coordinator.fetch("u1")
        assert [item.id for item in result.immediate] == ["c1"]
        with pytest.raises(RemotePermissionDenied):
            await result.eventual

        with pytest.raises(RemotePermissionDenied):
            await coordinator.mutate(_conversation("c1", "edit", 5), optimistic=False)
        with pytest.raises(RemotePermissionDenied):
            await coordinator.delete("c1")
        assert await coordinator.get("c1") is not None

    asyncio.run(_run())


def test_mutate_modes(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, _local, remote = await _coordinator(tmp_path, codec)

        mutation = await coordinator.mutate(_conversation("c1", "optimistic", 1))
        cached = await coordinator.get("c1")
        assert cached is not None
        assert cached.last_message == "optimistic"
        assert await mutation.confirmation is True
        cached = await coordinator.get("c1")
        assert cached is not None and cached.is_synced is True

        remote.offline = True
        mutation = await coordinator.mutate(_conversation("c2", "awaited", 2), optimistic=False)
        assert mutation.confirmation.done()
        assert mutation.confirmation.result() is False
        assert [item.id for item in await coordinator.pending()] == ["c2"]
        assert await coordinator.retry_pending() == 0

        remote.offline = False
        mutation = await coordinator.mutate(_conversation("c3", "awaited", 3), optimistic=False)
        assert mutation.local.is_synced is True
        assert await mutation.confirmation is True
        assert await coordinator.retry_pending() == 1
        assert set(remote.documents(codec.remote_collection)) == {"c1", "c2", "c3"}

    asyncio.run(_run())


def test_delete_defers_when_offline(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, _local, remote = await _coordinator(tmp_path, codec)
        await (await coordinator.mutate(_conversation("c1", "bye", 0))).confirmation

        remote.offline = True
        assert await coordinator.delete("c1") is False
        assert await coordinator.get("c1") is not None

        remote.offline = False
        assert await coordinator.delete("c1") is True
        assert await coordinator.get("c1") is None
        assert remote.documents(codec.remote_collection) == {}

    asyncio.run(_run())


def test_writes_require_a_signed_in_user(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, _local, _remote = await _coordinator(tmp_path, codec, user=None)
        with pytest.raises(SessionRequiredError):
            await coordinator.mutate(_conversation("c1", "hi", 0))
        with pytest.raises(SessionRequiredError):
            await coordinator.delete("c1")

    asyncio.run(_run())


def test_messages_merge_in_send_order(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = MessageCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        await _cache(local, codec, _message("m2", 2), _message("m4", 4))
        _seed(remote, codec, _message("m1", 1), _message("m2", 2), _message("m3", 3))
        pending = replace(_message("m5", 5, "sin enviar"), is_synced=False)
        await _cache(local, codec, pending)
        remote.seed(codec.remote_collection, "broken", {"conversationId": "c1", "text": "?"})

        result = await coordinator.fetch("c1")
        assert [item.id for item in result.immediate] == ["m2", "m4", "m5"]
        refreshed = await result.eventual
        assert [item.id for item in refreshed] == ["m1", "m2", "m3", "m5"]
        assert await coordinator.get("broken") is None

        await remote.delete_document(codec.remote_collection, "broken")
        page = await (await coordinator.fetch("c1", limit=2)).eventual
        assert [item.id for item in page] == ["m1", "m2"]

    asyncio.run(_run())


def test_forget_session_state_drops_queued_writes(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, _local, remote = await _coordinator(tmp_path, codec)
        _seed(remote, codec, _conversation("c1", "remote", 0))
        remote.offline = True
        await (await coordinator.mutate(_conversation("c1", "local", 10))).confirmation
        remote.offline = False
        await (await coordinator.fetch("u1")).eventual
        assert coordinator.requeued == ("c1",)

        coordinator.forget_session_state()
        assert coordinator.requeued == ()

    asyncio.run(_run())


def test_discarded_confirmation_failure_is_logged(tmp_path: Path, caplog) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, _local, remote = await _coordinator(tmp_path, codec)
        remote.failure = RemotePermissionDenied("read only")

        mutation = await coordinator.mutate(_conversation("c1", "draft", 1))
        await asyncio.wait([mutation.confirmation])

        assert isinstance(mutation.confirmation.exception(), RemotePermissionDenied)
        assert (await coordinator.get("c1")).is_synced is False

    with caplog.at_level(logging.ERROR):
        asyncio.run(_run())
    assert any("failed permanently" in record.getMessage() for record in caplog.records)


def test_refresh_finishing_after_session_reset_leaves_cache_alone(tmp_path: Path) -> None:
    async def _run() -> None:
        codec = ConversationCodec()
        coordinator, local, remote = await _coordinator(tmp_path, codec)
        _seed(remote, codec, _conversation("c1", "remote", 0))

        result = await coordinator.fetch("u1")
        coordinator.forget_session_state()
        refreshed = await result.eventual

        assert [item.id for item in refreshed] == ["c1"]
        assert await local.count(codec.collection) == 0

        await (await coordinator.fetch("u1")).eventual
        assert await local.count(codec.collection) == 1

    asyncio.run(_run())
