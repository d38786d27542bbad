"""Local-first read and write-through sync for one entity collection."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Generic, Iterable, Optional, TypeVar

from logger import bind_context, get_logger, reset_context
from penpal.codecs import EntityCodec
from penpal.errors import RemoteError
from penpal.models import Filter, eq, mark_synced
from penpal.services.local_base import LocalStore
from penpal.services.remote_base import RemoteStore
from penpal.services.session import UserSession

E = TypeVar("E")


@dataclass(slots=True)
class FetchResult(Generic[E]):
    """Cached entities available now plus a task resolving to the refreshed list."""

    immediate: list[E]
    eventual: "asyncio.Task[list[E]]"


@dataclass(slots=True)
class Mutation(Generic[E]):
    """Locally stored entity plus a task resolving to whether the remote accepted it."""

    local: E
    confirmation: "asyncio.Future[bool]"


class SyncCoordinator(Generic[E]):
    """Runs the cache-first protocol for the collection described by ``codec``.

    Remote documents replace cached rows with the same id, with one
    exception: an unsynced local write issued during this session after the
    last successful remote read is kept when the remote copy is older. Such
    writes are re-queued and pushed again by :meth:`retry_pending`.
    """

    def __init__(
        self,
        codec: EntityCodec[E],
        *,
        local: LocalStore,
        remote: RemoteStore,
        session: UserSession,
    ) -> None:
        self._codec = codec
        self._local = local
        self._remote = remote
        self._session = session
        self._lock: asyncio.Lock | None = None
        self._intents: dict[str, float] = {}
        self._last_remote_read: dict[str, float] = {}
        self._requeued: dict[str, E] = {}
        self._epoch = 0
        self._logger = get_logger(f"penpal.sync.{codec.collection}")

    @property
    def codec(self) -> EntityCodec[E]:
        return self._codec

    @property
    def requeued(self) -> tuple[str, ...]:
        """Ids of local writes kept over an older remote copy, awaiting a retry."""

        return tuple(self._requeued)

    async def fetch(self, scope: str, *, limit: Optional[int] = None) -> FetchResult[E]:
        """Return cached entities for ``scope`` and start the remote refresh.

        The immediate list is read before the remote query is issued. The
        eventual task never fails on transient remote errors; it falls back to
        the cache instead. Permanent errors are raised from the task.
        """

        immediate = await self._read_local(scope, limit)
        issued_at = asyncio.get_running_loop().time()
        eventual = asyncio.create_task(self._refresh(scope, limit, issued_at, self._epoch))
        eventual.add_done_callback(self._log_refresh_failure)
        return FetchResult(immediate=immediate, eventual=eventual)

    async def get(self, entity_id: str) -> Optional[E]:
        row = await self._local.get(self._codec.collection, entity_id)
        if row is None:
            return None
        return self._codec.from_row(row)

    async def mutate(self, entity: E, *, optimistic: bool = True) -> Mutation[E]:
        """Write ``entity`` locally and remotely.

        With ``optimistic`` the unsynced row is stored before this returns
        and the remote write completes in ``confirmation``. Otherwise the
        remote write is awaited first and the row is stored with its outcome.
        A transient remote failure leaves the row unsynced and resolves the
        confirmation to ``False``.
        """

        self._session.require_user_id()
        loop = asyncio.get_running_loop()
        pending = mark_synced(entity, False)
        entity_id = self._entity_id(pending)
        started = loop.time()

        if optimistic:
            async with self._get_lock():
                self._intents[entity_id] = started
                await self._local.put(self._codec.collection, self._codec.to_row(pending))
            confirmation = asyncio.create_task(self._push(pending, started))
            confirmation.add_done_callback(self._log_push_failure)
            return Mutation(local=pending, confirmation=confirmation)

        epoch = self._epoch
        async with self._get_lock():
            self._intents[entity_id] = started
        try:
            accepted = await self._send(pending)
        except RemoteError:
            self._intents.pop(entity_id, None)
            raise
        stored = mark_synced(pending) if accepted else pending
        async with self._get_lock():
            if epoch != self._epoch:
                return Mutation(local=stored, confirmation=_resolved(loop, accepted))
            if accepted and self._intents.get(entity_id) == started:
                self._intents.pop(entity_id, None)
                self._requeued.pop(entity_id, None)
            await self._local.put(self._codec.collection, self._codec.to_row(stored))
        return Mutation(local=stored, confirmation=_resolved(loop, accepted))

    async def delete(self, entity_id: str) -> bool:
        """Delete remotely, then from the cache.

        Returns ``False`` and keeps the cached row when the remote store is
        unreachable.
        """

        self._session.require_user_id()
        try:
            await self._remote.delete_document(self._codec.remote_collection, entity_id)
        except RemoteError as exc:
            if not exc.transient:
                raise
            self._logger.warning("Remote delete of %s deferred: %s", entity_id, exc)
            return False
        async with self._get_lock():
            self._intents.pop(entity_id, None)
            self._requeued.pop(entity_id, None)
            await self._local.delete(self._codec.collection, entity_id)
        return True

    async def pending(self, scope: Optional[str] = None) -> list[E]:
        """Return cached entities whose local copy is ahead of the remote one."""

        filters: list[Filter] = [eq("is_synced", 0)]
        if scope is not None:
            filters.append(eq(self._codec.scope_column, scope))
        rows = await self._local.query(self._codec.collection, filters)
        return self._sorted(self._decode_rows(rows))

    async def retry_pending(self, scope: Optional[str] = None) -> int:
        """Push unsynced entities again and return how many were accepted.

        Covers unsynced cached rows and re-queued writes. Stops at the first
        transient failure; permanent failures propagate.
        """

        loop = asyncio.get_running_loop()
        candidates = {self._entity_id(entity): entity for entity in await self.pending(scope)}
        for entity_id, entity in list(self._requeued.items()):
            if scope is None or self._codec.scope_of(entity) == scope:
                candidates.setdefault(entity_id, entity)
        accepted = 0
        for entity in self._sorted(candidates.values()):
            entity_id = self._entity_id(entity)
            started = self._intents.setdefault(entity_id, loop.time())
            if not await self._push(entity, started):
                break
            accepted += 1
        if accepted:
            self._logger.info("Retried %d pending writes", accepted)
        return accepted

    def forget_session_state(self) -> None:
        """Drop per-session bookkeeping; called when the user signs out.

        Refreshes and awaited writes started before this call no longer touch
        the cache when they complete.
        """

        self._epoch += 1
        self._intents.clear()
        self._last_remote_read.clear()
        self._requeued.clear()

    # internal helpers
    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _entity_id(self, entity: E) -> str:
        return getattr(entity, "id")

    def _scope_filters(self, scope: str) -> list[Filter]:
        return [eq(self._codec.scope_column, scope)]

    async def _read_local(self, scope: str, limit: Optional[int]) -> list[E]:
        rows = await self._local.query(
            self._codec.collection,
            self._scope_filters(scope),
            order_by=self._codec.order_column,
            descending=self._codec.descending,
            limit=limit,
        )
        return self._sorted(self._decode_rows(rows))

    def _decode_rows(self, rows: Iterable[dict[str, Any]]) -> list[E]:
        decoded = (self._codec.from_row(row) for row in rows)
        return [entity for entity in decoded if entity is not None]

    def _sorted(self, entities: Iterable[E]) -> list[E]:
        codec = self._codec
        return sorted(
            entities,
            key=lambda entity: (codec.sort_key(entity), self._entity_id(entity)),
            reverse=codec.descending,
        )

    async def _refresh(
        self, scope: str, limit: Optional[int], issued_at: float, epoch: int
    ) -> list[E]:
        tokens = bind_context(scope=scope)
        try:
            return await self._merge_remote(scope, limit, issued_at, epoch)
        finally:
            reset_context(tokens)

    async def _merge_remote(
        self, scope: str, limit: Optional[int], issued_at: float, epoch: int
    ) -> list[E]:
        codec = self._codec
        try:
            documents = await self._remote.query(
                codec.remote_collection,
                [eq(codec.scope_field, scope)],
                order_by=codec.order_field if limit is not None else None,
                descending=codec.descending,
                limit=limit,
            )
        except RemoteError as exc:
            if not exc.transient:
                raise
            self._logger.warning("Remote refresh failed, serving cache: %s", exc)
            return await self._read_local(scope, limit)

        remote_entities: dict[str, E] = {}
        for document in documents:
            entity = codec.from_remote(document)
            if entity is not None:
                remote_entities[self._entity_id(entity)] = mark_synced(entity)

        async with self._get_lock():
            last_read = self._last_remote_read.get(scope)
            rows = await self._local.query(codec.collection, self._scope_filters(scope))
            if epoch != self._epoch:
                self._logger.debug("Session changed during refresh, cache left untouched")
                return self._limited(remote_entities.values(), limit)
            cached = {self._entity_id(entity): entity for entity in self._decode_rows(rows)}

            merged: dict[str, E] = {}
            writes: list[dict[str, Any]] = []
            for entity_id, remote_entity in remote_entities.items():
                local_entity = cached.get(entity_id)
                if local_entity is not None and self._keeps_local(
                    local_entity, remote_entity, last_read
                ):
                    self._requeued[entity_id] = local_entity
                    merged[entity_id] = local_entity
                    self._logger.info("Kept newer local write for %s", entity_id)
                    continue
                queued = self._requeued.get(entity_id)
                if queued is not None and not self._is_older(remote_entity, queued):
                    del self._requeued[entity_id]
                merged[entity_id] = remote_entity
                writes.append(codec.to_row(remote_entity))

            stale: list[str] = []
            for entity_id, local_entity in cached.items():
                if entity_id in merged:
                    continue
                if not getattr(local_entity, "is_synced"):
                    merged[entity_id] = local_entity
                elif limit is None:
                    stale.append(entity_id)

            await self._local.put_many(codec.collection, writes)
            if stale:
                await self._local.delete_where(codec.collection, [Filter("id", "in", stale)])
                self._logger.debug("Evicted %d rows removed remotely", len(stale))
            self._last_remote_read[scope] = issued_at

        return self._limited(merged.values(), limit)

    def _limited(self, entities: Iterable[E], limit: Optional[int]) -> list[E]:
        result = self._sorted(entities)
        if limit is not None:
            result = result[:limit]
        return result

    def _keeps_local(self, local_entity: E, remote_entity: E, last_read: Optional[float]) -> bool:
        if getattr(local_entity, "is_synced"):
            return False
        started = self._intents.get(self._entity_id(local_entity))
        if started is None:
            return False
        if last_read is not None and started <= last_read:
            return False
        return self._is_older(remote_entity, local_entity)

    @staticmethod
    def _is_older(entity: E, other: E) -> bool:
        return getattr(entity, "updated_at") < getattr(other, "updated_at")

    async def _send(self, entity: E) -> bool:
        try:
            await self._remote.set_document(
                self._codec.remote_collection,
                self._entity_id(entity),
                self._codec.to_remote(entity),
            )
        except RemoteError as exc:
            if not exc.transient:
                raise
            self._logger.warning("Remote write of %s failed: %s", self._entity_id(entity), exc)
            return False
        return True

    async def _push(self, entity: E, started: float) -> bool:
        entity_id = self._entity_id(entity)
        if not await self._send(entity):
            return False
        async with self._get_lock():
            # a newer local write for the same id owns the row now
            if self._intents.get(entity_id) != started:
                return True
            self._intents.pop(entity_id, None)
            self._requeued.pop(entity_id, None)
            await self._local.put(self._codec.collection, self._codec.to_row(mark_synced(entity)))
        return True

    def _log_refresh_failure(self, task: "asyncio.Task[list[E]]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Remote refresh failed: %s", exc)

    def _log_push_failure(self, task: "asyncio.Task[bool]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Remote write failed permanently: %s", exc)


def _resolved(loop: asyncio.AbstractEventLoop, value: bool) -> "asyncio.Future[bool]":
    done: asyncio.Future[bool] = loop.create_future()
    done.set_result(value)
    return done


__all__ = ["FetchResult", "Mutation", "SyncCoordinator"]
