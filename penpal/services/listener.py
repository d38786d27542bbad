"""Remote change streams mirrored into the local cache."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from logger import bind_context, get_logger, reset_context
from penpal.codecs import EntityCodec
from penpal.models import eq, mark_synced
from penpal.services.local_base import LocalStore
from penpal.services.remote_base import (
    ChangeType,
    ListenerRegistration,
    RemoteStore,
    SnapshotBatch,
)

E = TypeVar("E")

_logger = get_logger("penpal.listener")


@dataclass(frozen=True, slots=True)
class ChangeNotice(Generic[E]):
    """One applied change; ``entity`` is ``None`` for removals."""

    type: ChangeType
    entity_id: str
    entity: Optional[E] = None


Subscriber = Callable[[ChangeNotice], Awaitable[None]]


class Subscription(Generic[E]):
    """Handle of one (collection, scope) watch.

    ``ready`` is set once the initial snapshot has been written to the cache.
    """

    def __init__(
        self,
        owner: "RealtimeChangeListener",
        codec: EntityCodec[E],
        scope: str,
        subscriber: Optional[Subscriber],
    ) -> None:
        self._owner = owner
        self._codec = codec
        self.scope = scope
        self._subscriber = subscriber
        self._registration: Optional[ListenerRegistration] = None
        self._released = False
        self.ready = asyncio.Event()

    @property
    def key(self) -> tuple[str, str]:
        return (self._codec.collection, self.scope)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """Stop the remote watch; safe to call repeatedly."""

        if self._released:
            return
        self._released = True
        if self._registration is not None:
            self._registration.remove()
        self._owner._forget(self)
        _logger.debug("Released watch on %s/%s", *self.key)

    def _attach(self, registration: ListenerRegistration) -> None:
        self._registration = registration

    async def _on_snapshot(self, batch: SnapshotBatch) -> None:
        if self._released:
            return
        tokens = bind_context(scope=self.scope)
        try:
            await self._apply(batch)
        finally:
            reset_context(tokens)
        if batch.is_initial:
            self.ready.set()

    async def _apply(self, batch: SnapshotBatch) -> None:
        codec = self._codec
        local = self._owner.local
        for change in batch.changes:
            if self._released:
                return
            document = change.document
            if change.type is ChangeType.REMOVED:
                await local.delete(codec.collection, document.id)
                notice: ChangeNotice = ChangeNotice(ChangeType.REMOVED, document.id)
            else:
                entity = codec.from_remote(document)
                if entity is None:
                    continue
                entity = mark_synced(entity)
                await local.put(codec.collection, codec.to_row(entity))
                notice = ChangeNotice(change.type, document.id, entity)
            if self._subscriber is not None and not self._released:
                await self._subscriber(notice)


class RealtimeChangeListener:
    """Keeps at most one watch per (collection, scope) pair."""

    def __init__(self, *, local: LocalStore, remote: RemoteStore) -> None:
        self.local = local
        self._remote = remote
        self._active: dict[tuple[str, str], Subscription] = {}

    def listen(
        self,
        codec: EntityCodec[E],
        scope: str,
        subscriber: Optional[Subscriber] = None,
    ) -> Subscription[E]:
        """Start watching ``scope``, releasing any earlier watch on the same pair."""

        key = (codec.collection, scope)
        prior = self._active.get(key)
        if prior is not None:
            prior.release()
        subscription = Subscription(self, codec, scope, subscriber)
        registration = self._remote.listen(
            codec.remote_collection,
            [eq(codec.scope_field, scope)],
            subscription._on_snapshot,
        )
        subscription._attach(registration)
        self._active[key] = subscription
        _logger.debug("Watching %s/%s", codec.collection, scope)
        return subscription

    def active(self) -> tuple[tuple[str, str], ...]:
        return tuple(self._active)

    def release_all(self) -> None:
        for subscription in list(self._active.values()):
            subscription.release()

    def _forget(self, subscription: Subscription) -> None:
        if self._active.get(subscription.key) is subscription:
            del self._active[subscription.key]


__all__ = ["ChangeNotice", "RealtimeChangeListener", "Subscriber", "Subscription"]
