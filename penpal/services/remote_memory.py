"""In-process remote store used for tests and offline development."""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

from logger import get_logger
from penpal.errors import RemoteError, RemoteUnavailable
from penpal.models import Filter
from penpal.services.remote_base import (
    ChangeType,
    DocumentChange,
    ListenerRegistration,
    RemoteDocument,
    RemoteStore,
    RemoteTransaction,
    SnapshotBatch,
    SnapshotCallback,
)

T = TypeVar("T")

_logger = get_logger("penpal.remote.memory")


class _Conflict(Exception):
    """Raised internally when a transaction read set went stale."""


def _matches(data: Mapping[str, Any], filters: Sequence[Filter]) -> bool:
    for item in filters:
        if item.op == "array_contains":
            values = data.get(item.field)
            if not isinstance(values, (list, tuple)) or item.value not in values:
                return False
            continue
        if item.field not in data:
            return False
        value = data[item.field]
        try:
            if item.op == "==" and not value == item.value:
                return False
            if item.op == "!=" and not value != item.value:
                return False
            if item.op == "<" and not value < item.value:
                return False
            if item.op == "<=" and not value <= item.value:
                return False
            if item.op == ">" and not value > item.value:
                return False
            if item.op == ">=" and not value >= item.value:
                return False
            if item.op == "in" and value not in item.value:
                return False
        except TypeError:
            return False
    return True


def _sort_value(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, 0)
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, value)


@dataclass(slots=True)
class _StoredDocument:
    data: dict[str, Any]
    version: int


@dataclass(slots=True)
class _Watch:
    collection: str
    filters: tuple[Filter, ...]
    callback: SnapshotCallback
    visible: set[str] = field(default_factory=set)
    active: bool = True


class _WatchRegistration(ListenerRegistration):
    def __init__(self, store: "InMemoryRemoteStore", watch: _Watch) -> None:
        self._store = store
        self._watch = watch

    def remove(self) -> None:
        if not self._watch.active:
            return
        self._watch.active = False
        self._store._watches.remove(self._watch)


class _MemoryTransaction(RemoteTransaction):
    def __init__(self, store: "InMemoryRemoteStore") -> None:
        self._store = store
        self.reads: dict[tuple[str, str], int] = {}
        self.writes: list[tuple[str, str, Optional[dict[str, Any]], bool]] = []

    async def get(self, collection: str, doc_id: str) -> Optional[RemoteDocument]:
        self._store._check_available()
        await asyncio.sleep(0)
        stored = self._store._collection(collection).get(doc_id)
        self.reads[(collection, doc_id)] = stored.version if stored else 0
        if stored is None:
            return None
        return RemoteDocument(id=doc_id, data=copy.deepcopy(stored.data))

    def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        self.writes.append((collection, doc_id, copy.deepcopy(dict(data)), merge))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append((collection, doc_id, None, False))


class InMemoryRemoteStore(RemoteStore):
    """Versioned dict-backed document store with optimistic transactions.

    ``offline`` makes every call raise ``RemoteUnavailable``; ``failure``
    makes every call raise the given error. Listener callbacks are awaited
    before a write returns, which keeps tests deterministic.
    """

    def __init__(self, *, max_attempts: int = 5) -> None:
        self._documents: dict[str, dict[str, _StoredDocument]] = {}
        self._watches: list[_Watch] = []
        self._deliveries: set[asyncio.Task] = set()
        self._commit_lock = asyncio.Lock()
        self._max_attempts = max(max_attempts, 1)
        self.offline = False
        self.failure: RemoteError | None = None
        self.transaction_attempts = 0

    async def get_document(self, collection: str, doc_id: str) -> Optional[RemoteDocument]:
        self._check_available()
        await asyncio.sleep(0)
        stored = self._collection(collection).get(doc_id)
        if stored is None:
            return None
        return RemoteDocument(id=doc_id, data=copy.deepcopy(stored.data))

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[RemoteDocument]:
        self._check_available()
        await asyncio.sleep(0)
        docs = [
            RemoteDocument(id=doc_id, data=copy.deepcopy(stored.data))
            for doc_id, stored in self._collection(collection).items()
            if _matches(stored.data, filters)
        ]
        if order_by is not None:
            docs.sort(key=lambda doc: _sort_value(doc.data.get(order_by)), reverse=descending)
        if limit is not None:
            docs = docs[: max(limit, 0)]
        return docs

    async def set_document(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        self._check_available()
        async with self._commit_lock:
            changed = [self._apply_write(collection, doc_id, copy.deepcopy(dict(data)), merge)]
        await self._notify(changed)

    async def delete_document(self, collection: str, doc_id: str) -> None:
        self._check_available()
        async with self._commit_lock:
            changed = [self._apply_write(collection, doc_id, None, False)]
        await self._notify(changed)

    async def run_transaction(self, body: Callable[[RemoteTransaction], Awaitable[T]]) -> T:
        for attempt in range(1, self._max_attempts + 1):
            self.transaction_attempts += 1
            txn = _MemoryTransaction(self)
            result = await body(txn)
            self._check_available()
            try:
                async with self._commit_lock:
                    self._validate(txn)
                    changed = [
                        self._apply_write(collection, doc_id, data, merge)
                        for collection, doc_id, data, merge in txn.writes
                    ]
            except _Conflict:
                _logger.debug("Transaction conflict, attempt %d", attempt)
                continue
            await self._notify(changed)
            return result
        raise RemoteUnavailable("Transaction aborted after repeated contention")

    def listen(
        self,
        collection: str,
        filters: Sequence[Filter],
        on_snapshot: SnapshotCallback,
    ) -> ListenerRegistration:
        self._check_available()
        watch = _Watch(collection=collection, filters=tuple(filters), callback=on_snapshot)
        initial = []
        for doc_id, stored in self._collection(collection).items():
            if _matches(stored.data, watch.filters):
                watch.visible.add(doc_id)
                initial.append(
                    DocumentChange(
                        ChangeType.ADDED,
                        RemoteDocument(id=doc_id, data=copy.deepcopy(stored.data)),
                    )
                )
        self._watches.append(watch)
        delivery = asyncio.get_running_loop().create_task(
            self._deliver(watch, SnapshotBatch(changes=tuple(initial), is_initial=True))
        )
        self._deliveries.add(delivery)
        delivery.add_done_callback(self._deliveries.discard)
        return _WatchRegistration(self, watch)

    # test helpers
    def seed(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Store a document without notifying listeners."""

        self._apply_write(collection, doc_id, copy.deepcopy(dict(data)), False)

    def documents(self, collection: str) -> dict[str, dict[str, Any]]:
        return {
            doc_id: copy.deepcopy(stored.data)
            for doc_id, stored in self._collection(collection).items()
        }

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    # internal helpers
    def _check_available(self) -> None:
        if self.failure is not None:
            raise self.failure
        if self.offline:
            raise RemoteUnavailable("Remote store is offline")

    def _collection(self, collection: str) -> dict[str, _StoredDocument]:
        return self._documents.setdefault(collection, {})

    def _validate(self, txn: _MemoryTransaction) -> None:
        for (collection, doc_id), version in txn.reads.items():
            stored = self._collection(collection).get(doc_id)
            current = stored.version if stored else 0
            if current != version:
                raise _Conflict()

    def _apply_write(
        self,
        collection: str,
        doc_id: str,
        data: Optional[dict[str, Any]],
        merge: bool,
    ) -> tuple[str, str, Optional[dict[str, Any]]]:
        documents = self._collection(collection)
        stored = documents.get(doc_id)
        if data is None:
            documents.pop(doc_id, None)
            return collection, doc_id, None
        if merge and stored is not None:
            data = {**stored.data, **data}
        version = stored.version + 1 if stored else 1
        documents[doc_id] = _StoredDocument(data=data, version=version)
        return collection, doc_id, copy.deepcopy(data)

    async def _notify(self, changed: list[tuple[str, str, Optional[dict[str, Any]]]]) -> None:
        for watch in list(self._watches):
            batch: list[DocumentChange] = []
            for collection, doc_id, data in changed:
                if collection != watch.collection:
                    continue
                was_visible = doc_id in watch.visible
                now_visible = data is not None and _matches(data, watch.filters)
                if now_visible:
                    kind = ChangeType.MODIFIED if was_visible else ChangeType.ADDED
                    watch.visible.add(doc_id)
                    batch.append(DocumentChange(kind, RemoteDocument(id=doc_id, data=data or {})))
                elif was_visible:
                    watch.visible.discard(doc_id)
                    batch.append(DocumentChange(ChangeType.REMOVED, RemoteDocument(id=doc_id)))
            if batch:
                await self._deliver(watch, SnapshotBatch(changes=tuple(batch)))

    async def _deliver(self, watch: _Watch, batch: SnapshotBatch) -> None:
        if not watch.active:
            return
        try:
            await watch.callback(batch)
        except Exception:
            _logger.exception("Snapshot listener for %s failed", watch.collection)


__all__ = ["InMemoryRemoteStore"]
