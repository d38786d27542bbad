"""Cloud Firestore implementation of the remote store."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

import firebase_admin
from firebase_admin import credentials, firestore, firestore_async
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import async_transactional
from google.cloud.firestore_v1.base_query import FieldFilter

from logger import get_logger
from penpal.errors import (
    RemoteError,
    RemoteNotFound,
    RemotePermissionDenied,
    RemoteUnavailable,
    RemoteUnknown,
)
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

_logger = get_logger("penpal.remote.firestore")

_TRANSIENT = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.Aborted,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
    google_exceptions.RetryError,
)
_DENIED = (google_exceptions.PermissionDenied, google_exceptions.Unauthenticated)


def translate_error(exc: Exception) -> RemoteError:
    """Map a google-api-core failure onto the typed remote errors."""

    if isinstance(exc, RemoteError):
        return exc
    if isinstance(exc, _DENIED):
        return RemotePermissionDenied(str(exc))
    if isinstance(exc, google_exceptions.NotFound):
        return RemoteNotFound(str(exc))
    if isinstance(exc, _TRANSIENT):
        return RemoteUnavailable(str(exc))
    return RemoteUnknown(str(exc))


def _apply_filters(query, filters: Sequence[Filter]):
    for item in filters:
        value = list(item.value) if item.op == "in" else item.value
        query = query.where(filter=FieldFilter(item.field, item.op, value))
    return query


def _snapshot_document(snapshot) -> RemoteDocument:
    return RemoteDocument(id=snapshot.id, data=snapshot.to_dict() or {})


class _FirestoreTransaction(RemoteTransaction):
    def __init__(self, client, transaction) -> None:
        self._client = client
        self._transaction = transaction

    async def get(self, collection: str, doc_id: str) -> Optional[RemoteDocument]:
        ref = self._client.collection(collection).document(doc_id)
        snapshot = await ref.get(transaction=self._transaction)
        if not snapshot.exists:
            return None
        return _snapshot_document(snapshot)

    def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        ref = self._client.collection(collection).document(doc_id)
        self._transaction.set(ref, dict(data), merge=merge)

    def delete(self, collection: str, doc_id: str) -> None:
        ref = self._client.collection(collection).document(doc_id)
        self._transaction.delete(ref)


class _WatchRegistration(ListenerRegistration):
    def __init__(self, watch) -> None:
        self._watch = watch
        self._removed = False

    def remove(self) -> None:
        if self._removed:
            return
        self._removed = True
        self._watch.unsubscribe()


class FirestoreRemoteStore(RemoteStore):
    """Remote store over ``firebase-admin``.

    CRUD and transactions use the asyncio client; snapshot listeners use the
    synchronous client, whose callbacks run on a background thread and are
    handed back to the event loop that started the watch.
    """

    def __init__(
        self,
        *,
        credentials_path: Path | None = None,
        project_id: str | None = None,
        max_attempts: int = 5,
        app_name: str = "penpal-sync",
    ) -> None:
        options = {"projectId": project_id} if project_id else None
        cred = (
            credentials.Certificate(str(credentials_path))
            if credentials_path
            else credentials.ApplicationDefault()
        )
        try:
            self._app = firebase_admin.get_app(app_name)
        except ValueError:
            self._app = firebase_admin.initialize_app(cred, options, name=app_name)
        self._client = firestore_async.client(self._app)
        self._sync_client = firestore.client(self._app)
        self._max_attempts = max(max_attempts, 1)

    async def get_document(self, collection: str, doc_id: str) -> Optional[RemoteDocument]:
        try:
            snapshot = await self._client.collection(collection).document(doc_id).get()
        except google_exceptions.GoogleAPIError as exc:
            raise translate_error(exc) from exc
        if not snapshot.exists:
            return None
        return _snapshot_document(snapshot)

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[RemoteDocument]:
        query = _apply_filters(self._client.collection(collection), filters)
        if order_by is not None:
            direction = "DESCENDING" if descending else "ASCENDING"
            query = query.order_by(order_by, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        try:
            return [_snapshot_document(snapshot) async for snapshot in query.stream()]
        except google_exceptions.GoogleAPIError as exc:
            raise translate_error(exc) from exc

    async def set_document(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        try:
            await self._client.collection(collection).document(doc_id).set(dict(data), merge=merge)
        except google_exceptions.GoogleAPIError as exc:
            raise translate_error(exc) from exc

    async def delete_document(self, collection: str, doc_id: str) -> None:
        try:
            await self._client.collection(collection).document(doc_id).delete()
        except google_exceptions.GoogleAPIError as exc:
            raise translate_error(exc) from exc

    async def run_transaction(self, body: Callable[[RemoteTransaction], Awaitable[T]]) -> T:
        client = self._client

        @async_transactional
        async def _run(transaction):
            return await body(_FirestoreTransaction(client, transaction))

        try:
            return await _run(client.transaction(max_attempts=self._max_attempts))
        except google_exceptions.GoogleAPIError as exc:
            raise translate_error(exc) from exc
        except ValueError as exc:
            # raised by the client once max_attempts is exhausted
            raise RemoteUnavailable(str(exc)) from exc

    def listen(
        self,
        collection: str,
        filters: Sequence[Filter],
        on_snapshot: SnapshotCallback,
    ) -> ListenerRegistration:
        loop = asyncio.get_running_loop()
        query = _apply_filters(self._sync_client.collection(collection), filters)
        first = True

        def _callback(_docs, changes, _read_time) -> None:
            nonlocal first
            converted = tuple(
                DocumentChange(
                    ChangeType(change.type.name.lower()), _snapshot_document(change.document)
                )
                for change in changes
            )
            batch = SnapshotBatch(changes=converted, is_initial=first)
            first = False
            future = asyncio.run_coroutine_threadsafe(on_snapshot(batch), loop)
            future.add_done_callback(_log_delivery_failure)

        watch = query.on_snapshot(_callback)
        _logger.debug("Started watch on %s", collection)
        return _WatchRegistration(watch)

    async def aclose(self) -> None:
        firebase_admin.delete_app(self._app)


def _log_delivery_failure(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        _logger.error("Snapshot delivery failed: %s", exc)


__all__ = ["FirestoreRemoteStore", "translate_error"]
