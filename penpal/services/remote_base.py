"""Remote document store interface."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

from penpal.models import Filter

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RemoteDocument:
    """Snapshot of a single remote document."""

    id: str
    data: Mapping[str, Any] = field(default_factory=dict)


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class DocumentChange:
    type: ChangeType
    document: RemoteDocument


@dataclass(frozen=True, slots=True)
class SnapshotBatch:
    """Changes delivered by one listener callback; the first batch is the initial snapshot."""

    changes: tuple[DocumentChange, ...]
    is_initial: bool = False


SnapshotCallback = Callable[[SnapshotBatch], Awaitable[None]]


class RemoteTransaction(abc.ABC):
    """Read-then-write view handed to ``RemoteStore.run_transaction`` bodies."""

    @abc.abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[RemoteDocument]:
        """Read a document inside the transaction."""

    @abc.abstractmethod
    def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        """Buffer a write applied on commit."""

    @abc.abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        """Buffer a delete applied on commit."""


class ListenerRegistration(abc.ABC):
    """Handle of an active remote watch."""

    @abc.abstractmethod
    def remove(self) -> None:
        """Stop the watch; calling it more than once is a no-op."""


class RemoteStore(abc.ABC):
    """Interface for the remote source of truth."""

    @abc.abstractmethod
    async def get_document(self, collection: str, doc_id: str) -> Optional[RemoteDocument]:
        """Return the document or ``None`` when it does not exist."""

    @abc.abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[RemoteDocument]:
        """Return documents matching every filter."""

    @abc.abstractmethod
    async def set_document(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        """Create or overwrite (or merge into) a document."""

    @abc.abstractmethod
    async def delete_document(self, collection: str, doc_id: str) -> None:
        """Delete a document; deleting a missing document succeeds."""

    @abc.abstractmethod
    async def run_transaction(self, body: Callable[[RemoteTransaction], Awaitable[T]]) -> T:
        """Run ``body`` atomically, retrying it on contention."""

    @abc.abstractmethod
    def listen(
        self,
        collection: str,
        filters: Sequence[Filter],
        on_snapshot: SnapshotCallback,
    ) -> ListenerRegistration:
        """Start watching matching documents."""

    async def aclose(self) -> None:
        """Optional hook for graceful shutdown."""

        return None


__all__ = [
    "RemoteDocument",
    "ChangeType",
    "DocumentChange",
    "SnapshotBatch",
    "SnapshotCallback",
    "RemoteTransaction",
    "ListenerRegistration",
    "RemoteStore",
]
