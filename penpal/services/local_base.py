"""Local cache store interface."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Sequence

from penpal.models import Filter, Row

COLUMN_TYPES = frozenset({"TEXT", "INTEGER", "REAL"})
RESERVED_COLUMNS = ("id", "cached_at")


@dataclass(frozen=True, slots=True)
class CollectionSchema:
    """Columns of one cache table; ``id`` and ``cached_at`` are implicit."""

    name: str
    columns: Mapping[str, str]
    indexes: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.name.isidentifier():
            raise ValueError(f"Invalid collection name: {self.name!r}")
        for column, kind in self.columns.items():
            if not column.isidentifier():
                raise ValueError(f"Invalid column name: {column!r}")
            if column in RESERVED_COLUMNS:
                raise ValueError(f"Column {column!r} is managed by the store")
            if kind not in COLUMN_TYPES:
                raise ValueError(f"Unsupported column type {kind!r} for {column}")
        for column in self.indexes:
            if column not in self.columns:
                raise ValueError(f"Index on unknown column {column!r}")

    @property
    def all_columns(self) -> tuple[str, ...]:
        return ("id", *self.columns.keys(), "cached_at")


RowUpdate = Callable[[Optional[Row]], Optional[Row]]


class LocalStore(abc.ABC):
    """Interface for the durable per-collection row cache."""

    @abc.abstractmethod
    async def open(self, schemas: Iterable[CollectionSchema] = ()) -> None:
        """Open the store and create tables for ``schemas``."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the store; further calls raise ``LocalStoreError``."""

    @abc.abstractmethod
    async def register(self, schema: CollectionSchema) -> None:
        """Declare a collection, creating its table when missing."""

    @abc.abstractmethod
    def collections(self) -> tuple[str, ...]:
        """Return every registered collection name."""

    @abc.abstractmethod
    async def get(self, collection: str, row_id: str) -> Optional[Row]:
        """Return the row or ``None`` when the id is absent."""

    @abc.abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        """Return rows matching every filter."""

    @abc.abstractmethod
    async def put(self, collection: str, row: Row) -> None:
        """Insert or fully replace the row keyed by ``row['id']``."""

    async def put_many(self, collection: str, rows: Iterable[Row]) -> None:
        for row in rows:
            await self.put(collection, row)

    @abc.abstractmethod
    async def modify(self, collection: str, row_id: str, update: RowUpdate) -> Optional[Row]:
        """Atomically read a row, apply ``update`` and store its result.

        ``update`` receives the current row (or ``None``) and returns the row
        to store, or ``None`` to leave the collection untouched. The stored
        row (or the unchanged current one) is returned.
        """

    @abc.abstractmethod
    async def delete(self, collection: str, row_id: str) -> bool:
        """Delete a row; return whether it existed."""

    @abc.abstractmethod
    async def delete_where(self, collection: str, filters: Sequence[Filter]) -> int:
        """Delete matching rows and return how many were removed."""

    @abc.abstractmethod
    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        """Return the number of matching rows."""

    @abc.abstractmethod
    async def clear_all(self) -> None:
        """Wipe every collection atomically."""


__all__ = ["COLUMN_TYPES", "CollectionSchema", "LocalStore", "RowUpdate"]
