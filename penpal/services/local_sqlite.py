"""SQLite implementation of the local cache store."""

from __future__ import annotations

import asyncio
import sqlite3
import time
from contextlib import AsyncExitStack, contextmanager
from pathlib import Path
from typing import Any, Generator, Iterable, Optional, Sequence

from logger import get_logger
from penpal.errors import LocalStoreError
from penpal.infrastructure.concurrency import ReadWriteLock
from penpal.models import Filter, Row
from penpal.services.local_base import CollectionSchema, LocalStore, RowUpdate

_logger = get_logger("penpal.local_store")

_SQL_OPERATORS = {
    "==": "=",
    "!=": "!=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
}


class SQLiteLocalStore(LocalStore):
    """Row cache backed by a single SQLite file, one table per collection."""

    def __init__(self, db_path: Path, *, busy_timeout: float = 5.0) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._schemas: dict[str, CollectionSchema] = {}
        self._locks: dict[str, ReadWriteLock] = {}
        self._opened = False

    async def open(self, schemas: Iterable[CollectionSchema] = ()) -> None:
        await asyncio.to_thread(self._db_path.parent.mkdir, parents=True, exist_ok=True)
        self._opened = True
        for schema in schemas:
            await self.register(schema)
        _logger.debug("Local store opened at %s", self._db_path)

    async def close(self) -> None:
        self._opened = False

    async def register(self, schema: CollectionSchema) -> None:
        self._ensure_open()
        existing = self._schemas.get(schema.name)
        if existing is not None:
            if existing != schema:
                raise ValueError(f"Collection {schema.name} already registered with another schema")
            return
        await self._run(self._create_table_sync, schema)
        self._schemas[schema.name] = schema
        self._locks[schema.name] = ReadWriteLock()

    def collections(self) -> tuple[str, ...]:
        return tuple(sorted(self._schemas))

    async def get(self, collection: str, row_id: str) -> Optional[Row]:
        schema = self._schema(collection)
        async with self._locks[collection].read():
            return await self._run(self._get_sync, schema, row_id)

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        schema = self._schema(collection)
        where, params = self._where(schema, filters)
        sql = f"SELECT * FROM {schema.name}{where}"
        if order_by is not None:
            self._check_column(schema, order_by)
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY {order_by} {direction}, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        async with self._locks[collection].read():
            return await self._run(self._select_sync, sql, params)

    async def put(self, collection: str, row: Row) -> None:
        schema = self._schema(collection)
        values = self._row_values(schema, row)
        async with self._locks[collection].write():
            await self._run(self._upsert_sync, schema, [values])

    async def put_many(self, collection: str, rows: Iterable[Row]) -> None:
        schema = self._schema(collection)
        batch = [self._row_values(schema, row) for row in rows]
        if not batch:
            return
        async with self._locks[collection].write():
            await self._run(self._upsert_sync, schema, batch)

    async def modify(self, collection: str, row_id: str, update: RowUpdate) -> Optional[Row]:
        schema = self._schema(collection)
        async with self._locks[collection].write():
            return await self._run(self._modify_sync, schema, row_id, update)

    async def delete(self, collection: str, row_id: str) -> bool:
        schema = self._schema(collection)
        async with self._locks[collection].write():
            removed = await self._run(
                self._execute_sync, f"DELETE FROM {schema.name} WHERE id = ?", [row_id]
            )
        return removed > 0

    async def delete_where(self, collection: str, filters: Sequence[Filter]) -> int:
        schema = self._schema(collection)
        where, params = self._where(schema, filters)
        async with self._locks[collection].write():
            return await self._run(self._execute_sync, f"DELETE FROM {schema.name}{where}", params)

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        schema = self._schema(collection)
        where, params = self._where(schema, filters)
        async with self._locks[collection].read():
            rows = await self._run(
                self._select_sync, f"SELECT COUNT(*) AS total FROM {schema.name}{where}", params
            )
        return int(rows[0]["total"]) if rows else 0

    async def clear_all(self) -> None:
        self._ensure_open()
        names = self.collections()
        async with AsyncExitStack() as stack:
            for name in names:
                await stack.enter_async_context(self._locks[name].write())
            await self._run(self._clear_sync, names)
        _logger.debug("Cleared %d cached collections", len(names))

    # internal helpers
    def _ensure_open(self) -> None:
        if not self._opened:
            raise LocalStoreError("Local store is not open")

    def _schema(self, collection: str) -> CollectionSchema:
        self._ensure_open()
        schema = self._schemas.get(collection)
        if schema is None:
            raise LocalStoreError(f"Unknown collection: {collection}")
        return schema

    @staticmethod
    def _check_column(schema: CollectionSchema, column: str) -> None:
        if column not in schema.all_columns:
            raise ValueError(f"Unknown column {column!r} for {schema.name}")

    def _where(self, schema: CollectionSchema, filters: Sequence[Filter]) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for item in filters:
            self._check_column(schema, item.field)
            if item.op == "in":
                values = list(item.value)
                if not values:
                    clauses.append("0")
                    continue
                placeholders = ", ".join("?" for _ in values)
                clauses.append(f"{item.field} IN ({placeholders})")
                params.extend(values)
            elif item.op in _SQL_OPERATORS:
                if item.value is None and item.op in {"==", "!="}:
                    clauses.append(f"{item.field} IS {'NOT ' if item.op == '!=' else ''}NULL")
                    continue
                clauses.append(f"{item.field} {_SQL_OPERATORS[item.op]} ?")
                params.append(item.value)
            else:
                raise ValueError(f"Operator {item.op!r} is not supported by the local store")
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def _row_values(self, schema: CollectionSchema, row: Row) -> dict[str, Any]:
        row_id = row.get("id")
        if not isinstance(row_id, str) or not row_id:
            raise ValueError(f"Row for {schema.name} has no string id")
        unknown = set(row) - set(schema.all_columns)
        if unknown:
            raise ValueError(f"Unknown columns for {schema.name}: {sorted(unknown)}")
        values = {column: row.get(column) for column in schema.all_columns}
        values["cached_at"] = time.time()
        return values

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.Error as exc:
            _logger.error("Local store I/O failure: %s", exc)
            raise LocalStoreError(str(exc)) from exc

    def _create_table_sync(self, schema: CollectionSchema) -> None:
        column_defs = ",\n".join(
            f"{name} {kind}" for name, kind in schema.columns.items()
        )
        with self._connection() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {schema.name} (
                    id TEXT PRIMARY KEY,
                    {column_defs},
                    cached_at REAL NOT NULL DEFAULT 0
                )
                """
            )
            for column in schema.indexes:
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{schema.name}_{column} "
                    f"ON {schema.name}({column})"
                )
            conn.commit()

    def _get_sync(self, schema: CollectionSchema, row_id: str) -> Optional[Row]:
        rows = self._select_sync(f"SELECT * FROM {schema.name} WHERE id = ?", [row_id])
        return rows[0] if rows else None

    def _select_sync(self, sql: str, params: Sequence[Any]) -> list[Row]:
        with self._connection() as conn:
            cur = conn.execute(sql, list(params))
            return [dict(row) for row in cur.fetchall()]

    def _execute_sync(self, sql: str, params: Sequence[Any]) -> int:
        with self._connection() as conn:
            cur = conn.execute(sql, list(params))
            conn.commit()
            return cur.rowcount

    def _upsert_sync(self, schema: CollectionSchema, batch: list[dict[str, Any]]) -> None:
        with self._connection() as conn:
            conn.execute("BEGIN")
            try:
                self._upsert_with(conn, schema, batch)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @staticmethod
    def _upsert_with(
        conn: sqlite3.Connection, schema: CollectionSchema, batch: list[dict[str, Any]]
    ) -> None:
        columns = schema.all_columns
        names = ", ".join(columns)
        placeholders = ", ".join(f":{column}" for column in columns)
        conn.executemany(
            f"INSERT OR REPLACE INTO {schema.name} ({names}) VALUES ({placeholders})",
            batch,
        )

    def _modify_sync(
        self, schema: CollectionSchema, row_id: str, update: RowUpdate
    ) -> Optional[Row]:
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cur = conn.execute(f"SELECT * FROM {schema.name} WHERE id = ?", [row_id])
                found = cur.fetchone()
                current = dict(found) if found else None
                replacement = update(dict(current) if current else None)
                if replacement is None:
                    conn.execute("ROLLBACK")
                    return current
                values = self._row_values(schema, {**replacement, "id": row_id})
                self._upsert_with(conn, schema, [values])
                conn.execute("COMMIT")
                return values
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def _clear_sync(self, names: Sequence[str]) -> None:
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for name in names:
                    conn.execute(f"DELETE FROM {name}")
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()


__all__ = ["SQLiteLocalStore"]
