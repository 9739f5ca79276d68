"""
SQLite Database Implementation.

The default backend: a single local file, no server required.

Layout per collection (``memories`` shown):
- memories(id, content, timestamp, metadata, document)
- memory_tags(memory_id, tag) with ON DELETE CASCADE

Tag filters join the tag table and use GROUP BY / HAVING so a record
must carry every requested tag, not just one of them.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from ..base import CHAT_HISTORY_COLLECTION, MEMORIES_COLLECTION, Database, QueryLike, SortLike
from ..filters import Condition, Operator, QueryFilter
from .records import document_to_record, like_pattern, record_row, record_tags, table_name, tags_table_name

logger = logging.getLogger("memstore.memory.sqlite")


class SQLiteDatabase(Database):
    """
    SQLite implementation of the database.

    Uses one aiosqlite connection; multi-statement writes are serialized
    with a lock so tag rows never drift from their record.
    """

    def __init__(self, filename: str = "./.memstore/memory.db"):
        self.filename = filename
        self._db: Optional[aiosqlite.Connection] = None
        self._collections: set[str] = set()
        self._write_lock = asyncio.Lock()
        logger.info(f"SQLiteDatabase configured with file: {filename}")

    async def initialize(self) -> None:
        """Open the database file and create the default collections."""
        if self.filename != ":memory:":
            Path(self.filename).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.filename)
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute("PRAGMA foreign_keys = ON")

        await self.ensure_collection(MEMORIES_COLLECTION)
        await self.ensure_collection(CHAT_HISTORY_COLLECTION)

        count = await self.count(MEMORIES_COLLECTION)
        logger.info(f"SQLite database initialized at {self.filename} with {count} existing memories")

    def _ensure_initialized(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteDatabase not initialized. Call initialize() first.")
        return self._db

    async def ensure_collection(self, collection: str) -> None:
        db = self._ensure_initialized()
        table = table_name(collection)
        tags = tags_table_name(collection)

        await db.executescript(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                metadata TEXT NOT NULL,
                document TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS {tags} (
                memory_id TEXT NOT NULL,
                tag TEXT NOT NULL,
                PRIMARY KEY (memory_id, tag),
                FOREIGN KEY (memory_id) REFERENCES {table}(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_{table}_timestamp ON {table}(timestamp);
            CREATE INDEX IF NOT EXISTS idx_{tags}_tag ON {tags}(tag);
        """)
        await db.commit()
        self._collections.add(collection)

    async def _table_for(self, collection: str) -> str:
        if collection not in self._collections:
            await self.ensure_collection(collection)
        return table_name(collection)

    async def _write_tags(self, db: aiosqlite.Connection, collection: str, record_id: str, tags: list[str]) -> None:
        tags_table = tags_table_name(collection)
        await db.execute(f"DELETE FROM {tags_table} WHERE memory_id = ?", (record_id,))
        if tags:
            await db.executemany(
                f"INSERT INTO {tags_table} (memory_id, tag) VALUES (?, ?)",
                [(record_id, tag) for tag in tags],
            )

    async def add_record(self, collection: str, record: dict[str, Any]) -> str:
        db = self._ensure_initialized()
        table = await self._table_for(collection)
        row = record_row(record)

        async with self._write_lock:
            await db.execute(
                f"""
                INSERT INTO {table} (id, content, timestamp, metadata, document)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    timestamp = excluded.timestamp,
                    metadata = excluded.metadata,
                    document = excluded.document
                """,
                row,
            )
            await self._write_tags(db, collection, row[0], record_tags(record))
            await db.commit()

        logger.debug(f"Added record {row[0]} to collection {collection}")
        return row[0]

    async def get_record(self, collection: str, id: str) -> Optional[dict[str, Any]]:
        db = self._ensure_initialized()
        table = await self._table_for(collection)
        rows = await db.execute_fetchall(f"SELECT document, id FROM {table} WHERE id = ?", (id,))
        rows = list(rows)
        if not rows:
            return None
        return document_to_record(rows[0][0], rows[0][1])

    async def get_records_by_ids(self, collection: str, ids: list[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        db = self._ensure_initialized()
        table = await self._table_for(collection)
        placeholders = ",".join("?" for _ in ids)
        rows = await db.execute_fetchall(
            f"SELECT document, id FROM {table} WHERE id IN ({placeholders})", tuple(ids)
        )
        return [document_to_record(doc, row_id) for doc, row_id in rows]

    async def update_record(self, collection: str, id: str, record: dict[str, Any]) -> bool:
        db = self._ensure_initialized()
        table = await self._table_for(collection)
        _, content, timestamp, metadata, document = record_row({**record, "id": id})

        async with self._write_lock:
            cursor = await db.execute(
                f"UPDATE {table} SET content = ?, timestamp = ?, metadata = ?, document = ? WHERE id = ?",
                (content, timestamp, metadata, document, id),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            await self._write_tags(db, collection, id, record_tags(record))
            await db.commit()

        logger.debug(f"Updated record {id} in collection {collection}")
        return True

    async def delete_record(self, collection: str, id: str) -> bool:
        db = self._ensure_initialized()
        table = await self._table_for(collection)
        async with self._write_lock:
            # Tags go with it via ON DELETE CASCADE
            cursor = await db.execute(f"DELETE FROM {table} WHERE id = ?", (id,))
            await db.commit()
        logger.debug(f"Deleted record {id} from collection {collection}")
        return cursor.rowcount > 0

    def _compile(self, collection: str, query: QueryFilter) -> tuple[str, list[Any]]:
        """
        Compile a filter into a ``FROM ... WHERE ... [GROUP BY ... HAVING]`` clause.

        Returns:
            (sql fragment, positional parameters)
        """
        table = table_name(collection)
        tags = query.tags
        where: list[str] = []
        params: list[Any] = []

        sql = f"FROM {table} m"
        if tags:
            sql += f" JOIN {tags_table_name(collection)} t ON m.id = t.memory_id"
            where.append(f"t.tag IN ({','.join('?' for _ in tags)})")
            params.extend(tags)

        for condition in query:
            if condition.operator == Operator.ALL and condition.field == "metadata.tags":
                continue
            clause, values = self._compile_condition(condition)
            where.append(clause)
            params.extend(values)

        if where:
            sql += " WHERE " + " AND ".join(where)
        if tags:
            sql += " GROUP BY m.id HAVING COUNT(DISTINCT t.tag) = ?"
            params.append(len(tags))
        return sql, params

    @staticmethod
    def _column(field: str) -> str:
        if field in ("id", "content", "timestamp"):
            return f"m.{field}"
        if field.startswith("metadata."):
            return f"json_extract(m.metadata, '$.{field[len('metadata.'):]}')"
        return f"json_extract(m.document, '$.{field}')"

    def _compile_condition(self, condition: Condition) -> tuple[str, list[Any]]:
        op = condition.operator
        if op == Operator.TEXT:
            return "m.content LIKE ? ESCAPE '!'", [like_pattern(condition.value)]

        if op == Operator.ALL:
            source, path = ("m.metadata", condition.metadata_key) if condition.is_metadata else ("m.document", condition.field)
            clauses = [
                f"EXISTS (SELECT 1 FROM json_each({source}, '$.{path}') WHERE json_each.value = ?)"
                for _ in condition.value
            ]
            return "(" + " AND ".join(clauses) + ")", list(condition.value)

        column = self._column(condition.field)
        value = condition.value
        if isinstance(value, bool):
            # json_extract yields 1/0 for JSON booleans
            value = int(value)
        if op == Operator.GTE:
            return f"{column} >= ?", [value]
        if op == Operator.LTE:
            return f"{column} <= ?", [value]
        if condition.field == "metadata.tags":
            return self._compile_condition(Condition(condition.field, Operator.ALL, [str(value)]))
        return f"{column} = ?", [value]

    async def query_records(
        self,
        collection: str,
        query: QueryLike = None,
        limit: Optional[int] = None,
        sort: SortLike = None,
    ) -> list[dict[str, Any]]:
        db = self._ensure_initialized()
        await self._table_for(collection)
        query, limit, sort = self._prepare(query, limit, sort)

        fragment, params = self._compile(collection, query)
        direction = "DESC" if sort.descending else "ASC"
        sql = f"SELECT m.document, m.id {fragment} ORDER BY m.{sort.field} {direction}, m.id {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        rows = await db.execute_fetchall(sql, tuple(params))
        return [document_to_record(doc, row_id) for doc, row_id in rows]

    async def delete_records(self, collection: str, query: QueryLike = None) -> int:
        db = self._ensure_initialized()
        table = await self._table_for(collection)
        query, _, _ = self._prepare(query, None, None)
        fragment, params = self._compile(collection, query)

        async with self._write_lock:
            cursor = await db.execute(
                f"DELETE FROM {table} WHERE id IN (SELECT m.id {fragment})", tuple(params)
            )
            await db.commit()
        return max(cursor.rowcount, 0)

    async def count(self, collection: str) -> int:
        db = self._ensure_initialized()
        table = await self._table_for(collection)
        rows = list(await db.execute_fetchall(f"SELECT COUNT(*) FROM {table}"))
        return rows[0][0]

    async def clear_collection(self, collection: str) -> None:
        db = self._ensure_initialized()
        table = await self._table_for(collection)
        async with self._write_lock:
            await db.execute(f"DELETE FROM {table}")
            await db.commit()
        logger.info(f"Cleared collection {collection}")

    async def close(self) -> None:
        """Clean up resources."""
        if self._db is not None:
            await self._db.close()
            self._db = None
        self._collections.clear()
        logger.info("SQLite connection closed")
