"""
MySQL Database Implementation.

Same two-table design as SQLite: a record table holding JSON metadata and
the full document, plus ``<table>_tags`` with ON DELETE CASCADE for tag
filters. The memories table name is configurable.
"""

import json
import logging
from typing import Any, Optional

from ..base import CHAT_HISTORY_COLLECTION, MEMORIES_COLLECTION, Database, QueryLike, SortLike
from ..filters import Condition, Operator, QueryFilter, validate_field
from .records import document_to_record, like_pattern, record_row, record_tags, table_name

logger = logging.getLogger("memstore.memory.mysql")


def _scalar(value: Any) -> Any:
    """Compare JSON_UNQUOTE output as text: MySQL renders booleans as true/false."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


class MySQLDatabase(Database):
    """MySQL implementation of the database, on an aiomysql pool."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 3306,
        user: str = "root",
        password: str = "",
        database: str = "codessa",
        table: str = "memories",
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.table = validate_field(table)
        self.max_pool_size = max_pool_size
        self._pool = None
        self._collections: set[str] = set()
        logger.info(f"MySQLDatabase configured for {user}@{host}:{port}/{database}")

    async def initialize(self) -> None:
        """Create the connection pool and the default collections."""
        try:
            import aiomysql
        except ImportError:
            raise RuntimeError(
                "aiomysql not installed. Install with: pip install aiomysql"
            )

        self._pool = await aiomysql.create_pool(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            db=self.database,
            maxsize=self.max_pool_size,
            autocommit=False,
        )

        await self.ensure_collection(MEMORIES_COLLECTION)
        await self.ensure_collection(CHAT_HISTORY_COLLECTION)

        count = await self.count(MEMORIES_COLLECTION)
        logger.info(f"MySQL initialized with {count} existing memories")

    def _ensure_initialized(self) -> None:
        """Ensure the database is initialized."""
        if self._pool is None:
            raise RuntimeError("MySQLDatabase not initialized. Call initialize() first.")

    def _table(self, collection: str) -> str:
        if collection == MEMORIES_COLLECTION:
            return self.table
        return table_name(collection)

    def _tags_table(self, collection: str) -> str:
        return f"{self._table(collection)}_tags"

    async def _execute(self, sql: str, params: tuple = (), fetch: bool = False):
        """Run one statement in its own transaction. Returns rows or the affected row count."""
        async with self._pool.acquire() as conn:
            async with conn.cursor() as cur:
                await cur.execute(sql, params)
                result = await cur.fetchall() if fetch else cur.rowcount
            await conn.commit()
        return result

    async def ensure_collection(self, collection: str) -> None:
        self._ensure_initialized()
        table = self._table(collection)
        tags = self._tags_table(collection)

        # MySQL has no CREATE INDEX IF NOT EXISTS, so indexes are declared inline
        await self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id VARCHAR(255) PRIMARY KEY,
                content LONGTEXT NOT NULL,
                timestamp BIGINT NOT NULL,
                metadata JSON NOT NULL,
                document JSON NOT NULL,
                INDEX idx_{table}_timestamp (timestamp)
            ) ENGINE=InnoDB
        """)
        await self._execute(f"""
            CREATE TABLE IF NOT EXISTS {tags} (
                memory_id VARCHAR(255) NOT NULL,
                tag VARCHAR(255) NOT NULL,
                PRIMARY KEY (memory_id, tag),
                INDEX idx_{tags}_tag (tag),
                FOREIGN KEY (memory_id) REFERENCES {table}(id) ON DELETE CASCADE
            ) ENGINE=InnoDB
        """)
        self._collections.add(collection)

    async def _table_for(self, collection: str) -> str:
        if collection not in self._collections:
            await self.ensure_collection(collection)
        return self._table(collection)

    async def _save(self, collection: str, row: tuple, tags: list[str], insert: bool) -> int:
        """Write a record and its tag rows in one transaction."""
        table = self._table(collection)
        tags_table = self._tags_table(collection)
        record_id, content, timestamp, metadata, document = row

        async with self._pool.acquire() as conn:
            try:
                async with conn.cursor() as cur:
                    if insert:
                        await cur.execute(f"""
                            INSERT INTO {table} (id, content, timestamp, metadata, document)
                            VALUES (%s, %s, %s, %s, %s)
                            ON DUPLICATE KEY UPDATE
                                content = VALUES(content),
                                timestamp = VALUES(timestamp),
                                metadata = VALUES(metadata),
                                document = VALUES(document)
                        """, row)
                    else:
                        await cur.execute(f"""
                            UPDATE {table}
                            SET content = %s, timestamp = %s, metadata = %s, document = %s
                            WHERE id = %s
                        """, (content, timestamp, metadata, document, record_id))
                        if cur.rowcount == 0:
                            # Unchanged rows report 0 too; confirm existence
                            await cur.execute(f"SELECT 1 FROM {table} WHERE id = %s", (record_id,))
                            if not await cur.fetchone():
                                await conn.rollback()
                                return 0

                    await cur.execute(f"DELETE FROM {tags_table} WHERE memory_id = %s", (record_id,))
                    if tags:
                        await cur.executemany(
                            f"INSERT INTO {tags_table} (memory_id, tag) VALUES (%s, %s)",
                            [(record_id, tag) for tag in tags],
                        )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return 1

    async def add_record(self, collection: str, record: dict[str, Any]) -> str:
        self._ensure_initialized()
        await self._table_for(collection)
        row = record_row(record)
        await self._save(collection, row, record_tags(record), insert=True)
        logger.debug(f"Added record {row[0]} to collection {collection}")
        return row[0]

    async def get_record(self, collection: str, id: str) -> Optional[dict[str, Any]]:
        self._ensure_initialized()
        table = await self._table_for(collection)
        rows = await self._execute(f"SELECT document, id FROM {table} WHERE id = %s", (id,), fetch=True)
        if not rows:
            return None
        return document_to_record(rows[0][0], rows[0][1])

    async def get_records_by_ids(self, collection: str, ids: list[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        self._ensure_initialized()
        table = await self._table_for(collection)
        placeholders = ",".join("%s" for _ in ids)
        rows = await self._execute(
            f"SELECT document, id FROM {table} WHERE id IN ({placeholders})", tuple(ids), fetch=True
        )
        return [document_to_record(doc, row_id) for doc, row_id in rows]

    async def update_record(self, collection: str, id: str, record: dict[str, Any]) -> bool:
        self._ensure_initialized()
        await self._table_for(collection)
        row = record_row({**record, "id": id})
        updated = await self._save(collection, row, record_tags(record), insert=False) > 0
        if updated:
            logger.debug(f"Updated record {id} in collection {collection}")
        return updated

    async def delete_record(self, collection: str, id: str) -> bool:
        self._ensure_initialized()
        table = await self._table_for(collection)
        deleted = await self._execute(f"DELETE FROM {table} WHERE id = %s", (id,))
        logger.debug(f"Deleted record {id} from collection {collection}")
        return deleted > 0

    def _compile(self, collection: str, query: QueryFilter) -> tuple[str, list[Any]]:
        """
        Compile a filter into a ``FROM ... WHERE ... [GROUP BY ... HAVING]`` fragment.

        Returns:
            (sql fragment, %s parameters)
        """
        tags = query.tags
        where: list[str] = []
        params: list[Any] = []

        sql = f"FROM {self._table(collection)} m"
        if tags:
            sql += f" JOIN {self._tags_table(collection)} t ON m.id = t.memory_id"
            where.append(f"t.tag IN ({','.join('%s' for _ in tags)})")
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
            sql += " GROUP BY m.id HAVING COUNT(DISTINCT t.tag) = %s"
            params.append(len(tags))
        return sql, params

    @staticmethod
    def _json_source(condition: Condition) -> tuple[str, str]:
        if condition.is_metadata:
            return "m.metadata", f"$.{condition.metadata_key}"
        return "m.document", f"$.{condition.field}"

    def _compile_condition(self, condition: Condition) -> tuple[str, list[Any]]:
        op = condition.operator
        field = condition.field

        if op == Operator.TEXT:
            return "m.content LIKE %s ESCAPE '!'", [like_pattern(condition.value)]

        if field in ("id", "content", "timestamp"):
            symbol = {Operator.EQ: "=", Operator.GTE: ">=", Operator.LTE: "<="}[op]
            return f"m.{field} {symbol} %s", [condition.value]

        source, path = self._json_source(condition)
        if op == Operator.ALL:
            values = json.dumps([str(v) for v in condition.value])
            return f"JSON_CONTAINS({source}, %s, '{path}')", [values]
        if op in (Operator.GTE, Operator.LTE):
            symbol = ">=" if op == Operator.GTE else "<="
            return f"CAST(JSON_EXTRACT({source}, '{path}') AS DECIMAL(30, 6)) {symbol} %s", [condition.value]
        if field == "metadata.tags":
            return f"JSON_CONTAINS({source}, %s, '{path}')", [json.dumps([str(condition.value)])]
        return f"JSON_UNQUOTE(JSON_EXTRACT({source}, '{path}')) = %s", [_scalar(condition.value)]

    async def query_records(
        self,
        collection: str,
        query: QueryLike = None,
        limit: Optional[int] = None,
        sort: SortLike = None,
    ) -> list[dict[str, Any]]:
        self._ensure_initialized()
        await self._table_for(collection)
        query, limit, sort = self._prepare(query, limit, sort)

        fragment, params = self._compile(collection, query)
        direction = "DESC" if sort.descending else "ASC"
        sql = f"SELECT m.document, m.id {fragment} ORDER BY m.{sort.field} {direction}, m.id {direction}"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        rows = await self._execute(sql, tuple(params), fetch=True)
        return [document_to_record(doc, row_id) for doc, row_id in rows]

    async def delete_records(self, collection: str, query: QueryLike = None) -> int:
        self._ensure_initialized()
        table = await self._table_for(collection)
        query, _, _ = self._prepare(query, None, None)
        fragment, params = self._compile(collection, query)

        # MySQL cannot select from the table being deleted from without a derived table
        return await self._execute(
            f"DELETE FROM {table} WHERE id IN (SELECT id FROM (SELECT m.id {fragment}) AS matched)",
            tuple(params),
        )

    async def count(self, collection: str) -> int:
        self._ensure_initialized()
        table = await self._table_for(collection)
        rows = await self._execute(f"SELECT COUNT(*) FROM {table}", fetch=True)
        return rows[0][0]

    async def clear_collection(self, collection: str) -> None:
        self._ensure_initialized()
        table = await self._table_for(collection)
        await self._execute(f"DELETE FROM {self._tags_table(collection)}")
        await self._execute(f"DELETE FROM {table}")
        logger.info(f"Cleared collection {collection}")

    async def close(self) -> None:
        """Clean up resources."""
        if self._pool is not None:
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None
        self._collections.clear()
        logger.info("MySQL connection closed")
