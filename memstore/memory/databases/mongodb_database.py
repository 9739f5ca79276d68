"""
MongoDB Database Implementation.

Records are stored as native documents, so filters map almost directly
onto Mongo queries. ``_id`` never leaves this module.

Indexes (memories): id (unique), timestamp, metadata.source,
metadata.type, metadata.tags, text on content.
Indexes (chat history): id (unique), timestamp, sessionId.
"""

import logging
from typing import Any, Optional

from ..base import CHAT_HISTORY_COLLECTION, MEMORIES_COLLECTION, Database, QueryLike, SortLike
from ..errors import InitializationError
from ..filters import Operator, QueryFilter
from .records import table_name

logger = logging.getLogger("memstore.memory.mongodb")

_PROJECTION = {"_id": 0}


def compile_query(query: QueryFilter) -> dict[str, Any]:
    """
    Compile a filter into a Mongo query document.

    Conditions on the same field are merged into one operator document;
    a field that needs both equality and an operator falls back to ``$and``.
    """
    merged: dict[str, Any] = {}
    extra: list[dict[str, Any]] = []

    for condition in query:
        op = condition.operator
        if op == Operator.TEXT:
            merged["$text"] = {"$search": condition.value}
            continue

        if op == Operator.EQ:
            clause: Any = condition.value
        elif op == Operator.ALL:
            clause = {"$all": list(condition.value)}
        elif op == Operator.GTE:
            clause = {"$gte": condition.value}
        else:
            clause = {"$lte": condition.value}

        existing = merged.get(condition.field)
        if condition.field not in merged:
            merged[condition.field] = clause
        elif (
            isinstance(existing, dict)
            and isinstance(clause, dict)
            and not set(existing) & set(clause)
        ):
            existing.update(clause)
        else:
            extra.append({condition.field: clause})

    if extra:
        return {"$and": [merged, *extra]}
    return merged


class MongoDBDatabase(Database):
    """MongoDB implementation of the database, on motor."""

    def __init__(self, connection_string: str, database: str = "codessa"):
        self.connection_string = connection_string
        self.database_name = database
        self._client = None
        self._db = None
        self._collections: set[str] = set()
        logger.info(f"MongoDBDatabase configured with database: {database}")

    async def initialize(self) -> None:
        """Connect and create the default collections with their indexes."""
        if not self.connection_string:
            raise InitializationError(
                "MongoDB connection string missing: set databases.mongodb.connection_string or MONGODB_URL"
            )

        try:
            from motor.motor_asyncio import AsyncIOMotorClient
        except ImportError:
            raise RuntimeError(
                "motor not installed. Install with: pip install motor"
            )

        self._client = AsyncIOMotorClient(self.connection_string)
        self._db = self._client[self.database_name]

        await self.ensure_collection(MEMORIES_COLLECTION)
        await self.ensure_collection(CHAT_HISTORY_COLLECTION)

        count = await self.count(MEMORIES_COLLECTION)
        logger.info(f"MongoDB initialized with {count} existing memories")

    def _ensure_initialized(self) -> None:
        """Ensure the database is initialized."""
        if self._db is None:
            raise RuntimeError("MongoDBDatabase not initialized. Call initialize() first.")

    async def ensure_collection(self, collection: str) -> None:
        self._ensure_initialized()
        coll = self._db[table_name(collection)]

        await coll.create_index("id", unique=True)
        await coll.create_index([("timestamp", -1)])
        if collection == CHAT_HISTORY_COLLECTION:
            await coll.create_index("sessionId")
        else:
            await coll.create_index("metadata.source")
            await coll.create_index("metadata.type")
            await coll.create_index("metadata.tags")
            await coll.create_index([("content", "text")])

        self._collections.add(collection)

    async def _collection(self, collection: str):
        if collection not in self._collections:
            await self.ensure_collection(collection)
        return self._db[table_name(collection)]

    async def add_record(self, collection: str, record: dict[str, Any]) -> str:
        self._ensure_initialized()
        if not record.get("id"):
            raise ValueError("Record must have an 'id'")
        coll = await self._collection(collection)

        document = {k: v for k, v in record.items() if k != "_id"}
        await coll.replace_one({"id": record["id"]}, document, upsert=True)

        logger.debug(f"Added record {record['id']} to collection {collection}")
        return record["id"]

    async def get_record(self, collection: str, id: str) -> Optional[dict[str, Any]]:
        self._ensure_initialized()
        coll = await self._collection(collection)
        return await coll.find_one({"id": id}, _PROJECTION)

    async def get_records_by_ids(self, collection: str, ids: list[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        self._ensure_initialized()
        coll = await self._collection(collection)
        cursor = coll.find({"id": {"$in": list(ids)}}, _PROJECTION)
        return await cursor.to_list(length=None)

    async def update_record(self, collection: str, id: str, record: dict[str, Any]) -> bool:
        self._ensure_initialized()
        coll = await self._collection(collection)

        document = {k: v for k, v in record.items() if k != "_id"}
        document["id"] = id
        result = await coll.replace_one({"id": id}, document)

        updated = result.matched_count > 0
        if updated:
            logger.debug(f"Updated record {id} in collection {collection}")
        return updated

    async def delete_record(self, collection: str, id: str) -> bool:
        self._ensure_initialized()
        coll = await self._collection(collection)
        result = await coll.delete_one({"id": id})
        logger.debug(f"Deleted record {id} from collection {collection}")
        return result.deleted_count > 0

    async def query_records(
        self,
        collection: str,
        query: QueryLike = None,
        limit: Optional[int] = None,
        sort: SortLike = None,
    ) -> list[dict[str, Any]]:
        self._ensure_initialized()
        coll = await self._collection(collection)
        query, limit, sort = self._prepare(query, limit, sort)

        direction = -1 if sort.descending else 1
        cursor = coll.find(compile_query(query), _PROJECTION).sort(
            [(sort.field, direction), ("id", direction)]
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        return await cursor.to_list(length=None)

    async def delete_records(self, collection: str, query: QueryLike = None) -> int:
        self._ensure_initialized()
        coll = await self._collection(collection)
        query, _, _ = self._prepare(query, None, None)
        result = await coll.delete_many(compile_query(query))
        return result.deleted_count

    async def count(self, collection: str) -> int:
        self._ensure_initialized()
        coll = await self._collection(collection)
        return await coll.count_documents({})

    async def clear_collection(self, collection: str) -> None:
        self._ensure_initialized()
        coll = await self._collection(collection)
        await coll.delete_many({})
        logger.info(f"Cleared collection {collection}")

    async def close(self) -> None:
        """Clean up resources."""
        if self._client is not None:
            self._client.close()
        self._client = None
        self._db = None
        self._collections.clear()
        logger.info("MongoDB connection closed")
