"""
Redis Database Implementation.

Key layout for a collection ``c`` under prefix ``p``:
- ``p c:<id>``          record JSON
- ``p c:ids``           set of every id
- ``p c:timestamps``    sorted set id -> timestamp
- ``p c:source:<v>``    ids with metadata.source == v
- ``p c:type:<v>``      ids with metadata.type == v
- ``p c:tag:<v>``       ids tagged v

The secondary indexes are maintained by hand on every write. They only
narrow the candidate set; every condition is re-checked on the decoded
record. Text search is a linear case-insensitive scan over candidates,
which does not scale to large collections.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from ..base import MEMORIES_COLLECTION, Database, QueryLike, SortLike
from ..errors import InitializationError
from ..filters import Operator, QueryFilter, get_field
from .records import record_tags

logger = logging.getLogger("memstore.memory.redis")

_INDEXED_METADATA = ("source", "type")


class RedisDatabase(Database):
    """
    Redis implementation of the database.

    Args:
        url: Redis URL, e.g. "redis://localhost:6379/0"
        key_prefix: Prefix for every key this backend writes
        client: Pre-built redis.asyncio client (used as-is, e.g. fakeredis in tests)
    """

    def __init__(self, url: str = "", key_prefix: str = "codessa:", client=None):
        self.url = url
        self.key_prefix = key_prefix
        self._client = client
        self._owns_client = client is None
        self._ready = False
        logger.info(f"RedisDatabase configured with prefix: {key_prefix}")

    async def initialize(self) -> None:
        """Connect and verify the server responds."""
        if self._client is None:
            if not self.url:
                raise InitializationError(
                    "Redis URL missing: set databases.redis.url or REDIS_URL"
                )
            self._client = redis.from_url(self.url, decode_responses=True)

        await self._client.ping()
        self._ready = True

        count = await self.count(MEMORIES_COLLECTION)
        logger.info(f"Redis initialized with {count} existing memories")

    def _ensure_initialized(self) -> None:
        """Ensure the database is initialized."""
        if self._client is None or not self._ready:
            raise RuntimeError("RedisDatabase not initialized. Call initialize() first.")

    def _key(self, collection: str, suffix: str) -> str:
        return f"{self.key_prefix}{collection}:{suffix}"

    def _index_keys(self, collection: str, record: dict[str, Any]) -> list[str]:
        """Every metadata index set a record belongs to."""
        metadata = record.get("metadata") or {}
        keys = []
        for name in _INDEXED_METADATA:
            value = metadata.get(name)
            if value is not None and value != "":
                keys.append(self._key(collection, f"{name}:{value}"))
        keys.extend(self._key(collection, f"tag:{tag}") for tag in record_tags(record))
        return keys

    async def ensure_collection(self, collection: str) -> None:
        # Keys are created on first write
        self._ensure_initialized()

    async def _load(self, collection: str, id: str) -> Optional[dict[str, Any]]:
        data = await self._client.get(self._key(collection, id))
        if data is None:
            return None
        return json.loads(data)

    async def _write(self, collection: str, id: str, record: dict[str, Any], previous: Optional[dict[str, Any]]) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            if previous is not None:
                for key in self._index_keys(collection, previous):
                    pipe.srem(key, id)
            pipe.set(self._key(collection, id), json.dumps(record, default=str))
            pipe.sadd(self._key(collection, "ids"), id)
            pipe.zadd(self._key(collection, "timestamps"), {id: int(record.get("timestamp") or 0)})
            for key in self._index_keys(collection, record):
                pipe.sadd(key, id)
            await pipe.execute()

    async def add_record(self, collection: str, record: dict[str, Any]) -> str:
        self._ensure_initialized()
        if not record.get("id"):
            raise ValueError("Record must have an 'id'")
        id = record["id"]
        await self._write(collection, id, record, await self._load(collection, id))
        logger.debug(f"Added record {id} to collection {collection}")
        return id

    async def get_record(self, collection: str, id: str) -> Optional[dict[str, Any]]:
        self._ensure_initialized()
        return await self._load(collection, id)

    async def get_records_by_ids(self, collection: str, ids: list[str]) -> list[dict[str, Any]]:
        if not ids:
            return []
        self._ensure_initialized()
        values = await self._client.mget([self._key(collection, id) for id in ids])
        return [json.loads(value) for value in values if value is not None]

    async def update_record(self, collection: str, id: str, record: dict[str, Any]) -> bool:
        self._ensure_initialized()
        previous = await self._load(collection, id)
        if previous is None:
            return False
        await self._write(collection, id, {**record, "id": id}, previous)
        logger.debug(f"Updated record {id} in collection {collection}")
        return True

    async def delete_record(self, collection: str, id: str) -> bool:
        self._ensure_initialized()
        previous = await self._load(collection, id)
        if previous is None:
            return False

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(collection, id))
            pipe.srem(self._key(collection, "ids"), id)
            pipe.zrem(self._key(collection, "timestamps"), id)
            for key in self._index_keys(collection, previous):
                pipe.srem(key, id)
            await pipe.execute()

        logger.debug(f"Deleted record {id} from collection {collection}")
        return True

    def _index_sets(self, collection: str, query: QueryFilter) -> list[str]:
        """Index sets whose intersection contains every match."""
        keys = [self._key(collection, f"tag:{tag}") for tag in query.tags]
        for condition in query.of(Operator.EQ):
            if condition.is_metadata and condition.metadata_key in _INDEXED_METADATA:
                keys.append(self._key(collection, f"{condition.metadata_key}:{condition.value}"))
        return keys

    async def _candidate_ids(self, collection: str, query: QueryFilter) -> list[str]:
        low, high = "-inf", "+inf"
        for condition in query:
            if condition.field != "timestamp":
                continue
            if condition.operator == Operator.GTE:
                low = condition.value
            elif condition.operator == Operator.LTE:
                high = condition.value

        ids = await self._client.zrevrangebyscore(self._key(collection, "timestamps"), high, low)
        index_sets = self._index_sets(collection, query)
        if index_sets and ids:
            allowed = set(await self._client.sinter(index_sets))
            ids = [id for id in ids if id in allowed]
        return ids

    async def query_records(
        self,
        collection: str,
        query: QueryLike = None,
        limit: Optional[int] = None,
        sort: SortLike = None,
    ) -> list[dict[str, Any]]:
        self._ensure_initialized()
        query, limit, sort = self._prepare(query, limit, sort)

        ids = await self._candidate_ids(collection, query)
        records = [r for r in await self.get_records_by_ids(collection, ids) if query.matches(r)]
        records.sort(
            key=lambda r: (get_field(r, sort.field) or 0, r.get("id", "")),
            reverse=sort.descending,
        )
        # Limit only after every filter has been applied
        if limit is not None:
            records = records[:limit]
        return records

    async def count(self, collection: str) -> int:
        self._ensure_initialized()
        return await self._client.scard(self._key(collection, "ids"))

    async def clear_collection(self, collection: str) -> None:
        self._ensure_initialized()
        batch = []
        async for key in self._client.scan_iter(match=f"{self.key_prefix}{collection}:*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                await self._client.delete(*batch)
                batch = []
        if batch:
            await self._client.delete(*batch)
        logger.info(f"Cleared collection {collection}")

    async def close(self) -> None:
        """Clean up resources."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._ready = False
        logger.info("Redis connection closed")

