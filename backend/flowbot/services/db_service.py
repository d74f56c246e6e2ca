# /flowbot/services/db_service.py

import copy
import itertools
import logging
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import datetime
from typing import Any, Dict, List

from flowbot.utils.circuit_breaker import CircuitBreaker

# QueryExecutor adapters used by database and hubspot nodes. A node's "table"
# is a MongoDB collection; predicates are plain equality filters.

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 100
DEFAULT_DATABASE = "flowbot"


def _clean_predicates(predicates: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in (predicates or {}).items() if value is not None}


class MongoQueryExecutor:
    """
    QueryExecutor on MongoDB through motor.

    Documents come back with their ObjectId as a string "id" so they can be
    stored in thread variables and serialised with the thread.
    """

    def __init__(self, mongo_uri: str, database: str = DEFAULT_DATABASE):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database(database)
            self.circuit_breaker = CircuitBreaker("database")
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    @staticmethod
    def _to_record(document: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(document)
        if "_id" in record:
            record["id"] = str(record.pop("_id"))
        return record

    async def select(self, table: str, predicates: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self.db[table].find(_clean_predicates(predicates)).limit(DEFAULT_QUERY_LIMIT)
        documents = await self.circuit_breaker.call(cursor.to_list, length=DEFAULT_QUERY_LIMIT)
        return [self._to_record(doc) for doc in documents]

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        document = {**record, "created_at": datetime.utcnow()}
        result = await self.circuit_breaker.call(self.db[table].insert_one, document)
        document["_id"] = result.inserted_id
        return self._to_record(document)

    async def update(self, table: str, predicates: Dict[str, Any], values: Dict[str, Any]) -> int:
        result = await self.circuit_breaker.call(
            self.db[table].update_many, _clean_predicates(predicates), {"$set": values}
        )
        return result.modified_count

    async def delete(self, table: str, predicates: Dict[str, Any]) -> int:
        result = await self.circuit_breaker.call(self.db[table].delete_many, _clean_predicates(predicates))
        return result.deleted_count

    def close(self):
        self.client.close()


class InMemoryQueryExecutor:
    """QueryExecutor over plain dicts, for tests and running without MongoDB."""

    def __init__(self, tables: Dict[str, List[Dict[str, Any]]] | None = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = copy.deepcopy(tables) if tables else {}
        self._ids = itertools.count(1)

    def _matches(self, row: Dict[str, Any], predicates: Dict[str, Any]) -> bool:
        return all(row.get(key) == value for key, value in _clean_predicates(predicates).items())

    async def select(self, table: str, predicates: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = self.tables.get(table, [])
        return [dict(row) for row in rows if self._matches(row, predicates)][:DEFAULT_QUERY_LIMIT]

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        row = {"id": next(self._ids), **record, "created_at": datetime.utcnow().isoformat()}
        self.tables.setdefault(table, []).append(row)
        return dict(row)

    async def update(self, table: str, predicates: Dict[str, Any], values: Dict[str, Any]) -> int:
        affected = 0
        for row in self.tables.get(table, []):
            if self._matches(row, predicates):
                row.update(values)
                affected += 1
        return affected

    async def delete(self, table: str, predicates: Dict[str, Any]) -> int:
        rows = self.tables.get(table, [])
        kept = [row for row in rows if not self._matches(row, predicates)]
        self.tables[table] = kept
        return len(rows) - len(kept)
