"""
Storage and locking for condition assignments

Assignment records are write-once per (scope_key, state_key). Balance
state (per-condition counts for balanced_random, block position for
block) is shared per balance key and only changes inside a keyed lock.

Two backends:
- MemoryAssignmentStore + LocalKeyedLock: single process, asyncio locks
- MongoAssignmentStore + RedisKeyedLock: upserts with $setOnInsert for
  records, $inc for counters, a Redis lock around read-choose-write
"""
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple
from uuid import uuid4
import asyncio
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
import redis.asyncio as redis

from flowlab.core.redis_client import RedisKeys
from flowlab.models.session import AssignmentRecord

logger = logging.getLogger(__name__)


class KeyedLock(ABC):
    """Mutual exclusion scoped to a string key"""

    @abstractmethod
    def hold(self, key: str):
        """Async context manager holding the lock for `key`"""


class LocalKeyedLock(KeyedLock):
    """asyncio locks, one per key, for a single process"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        """Keys currently held or waited on"""
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Last holder or waiter drops the lock so keys do not accumulate
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class RedisKeyedLock(KeyedLock):
    """Distributed lock shared by every service replica"""

    def __init__(self, client: redis.Redis, timeout: int = 10, blocking_timeout: Optional[float] = None):
        self.client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout if blocking_timeout is not None else float(timeout)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.client.lock(
            RedisKeys.assignment_lock(key),
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        async with lock:
            yield


class AssignmentStore(ABC):
    """Persistence for assignment records and balance state"""

    @abstractmethod
    async def get(self, scope_key: str, state_key: str) -> Optional[AssignmentRecord]:
        ...

    @abstractmethod
    async def insert_if_absent(self, record: AssignmentRecord) -> Tuple[AssignmentRecord, bool]:
        """
        Store the record unless one already exists for its key.
        Returns (stored_record, created).
        """

    @abstractmethod
    async def get_counts(self, balance_key: str, conditions: List[str]) -> Dict[str, int]:
        ...

    @abstractmethod
    async def increment_count(self, balance_key: str, condition: str) -> None:
        ...

    @abstractmethod
    async def get_position(self, balance_key: str) -> int:
        """Number of block assignments made so far for the balance key"""

    @abstractmethod
    async def advance_position(self, balance_key: str) -> None:
        ...


class MemoryAssignmentStore(AssignmentStore):
    """In-process store, used by tests and single-replica deployments"""

    def __init__(self):
        self._records: Dict[Tuple[str, str], AssignmentRecord] = {}
        self._counts: Dict[str, Dict[str, int]] = {}
        self._positions: Dict[str, int] = {}

    async def get(self, scope_key: str, state_key: str) -> Optional[AssignmentRecord]:
        return self._records.get((scope_key, state_key))

    async def insert_if_absent(self, record: AssignmentRecord) -> Tuple[AssignmentRecord, bool]:
        key = (record.scope_key, record.state_key)
        existing = self._records.get(key)
        if existing is not None:
            return existing, False
        self._records[key] = record
        return record, True

    async def get_counts(self, balance_key: str, conditions: List[str]) -> Dict[str, int]:
        counts = self._counts.get(balance_key, {})
        return {condition: counts.get(condition, 0) for condition in conditions}

    async def increment_count(self, balance_key: str, condition: str) -> None:
        counts = self._counts.setdefault(balance_key, {})
        counts[condition] = counts.get(condition, 0) + 1

    async def get_position(self, balance_key: str) -> int:
        return self._positions.get(balance_key, 0)

    async def advance_position(self, balance_key: str) -> None:
        self._positions[balance_key] = self._positions.get(balance_key, 0) + 1


class MongoAssignmentStore(AssignmentStore):
    """
    MongoDB-backed store.
    The unique (scope_key, state_key) index plus $setOnInsert makes the
    record write-once even across replicas.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self._records_collection = "assignments"
        self._counters_collection = "assignment_counters"

    async def get(self, scope_key: str, state_key: str) -> Optional[AssignmentRecord]:
        doc = await self.db[self._records_collection].find_one(
            {"scope_key": scope_key, "state_key": state_key}
        )
        return AssignmentRecord(**doc) if doc else None

    async def insert_if_absent(self, record: AssignmentRecord) -> Tuple[AssignmentRecord, bool]:
        records = self.db[self._records_collection]
        token = str(uuid4())
        doc = {
            **record.model_dump(mode="python"),
            "strategy": record.strategy.value,
            "assignment_id": token,
        }

        try:
            stored = await records.find_one_and_update(
                {"scope_key": record.scope_key, "state_key": record.state_key},
                {"$setOnInsert": doc},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Concurrent upsert on the unique index; the other writer won
            stored = await records.find_one(
                {"scope_key": record.scope_key, "state_key": record.state_key}
            )

        created = stored.get("assignment_id") == token
        return AssignmentRecord(**stored), created

    async def get_counts(self, balance_key: str, conditions: List[str]) -> Dict[str, int]:
        counts = {condition: 0 for condition in conditions}
        cursor = self.db[self._counters_collection].find(
            {"balance_key": balance_key, "kind": "count"}
        )
        async for doc in cursor:
            if doc.get("condition") in counts:
                counts[doc["condition"]] = doc.get("count", 0)
        return counts

    async def increment_count(self, balance_key: str, condition: str) -> None:
        await self.db[self._counters_collection].update_one(
            {"balance_key": balance_key, "kind": "count", "condition": condition},
            {"$inc": {"count": 1}},
            upsert=True,
        )

    async def get_position(self, balance_key: str) -> int:
        doc = await self.db[self._counters_collection].find_one(
            {"balance_key": balance_key, "kind": "position", "condition": None}
        )
        return doc.get("position", 0) if doc else 0

    async def advance_position(self, balance_key: str) -> None:
        await self.db[self._counters_collection].update_one(
            {"balance_key": balance_key, "kind": "position", "condition": None},
            {"$inc": {"position": 1}},
            upsert=True,
        )
