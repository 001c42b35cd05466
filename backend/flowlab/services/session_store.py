"""
Persistence for the session service: configs, sessions, events and
advance idempotency keys.

Each concern has an in-memory implementation (tests, single process)
and a MongoDB or Redis one (deployments).
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4
import copy
import logging

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
import redis.asyncio as redis

from flowlab.core.redis_client import RedisKeys, RedisTTL
from flowlab.models.event import EventInDB, utc_now
from flowlab.models.session import RunSession, StoredConfig

logger = logging.getLogger(__name__)


def set_state_path(user_state: Dict[str, Any], path: str, value: Any) -> None:
    """Set a (possibly dotted) path inside user_state, creating parents"""
    parts = path.split(".")
    target = user_state
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = value


# ============================================================================
# Configs
# ============================================================================

class ConfigRepository(ABC):
    @abstractmethod
    async def get(self, config_id: str) -> Optional[StoredConfig]:
        ...

    @abstractmethod
    async def save(self, config: StoredConfig) -> StoredConfig:
        ...


class MemoryConfigRepository(ConfigRepository):
    def __init__(self):
        self._configs: Dict[str, StoredConfig] = {}

    async def get(self, config_id: str) -> Optional[StoredConfig]:
        return self._configs.get(config_id)

    async def save(self, config: StoredConfig) -> StoredConfig:
        existing = self._configs.get(config.config_id)
        if existing is not None:
            config = config.model_copy(update={"created_at": existing.created_at})
        self._configs[config.config_id] = config
        return config


class MongoConfigRepository(ConfigRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["configs"]

    async def get(self, config_id: str) -> Optional[StoredConfig]:
        doc = await self.collection.find_one({"config_id": config_id})
        return StoredConfig(**doc) if doc else None

    async def save(self, config: StoredConfig) -> StoredConfig:
        doc = await self.collection.find_one_and_update(
            {"config_id": config.config_id},
            {
                "$set": {
                    "graph_json": config.graph_json,
                    "allow_retake": config.allow_retake,
                    "updated_at": config.updated_at,
                },
                "$setOnInsert": {"created_at": config.created_at},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return StoredConfig(**doc)


# ============================================================================
# Sessions
# ============================================================================

class SessionRepository(ABC):
    @abstractmethod
    async def get(self, session_id: str) -> Optional[RunSession]:
        ...

    @abstractmethod
    async def find_latest(self, config_id: str, participant_id: str) -> Optional[RunSession]:
        """Most recent session of a participant for a config"""

    @abstractmethod
    async def create(self, session: RunSession) -> RunSession:
        ...

    @abstractmethod
    async def move(
        self,
        session_id: str,
        page_id: str,
        ended_at: Optional[datetime],
        end_redirect_url: Optional[str],
    ) -> Optional[RunSession]:
        """
        Set the current page unless the session has ended.
        Returns the session as stored afterwards (unchanged when it had ended),
        or None when it does not exist.
        """

    @abstractmethod
    async def set_state(self, session_id: str, updates: Dict[str, Any]) -> Optional[RunSession]:
        """Apply user_state updates keyed by (dotted) path"""


class MemorySessionRepository(SessionRepository):
    def __init__(self):
        self._sessions: Dict[str, RunSession] = {}

    async def get(self, session_id: str) -> Optional[RunSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def find_latest(self, config_id: str, participant_id: str) -> Optional[RunSession]:
        matches = [
            s for s in self._sessions.values()
            if s.config_id == config_id and s.participant_id == participant_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda s: s.created_at).model_copy(deep=True)

    async def create(self, session: RunSession) -> RunSession:
        self._sessions[session.session_id] = session.model_copy(deep=True)
        return session

    async def move(self, session_id, page_id, ended_at, end_redirect_url):
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.ended_at is None:
            session.current_page_id = page_id
            session.end_redirect_url = end_redirect_url
            session.ended_at = ended_at
            session.updated_at = utc_now()
        return session.model_copy(deep=True)

    async def set_state(self, session_id: str, updates: Dict[str, Any]) -> Optional[RunSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        user_state = copy.deepcopy(session.user_state)
        for path, value in updates.items():
            set_state_path(user_state, path, value)
        session.user_state = user_state
        session.updated_at = utc_now()
        return session.model_copy(deep=True)


class MongoSessionRepository(SessionRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["sessions"]

    async def get(self, session_id: str) -> Optional[RunSession]:
        doc = await self.collection.find_one({"session_id": session_id})
        return RunSession(**doc) if doc else None

    async def find_latest(self, config_id: str, participant_id: str) -> Optional[RunSession]:
        doc = await self.collection.find_one(
            {"config_id": config_id, "participant_id": participant_id},
            sort=[("created_at", DESCENDING)],
        )
        return RunSession(**doc) if doc else None

    async def create(self, session: RunSession) -> RunSession:
        doc = session.model_dump()
        doc["_id"] = session.session_id
        await self.collection.insert_one(doc)
        return session

    async def move(self, session_id, page_id, ended_at, end_redirect_url):
        fields: Dict[str, Any] = {
            "current_page_id": page_id,
            "end_redirect_url": end_redirect_url,
            "ended_at": ended_at,
            "updated_at": utc_now(),
        }
        # Matching on ended_at makes the end check and the move one atomic step
        doc = await self.collection.find_one_and_update(
            {"session_id": session_id, "ended_at": None},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            doc = await self.collection.find_one({"session_id": session_id})
        return RunSession(**doc) if doc else None

    async def set_state(self, session_id: str, updates: Dict[str, Any]) -> Optional[RunSession]:
        fields = {f"user_state.{path}": value for path, value in updates.items()}
        fields["updated_at"] = utc_now()
        doc = await self.collection.find_one_and_update(
            {"session_id": session_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return RunSession(**doc) if doc else None


# ============================================================================
# Events
# ============================================================================

class EventRepository(ABC):
    @abstractmethod
    async def insert(self, event: EventInDB) -> Tuple[str, bool]:
        """Store an event. Returns (event_id, deduplicated)."""

    @abstractmethod
    async def list_for_session(self, session_id: str) -> List[EventInDB]:
        ...


class MemoryEventRepository(EventRepository):
    def __init__(self):
        self._events: Dict[str, EventInDB] = {}
        self._by_key: Dict[str, str] = {}

    async def insert(self, event: EventInDB) -> Tuple[str, bool]:
        if event.idempotency_key and event.idempotency_key in self._by_key:
            return self._by_key[event.idempotency_key], True
        event_id = str(uuid4())
        self._events[event_id] = event
        if event.idempotency_key:
            self._by_key[event.idempotency_key] = event_id
        return event_id, False

    async def list_for_session(self, session_id: str) -> List[EventInDB]:
        events = [e for e in self._events.values() if e.session_id == session_id]
        return sorted(events, key=lambda e: e.created_at)


class MongoEventRepository(EventRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["events"]

    async def insert(self, event: EventInDB) -> Tuple[str, bool]:
        event_id = str(uuid4())
        doc = event.model_dump(exclude_none=True)
        doc["_id"] = event_id
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.collection.find_one({"idempotency_key": event.idempotency_key})
            if existing is None:
                raise
            return str(existing["_id"]), True
        return event_id, False

    async def list_for_session(self, session_id: str) -> List[EventInDB]:
        cursor = self.collection.find({"session_id": session_id}).sort("created_at", 1)
        return [EventInDB(**doc) async for doc in cursor]


# ============================================================================
# Advance idempotency
# ============================================================================

class IdempotencyGuard(ABC):
    @abstractmethod
    async def claim(self, key: str) -> bool:
        """True the first time a key is seen, False for duplicates"""


class MemoryIdempotencyGuard(IdempotencyGuard):
    def __init__(self):
        self._seen: Set[str] = set()

    async def claim(self, key: str) -> bool:
        if key in self._seen:
            return False
        self._seen.add(key)
        return True


class RedisIdempotencyGuard(IdempotencyGuard):
    def __init__(self, client: redis.Redis, ttl: int = RedisTTL.IDEMPOTENCY):
        self.client = client
        self.ttl = ttl

    async def claim(self, key: str) -> bool:
        created = await self.client.set(RedisKeys.advance_idempotency(key), "1", nx=True, ex=self.ttl)
        return bool(created)
