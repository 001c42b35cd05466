"""
MongoDB connection for the session service

Collections:
- configs: canonical compiled graphs by config_id
- sessions: remote runs
- events: run telemetry, deduplicated by idempotency key
- assignments: write-once condition records
- assignment_counters: balanced_random counts and block positions
"""
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import IndexModel, ASCENDING, DESCENDING
from typing import Dict, List, Optional
import logging

from flowlab.core.config import settings

logger = logging.getLogger(__name__)


class Database:
    """MongoDB connection manager"""

    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None


database = Database()


INDEXES: Dict[str, List[IndexModel]] = {
    "configs": [
        IndexModel([("config_id", ASCENDING)], unique=True),
    ],
    "sessions": [
        IndexModel([("session_id", ASCENDING)], unique=True),
        IndexModel([("config_id", ASCENDING), ("participant_id", ASCENDING), ("created_at", DESCENDING)]),
    ],
    "events": [
        IndexModel([("idempotency_key", ASCENDING)], unique=True, sparse=True),
        IndexModel([("session_id", ASCENDING), ("created_at", ASCENDING)]),
        IndexModel([("config_id", ASCENDING), ("type", ASCENDING)]),
    ],
    # One record per (scope_key, state_key); the unique index is what makes it write-once
    "assignments": [
        IndexModel([("scope_key", ASCENDING), ("state_key", ASCENDING)], unique=True),
        IndexModel([("balance_key", ASCENDING)]),
    ],
    "assignment_counters": [
        IndexModel(
            [("balance_key", ASCENDING), ("kind", ASCENDING), ("condition", ASCENDING)],
            unique=True,
        ),
    ],
}


async def connect_db():
    """Connect to MongoDB and ensure indexes"""
    logger.info(f"Connecting to MongoDB at {settings.MONGO_URL} (db '{settings.MONGO_DB}')")
    timeout_ms = settings.MONGO_TIMEOUT_SECONDS * 1000

    try:
        database.client = AsyncIOMotorClient(
            settings.MONGO_URL,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            tz_aware=True,
        )
        database.db = database.client[settings.MONGO_DB]

        await database.client.admin.command('ping')
        await create_indexes(database.db)

        logger.info("MongoDB connection established")
    except Exception as e:
        logger.error(f"Failed to connect to MongoDB at {settings.MONGO_URL}: {e}")
        raise


async def disconnect_db():
    """Close MongoDB connection"""
    if database.client:
        database.client.close()
        database.client = None
        database.db = None
        logger.info("MongoDB connection closed")


async def create_indexes(db: AsyncIOMotorDatabase):
    for collection, indexes in INDEXES.items():
        await db[collection].create_indexes(indexes)
    logger.info(f"Ensured indexes on {len(INDEXES)} collections")


def get_db() -> AsyncIOMotorDatabase:
    """Connected database; the session service cannot run without one"""
    if database.db is None:
        raise RuntimeError("MongoDB is not connected")
    return database.db
