"""
Dependency providers and error mapping for the API routers
"""
from functools import lru_cache
from fastapi import HTTPException, status

from flowlab.core.config import settings
from flowlab.core.database import get_db
from flowlab.core.redis_client import get_redis
from flowlab.core.errors import (
    AssignmentConfigError,
    ConfigNotFoundError,
    FlowlabError,
    SessionBlockedError,
    SessionNotFoundError,
    UnknownNodeError,
    ValidationError,
)
from flowlab.models.session import StartStatus
from flowlab.services.assignment_engine import RandomizationContext
from flowlab.services.assignment_store import MongoAssignmentStore, RedisKeyedLock
from flowlab.services.config_registry import ConfigRegistry
from flowlab.services.session_service import SessionService
from flowlab.services.session_store import (
    MongoConfigRepository,
    MongoEventRepository,
    MongoSessionRepository,
    RedisIdempotencyGuard,
)


@lru_cache()
def get_local_configs() -> ConfigRegistry:
    """Registry over CONFIGS_DIR, shared by every request"""
    return ConfigRegistry(settings.CONFIGS_DIR)


def get_session_service() -> SessionService:
    """Session service over MongoDB and Redis"""
    db = get_db()
    redis = get_redis()
    return SessionService(
        configs=MongoConfigRepository(db),
        sessions=MongoSessionRepository(db),
        events=MongoEventRepository(db),
        idempotency=RedisIdempotencyGuard(redis),
        randomization=RandomizationContext(
            base_seed=settings.SEED_SECRET,
            store=MongoAssignmentStore(db),
            locks=RedisKeyedLock(redis, timeout=settings.ASSIGNMENT_LOCK_TIMEOUT_SECONDS),
        ),
        local_configs=get_local_configs(),
    )


def http_error(error: FlowlabError) -> HTTPException:
    """Map a runtime error onto the HTTP response the routers return"""
    if isinstance(error, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(error), "errors": error.errors},
        )
    if isinstance(error, SessionBlockedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "status": StartStatus.BLOCKED.value,
                "session_id": error.session_id,
                "error": "session_completed",
                "message": str(error),
            },
        )
    if isinstance(error, (SessionNotFoundError, ConfigNotFoundError, UnknownNodeError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, AssignmentConfigError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
