"""
Flowlab session service - FastAPI application backing remote-mode runs
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
import logging
import sys

from flowlab import __version__
from flowlab.api import configs, events, sessions
from flowlab.api.deps import get_local_configs
from flowlab.core.config import settings
from flowlab.core.database import connect_db, disconnect_db
from flowlab.core.redis_client import connect_redis, disconnect_redis

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect storage and preload local configs; disconnect on shutdown"""
    logger.info(f"Starting flowlab session service ({settings.ENVIRONMENT})")

    try:
        await connect_db()
        await connect_redis()
        loaded = get_local_configs().load_dir()
        logger.info(f"Session service ready, {loaded} local configs available")
    except Exception as e:
        logger.error(f"Failed to start session service: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down session service...")
    await disconnect_db()
    await disconnect_redis()


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Build the application. Tests pass use_lifespan=False and override dependencies."""
    docs_enabled = settings.ENVIRONMENT == "development"
    app = FastAPI(
        title="Flowlab Session Service",
        description="Server-authoritative sessions, assignments and events for flow runs",
        version=__version__,
        default_response_class=ORJSONResponse,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url="/api/redoc" if docs_enabled else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Events share the /sessions/{id} prefix with the session routes
    app.include_router(sessions.router, prefix="/api/sessions", tags=["Sessions"])
    app.include_router(events.router, prefix="/api/sessions", tags=["Events"])
    app.include_router(configs.router, prefix="/api/configs", tags=["Configs"])

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": __version__,
            "environment": settings.ENVIRONMENT,
        }

    return app


app = create_app()
