import httpx
import pytest
import pytest_asyncio

from flowlab.api.deps import get_session_service
from flowlab.main import create_app
from flowlab.services.assignment_engine import RandomizationContext
from flowlab.services.config_compiler import compile_flow
from flowlab.services.config_registry import ConfigRegistry
from flowlab.services.event_pipeline import EventPipeline, MemoryEventSink
from flowlab.services.session_client import SessionServiceClient
from flowlab.services.session_service import SessionService
from flowlab.services.session_store import (
    MemoryConfigRepository,
    MemoryEventRepository,
    MemoryIdempotencyGuard,
    MemorySessionRepository,
)

from tests.shared_data import STUDY_FLOW, TEST_SEED


@pytest.fixture
def study_graph():
    return compile_flow(STUDY_FLOW)


@pytest.fixture
def randomization():
    return RandomizationContext(base_seed=TEST_SEED)


@pytest.fixture
def event_sink():
    return MemoryEventSink()


@pytest.fixture
def pipeline(event_sink):
    return EventPipeline([event_sink])


@pytest.fixture
def registry(study_graph):
    registry = ConfigRegistry()
    registry.register("study", study_graph)
    return registry


@pytest.fixture
def session_service():
    return SessionService(
        configs=MemoryConfigRepository(),
        sessions=MemorySessionRepository(),
        events=MemoryEventRepository(),
        idempotency=MemoryIdempotencyGuard(),
        randomization=RandomizationContext(base_seed=TEST_SEED),
    )


@pytest.fixture
def app(session_service):
    app = create_app(use_lifespan=False)
    app.dependency_overrides[get_session_service] = lambda: session_service
    return app


@pytest_asyncio.fixture
async def api_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver/api") as client:
        yield client


@pytest_asyncio.fixture
async def service_client(app):
    """Remote-mode client talking to the in-process session service"""
    client = SessionServiceClient(
        base_url="http://testserver/api",
        transport=httpx.ASGITransport(app=app),
    )
    yield client
    await client.aclose()
