"""
Session service - server-authoritative runs for remote mode

Supports:
- Start with resumption per participant, blocking completed runs unless
  the config allows retakes
- Advance with idempotency keys; a duplicate returns the current state
- user_state updates, condition assignment, event recording
- Config upload (YAML compiled to the canonical graph) and retrieval
"""
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4
import logging

from flowlab.core.config import settings
from flowlab.core.errors import (
    ConfigNotFoundError,
    SessionBlockedError,
    SessionNotFoundError,
    ValidationError,
)
from flowlab.models.event import EventInDB, EventResponse, FlowEvent, utc_now
from flowlab.models.flow import CompiledGraph
from flowlab.models.session import (
    AssignmentResult,
    RandomizeRequest,
    RunSession,
    SessionStartRequest,
    SessionStateResponse,
    StartStatus,
    StateUpdateResponse,
    StoredConfig,
)
from flowlab.services.assignment_engine import AssignmentEngine, RandomizationContext
from flowlab.services.config_compiler import compile_flow
from flowlab.services.config_registry import ConfigRegistry, is_valid_experiment_id
from flowlab.services.guard_engine import GuardEngine
from flowlab.services.navigation import resolve_edge
from flowlab.services.session_store import (
    ConfigRepository,
    EventRepository,
    IdempotencyGuard,
    SessionRepository,
)

logger = logging.getLogger(__name__)


def validate_state_path(path: str) -> Optional[str]:
    """Error message for a user_state path that cannot be stored, else None"""
    if not path:
        return "user_state path must not be empty"
    if "$" in path:
        return f"Invalid user_state path: {path!r} (contains '$')"
    if path.startswith(".") or path.endswith("."):
        return f"Invalid user_state path: {path!r} (leading or trailing '.')"
    return None


class SessionService:
    """
    Backend-authoritative state for remote runs.
    The client never decides a transition; it asks and renders the answer.
    """

    def __init__(
        self,
        configs: ConfigRepository,
        sessions: SessionRepository,
        events: EventRepository,
        idempotency: IdempotencyGuard,
        randomization: RandomizationContext,
        local_configs: Optional[ConfigRegistry] = None,
        guards: Optional[GuardEngine] = None,
    ):
        self.configs = configs
        self.sessions = sessions
        self.events = events
        self.idempotency = idempotency
        self.engine = AssignmentEngine(randomization)
        self.local_configs = local_configs
        self.guards = guards or GuardEngine()

    # --- Configs -----------------------------------------------------------

    async def save_config(self, config_id: str, source: str, allow_retake: bool = False) -> CompiledGraph:
        """Compile a YAML source and store its canonical form"""
        if not is_valid_experiment_id(config_id):
            raise ValidationError([f"Invalid config id: {config_id!r}"])

        graph = compile_flow(source)
        now = utc_now()
        await self.configs.save(StoredConfig(
            config_id=config_id,
            graph_json=graph.to_canonical_json(),
            allow_retake=allow_retake,
            created_at=now,
            updated_at=now,
        ))
        logger.info(f"Stored config '{config_id}' ({len(graph.nodes)} nodes)")
        return graph

    async def load_config(self, config_id: str) -> Tuple[CompiledGraph, bool]:
        """(graph, allow_retake) for a config, falling back to the local configs directory"""
        stored = await self.configs.get(config_id)
        if stored is not None:
            return stored.graph(), stored.allow_retake

        if self.local_configs is not None:
            graph = self.local_configs.get(config_id)
            if graph is not None:
                return graph, settings.ALLOW_RETAKE_DEFAULT

        raise ConfigNotFoundError(config_id)

    async def get_config_json(self, config_id: str) -> str:
        stored = await self.configs.get(config_id)
        if stored is not None:
            return stored.graph_json
        graph, _ = await self.load_config(config_id)
        return graph.to_canonical_json()

    # --- Sessions ----------------------------------------------------------

    async def start(self, request: SessionStartRequest) -> SessionStateResponse:
        """
        Start or resume a run.

        Anonymous starts always create a session. A participant with an
        unfinished session resumes it; a finished one is blocked unless
        the config allows retakes.
        """
        graph, allow_retake = await self.load_config(request.config_id)

        if request.participant_id:
            existing = await self.sessions.find_latest(request.config_id, request.participant_id)
            if existing is not None:
                if existing.ended_at is None:
                    logger.info(f"Resuming session {existing.session_id} for participant {request.participant_id}")
                    return self._state(existing, graph, status=StartStatus.RESUMED)
                if not allow_retake:
                    logger.info(f"Blocked retake of '{request.config_id}' by participant {request.participant_id}")
                    raise SessionBlockedError(existing.session_id)

        start_node = graph.get_node(graph.initial_page_id)
        now = utc_now()
        session = RunSession(
            session_id=str(uuid4()),
            config_id=request.config_id,
            participant_id=request.participant_id,
            current_page_id=start_node.id,
            user_state={},
            ended_at=now if start_node.end else None,
            end_redirect_url=start_node.end_redirect_url,
            created_at=now,
            updated_at=now,
        )
        await self.sessions.create(session)

        logger.info(f"Created session {session.session_id} for config '{request.config_id}'")
        return self._state(session, graph, status=StartStatus.CREATED)

    async def get_state(self, session_id: str) -> SessionStateResponse:
        session = await self._get_session(session_id)
        graph, _ = await self.load_config(session.config_id)
        return self._state(session, graph)

    async def advance(self, session_id: str, target: Optional[str], idempotency_key: str) -> SessionStateResponse:
        """
        Move a session to `target`, or along the flow edges when target is None.

        Unknown targets raise UnknownNodeError and leave the session as is.
        A completed session does not move.
        """
        session = await self._get_session(session_id)
        graph, _ = await self.load_config(session.config_id)

        if session.ended_at is not None:
            logger.warning(f"Ignoring advance of completed session {session_id} to {target!r}")
            return self._state(session, graph)

        if target is None:
            target = resolve_edge(graph, session.current_page_id, session.user_state, self.guards)
        node = graph.get_node(target)

        if not await self.idempotency.claim(f"{session_id}:{idempotency_key}"):
            logger.info(f"Duplicate advance {idempotency_key} for session {session_id}")
            current = await self._get_session(session_id)
            return self._state(current, graph, deduplicated=True)

        updated = await self.sessions.move(
            session_id,
            node.id,
            ended_at=utc_now() if node.end else None,
            end_redirect_url=node.end_redirect_url,
        )
        if updated is None:
            raise SessionNotFoundError(session_id)
        if updated.ended_at is not None and updated.current_page_id != node.id:
            logger.warning(f"Ignoring advance of session {session_id} to '{node.id}': it ended concurrently")
            return self._state(updated, graph)

        logger.info(f"Session {session_id}: '{session.current_page_id}' -> '{node.id}'")
        return self._state(updated, graph)

    async def update_state(self, session_id: str, updates: Dict[str, Any]) -> StateUpdateResponse:
        errors = [e for e in (validate_state_path(path) for path in updates) if e]
        if errors:
            raise ValidationError(errors)

        await self._get_session(session_id)
        updated = await self.sessions.set_state(session_id, updates)
        if updated is None:
            raise SessionNotFoundError(session_id)
        return StateUpdateResponse(success=True, user_state=updated.user_state)

    async def randomize(self, session_id: str, request: RandomizeRequest) -> AssignmentResult:
        """Assign a condition for the session and write it to user_state"""
        error = validate_state_path(request.state_key)
        if error:
            raise ValidationError([error])

        session = await self._get_session(session_id)
        result = await self.engine.assign(
            scope_key=session_id,
            state_key=request.state_key,
            conditions=request.conditions,
            strategy=request.assignment_type,
            balance_key=f"{session.config_id}:{request.state_key}",
        )

        if session.user_state.get(request.state_key) != result.condition:
            await self.sessions.set_state(session_id, {request.state_key: result.condition})
        return result

    async def record_event(self, session_id: str, event: FlowEvent) -> EventResponse:
        session = await self._get_session(session_id)
        stored = EventInDB(
            **event.model_dump(),
            session_id=session_id,
            config_id=session.config_id,
            page_id=session.current_page_id,
            created_at=utc_now(),
        )
        event_id, deduplicated = await self.events.insert(stored)
        if deduplicated:
            logger.info(f"Duplicate event {event.idempotency_key} for session {session_id}")
        return EventResponse(event_id=event_id, deduplicated=deduplicated)

    # --- Internals ---------------------------------------------------------

    async def _get_session(self, session_id: str) -> RunSession:
        session = await self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @staticmethod
    def _state(
        session: RunSession,
        graph: CompiledGraph,
        status: Optional[StartStatus] = None,
        deduplicated: bool = False,
    ) -> SessionStateResponse:
        return SessionStateResponse(
            session_id=session.session_id,
            config_id=session.config_id,
            current_page_id=session.current_page_id,
            page=graph.nodes.get(session.current_page_id),
            user_state=session.user_state,
            ended_at=session.ended_at,
            status=status,
            deduplicated=deduplicated,
        )
