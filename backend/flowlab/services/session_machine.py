"""
Session state machine - drives one participant through a flow

States: bootstrapping -> {local, remote} -> terminal

Both live modes share one runner contract:
- LocalFlowRunner: in-memory CompiledGraph, no I/O
- RemoteFlowRunner: every transition is confirmed by the session service
  before the local view changes

Terminal is sticky: once the current page has end=true, further
navigation is a logged no-op. Events are reported through the
EventPipeline in the background and never affect the navigation result.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4
import asyncio
import logging

from pydantic import BaseModel

from flowlab.core.errors import TransportError, UnknownNodeError
from flowlab.models.event import EventType, FlowEvent
from flowlab.models.flow import (
    ActionType,
    ButtonAction,
    CompiledGraph,
    CompiledNode,
    RandomizationComponent,
    RandomizationProps,
)
from flowlab.models.session import AssignmentResult, SessionStateResponse
from flowlab.services.assignment_engine import AssignmentEngine, RandomizationContext
from flowlab.services.config_registry import ConfigRegistry
from flowlab.services.event_pipeline import EventPipeline
from flowlab.services.guard_engine import GuardEngine
from flowlab.services.interpolation import render_page
from flowlab.services.navigation import resolve_branches, resolve_edge
from flowlab.services.session_client import SessionServiceClient

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Lifecycle of a run"""
    BOOTSTRAPPING = "bootstrapping"
    LOCAL = "local"
    REMOTE = "remote"
    TERMINAL = "terminal"


class RunView(BaseModel):
    """Snapshot of a run as presentation sees it"""
    session_id: Optional[str] = None  # None for local runs
    experiment_id: str
    current_page_id: str
    page: Optional[CompiledNode] = None
    user_state: Dict[str, Any] = {}
    end_redirect_url: Optional[str] = None
    ended_at: Optional[datetime] = None

    @property
    def ended(self) -> bool:
        return self.ended_at is not None


# ============================================================================
# Runners
# ============================================================================

class FlowRunner(ABC):
    """Navigation contract shared by local and remote runs"""

    mode: RunState
    experiment_id: str

    @property
    @abstractmethod
    def run_id(self) -> str:
        """Identifier events are reported under"""

    @abstractmethod
    def view(self) -> RunView:
        ...

    @abstractmethod
    async def start(self) -> RunView:
        ...

    @abstractmethod
    async def advance(self, target: Optional[str]) -> RunView:
        """Move to `target`, or along the flow edges when target is None"""

    @abstractmethod
    async def refresh(self) -> RunView:
        """Reload the run from its source of truth"""

    @abstractmethod
    async def update_state(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def randomize(self, assignment_type: str, conditions: List[str], state_key: str) -> AssignmentResult:
        ...


class LocalFlowRunner(FlowRunner):
    """
    Run held entirely in memory against a compiled graph.
    Navigation is synchronous; the async methods never await I/O.
    """

    mode = RunState.LOCAL

    def __init__(
        self,
        experiment_id: str,
        graph: CompiledGraph,
        context: RandomizationContext,
        participant_id: Optional[str] = None,
        guards: Optional[GuardEngine] = None,
    ):
        self.experiment_id = experiment_id
        self.graph = graph
        self.participant_id = participant_id
        self.guards = guards or GuardEngine()
        self.engine = AssignmentEngine(context)

        self._local_id = f"local-{uuid4()}"
        self.current_page_id: Optional[str] = None
        self.user_state: Dict[str, Any] = {}
        self.end_redirect_url: Optional[str] = None
        self.ended_at: Optional[datetime] = None

    @property
    def run_id(self) -> str:
        return self._local_id

    def view(self) -> RunView:
        return RunView(
            experiment_id=self.experiment_id,
            current_page_id=self.current_page_id,
            page=self.graph.get_node(self.current_page_id),
            user_state=dict(self.user_state),
            end_redirect_url=self.end_redirect_url,
            ended_at=self.ended_at,
        )

    async def start(self) -> RunView:
        self.go_to(self.graph.initial_page_id)
        return self.view()

    async def advance(self, target: Optional[str]) -> RunView:
        if target is None:
            target = resolve_edge(self.graph, self.current_page_id, self.user_state, self.guards)
        self.go_to(target)
        return self.view()

    async def refresh(self) -> RunView:
        return self.view()

    def go_to(self, target: Optional[str]) -> CompiledNode:
        """Set the current page. Unknown ids raise before anything changes."""
        node = self.graph.get_node(target)
        self.current_page_id = node.id
        self.end_redirect_url = node.end_redirect_url
        if node.end:
            self.ended_at = datetime.now(timezone.utc)
        return node

    async def update_state(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        self.user_state.update(updates)
        return dict(self.user_state)

    async def randomize(self, assignment_type: str, conditions: List[str], state_key: str) -> AssignmentResult:
        result = await self.engine.assign(
            scope_key=self.participant_id or self._local_id,
            state_key=state_key,
            conditions=conditions,
            strategy=assignment_type,
            balance_key=f"{self.experiment_id}:{state_key}",
        )
        self.user_state[state_key] = result.condition
        return result


class RemoteFlowRunner(FlowRunner):
    """
    Run persisted by the session service.

    The local view only changes after the server confirms a call. Each
    advance takes a generation number; a response older than the last
    applied one is discarded so the newest confirmed transition wins.
    """

    mode = RunState.REMOTE

    def __init__(
        self,
        experiment_id: str,
        client: SessionServiceClient,
        participant_id: Optional[str] = None,
    ):
        self.experiment_id = experiment_id
        self.client = client
        self.participant_id = participant_id

        self.session_id: Optional[str] = None
        self._snapshot: Optional[SessionStateResponse] = None
        self._generation = 0
        self._applied_generation = 0

    @property
    def run_id(self) -> str:
        return self.session_id

    def view(self) -> RunView:
        snapshot = self._snapshot
        return RunView(
            session_id=snapshot.session_id,
            experiment_id=self.experiment_id,
            current_page_id=snapshot.current_page_id,
            page=snapshot.page,
            user_state=dict(snapshot.user_state),
            end_redirect_url=snapshot.page.end_redirect_url if snapshot.page else None,
            ended_at=snapshot.ended_at,
        )

    async def start(self) -> RunView:
        snapshot = await self.client.start_session(self.experiment_id, self.participant_id)
        self.session_id = snapshot.session_id
        self._snapshot = snapshot
        logger.info(f"Remote session {snapshot.session_id} {snapshot.status.value if snapshot.status else 'started'} at '{snapshot.current_page_id}'")
        return self.view()

    async def advance(self, target: Optional[str]) -> RunView:
        self._generation += 1
        generation = self._generation

        snapshot = await self.client.advance(self.session_id, target)
        return self._apply(generation, snapshot)

    async def refresh(self) -> RunView:
        """Replace the view with the session as the server currently stores it"""
        self._generation += 1
        generation = self._generation

        snapshot = await self.client.get_session(self.session_id)
        return self._apply(generation, snapshot)

    def _apply(self, generation: int, snapshot: SessionStateResponse) -> RunView:
        if generation < self._applied_generation:
            logger.warning(
                f"Discarding stale response for session {self.session_id} "
                f"(generation {generation} < {self._applied_generation})"
            )
            return self.view()

        self._applied_generation = generation
        self._snapshot = snapshot
        return self.view()

    async def update_state(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.client.update_state(self.session_id, updates)
        self._snapshot = self._snapshot.model_copy(update={"user_state": dict(response.user_state)})
        return dict(response.user_state)

    async def randomize(self, assignment_type: str, conditions: List[str], state_key: str) -> AssignmentResult:
        result = await self.client.randomize(self.session_id, assignment_type, conditions, state_key)
        user_state = {**self._snapshot.user_state, state_key: result.condition}
        self._snapshot = self._snapshot.model_copy(update={"user_state": user_state})
        return result


# ============================================================================
# State machine
# ============================================================================

class SessionStateMachine:
    """
    Single entry point for presentation.

    bootstrap() selects local mode when the registry holds a compiled
    config for the experiment, otherwise starts a remote session.
    """

    def __init__(
        self,
        registry: ConfigRegistry,
        context: RandomizationContext,
        client: Optional[SessionServiceClient] = None,
        events: Optional[EventPipeline] = None,
        participant_id: Optional[str] = None,
        guards: Optional[GuardEngine] = None,
    ):
        self.registry = registry
        self.context = context
        self.client = client
        self.events = events or EventPipeline()
        self.participant_id = participant_id
        self.guards = guards or GuardEngine()

        self.state = RunState.BOOTSTRAPPING
        self.runner: Optional[FlowRunner] = None
        self._assignments: Dict[str, asyncio.Task] = {}

    # --- Lifecycle ---------------------------------------------------------

    async def bootstrap(self, experiment_id: str) -> RunView:
        if self.state != RunState.BOOTSTRAPPING:
            raise RuntimeError(f"Run already bootstrapped ({self.state.value})")

        graph = self.registry.get(experiment_id)
        if graph is not None:
            runner: FlowRunner = LocalFlowRunner(
                experiment_id, graph, self.context,
                participant_id=self.participant_id, guards=self.guards,
            )
        elif self.client is not None:
            runner = RemoteFlowRunner(experiment_id, self.client, participant_id=self.participant_id)
        else:
            raise TransportError(f"No local config for '{experiment_id}' and no session service configured")

        view = await runner.start()
        self.runner = runner
        self.state = RunState.TERMINAL if view.ended else runner.mode
        logger.info(f"Bootstrapped '{experiment_id}' in {runner.mode.value} mode at '{view.current_page_id}'")

        self._emit(EventType.SESSION_START, "session", experiment_id, {
            "mode": runner.mode.value,
            "page_id": view.current_page_id,
        })
        return view

    @property
    def is_terminal(self) -> bool:
        return self.state == RunState.TERMINAL

    def view(self) -> RunView:
        self._require_runner()
        return self.runner.view()

    def render(self) -> Dict[str, Any]:
        """Presentation payload for the current page"""
        view = self.view()
        return render_page(view.page, view.user_state)

    # --- Navigation --------------------------------------------------------

    async def advance(self, target: str) -> RunView:
        """
        Move to `target`.

        Raises UnknownNodeError (local) or TransportError (remote); either
        way the current page is left unchanged.
        """
        return await self._transition(target)

    async def dispatch(self, action: Union[ButtonAction, Dict[str, Any]]) -> RunView:
        """Handle a button action from presentation"""
        if not isinstance(action, ButtonAction):
            action = ButtonAction.model_validate(action)

        if self.is_terminal:
            return self._ignore_on_terminal(action.target)

        if action.type == ActionType.NEXT:
            # Edges are resolved by the runner: in memory locally, by the server remotely
            return await self._transition(None)

        target = resolve_branches(action, self.view().user_state, self.guards)
        if target is None:
            raise UnknownNodeError(None, "no branch matched and no fallback target")
        return await self._transition(target)

    async def _transition(self, target: Optional[str]) -> RunView:
        self._require_runner()
        if self.is_terminal:
            return self._ignore_on_terminal(target)

        from_page = self.runner.view().current_page_id
        view = await self.runner.advance(target)

        if view.current_page_id != from_page:
            self._emit(EventType.NAVIGATION, "page", view.current_page_id, {
                "from": from_page,
                "to": view.current_page_id,
            })

        if view.ended:
            self.state = RunState.TERMINAL
            logger.info(f"Run {self.runner.run_id} reached end page '{view.current_page_id}'")
            self._emit(EventType.SESSION_END, "page", view.current_page_id, {
                "end_redirect_url": view.end_redirect_url,
            })
        return view

    async def resync(self) -> RunView:
        """
        Reload the current page from the runner's source of truth.

        Presentation calls this after a TransportError, when a request may
        have reached the server even though no response came back.
        """
        self._require_runner()
        view = await self.runner.refresh()
        if view.ended and not self.is_terminal:
            self.state = RunState.TERMINAL
            logger.info(f"Run {self.runner.run_id} found ended at '{view.current_page_id}' on resync")
        return view

    def _ignore_on_terminal(self, target: Optional[str]) -> RunView:
        view = self.runner.view()
        logger.warning(
            f"Ignoring navigation to {target!r}: run {self.runner.run_id} already ended "
            f"at '{view.current_page_id}'"
        )
        return view

    # --- Interactions ------------------------------------------------------

    async def randomize(self, component: Union[RandomizationComponent, RandomizationProps]) -> AssignmentResult:
        """
        Assign a condition for the component's state key.

        One assignment per state key per run: concurrent or repeated calls
        share the first call's result. A failed call can be retried.
        """
        self._require_runner()
        props = component.props if isinstance(component, RandomizationComponent) else component
        component_id = getattr(component, "id", None) or props.state_key

        task = self._assignments.get(props.state_key)
        if task is None:
            task = asyncio.ensure_future(self._assign(props, component_id))
            self._assignments[props.state_key] = task

        try:
            return await asyncio.shield(task)
        except Exception:
            if self._assignments.get(props.state_key) is task:
                del self._assignments[props.state_key]
            raise

    async def _assign(self, props: RandomizationProps, component_id: str) -> AssignmentResult:
        result = await self.runner.randomize(props.assignment_type.value, props.conditions, props.state_key)

        if not result.existing:
            self._emit(EventType.RANDOMIZATION_ASSIGNMENT, "randomization", component_id, {
                "state_key": props.state_key,
                "condition": result.condition,
                "assignment_type": props.assignment_type.value,
            })

        if props.target and not self.is_terminal:
            await self._transition(props.target)
        return result

    async def submit_survey(self, responses: Dict[str, Any], component_id: Optional[str] = None) -> RunView:
        """Merge survey answers into user_state and report the submission"""
        self._require_runner()
        await self.runner.update_state(responses)
        view = self.runner.view()

        self._emit(EventType.SURVEY_SUBMISSION, "survey", component_id or view.current_page_id, {
            "page_id": view.current_page_id,
            "responses": responses,
        })
        return view

    # --- Internals ---------------------------------------------------------

    def _require_runner(self) -> None:
        if self.runner is None:
            raise RuntimeError("Run has not been bootstrapped")

    def _emit(self, event_type: EventType, component_type: str, component_id: str, data: Dict[str, Any]) -> None:
        event = FlowEvent(
            type=event_type.value,
            component_type=component_type,
            component_id=component_id,
            data=data,
            idempotency_key=str(uuid4()),
        )
        self.events.emit_nowait(self.runner.run_id, event)
