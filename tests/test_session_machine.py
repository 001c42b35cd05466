import asyncio

import pytest

from flowlab.core.errors import TransportError, UnknownNodeError
from flowlab.models.event import utc_now
from flowlab.models.flow import CompiledNode, RandomizationProps
from flowlab.models.session import AssignmentResult, SessionStateResponse, StartStatus
from flowlab.services.config_compiler import compile_flow
from flowlab.services.config_registry import ConfigRegistry
from flowlab.services.event_pipeline import EventPipeline, EventSink
from flowlab.services.session_machine import RemoteFlowRunner, RunState, SessionStateMachine


@pytest.fixture
def machine(registry, randomization, pipeline):
    return SessionStateMachine(registry, randomization, events=pipeline, participant_id="p1")


async def randomize_current(machine):
    component = machine.view().page.components[0]
    return await machine.randomize(component)


@pytest.mark.asyncio
async def test_bootstrap_with_local_config(machine, event_sink):
    assert machine.state == RunState.BOOTSTRAPPING

    view = await machine.bootstrap("study")
    await machine.events.drain()

    assert machine.state == RunState.LOCAL
    assert view.current_page_id == "welcome"
    assert view.session_id is None
    assert event_sink.of_type("session_start")[0].data["mode"] == "local"


@pytest.mark.asyncio
async def test_bootstrap_without_config_or_service(randomization):
    machine = SessionStateMachine(ConfigRegistry(), randomization)
    with pytest.raises(TransportError):
        await machine.bootstrap("unknown")
    assert machine.state == RunState.BOOTSTRAPPING


@pytest.mark.asyncio
async def test_unknown_target_leaves_page_unchanged(machine):
    await machine.bootstrap("study")

    with pytest.raises(UnknownNodeError):
        await machine.advance("does-not-exist")

    assert machine.view().current_page_id == "welcome"


@pytest.mark.asyncio
async def test_full_local_run(machine, event_sink):
    await machine.bootstrap("study")

    view = await machine.dispatch({"type": "next"})
    assert view.current_page_id == "assign"

    result = await randomize_current(machine)
    assert result.condition in ("A", "B")
    assert machine.view().user_state["treatment"] == result.condition

    view = await machine.dispatch({"type": "next"})
    assert view.current_page_id == f"treatment_{result.condition.lower()}"
    assert view.end_redirect_url is None

    view = await machine.dispatch({"type": "go_to", "target": "done"})
    assert machine.state == RunState.TERMINAL
    assert view.ended
    assert view.end_redirect_url == "https://example.org/complete"

    await machine.events.drain()
    assert [e.data["to"] for e in event_sink.of_type("navigation")] == [
        "assign", f"treatment_{result.condition.lower()}", "done",
    ]
    assert len(event_sink.of_type("randomization_assignment")) == 1
    assert len(event_sink.of_type("session_end")) == 1


@pytest.mark.asyncio
async def test_terminal_is_sticky(machine):
    await machine.bootstrap("study")
    await machine.advance("done")

    view = await machine.advance("welcome")
    assert view.current_page_id == "done"

    view = await machine.dispatch({"type": "go_to", "target": "welcome"})
    assert view.current_page_id == "done"
    assert machine.is_terminal


@pytest.mark.asyncio
async def test_go_to_branches(randomization):
    graph = compile_flow("""
nodes:
  - id: ask
    buttons:
      - text: Continue
        action:
          type: go_to
          target: adult
          branches:
            - {when: "user_state.age < 18", target: minor}
  - id: adult
  - id: minor
flow: []
""")
    registry = ConfigRegistry()
    registry.register("ages", graph)

    young = SessionStateMachine(registry, randomization)
    await young.bootstrap("ages")
    await young.submit_survey({"age": 15})
    assert (await young.dispatch(graph.nodes["ask"].components[0].props.buttons[0].action)).current_page_id == "minor"

    grown = SessionStateMachine(registry, randomization)
    await grown.bootstrap("ages")
    await grown.submit_survey({"age": 40})
    assert (await grown.dispatch({"type": "go_to", "target": "adult", "branches": [
        {"when": "user_state.age < 18", "target": "minor"},
    ]})).current_page_id == "adult"


@pytest.mark.asyncio
async def test_next_without_matching_edge(machine):
    await machine.bootstrap("study")
    await machine.advance("assign")

    with pytest.raises(UnknownNodeError):
        await machine.dispatch({"type": "next"})
    assert machine.view().current_page_id == "assign"


@pytest.mark.asyncio
async def test_randomize_latch_shares_one_assignment(machine, event_sink):
    await machine.bootstrap("study")
    await machine.advance("assign")

    first, second = await asyncio.gather(randomize_current(machine), randomize_current(machine))
    third = await randomize_current(machine)
    await machine.events.drain()

    assert first == second == third
    assert len(event_sink.of_type("randomization_assignment")) == 1


@pytest.mark.asyncio
async def test_randomization_target_auto_advances(randomization):
    graph = compile_flow("""
nodes:
  - id: coin
    components:
      - type: randomization
        props: {assignmentType: random, conditions: [heads, tails], stateKey: side, target: reveal}
  - id: reveal
    text: "You got {{user_state.side}}"
flow: []
""")
    registry = ConfigRegistry()
    registry.register("coin", graph)
    machine = SessionStateMachine(registry, randomization)
    await machine.bootstrap("coin")

    result = await machine.randomize(graph.nodes["coin"].components[0])

    assert machine.view().current_page_id == "reveal"
    assert machine.render()["components"][0]["props"]["text"] == f"You got {result.condition}"


@pytest.mark.asyncio
async def test_survey_submission_survives_event_failure(registry, randomization):
    class DownSink(EventSink):
        async def deliver(self, session_id, event):
            raise RuntimeError("collector unavailable")

    failures = []
    machine = SessionStateMachine(
        registry, randomization, events=EventPipeline([DownSink()], observer=failures.append),
    )
    await machine.bootstrap("study")

    view = await machine.submit_survey({"name": "Ada"}, component_id="intake")
    await machine.events.drain()

    assert view.user_state == {"name": "Ada"}
    assert machine.render()["components"][0]["props"]["text"] == "Hello Ada"
    assert {f.event_type for f in failures} == {"session_start", "survey_submission"}


@pytest.mark.asyncio
async def test_advance_before_bootstrap(machine):
    with pytest.raises(RuntimeError):
        await machine.advance("welcome")


# ============================================================================
# Remote mode
# ============================================================================

def page(page_id, end=False):
    return CompiledNode(id=page_id, end=end)


class ScriptedClient:
    """Session service double whose advance responses are released by the test"""

    def __init__(self):
        self.gates = {}
        self.randomize_calls = 0
        self.server_page = "one"

    async def start_session(self, experiment_id, participant_id=None):
        return SessionStateResponse(
            session_id="s1", config_id=experiment_id, current_page_id="one",
            page=page("one"), status=StartStatus.CREATED,
        )

    async def advance(self, session_id, target, idempotency_key=None):
        gate = self.gates.get(target)
        if gate is not None:
            await gate.wait()
        if target == "broken":
            raise TransportError("Session service returned 502: bad gateway", status_code=502)
        return SessionStateResponse(
            session_id=session_id, config_id="remote", current_page_id=target,
            page=page(target, end=(target == "end")),
            ended_at=utc_now() if target == "end" else None,
        )

    async def get_session(self, session_id):
        target = self.server_page
        return SessionStateResponse(
            session_id=session_id, config_id="remote", current_page_id=target,
            page=page(target, end=(target == "end")),
            ended_at=utc_now() if target == "end" else None,
        )

    async def randomize(self, session_id, assignment_type, conditions, state_key):
        self.randomize_calls += 1
        await asyncio.sleep(0)
        return AssignmentResult(condition=conditions[0], existing=False)


@pytest.mark.asyncio
async def test_remote_failure_keeps_current_page():
    runner = RemoteFlowRunner("remote", ScriptedClient())
    await runner.start()

    with pytest.raises(TransportError):
        await runner.advance("broken")
    assert runner.view().current_page_id == "one"


@pytest.mark.asyncio
async def test_stale_remote_response_is_discarded():
    client = ScriptedClient()
    client.gates["slow"] = asyncio.Event()
    runner = RemoteFlowRunner("remote", client)
    await runner.start()

    slow = asyncio.create_task(runner.advance("slow"))
    await asyncio.sleep(0)
    await runner.advance("fast")

    client.gates["slow"].set()
    await slow

    assert runner.view().current_page_id == "fast"


@pytest.mark.asyncio
async def test_resync_picks_up_the_server_page(randomization):
    client = ScriptedClient()
    machine = SessionStateMachine(ConfigRegistry(), randomization, client=client)
    await machine.bootstrap("remote")

    with pytest.raises(TransportError):
        await machine.advance("broken")
    assert machine.view().current_page_id == "one"

    client.server_page = "two"
    assert (await machine.resync()).current_page_id == "two"
    assert not machine.is_terminal

    client.server_page = "end"
    await machine.resync()
    assert machine.is_terminal
    assert (await machine.advance("one")).current_page_id == "end"


@pytest.mark.asyncio
async def test_local_resync_keeps_the_view(machine):
    await machine.bootstrap("study")
    await machine.advance("assign")

    assert (await machine.resync()).current_page_id == "assign"


@pytest.mark.asyncio
async def test_remote_machine_latch_calls_service_once(randomization):
    client = ScriptedClient()
    machine = SessionStateMachine(ConfigRegistry(), randomization, client=client)
    await machine.bootstrap("remote")
    assert machine.state == RunState.REMOTE

    props = RandomizationProps(assignmentType="balanced_random", conditions=["X", "Y"], stateKey="arm")
    results = await asyncio.gather(machine.randomize(props), machine.randomize(props))

    assert client.randomize_calls == 1
    assert results[0] == results[1]
    assert machine.view().user_state == {"arm": "X"}

    await machine.advance("end")
    assert machine.is_terminal
    assert (await machine.advance("one")).current_page_id == "end"
