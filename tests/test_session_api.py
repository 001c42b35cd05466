import pytest

from flowlab.core.errors import TransportError
from flowlab.services.config_compiler import compile_to_json
from flowlab.services.config_registry import ConfigRegistry
from flowlab.services.event_pipeline import EventPipeline, RemoteEventSink
from flowlab.services.session_machine import RunState, SessionStateMachine

from tests.shared_data import STUDY_FLOW


async def upload(api_client, config_id="study", source=STUDY_FLOW, allow_retake=False):
    response = await api_client.post(
        f"/configs/{config_id}",
        content=source.encode("utf-8"),
        params={"allow_retake": str(allow_retake).lower()},
        headers={"content-type": "application/x-yaml"},
    )
    assert response.status_code == 200, response.text
    return response.json()


async def start(api_client, participant_id=None, config_id="study"):
    return await api_client.post(
        "/sessions/start",
        json={"config_id": config_id, "participant_id": participant_id},
    )


async def advance(api_client, session_id, target, key):
    return await api_client.post(
        f"/sessions/{session_id}/advance",
        json={"target": target, "idempotency_key": key},
    )


@pytest.mark.asyncio
async def test_health(api_client):
    response = await api_client.get("/health")
    assert response.json()["status"] == "healthy"


# ============================================================================
# Configs
# ============================================================================

@pytest.mark.asyncio
async def test_config_upload_serves_canonical_json(api_client):
    saved = await upload(api_client)
    assert saved == {"config_id": "study", "initial_page_id": "welcome", "node_count": 5, "allow_retake": False}

    response = await api_client.get("/configs/study")
    assert response.status_code == 200
    assert response.text == compile_to_json(STUDY_FLOW)


@pytest.mark.asyncio
async def test_invalid_config_lists_every_error(api_client):
    response = await api_client.post(
        "/configs/broken",
        content=b"nodes:\n  - id: a\n    components: [{type: hologram, props: {}}]\n",
    )
    assert response.status_code == 422
    errors = response.json()["detail"]["errors"]
    assert any("Node[0] 'a'" in e for e in errors)
    assert any("flow" in e for e in errors)


@pytest.mark.asyncio
async def test_missing_config(api_client):
    assert (await api_client.get("/configs/nope")).status_code == 404
    assert (await start(api_client, config_id="nope")).status_code == 404


# ============================================================================
# Sessions
# ============================================================================

@pytest.mark.asyncio
async def test_start_resume_and_block(api_client):
    await upload(api_client)

    created = (await start(api_client, "p1")).json()
    assert created["status"] == "created"
    assert created["current_page_id"] == "welcome"
    assert created["page"]["components"][0]["props"]["text"] == "Hello {{user_state.name}}"

    resumed = (await start(api_client, "p1")).json()
    assert resumed["status"] == "resumed"
    assert resumed["session_id"] == created["session_id"]

    done = await advance(api_client, created["session_id"], "done", "k1")
    assert done.json()["ended_at"] is not None

    blocked = await start(api_client, "p1")
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["status"] == "blocked"
    assert blocked.json()["detail"]["session_id"] == created["session_id"]


@pytest.mark.asyncio
async def test_retake_creates_a_new_session(api_client):
    await upload(api_client, allow_retake=True)
    first = (await start(api_client, "p1")).json()
    await advance(api_client, first["session_id"], "done", "k1")

    second = (await start(api_client, "p1")).json()
    assert second["status"] == "created"
    assert second["session_id"] != first["session_id"]


@pytest.mark.asyncio
async def test_anonymous_starts_never_resume(api_client):
    await upload(api_client)
    first = (await start(api_client)).json()
    second = (await start(api_client)).json()
    assert first["session_id"] != second["session_id"]


@pytest.mark.asyncio
async def test_duplicate_advance_is_deduplicated(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]

    first = (await advance(api_client, session_id, "assign", "same-key")).json()
    replay = (await advance(api_client, session_id, "assign", "same-key")).json()

    assert first["current_page_id"] == "assign"
    assert first["deduplicated"] is False
    assert replay["deduplicated"] is True
    assert replay["current_page_id"] == "assign"


@pytest.mark.asyncio
async def test_advance_follows_edges_when_target_is_omitted(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]

    response = await advance(api_client, session_id, None, "k1")
    assert response.json()["current_page_id"] == "assign"


@pytest.mark.asyncio
async def test_unknown_target_is_rejected(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]

    response = await advance(api_client, session_id, "does-not-exist", "k1")
    assert response.status_code == 404

    state = (await api_client.get(f"/sessions/{session_id}")).json()
    assert state["current_page_id"] == "welcome"


@pytest.mark.asyncio
async def test_completed_session_does_not_move(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]
    await advance(api_client, session_id, "done", "k1")

    response = await advance(api_client, session_id, "welcome", "k2")
    assert response.json()["current_page_id"] == "done"


@pytest.mark.asyncio
async def test_unknown_session(api_client):
    assert (await api_client.get("/sessions/missing")).status_code == 404
    assert (await advance(api_client, "missing", "welcome", "k")).status_code == 404


@pytest.mark.asyncio
async def test_state_updates(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]

    response = await api_client.post(
        f"/sessions/{session_id}/state",
        json={"updates": {"name": "Ada", "survey.q1": 4}},
    )
    assert response.json() == {"success": True, "user_state": {"name": "Ada", "survey": {"q1": 4}}}

    for bad in ("$where", ".lead", "trail."):
        rejected = await api_client.post(f"/sessions/{session_id}/state", json={"updates": {bad: 1}})
        assert rejected.status_code == 422


@pytest.mark.asyncio
async def test_randomize_is_idempotent(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]
    body = {"assignment_type": "block", "conditions": ["A", "B"], "state_key": "treatment"}

    first = (await api_client.post(f"/sessions/{session_id}/randomize", json=body)).json()
    second = (await api_client.post(f"/sessions/{session_id}/randomize", json=body)).json()

    assert first["existing"] is False
    assert second == {"condition": first["condition"], "existing": True}
    state = (await api_client.get(f"/sessions/{session_id}")).json()
    assert state["user_state"]["treatment"] == first["condition"]


@pytest.mark.asyncio
async def test_block_balance_across_sessions(api_client):
    await upload(api_client)
    body = {"assignment_type": "block", "conditions": ["A", "B"], "state_key": "treatment"}

    conditions = []
    for _ in range(4):
        session_id = (await start(api_client)).json()["session_id"]
        result = await api_client.post(f"/sessions/{session_id}/randomize", json=body)
        conditions.append(result.json()["condition"])

    assert sorted(conditions[:2]) == ["A", "B"]
    assert sorted(conditions[2:]) == ["A", "B"]


@pytest.mark.asyncio
async def test_randomize_config_errors(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]

    empty = await api_client.post(f"/sessions/{session_id}/randomize", json={"conditions": []})
    unknown = await api_client.post(
        f"/sessions/{session_id}/randomize",
        json={"assignment_type": "weighted", "conditions": ["A"]},
    )
    assert empty.status_code == 400
    assert unknown.status_code == 400


@pytest.mark.asyncio
async def test_randomize_accepts_camel_case_fields(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]

    bogus = await api_client.post(
        f"/sessions/{session_id}/randomize",
        json={"assignmentType": "nonsense", "conditions": ["A", "B"], "stateKey": "arm"},
    )
    assert bogus.status_code == 400

    result = await api_client.post(
        f"/sessions/{session_id}/randomize",
        json={"assignmentType": "block", "conditions": ["A", "B"], "stateKey": "arm"},
    )
    assert result.status_code == 200
    state = (await api_client.get(f"/sessions/{session_id}")).json()
    assert state["user_state"]["arm"] == result.json()["condition"]
    assert "treatment" not in state["user_state"]


@pytest.mark.asyncio
async def test_unknown_request_fields_are_rejected(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]

    randomize = await api_client.post(
        f"/sessions/{session_id}/randomize",
        json={"strategy": "block", "conditions": ["A", "B"]},
    )
    moved = await api_client.post(
        f"/sessions/{session_id}/advance",
        json={"target": "assign", "idempotency_key": "k1", "force": True},
    )
    started = await api_client.post("/sessions/start", json={"config_id": "study", "participant": "p1"})

    assert randomize.status_code == 422
    assert moved.status_code == 422
    assert started.status_code == 422
    state = (await api_client.get(f"/sessions/{session_id}")).json()
    assert state["current_page_id"] == "welcome"
    assert state["user_state"] == {}


@pytest.mark.asyncio
async def test_events_are_deduplicated(api_client):
    await upload(api_client)
    session_id = (await start(api_client)).json()["session_id"]
    event = {
        "type": "survey_submission",
        "component_type": "survey",
        "component_id": "intake",
        "data": {"responses": {"q1": "yes"}},
        "idempotency_key": "evt-1",
    }

    first = (await api_client.post(f"/sessions/{session_id}/events", json=event)).json()
    again = (await api_client.post(f"/sessions/{session_id}/events", json=event)).json()

    assert again == {"event_id": first["event_id"], "deduplicated": True}
    listed = (await api_client.get(f"/sessions/{session_id}/events")).json()
    assert listed["count"] == 1
    assert listed["events"][0]["page_id"] == "welcome"


# ============================================================================
# Remote-mode state machine against the in-process service
# ============================================================================

@pytest.mark.asyncio
async def test_remote_run_end_to_end(api_client, service_client, randomization):
    await upload(api_client)
    machine = SessionStateMachine(
        ConfigRegistry(),
        randomization,
        client=service_client,
        events=EventPipeline([RemoteEventSink(service_client)]),
        participant_id="remote-p1",
    )

    view = await machine.bootstrap("study")
    assert machine.state == RunState.REMOTE
    assert view.session_id

    with pytest.raises(TransportError) as exc:
        await machine.advance("does-not-exist")
    assert exc.value.status_code == 404
    assert machine.view().current_page_id == "welcome"

    await machine.submit_survey({"name": "Ada"})
    assert machine.render()["components"][0]["props"]["text"] == "Hello Ada"

    assert (await machine.dispatch({"type": "next"})).current_page_id == "assign"
    result = await machine.randomize(machine.view().page.components[0])
    view = await machine.dispatch({"type": "next"})
    assert view.current_page_id == f"treatment_{result.condition.lower()}"

    view = await machine.dispatch({"type": "go_to", "target": "done"})
    assert machine.is_terminal
    assert view.end_redirect_url == "https://example.org/complete"
    assert (await machine.advance("welcome")).current_page_id == "done"

    await machine.events.drain()
    assert machine.events.failures == []
    listed = (await api_client.get(f"/sessions/{view.session_id}/events")).json()
    types = [e["type"] for e in listed["events"]]
    assert types.count("navigation") == 3
    assert "randomization_assignment" in types
    assert "session_end" in types

    resumed = await start(api_client, "remote-p1")
    assert resumed.status_code == 409
