import pytest

from flowlab.core.errors import UnknownNodeError
from flowlab.models.flow import ButtonAction
from flowlab.services.config_compiler import compile_flow
from flowlab.services.navigation import resolve_branches, resolve_edge


ROUTING_FLOW = """
nodes:
  - id: start
  - id: minors
  - id: seniors
  - id: everyone
  - id: dead_end
flow:
  - {from: start, to: everyone}
  - {from: start, to: minors, when: "user_state.age < 18"}
  - {from: start, to: seniors, when: "user_state.age >= 65"}
  - {from: start, to: dead_end}
"""


@pytest.fixture
def routing_graph():
    return compile_flow(ROUTING_FLOW)


def test_first_matching_guard_wins(routing_graph):
    assert resolve_edge(routing_graph, "start", {"age": 12}) == "minors"
    assert resolve_edge(routing_graph, "start", {"age": 70}) == "seniors"


def test_first_unguarded_edge_is_the_fallback(routing_graph):
    assert resolve_edge(routing_graph, "start", {"age": 30}) == "everyone"
    assert resolve_edge(routing_graph, "start", {}) == "everyone"


def test_node_without_edges(routing_graph):
    with pytest.raises(UnknownNodeError):
        resolve_edge(routing_graph, "dead_end", {})


def test_branches_fall_back_to_target():
    action = ButtonAction.model_validate({
        "type": "go_to",
        "target": "default",
        "branches": [
            {"when": "user_state.group == 'a'", "target": "page_a"},
            {"when": "user_state.group == 'b'", "target": "page_b"},
        ],
    })

    assert resolve_branches(action, {"group": "b"}) == "page_b"
    assert resolve_branches(action, {"group": "c"}) == "default"


def test_branches_without_target():
    action = ButtonAction.model_validate({
        "type": "go_to",
        "branches": [{"when": "user_state.ok == true", "target": "yes"}],
    })

    assert resolve_branches(action, {"ok": False}) is None
