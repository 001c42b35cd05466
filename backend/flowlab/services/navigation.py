"""
Navigation target resolution shared by local runs and the session service
"""
from typing import Any, Dict, Optional
import logging

from flowlab.core.errors import UnknownNodeError
from flowlab.models.flow import ButtonAction, CompiledGraph
from flowlab.services.guard_engine import GuardEngine

logger = logging.getLogger(__name__)


def resolve_edge(
    graph: CompiledGraph,
    node_id: str,
    user_state: Dict[str, Any],
    guards: Optional[GuardEngine] = None,
) -> str:
    """
    Pick the outgoing edge of `node_id` to follow.

    Guarded edges are tried in authoring order and the first match wins.
    Otherwise the first unguarded edge is taken.
    """
    guards = guards or GuardEngine()
    fallback: Optional[str] = None

    for edge in graph.edges_from(node_id):
        if edge.when is None:
            if fallback is None:
                fallback = edge.target
            continue
        if guards.evaluate(edge.when, user_state):
            return edge.target

    if fallback is None:
        raise UnknownNodeError(None, f"no outgoing edge from '{node_id}' matches")
    return fallback


def resolve_branches(
    action: ButtonAction,
    user_state: Dict[str, Any],
    guards: Optional[GuardEngine] = None,
) -> Optional[str]:
    """Target of a go_to action: first matching branch, else the plain target"""
    guards = guards or GuardEngine()
    for branch in action.branches or []:
        if guards.evaluate(branch.when, user_state):
            return branch.target
    return action.target

