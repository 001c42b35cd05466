"""
Configuration compiler and validator for flow YAML

Turns an authored flow document into a canonical CompiledGraph:
- every structural violation is collected, never just the first
- legacy node shorthand (text / survey / buttons) is lowered into components
- edge targets are left for the session state machine to check on use,
  so partially-authored documents still compile for editing tools
"""
from typing import Dict, List, Any, Optional, Tuple
from pathlib import Path
import yaml
import logging

from pydantic import ValidationError as PydanticValidationError

from flowlab.core.errors import ValidationError
from flowlab.models.flow import (
    FlowDocument,
    Node,
    CompiledNode,
    CompiledGraph,
    TextComponent,
    TextProps,
    SurveyComponent,
    SurveyProps,
    ButtonsComponent,
    ButtonsProps,
)

logger = logging.getLogger(__name__)


def parse_source(source: str) -> Any:
    """Parse YAML (or JSON, which is a YAML subset) into plain Python data"""
    try:
        return yaml.safe_load(source)
    except yaml.YAMLError as e:
        raise ValidationError([f"Invalid YAML: {e}"])


def validate_flow_document(raw: Any) -> Tuple[Optional[FlowDocument], List[str]]:
    """
    Validate a parsed flow document.

    Returns (document, errors). The document is None when structural
    validation failed; errors is empty when the document is valid.
    """
    if not isinstance(raw, dict):
        return None, ["Document: expected a mapping with 'nodes' and 'flow'"]

    errors: List[str] = []
    document: Optional[FlowDocument] = None

    try:
        document = FlowDocument.model_validate(raw)
    except PydanticValidationError as e:
        errors.extend(_format_schema_error(err, raw) for err in e.errors())

    errors.extend(validate_node_ids(raw.get("nodes")))
    if raw.get("nodes") == []:
        errors.append("Document: nodes: a flow needs at least one node")

    if errors:
        return None, errors
    return document, errors


def validate_node_ids(nodes: Any) -> List[str]:
    """Every node needs a unique, non-empty id"""
    errors: List[str] = []
    if not isinstance(nodes, list):
        return errors

    seen = set()
    for i, node in enumerate(nodes):
        if not isinstance(node, dict):
            continue
        node_id = node.get("id")
        if not isinstance(node_id, str):
            # Missing or mistyped ids are reported by the schema pass
            continue
        if not node_id.strip():
            errors.append(f"Node[{i}]: 'id' must not be empty")
        elif node_id in seen:
            errors.append(f"Node[{i}]: Duplicate ID '{node_id}'")
        else:
            seen.add(node_id)

    return errors


def _format_schema_error(err: Dict[str, Any], raw: Dict[str, Any]) -> str:
    """Render a pydantic error with the node (or edge) it belongs to"""
    loc = tuple(err.get("loc", ()))
    message = err.get("msg", "invalid value")

    if len(loc) >= 2 and loc[0] == "nodes" and isinstance(loc[1], int):
        index = loc[1]
        node_id = None
        nodes = raw.get("nodes")
        if isinstance(nodes, list) and index < len(nodes) and isinstance(nodes[index], dict):
            node_id = nodes[index].get("id")
        prefix = f"Node[{index}] '{node_id}'" if isinstance(node_id, str) else f"Node[{index}]"
        rest = loc[2:]
    elif len(loc) >= 2 and loc[0] == "flow" and isinstance(loc[1], int):
        prefix = f"Flow[{loc[1]}]"
        rest = loc[2:]
    else:
        prefix = "Document"
        rest = loc

    path = _format_loc(rest)
    return f"{prefix}: {path}: {message}" if path else f"{prefix}: {message}"


def _format_loc(loc: Tuple[Any, ...]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path


def lower_node(node: Node) -> CompiledNode:
    """
    Lower legacy shorthand into explicit components.

    Order is fixed: text, survey, buttons, then any explicit components.
    The canonical node never carries the shorthand fields.
    """
    components = []

    if node.text is not None:
        components.append(TextComponent(type="text", props=TextProps(text=node.text)))

    if node.survey is not None:
        components.append(SurveyComponent(
            type="survey",
            props=SurveyProps(definition=node.survey, source="survey"),
        ))
    elif node.survey_items is not None:
        components.append(SurveyComponent(
            type="survey",
            props=SurveyProps(definition=node.survey_items, source="survey_items"),
        ))

    if node.buttons is not None:
        components.append(ButtonsComponent(type="buttons", props=ButtonsProps(buttons=node.buttons)))

    components.extend(node.components or [])

    return CompiledNode(
        id=node.id,
        end=bool(node.end),
        end_redirect_url=node.end_redirect_url,
        components=components,
    )


def compile_document(document: FlowDocument) -> CompiledGraph:
    """Canonicalize an already validated document"""
    nodes = {node.id: lower_node(node) for node in document.nodes}

    initial_page_id = document.initial_page_id
    if initial_page_id is None and document.nodes:
        initial_page_id = document.nodes[0].id

    return CompiledGraph(
        schema_version=document.schema_version,
        initial_page_id=initial_page_id,
        nodes=nodes,
        flow=list(document.flow),
    )


def compile_flow(source: str) -> CompiledGraph:
    """
    Compile an authored flow (YAML text) into a canonical graph.

    Raises ValidationError listing every violation when the document is invalid.
    """
    raw = parse_source(source)
    document, errors = validate_flow_document(raw)
    if errors:
        logger.info(f"Flow validation failed with {len(errors)} errors")
        raise ValidationError(errors)

    graph = compile_document(document)
    logger.info(
        f"Compiled flow: {len(graph.nodes)} nodes, {len(graph.flow)} edges, "
        f"initial page '{graph.initial_page_id}'"
    )
    return graph


def compile_file(path: Path) -> CompiledGraph:
    """Compile a YAML flow file"""
    with open(path, "r", encoding="utf-8") as f:
        return compile_flow(f.read())


def compile_to_json(source: str) -> str:
    """Compile YAML straight to the canonical JSON artifact"""
    return compile_flow(source).to_canonical_json()
