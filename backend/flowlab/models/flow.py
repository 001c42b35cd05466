"""
Flow configuration models

Two shapes live here:
  - FlowDocument: the authored input, which may use the legacy node
    shorthand (text / buttons / survey) instead of explicit components.
  - CompiledGraph: the canonical output of the compiler. Components are
    always materialized and shorthand fields never appear.

Component variants form a closed tagged union on `type`. Every model
rejects unknown fields, so a typo in a config is a validation error
rather than a silently ignored key.
"""
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from enum import Enum
import json

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator, model_validator

from flowlab.core.errors import UnknownNodeError


def aliased(default: Any, serialized: str, *accepted: str) -> Any:
    """Field accepting the camelCase key (and any legacy spellings), dumped as camelCase"""
    return Field(
        default,
        validation_alias=AliasChoices(serialized, *accepted),
        serialization_alias=serialized,
    )


class FlowModel(BaseModel):
    """Closed, immutable base for every flow model"""
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class ActionType(str, Enum):
    """Navigation actions a button may dispatch"""
    GO_TO = "go_to"  # Explicit target and/or guarded branches
    NEXT = "next"    # Follow the flow edges leaving the current node


class AssignmentStrategy(str, Enum):
    """Strategies for assigning a participant to a condition"""
    RANDOM = "random"                    # One seeded draw per participant
    BALANCED_RANDOM = "balanced_random"  # Least-assigned condition, seeded tie-break
    BLOCK = "block"                      # Shuffled permutation per block of len(conditions)


# ============================================================================
# Buttons and actions
# ============================================================================

class Branch(FlowModel):
    """Guarded target for a go_to action"""
    when: str
    target: str


class ButtonAction(FlowModel):
    type: ActionType
    target: Optional[str] = None
    branches: Optional[List[Branch]] = None
    skip_validation: Optional[bool] = aliased(None, "skipValidation", "skip_validation")

    @model_validator(mode="after")
    def _go_to_needs_destination(self) -> "ButtonAction":
        if self.type == ActionType.GO_TO and not self.target and not self.branches:
            raise ValueError("go_to action requires 'target' or 'branches'")
        return self


class Button(FlowModel):
    text: str
    action: ButtonAction
    id: Optional[str] = None


# ============================================================================
# Component variants
# ============================================================================

class TextProps(FlowModel):
    text: str
    markdown: Optional[bool] = None


class ButtonsProps(FlowModel):
    buttons: List[Button]


class SurveyProps(FlowModel):
    definition: Union[List[Dict[str, Any]], Dict[str, Any]]
    source: Optional[Literal["survey", "survey_items"]] = None


class RandomizationProps(FlowModel):
    assignment_type: AssignmentStrategy = aliased(AssignmentStrategy.RANDOM, "assignmentType", "assignment_type")
    conditions: List[str] = []
    state_key: str = aliased("treatment", "stateKey", "state_key")
    target: Optional[str] = None  # Auto-advance here once assigned
    show_assignment: Optional[bool] = aliased(None, "showAssignment", "show_assignment")


class MediaProps(FlowModel):
    type: Literal["image", "video", "audio"]
    src: str
    alt: Optional[str] = None
    label: Optional[str] = None
    captions: Optional[str] = None


class TextComponent(FlowModel):
    type: Literal["text"]
    props: TextProps
    id: Optional[str] = None


class ButtonsComponent(FlowModel):
    type: Literal["buttons"]
    props: ButtonsProps
    id: Optional[str] = None


class SurveyComponent(FlowModel):
    type: Literal["survey"]
    props: SurveyProps
    id: Optional[str] = None


class RandomizationComponent(FlowModel):
    type: Literal["randomization"]
    props: RandomizationProps
    id: Optional[str] = None


class MediaComponent(FlowModel):
    type: Literal["media"]
    props: MediaProps
    id: Optional[str] = None


Component = Annotated[
    Union[TextComponent, ButtonsComponent, SurveyComponent, RandomizationComponent, MediaComponent],
    Field(discriminator="type"),
]


# ============================================================================
# Authored document
# ============================================================================

SurveyDefinition = Union[List[Dict[str, Any]], Dict[str, Any]]


class Node(FlowModel):
    """
    A page as authored. May carry legacy shorthand (text, buttons, survey)
    that the compiler lowers into components.
    """
    id: str
    end: Optional[bool] = None
    end_redirect_url: Optional[str] = aliased(None, "endRedirectUrl", "end_redirect_url")

    # Legacy shorthand
    text: Optional[str] = None
    buttons: Optional[List[Button]] = None
    survey: Optional[SurveyDefinition] = None
    survey_items: Optional[SurveyDefinition] = aliased(None, "survey_items", "surveyItems")

    components: Optional[List[Component]] = None


class FlowEdge(FlowModel):
    """Directed transition. First matching `when` wins; an unguarded edge is the fallback."""
    source: str = aliased(..., "from")
    target: str = aliased(..., "to")
    when: Optional[str] = None


class FlowDocument(FlowModel):
    schema_version: Optional[str] = aliased(None, "schemaVersion", "schema_version")
    initial_page_id: Optional[str] = aliased(None, "initialPageId", "initialNodeId", "initial_page_id")
    nodes: List[Node]
    flow: List[FlowEdge]

    @field_validator("schema_version", mode="before")
    @classmethod
    def _version_as_string(cls, value: Any) -> Any:
        # `schema_version: 1` in YAML arrives as a number
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


# ============================================================================
# Canonical compiled graph
# ============================================================================

class CompiledNode(FlowModel):
    id: str
    end: bool = False
    end_redirect_url: Optional[str] = aliased(None, "endRedirectUrl", "end_redirect_url")
    components: List[Component] = []


class CompiledGraph(FlowModel):
    """
    Validated canonical graph. Nodes keep authoring order. Edge and
    navigation targets are checked when dereferenced, not at compile time.
    """
    schema_version: Optional[str] = aliased(None, "schemaVersion", "schema_version")
    initial_page_id: Optional[str] = aliased(None, "initialPageId", "initial_page_id")
    nodes: Dict[str, CompiledNode]
    flow: List[FlowEdge] = []

    def get_node(self, node_id: Optional[str]) -> CompiledNode:
        """Dereference a node id, failing fast on unknown ids"""
        node = self.nodes.get(node_id) if node_id is not None else None
        if node is None:
            raise UnknownNodeError(node_id)
        return node

    def edges_from(self, node_id: str) -> List[FlowEdge]:
        return [edge for edge in self.flow if edge.source == node_id]

    def to_canonical_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_canonical_json(self) -> str:
        """Byte-stable JSON artifact suitable for static serving to local-mode clients"""
        return json.dumps(
            self.to_canonical_dict(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    @classmethod
    def from_canonical_json(cls, data: Union[str, bytes]) -> "CompiledGraph":
        return cls.model_validate_json(data)
