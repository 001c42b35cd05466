"""
Session models for flow runs

Supports:
- Persisted remote sessions (RunSession)
- Write-once condition assignments (AssignmentRecord)
- Request/response shapes of the session service
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from flowlab.models.flow import AssignmentStrategy, CompiledGraph, CompiledNode


class StartStatus(str, Enum):
    """Outcome of a session start request"""
    CREATED = "created"
    RESUMED = "resumed"
    BLOCKED = "blocked"


class RunSession(BaseModel):
    """Server-persisted run of a flow for one participant"""
    session_id: str
    config_id: str
    participant_id: Optional[str] = None
    current_page_id: str
    user_state: Dict[str, Any] = {}
    ended_at: Optional[datetime] = None
    end_redirect_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AssignmentRecord(BaseModel):
    """Condition awarded to one participant for one state key. Never overwritten."""
    scope_key: str  # Session or participant the assignment belongs to
    state_key: str  # user_state key the condition is written to
    condition: str
    strategy: AssignmentStrategy
    balance_key: str  # Pool the strategy balances across (usually experiment + state key)
    assigned_at: datetime


class AssignmentResult(BaseModel):
    """Result of an assignment request"""
    condition: str
    existing: bool


class RequestBody(BaseModel):
    """Session service request body: snake_case or camelCase keys, nothing else"""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


def accepts(default: Any, name: str, *spellings: str, **constraints: Any) -> Any:
    return Field(default, validation_alias=AliasChoices(name, *spellings), **constraints)


class SessionStartRequest(RequestBody):
    """Session creation request"""
    config_id: str = accepts(..., "config_id", "configId", "experimentId", min_length=1)
    participant_id: Optional[str] = accepts(None, "participant_id", "participantId")  # Stable identity for resumption


class SessionStateResponse(BaseModel):
    """Current state of a session"""
    session_id: str
    config_id: str
    current_page_id: str
    page: Optional[CompiledNode] = None
    user_state: Dict[str, Any] = {}
    ended_at: Optional[datetime] = None
    status: Optional[StartStatus] = None
    deduplicated: bool = False


class AdvanceRequest(RequestBody):
    """Request to move a session to another page"""
    target: Optional[str] = Field(None, min_length=1)  # None follows the flow edges
    idempotency_key: str = accepts(..., "idempotency_key", "idempotencyKey", min_length=1)


class StateUpdateRequest(RequestBody):
    """Partial user_state update"""
    updates: Dict[str, Any]
    idempotency_key: Optional[str] = accepts(None, "idempotency_key", "idempotencyKey")


class StateUpdateResponse(BaseModel):
    success: bool
    user_state: Dict[str, Any] = {}


class RandomizeRequest(RequestBody):
    """
    Treatment assignment request for one state key.
    assignment_type stays a plain string so an unknown strategy reaches the
    engine and fails there as an assignment config error.
    """
    assignment_type: str = accepts(AssignmentStrategy.RANDOM.value, "assignment_type", "assignmentType")
    conditions: List[str] = []
    state_key: str = accepts("treatment", "state_key", "stateKey")


class StoredConfig(BaseModel):
    """Compiled flow as persisted by the session service"""
    config_id: str
    graph_json: str  # Canonical JSON artifact
    allow_retake: bool = False
    created_at: datetime
    updated_at: datetime
    
    def graph(self) -> CompiledGraph:
        return CompiledGraph.from_canonical_json(self.graph_json)


class ConfigSaveResponse(BaseModel):
    config_id: str
    initial_page_id: Optional[str] = None
    node_count: int
    allow_retake: bool = False
