"""
Event models for interaction telemetry
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum
from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types produced by the runtime"""
    # Navigation events
    SESSION_START = "session_start"
    NAVIGATION = "navigation"
    SESSION_END = "session_end"
    
    # Interaction events
    SURVEY_SUBMISSION = "survey_submission"
    RANDOMIZATION_ASSIGNMENT = "randomization_assignment"
    
    # Custom events
    CUSTOM = "custom"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FlowEvent(BaseModel):
    """Typed event emitted by a run"""
    type: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utc_now)
    component_type: str = Field(..., min_length=1)
    component_id: str = Field(..., min_length=1)
    data: Dict[str, Any] = {}
    idempotency_key: Optional[str] = None


class EventInDB(FlowEvent):
    """Event as stored in database"""
    session_id: str
    config_id: str
    page_id: Optional[str] = None
    created_at: datetime


class EventResponse(BaseModel):
    """Event response"""
    event_id: str
    deduplicated: bool = False
