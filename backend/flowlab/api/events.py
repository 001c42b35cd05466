"""
Event logging API routes
"""
from fastapi import APIRouter, Depends
import logging

from flowlab.api.deps import get_session_service, http_error
from flowlab.core.errors import FlowlabError
from flowlab.models.event import EventResponse, FlowEvent
from flowlab.services.session_service import SessionService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{session_id}/events", response_model=EventResponse)
async def log_event(
    session_id: str,
    event: FlowEvent,
    service: SessionService = Depends(get_session_service),
):
    """Record a run event; a repeated idempotency key is acknowledged as deduplicated"""
    try:
        return await service.record_event(session_id, event)
    except FlowlabError as e:
        raise http_error(e)


@router.get("/{session_id}/events")
async def get_session_events(
    session_id: str,
    service: SessionService = Depends(get_session_service),
):
    """Get all events for a session"""
    try:
        await service.get_state(session_id)
    except FlowlabError as e:
        raise http_error(e)

    events = await service.events.list_for_session(session_id)
    result = [event.model_dump(mode="json") for event in events]
    return {"events": result, "count": len(result)}
