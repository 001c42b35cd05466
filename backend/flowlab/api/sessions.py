"""
Session API routes (participant-facing, remote mode)
"""
from fastapi import APIRouter, Depends
import logging

from flowlab.api.deps import get_session_service, http_error
from flowlab.core.errors import FlowlabError
from flowlab.models.session import (
    AdvanceRequest,
    AssignmentResult,
    RandomizeRequest,
    SessionStartRequest,
    SessionStateResponse,
    StateUpdateRequest,
    StateUpdateResponse,
)
from flowlab.services.session_service import SessionService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/start", response_model=SessionStateResponse)
async def start_session(
    request: SessionStartRequest,
    service: SessionService = Depends(get_session_service),
):
    """Start a new run, or resume the participant's unfinished one"""
    try:
        return await service.start(request)
    except FlowlabError as e:
        raise http_error(e)


@router.get("/{session_id}", response_model=SessionStateResponse)
async def get_session(
    session_id: str,
    service: SessionService = Depends(get_session_service),
):
    try:
        return await service.get_state(session_id)
    except FlowlabError as e:
        raise http_error(e)


@router.post("/{session_id}/advance", response_model=SessionStateResponse)
async def advance_session(
    session_id: str,
    request: AdvanceRequest,
    service: SessionService = Depends(get_session_service),
):
    """
    Move to a page. Omitting target follows the flow edges.
    Replaying an idempotency key returns the current state flagged deduplicated.
    """
    try:
        return await service.advance(session_id, request.target, request.idempotency_key)
    except FlowlabError as e:
        raise http_error(e)


@router.post("/{session_id}/state", response_model=StateUpdateResponse)
async def update_state(
    session_id: str,
    request: StateUpdateRequest,
    service: SessionService = Depends(get_session_service),
):
    try:
        return await service.update_state(session_id, request.updates)
    except FlowlabError as e:
        raise http_error(e)


@router.post("/{session_id}/randomize", response_model=AssignmentResult)
async def randomize(
    session_id: str,
    request: RandomizeRequest,
    service: SessionService = Depends(get_session_service),
):
    """Assign a condition; repeated calls return the stored one"""
    try:
        return await service.randomize(session_id, request)
    except FlowlabError as e:
        raise http_error(e)
