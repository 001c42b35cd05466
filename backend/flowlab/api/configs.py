"""
Config API routes: upload YAML, serve the canonical compiled artifact
"""
from fastapi import APIRouter, Depends, Request, Response, Query
import logging

from flowlab.api.deps import get_session_service, http_error
from flowlab.core.errors import FlowlabError
from flowlab.models.session import ConfigSaveResponse
from flowlab.services.session_service import SessionService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{config_id}", response_model=ConfigSaveResponse)
async def save_config(
    config_id: str,
    request: Request,
    allow_retake: bool = Query(False),
    service: SessionService = Depends(get_session_service),
):
    """Compile the YAML request body and store it under config_id"""
    source = (await request.body()).decode("utf-8")
    try:
        graph = await service.save_config(config_id, source, allow_retake=allow_retake)
    except FlowlabError as e:
        raise http_error(e)

    return ConfigSaveResponse(
        config_id=config_id,
        initial_page_id=graph.initial_page_id,
        node_count=len(graph.nodes),
        allow_retake=allow_retake,
    )


@router.get("/{config_id}")
async def get_config(
    config_id: str,
    service: SessionService = Depends(get_session_service),
):
    """Canonical JSON, byte-identical for the same source"""
    try:
        body = await service.get_config_json(config_id)
    except FlowlabError as e:
        raise http_error(e)
    return Response(content=body, media_type="application/json")
