"""
HTTP client for the remote session service

Every call either returns the confirmed server state or raises
TransportError; the caller never sees a half-applied response.
"""
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging

import httpx

from flowlab.core.config import settings
from flowlab.core.errors import TransportError
from flowlab.models.event import EventResponse, FlowEvent
from flowlab.models.session import AssignmentResult, SessionStateResponse, StateUpdateResponse

logger = logging.getLogger(__name__)


class SessionServiceClient:
    """Async client for the session service API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.SESSION_SERVICE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.SESSION_SERVICE_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> "SessionServiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start_session(self, experiment_id: str, participant_id: Optional[str] = None) -> SessionStateResponse:
        data = await self._request(
            "POST", "/sessions/start",
            json={"config_id": experiment_id, "participant_id": participant_id},
        )
        return SessionStateResponse.model_validate(data)

    async def get_session(self, session_id: str) -> SessionStateResponse:
        data = await self._request("GET", f"/sessions/{session_id}")
        return SessionStateResponse.model_validate(data)

    async def advance(
        self,
        session_id: str,
        target: Optional[str],
        idempotency_key: Optional[str] = None,
    ) -> SessionStateResponse:
        """
        Ask the server to move the session to `target`, or along the flow
        edges when target is None. Retries should reuse the idempotency key.
        """
        data = await self._request(
            "POST", f"/sessions/{session_id}/advance",
            json={"target": target, "idempotency_key": idempotency_key or str(uuid4())},
        )
        return SessionStateResponse.model_validate(data)

    async def submit_event(self, session_id: str, event: FlowEvent) -> EventResponse:
        data = await self._request(
            "POST", f"/sessions/{session_id}/events",
            json=event.model_dump(mode="json"),
        )
        return EventResponse.model_validate(data)

    async def update_state(self, session_id: str, updates: Dict[str, Any]) -> StateUpdateResponse:
        data = await self._request(
            "POST", f"/sessions/{session_id}/state",
            json={"updates": updates},
        )
        return StateUpdateResponse.model_validate(data)

    async def randomize(
        self,
        session_id: str,
        assignment_type: str,
        conditions: List[str],
        state_key: str,
    ) -> AssignmentResult:
        data = await self._request(
            "POST", f"/sessions/{session_id}/randomize",
            json={
                "assignment_type": assignment_type,
                "conditions": list(conditions),
                "state_key": state_key,
            },
        )
        return AssignmentResult.model_validate(data)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.error(f"Session service rejected {method} {path}: {e.response.status_code} {detail}")
            raise TransportError(
                f"Session service returned {e.response.status_code}: {detail}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Session service unreachable for {method} {path}: {e}")
            raise TransportError(f"Failed to reach session service: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid response from session service: {e}", status_code=response.status_code) from e


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)
