"""
Best-effort event pipeline

Events ride alongside the action that produced them. Delivery failures
are logged and handed to an observer as EventDeliveryError; they never
propagate to the caller, so a survey submission or navigation succeeds
even when telemetry is down.
"""
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Set, Tuple
import asyncio
import logging

from flowlab.core.errors import EventDeliveryError
from flowlab.models.event import FlowEvent

logger = logging.getLogger(__name__)

DeliveryObserver = Callable[[EventDeliveryError], None]


class EventSink(ABC):
    """Destination for run events"""

    @abstractmethod
    async def deliver(self, session_id: str, event: FlowEvent) -> None:
        ...


class MemoryEventSink(EventSink):
    """Keeps events in memory; local runs and tests"""

    def __init__(self):
        self.events: List[Tuple[str, FlowEvent]] = []

    async def deliver(self, session_id: str, event: FlowEvent) -> None:
        self.events.append((session_id, event))

    def of_type(self, event_type: str) -> List[FlowEvent]:
        return [event for _, event in self.events if event.type == event_type]


class RemoteEventSink(EventSink):
    """Forwards events to the session service"""

    def __init__(self, client):
        self.client = client

    async def deliver(self, session_id: str, event: FlowEvent) -> None:
        await self.client.submit_event(session_id, event)


class EventPipeline:
    """
    Fans events out to sinks.

    emit() awaits delivery but never raises; emit_nowait() schedules it
    in the background. drain() waits for scheduled deliveries.
    """

    def __init__(self, sinks: Optional[List[EventSink]] = None, observer: Optional[DeliveryObserver] = None):
        self.sinks = list(sinks or [])
        self.observer = observer
        self.failures: List[EventDeliveryError] = []
        self._pending: Set[asyncio.Task] = set()

    async def emit(self, session_id: str, event: FlowEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.deliver(session_id, event)
            except Exception as e:
                self._report(EventDeliveryError(event.type, e), session_id)

    def emit_nowait(self, session_id: str, event: FlowEvent) -> asyncio.Task:
        task = asyncio.create_task(self.emit(session_id, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))

    def _report(self, error: EventDeliveryError, session_id: str) -> None:
        logger.warning(f"Event delivery failed for session {session_id}: {error}")
        self.failures.append(error)
        if self.observer is not None:
            self.observer(error)
