"""Server-Sent Events progress stream for a single provisioning run."""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

# Set up logging
logger = logging.getLogger(__name__)

EVENT_PROGRESS = "progress"
EVENT_SUCCESS = "success"
EVENT_FAILURE = "failure"


class ProgressEvent(BaseModel):
    type: Literal["progress"] = EVENT_PROGRESS
    step: str
    message: str


class SuccessEvent(BaseModel):
    type: Literal["success"] = EVENT_SUCCESS
    message: str
    result: Dict[str, Any] = Field(default_factory=dict)


class FailureEvent(BaseModel):
    type: Literal["failure"] = EVENT_FAILURE
    reason: str


StreamEvent = Union[ProgressEvent, SuccessEvent, FailureEvent]


def format_sse(event: StreamEvent) -> str:
    """Serialize an event as one SSE frame."""
    return f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"


class ProgressStream:
    """Ordered, single-use event channel between a workflow and one client.

    The stream ends exactly once, on the first success or failure event.
    Anything emitted after that is dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[StreamEvent]] = asyncio.Queue()
        self._closed = False
        self.events: List[StreamEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def _emit(self, event: StreamEvent) -> None:
        if self._closed:
            logger.warning(f"Dropping {event.type} event on closed stream")
            return
        self.events.append(event)
        self._queue.put_nowait(event)
        if event.type != EVENT_PROGRESS:
            self._closed = True
            self._queue.put_nowait(None)

    def progress(self, step: str, message: str) -> None:
        self._emit(ProgressEvent(step=step, message=message))

    def succeed(self, message: str, result: Optional[Dict[str, Any]] = None) -> None:
        self._emit(SuccessEvent(message=message, result=result or {}))

    def fail(self, reason: str) -> None:
        self._emit(FailureEvent(reason=reason))

    async def frames(self) -> AsyncIterator[str]:
        """Yield SSE frames until the stream closes."""
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield format_sse(event)
