"""Outcome events delivered to the UI layer."""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from .models import ListEntry, MediaEntity, utcnow

logger = logging.getLogger(__name__)


class _Event(BaseModel):
    at: datetime = Field(default_factory=utcnow)


class MediaReady(_Event):
    type: Literal["media_ready"] = "media_ready"
    media: MediaEntity


class ListUpdated(_Event):
    type: Literal["list_updated"] = "list_updated"
    entries: list[ListEntry]


class AuthRequired(_Event):
    type: Literal["auth_required"] = "auth_required"


class SyncError(_Event):
    type: Literal["sync_error"] = "sync_error"
    kind: str
    message: str
    media_id: Optional[int] = None


Event = Union[MediaReady, ListUpdated, AuthRequired, SyncError]


class EventBus:
    """Fan-out of events to any number of asyncio.Queue subscribers."""

    def __init__(self, history_size: int = 50):
        self._subscribers: list[asyncio.Queue] = []
        self.history: deque[Event] = deque(maxlen=history_size)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: Event) -> None:
        logger.debug(f"Event: {event.type}")
        self.history.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)
