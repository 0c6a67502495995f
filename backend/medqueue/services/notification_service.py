"""
Fire-and-forget event fan-out to display boards and staff screens.

This broker only hands events to whoever subscribed to a scope key in this
process. Pushing them on to browsers, TVs or phones is not part of this
service and no route exposes the broker; a gateway running in the same
process (or a test) calls subscribe() and drains its queue.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List

from ..config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TOKEN_ISSUED = "TOKEN_ISSUED"
    QUEUE_UPDATE = "QUEUE_UPDATE"
    TV_ANNOUNCEMENT = "TV_ANNOUNCEMENT"
    OVERRIDE_APPLIED = "OVERRIDE_APPLIED"
    TOKENS_CASCADED = "TOKENS_CASCADED"
    SHIFT_UPDATE = "SHIFT_UPDATE"


TV_DISPLAY_SCOPE = "tv_display"


def department_channel(department: str) -> str:
    return f"queue_{department}"


def doctor_channel(doctor_id: str) -> str:
    return f"doctor_{doctor_id}"


class NotificationService:
    """In-process publish/subscribe broker."""

    _subscribers: Dict[str, List[asyncio.Queue]] = {}

    @classmethod
    def subscribe(cls, scope_key: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=settings.NOTIFICATION_QUEUE_SIZE)
        cls._subscribers.setdefault(scope_key, []).append(queue)
        return queue

    @classmethod
    def unsubscribe(cls, scope_key: str, queue: asyncio.Queue):
        queues = cls._subscribers.get(scope_key, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            cls._subscribers.pop(scope_key, None)

    @classmethod
    def reset(cls):
        cls._subscribers = {}

    @classmethod
    def publish(cls, scope_key: str, event_name: str, payload: Dict[str, Any]):
        """Enqueue an event for every subscriber of ``scope_key``. Never blocks."""
        event = {
            "type": event_name.value if isinstance(event_name, EventType) else event_name,
            "scope": scope_key,
            "payload": payload,
            "published_at": datetime.utcnow().isoformat()
        }
        for queue in list(cls._subscribers.get(scope_key, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping %s for slow subscriber on %s", event["type"], scope_key)
        logger.debug("Published %s to %s", event["type"], scope_key)
