"""Processor event pipeline.

Usage:
    from app.services.events import get_dispatcher

    # After the webhook signature has been verified:
    get_dispatcher().process(db, event)
"""

from app.services.events.dispatcher import EventDispatcher, build_dispatcher, get_dispatcher
from app.services.events.types import PendingEmail, ProcessorEventType

__all__ = [
    "EventDispatcher",
    "PendingEmail",
    "ProcessorEventType",
    "build_dispatcher",
    "get_dispatcher",
]
