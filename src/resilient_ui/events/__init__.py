"""Typed application signals and delegated element event dispatch."""

from resilient_ui.events.bus import EventBus, EventSnapshot
from resilient_ui.events.dom import Document, DomEvent, Element
from resilient_ui.events.models import EVENT_PAYLOADS, EventKind

__all__ = [
    "EVENT_PAYLOADS",
    "Document",
    "DomEvent",
    "Element",
    "EventBus",
    "EventKind",
    "EventSnapshot",
]
