"""Persisted, cross-context synchronized UI state."""

from resilient_ui.state.models import (
    ConflictRecord,
    ConflictResolution,
    ConflictStrategy,
    StateHealth,
    StateUpdateMessage,
    default_document,
)

__all__ = [
    "ConflictRecord",
    "ConflictResolution",
    "ConflictStrategy",
    "StateHealth",
    "StateUpdateMessage",
    "default_document",
]
