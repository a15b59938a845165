"""Typed application signals carried by the event bus.

Each ``EventKind`` has exactly one payload model; ``EVENT_PAYLOADS`` is the
registry the bus checks on ``emit``.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from resilient_ui.reporting.models import Classification, ErrorEvent
from resilient_ui.state.models import ConflictRecord, ConflictResolution


class EventKind(StrEnum):
    """Every signal the runtime publishes."""

    REQUEST_SUCCEEDED = "request.succeeded"
    REQUEST_RETRYING = "request.retrying"
    REQUEST_FAILED = "request.failed"
    REQUEST_CANCELLED = "request.cancelled"
    NETWORK_ONLINE = "network.online"
    NETWORK_OFFLINE = "network.offline"
    NETWORK_RESTORED = "network.restored"
    STATE_SET = "state.set"
    STATE_REMOVED = "state.removed"
    STATE_CLEARED = "state.cleared"
    STATE_CHANGED = "state.changed"
    STATE_CONFLICT = "state.conflict"
    STATE_RECOVERED = "state.recovered"
    STATE_PERSIST_FAILED = "state.persist_failed"
    ERROR_REPORTED = "error.reported"
    ERROR_RECOVERED = "error.recovered"
    ERROR_RECOVERY_FAILED = "error.recovery_failed"
    TOKEN_REFRESHED = "security.token_refreshed"
    COMPONENT_INIT_FAILED = "component.init_failed"
    COMPONENT_RECOVERED = "component.recovered"
    DEGRADATION_LEVEL_CHANGED = "degradation.level_changed"
    EMERGENCY_MODE = "degradation.emergency"
    NOTICE_SHOWN = "notice.shown"
    NOTICE_DISMISSED = "notice.dismissed"
    HANDLER_ERROR = "handler.error"


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------


class RequestErrorInfo(BaseModel):
    """Serializable view of a normalized request failure."""

    status: int = 0
    message: str
    error_type: str = "error"
    retryable: bool = False
    payload: dict[str, Any] | None = None


class RequestSucceeded(BaseModel):
    operation_id: str
    kind: str
    attempts: int = Field(ge=1)
    duration: float = Field(ge=0.0, description="Seconds since submission.")


class RequestRetrying(BaseModel):
    operation_id: str
    kind: str
    attempt: int = Field(ge=1, description="Attempts made so far.")
    delay: float = Field(ge=0.0)
    fire_at: float


class RequestFailed(BaseModel):
    operation_id: str
    kind: str
    attempts: int = Field(ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)
    error: RequestErrorInfo


class RequestCancelled(BaseModel):
    operation_id: str
    kind: str


class ConnectivityChanged(BaseModel):
    online: bool


class ConnectivityRestored(BaseModel):
    source: str = "probe"


# ---------------------------------------------------------------------------
# State payloads
# ---------------------------------------------------------------------------


class StateValueSet(BaseModel):
    path: str
    value: Any = None


class StateValueRemoved(BaseModel):
    path: str


class StateCleared(BaseModel):
    pass


class StateChanged(BaseModel):
    source: str
    version: int
    timestamp: int


class StateConflict(BaseModel):
    """Caller-mediated conflict; call ``resolve`` synchronously to decide."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    conflict: ConflictRecord
    resolve: Callable[[ConflictResolution], None]


class StateRecovered(BaseModel):
    reason: str
    fallback_used: bool
    backup_key: str | None = None
    stripped_keys: list[str] = Field(default_factory=list)
    classification: Classification | None = None


class StatePersistFailed(BaseModel):
    record: str
    attempts: int
    message: str


# ---------------------------------------------------------------------------
# Error / recovery payloads
# ---------------------------------------------------------------------------


class ErrorReported(BaseModel):
    error: ErrorEvent


class ErrorRecovered(BaseModel):
    error_id: str
    strategy: str
    message: str = ""


class ErrorRecoveryFailed(BaseModel):
    error_id: str
    strategy: str
    attempts: int
    message: str = ""


class TokenRefreshed(BaseModel):
    pass


class ComponentInitFailed(BaseModel):
    component: str
    message: str


class ComponentRecovered(BaseModel):
    component: str


class DegradationLevelChanged(BaseModel):
    level: int = Field(ge=0)
    reason: str = ""


class EmergencyModeEnabled(BaseModel):
    reason: str = ""


class NoticeEvent(BaseModel):
    notice_id: str
    title: str
    kind: str


class HandlerError(BaseModel):
    handler_id: str
    event_type: str
    message: str


EVENT_PAYLOADS: dict[EventKind, type[BaseModel]] = {
    EventKind.REQUEST_SUCCEEDED: RequestSucceeded,
    EventKind.REQUEST_RETRYING: RequestRetrying,
    EventKind.REQUEST_FAILED: RequestFailed,
    EventKind.REQUEST_CANCELLED: RequestCancelled,
    EventKind.NETWORK_ONLINE: ConnectivityChanged,
    EventKind.NETWORK_OFFLINE: ConnectivityChanged,
    EventKind.NETWORK_RESTORED: ConnectivityRestored,
    EventKind.STATE_SET: StateValueSet,
    EventKind.STATE_REMOVED: StateValueRemoved,
    EventKind.STATE_CLEARED: StateCleared,
    EventKind.STATE_CHANGED: StateChanged,
    EventKind.STATE_CONFLICT: StateConflict,
    EventKind.STATE_RECOVERED: StateRecovered,
    EventKind.STATE_PERSIST_FAILED: StatePersistFailed,
    EventKind.ERROR_REPORTED: ErrorReported,
    EventKind.ERROR_RECOVERED: ErrorRecovered,
    EventKind.ERROR_RECOVERY_FAILED: ErrorRecoveryFailed,
    EventKind.TOKEN_REFRESHED: TokenRefreshed,
    EventKind.COMPONENT_INIT_FAILED: ComponentInitFailed,
    EventKind.COMPONENT_RECOVERED: ComponentRecovered,
    EventKind.DEGRADATION_LEVEL_CHANGED: DegradationLevelChanged,
    EventKind.EMERGENCY_MODE: EmergencyModeEnabled,
    EventKind.NOTICE_SHOWN: NoticeEvent,
    EventKind.NOTICE_DISMISSED: NoticeEvent,
    EventKind.HANDLER_ERROR: HandlerError,
}
