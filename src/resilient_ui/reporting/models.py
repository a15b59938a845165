"""Models used by error classification, reporting and recovery."""

from __future__ import annotations

import time
import traceback
import uuid
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorCategory(StrEnum):
    """Taxonomy buckets, in classification order."""

    NETWORK = "network"
    SECURITY = "security"
    STATE = "state"
    COMPONENT = "component"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(StrEnum):
    """Named recovery procedures the orchestrator knows how to run."""

    NETWORK = "network_recovery"
    SECURITY = "security_recovery"
    STATE = "state_recovery"
    COMPONENT = "component_recovery"
    CRITICAL = "critical_recovery"


class Classification(BaseModel):
    """Outcome of matching an error against the category patterns."""

    category: ErrorCategory
    severity: Severity
    recoverable: bool
    strategy: RecoveryStrategy


class ErrorInfo(BaseModel):
    """Raw failure as handed to ``report_error``."""

    type: str = "runtime_error"
    message: str
    stack: str | None = None
    component: str | None = None

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        type: str = "runtime_error",  # noqa: A002
        component: str | None = None,
    ) -> ErrorInfo:
        """Build an ``ErrorInfo`` from a raised exception.

        Args:
            exc: The exception to describe.
            type: Origin tag for the failure.
            component: Related component name, if known.

        Returns:
            ErrorInfo carrying the exception's message and formatted stack.
        """
        stack = "".join(traceback.format_exception(exc)) if exc.__traceback__ else None
        message = str(exc) or exc.__class__.__name__
        return cls(type=type, message=message, stack=stack, component=component)


class ErrorContext(BaseModel):
    """Environment snapshot attached to every reported error."""

    timestamp: int = Field(description="Epoch milliseconds.")
    origin: str | None = None
    viewport: dict[str, int] | None = None
    memory: dict[str, int] | None = None
    connection: dict[str, Any] | None = None
    components: dict[str, dict[str, Any]] | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(BaseModel):
    """Normalized, classified failure record queued for reporting."""

    id: str
    type: str
    message: str
    stack: str | None = None
    component: str | None = None
    timestamp: int
    context: ErrorContext
    classification: Classification


class ErrorReportBatch(BaseModel):
    """Wire payload for the reporting endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    errors: list[ErrorEvent]
    timestamp: int
    session_id: str = Field(alias="sessionId")
    auth_token: str = Field(default="", alias="authToken")


class RecoveryResult(BaseModel):
    """Return value of a recovery strategy."""

    success: bool
    message: str = ""


def generate_error_id(now: float | None = None) -> str:
    """Generate a unique error identifier.

    Args:
        now: Wall-clock seconds to embed; defaults to the current time.

    Returns:
        An ``err_``-prefixed identifier.
    """
    millis = int((time.time() if now is None else now) * 1000)
    return f"err_{millis}_{uuid.uuid4().hex[:9]}"
