"""Error classification and batched reporting."""

from resilient_ui.reporting.classifier import ErrorClassifier, ErrorPattern
from resilient_ui.reporting.models import (
    Classification,
    ErrorCategory,
    ErrorContext,
    ErrorEvent,
    ErrorInfo,
    ErrorReportBatch,
    RecoveryStrategy,
    Severity,
)

__all__ = [
    "Classification",
    "ErrorCategory",
    "ErrorClassifier",
    "ErrorContext",
    "ErrorEvent",
    "ErrorInfo",
    "ErrorPattern",
    "ErrorReportBatch",
    "RecoveryStrategy",
    "Severity",
]
